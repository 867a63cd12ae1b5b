"""Concurrent fan-out / fan-in over every eligible source.

Responsibilities:
- Filter the catalog down to enabled, adapted sources
- Launch one ``SourceQuery`` task per source and collect their outcomes
  through a queue consumed by a single aggregating loop
- Grow the active ``SearchSession`` batch by batch and notify listeners
- Supersede the previous session when a new search starts

Event sequence seen by a listener for one session:
    BATCH*  (one per non-empty batch, arrival order)
    NOTICE* (one per source that timed out, interleaved with batches)
    HINT?   (at most once per store, after the session turns terminal)
    COMPLETE (exactly once, always last)

Outcomes that arrive for a cancelled or superseded session are dropped
without touching that session's state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

import aiohttp

from config.settings import DEFAULT_USER_AGENT
from core.catalog import SourceCatalog
from core.models import ExtractionRuleSet, ResultRecord, SourceBatch, SourceDescriptor
from core.search import FailureKind, QueryOutcome, SourceQuery

logger = logging.getLogger(__name__)

#: Shown once, after the first completed search.
MORE_SEARCH_HINT = (
    "If the title you want is missing, try the manual search list "
    "to look it up on more sites."
)


class TimeoutStore(Protocol):
    def get(self) -> float: ...


class HintStore(Protocol):
    def get(self) -> bool: ...

    def set(self, value: bool) -> None: ...


# ── Events ─────────────────────────────────────────────────────────────────────


class EventKind(str, Enum):
    BATCH = "batch"
    NOTICE = "notice"
    HINT = "hint"
    COMPLETE = "complete"


@dataclass(frozen=True)
class SessionEvent:
    """A notification delivered to session listeners."""

    kind: EventKind
    session: "SearchSession"
    batch: Optional[SourceBatch] = None
    source_id: Optional[int] = None
    message: str = ""


Listener = Callable[[SessionEvent], None]


# ── Session ────────────────────────────────────────────────────────────────────


class SearchSession:
    """Accumulated state of one search.

    Only the aggregating loop of the owning ``Aggregator`` mutates a session;
    callers read it and subscribe to its events.
    """

    def __init__(self, keyword: str, timeout: float, generation: int) -> None:
        self.keyword = keyword
        self.timeout = timeout
        self.generation = generation
        self.started_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self.batches: list[SourceBatch] = []
        self.notices: list[str] = []
        self.failures: dict[int, FailureKind] = {}
        self.outstanding = 0
        self.cancel_token = asyncio.Event()
        self._done = asyncio.Event()
        self._listeners: list[Listener] = []

    def __repr__(self) -> str:
        return (
            f"SearchSession(keyword={self.keyword!r}, generation={self.generation}, "
            f"batches={len(self.batches)}, outstanding={self.outstanding}, "
            f"terminal={self.terminal})"
        )

    @property
    def terminal(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_set()

    @property
    def records(self) -> list[ResultRecord]:
        """All records across batches, batch by batch."""
        return [record for batch in self.batches for record in batch.records]

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def cancel(self) -> None:
        """Abort all in-flight source queries; no further results are kept."""
        if not self.terminal and not self.cancelled:
            logger.info("Cancelling search %r (generation %d)", self.keyword, self.generation)
            self.cancel_token.set()

    async def wait(self) -> "SearchSession":
        """Wait until every source has settled."""
        await self._done.wait()
        return self

    def _emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Session listener failed on %s event", event.kind.value)


# ── Aggregator ─────────────────────────────────────────────────────────────────


class Aggregator:
    """Runs keyword searches across the catalog, one active session at a time.

    The aiohttp session is lazy-initialised on first use so an ``Aggregator``
    can be built outside a running event loop; pass ``http_session`` to share
    one (or to substitute a fake in tests).
    """

    def __init__(
        self,
        catalog: SourceCatalog,
        http_session: Optional[aiohttp.ClientSession] = None,
        timeout_store: Optional[TimeoutStore] = None,
        hint_store: Optional[HintStore] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        default_timeout: float = 5.0,
    ) -> None:
        self.catalog = catalog
        self.timeout_store = timeout_store
        self.hint_store = hint_store
        self.user_agent = user_agent
        self.default_timeout = default_timeout
        self._http_session = http_session
        self._owns_http_session = http_session is None
        self._generation = 0
        self._active: Optional[SearchSession] = None
        self._runs: set[asyncio.Task] = set()

    @property
    def active(self) -> Optional[SearchSession]:
        return self._active

    def _get_http_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession()
            self._owns_http_session = True
        return self._http_session

    def _resolve_timeout(self, timeout: Optional[float]) -> float:
        if timeout is not None:
            return timeout
        if self.timeout_store is not None:
            return self.timeout_store.get()
        return self.default_timeout

    def search(
        self,
        keyword: str,
        timeout: Optional[float] = None,
        listener: Optional[Listener] = None,
    ) -> SearchSession:
        """Start a search and return its live session immediately.

        Must be called from a running event loop. Any active session is
        cancelled first.

        Args:
            keyword: Free-text keyword.
            timeout: Per-source timeout in seconds; defaults to the timeout
                store's value, then ``default_timeout``.
            listener: Optional callback subscribed before any work starts.

        Raises:
            ValueError: If the keyword is blank.
            RuntimeError: If no event loop is running.
        """
        keyword = keyword.strip()
        if not keyword:
            raise ValueError("Search keyword must not be empty.")
        loop = asyncio.get_running_loop()

        self.cancel()
        self._generation += 1
        session = SearchSession(keyword, self._resolve_timeout(timeout), self._generation)
        if listener is not None:
            session.subscribe(listener)
        self._active = session

        targets: list[tuple[SourceDescriptor, ExtractionRuleSet]] = []
        for source in self.catalog.eligible():
            rules = self.catalog.rules_for(source.id)
            if rules is None:
                logger.debug("Skipping %s (id=%d): no extraction rules", source.name, source.id)
                session.failures[source.id] = FailureKind.CONFIG_ERROR
                continue
            targets.append((source, rules))
        session.outstanding = len(targets)

        logger.info(
            "Search keyword=%r sources=%d timeout=%ss generation=%d",
            keyword, len(targets), session.timeout, session.generation,
        )
        run = loop.create_task(self._collect(session, targets))
        self._runs.add(run)
        run.add_done_callback(self._runs.discard)
        return session

    def cancel(self) -> None:
        """Cancel the active session, if any."""
        if self._active is not None:
            self._active.cancel()

    async def close(self) -> None:
        """Cancel the active search, wait for it to drain and release HTTP resources."""
        self.cancel()
        if self._runs:
            await asyncio.gather(*self._runs, return_exceptions=True)
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    def _is_current(self, session: SearchSession) -> bool:
        return session.generation == self._generation and not session.cancelled

    async def _collect(
        self,
        session: SearchSession,
        targets: list[tuple[SourceDescriptor, ExtractionRuleSet]],
    ) -> None:
        """Aggregating loop: the only writer of *session*."""
        outcomes: asyncio.Queue[QueryOutcome] = asyncio.Queue()
        query = SourceQuery(self._get_http_session(), self.user_agent) if targets else None

        async def run_one(source: SourceDescriptor, rules: ExtractionRuleSet) -> None:
            try:
                outcome = await query.run(
                    session.keyword, source, rules, session.timeout, session.cancel_token
                )
            except asyncio.CancelledError:
                outcomes.put_nowait(QueryOutcome(source, failure=FailureKind.CANCELLED))
                raise
            except Exception as exc:
                outcome = QueryOutcome(source, failure=FailureKind.SOURCE_ERROR, error=exc)
            outcomes.put_nowait(outcome)

        tasks = [asyncio.ensure_future(run_one(source, rules)) for source, rules in targets]
        remaining = len(tasks)
        try:
            while remaining:
                outcome = await outcomes.get()
                remaining -= 1
                if self._is_current(session):
                    self._settle(session, outcome)
                    session.outstanding = remaining
                else:
                    logger.debug(
                        "Dropping stale outcome from %s for %r", outcome.source.name, session.keyword
                    )
        finally:
            for task in tasks:
                task.cancel()
            self._finish(session)

    def _settle(self, session: SearchSession, outcome: QueryOutcome) -> None:
        source = outcome.source
        if outcome.ok:
            batch = outcome.batch
            if batch is not None and batch.records:
                session.batches.append(batch)
                logger.info("%s: %d results", source.name, len(batch.records))
                session._emit(SessionEvent(EventKind.BATCH, session, batch=batch, source_id=source.id))
            else:
                logger.info("%s: no results", source.name)
            return

        session.failures[source.id] = outcome.failure
        if outcome.failure is FailureKind.TIMEOUT:
            message = f"{source.name} search timed out"
            session.notices.append(message)
            session._emit(SessionEvent(EventKind.NOTICE, session, source_id=source.id, message=message))
        elif outcome.failure is FailureKind.SOURCE_ERROR:
            logger.warning("%s search failed: %r", source.name, outcome.error)

    def _finish(self, session: SearchSession) -> None:
        session.finished_at = datetime.now(timezone.utc)
        session._done.set()
        logger.info(
            "Search %r finished: %d batches, %d failures%s",
            session.keyword, len(session.batches), len(session.failures),
            " (cancelled)" if session.cancelled else "",
        )

        if not session.cancelled and self.hint_store is not None:
            try:
                show_hint = self.hint_store.get()
                if show_hint:
                    self.hint_store.set(False)
            except Exception:
                logger.exception("Hint store unavailable")
                show_hint = False
            if show_hint:
                session._emit(SessionEvent(EventKind.HINT, session, message=MORE_SEARCH_HINT))

        session._emit(SessionEvent(EventKind.COMPLETE, session))
