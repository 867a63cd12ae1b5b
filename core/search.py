"""Per-source search execution.

Responsibilities:
- Build a source's search URL from its template and the keyword
- Fetch the page with a single, time-bounded, cancellable HTTP GET
- Hand the body to the extractor and wrap the records in a ``SourceBatch``
- Report every other ending as a typed ``FailureKind`` instead of raising

A query never raises for source-level problems; the aggregator decides what
each failure means for the user.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import quote

import aiohttp

from config.settings import DEFAULT_USER_AGENT
from core.extractor import extract
from core.models import ExtractionRuleSet, SourceBatch, SourceDescriptor

logger = logging.getLogger(__name__)

#: Characters ``encodeURIComponent`` leaves untouched besides alphanumerics.
_URI_COMPONENT_SAFE = "-_.!~*'()"


# ── Enums ──────────────────────────────────────────────────────────────────────


class FailureKind(str, Enum):
    """Why a source contributed nothing to a search."""

    TIMEOUT = "timeout"              # No response within the per-source budget
    CANCELLED = "cancelled"          # Superseded by a newer search or cancelled
    SOURCE_ERROR = "source_error"    # Network failure, non-2xx or extraction error
    CONFIG_ERROR = "config_error"    # Eligible source without extraction rules


# ── Data classes ───────────────────────────────────────────────────────────────


@dataclass
class QueryOutcome:
    """Result of running one source query: a batch or a failure."""

    source: SourceDescriptor
    search_url: str = ""
    batch: Optional[SourceBatch] = None
    failure: Optional[FailureKind] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


# ── URL building ───────────────────────────────────────────────────────────────


def build_search_url(template: str, keyword: str, host: str) -> str:
    """Fill ``{q}`` (percent-encoded) and ``{host}`` in a search URL template.

    Examples:
        >>> build_search_url("{host}/search?wd={q}", "a b", "https://example.com")
        'https://example.com/search?wd=a%20b'
    """
    encoded = quote(keyword, safe=_URI_COMPONENT_SAFE)
    return template.replace("{q}", encoded).replace("{host}", host)


# ── Query runner ───────────────────────────────────────────────────────────────


class SourceQuery:
    """Runs one keyword against one source over a shared aiohttp session."""

    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.http_session = http_session
        self.user_agent = user_agent

    async def _fetch(self, url: str) -> str:
        async with self.http_session.get(url, headers={"User-Agent": self.user_agent}) as resp:
            resp.raise_for_status()
            return await resp.text(errors="replace")

    async def run(
        self,
        keyword: str,
        source: SourceDescriptor,
        rules: ExtractionRuleSet,
        timeout: Optional[float],
        cancel_token: asyncio.Event,
    ) -> QueryOutcome:
        """Fetch and extract one source, racing the timeout and *cancel_token*.

        Args:
            keyword: The raw search keyword.
            source: Source to query.
            rules: The source's extraction rules.
            timeout: Seconds allowed from dispatch to a fully read body;
                ``None`` waits indefinitely.
            cancel_token: Set to abort the fetch; the outcome is then
                ``FailureKind.CANCELLED`` and no batch is produced.

        Returns:
            A ``QueryOutcome`` carrying either a ``SourceBatch`` or a failure.
        """
        search_url = build_search_url(rules.search_url_template, keyword, source.base_host)
        if cancel_token.is_set():
            return QueryOutcome(source, search_url, failure=FailureKind.CANCELLED)

        logger.debug("GET %s (%s, timeout=%ss)", search_url, source.name, timeout)
        fetch = asyncio.ensure_future(self._fetch(search_url))
        cancelled = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {fetch, cancelled},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()
            if not fetch.done():
                fetch.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await fetch

        # A token set while the body was arriving still wins
        if cancel_token.is_set():
            if fetch.done() and not fetch.cancelled():
                fetch.exception()  # retrieved; the result is discarded
            return QueryOutcome(source, search_url, failure=FailureKind.CANCELLED)
        if fetch not in done:
            logger.info("%s timed out after %ss", source.name, timeout)
            return QueryOutcome(source, search_url, failure=FailureKind.TIMEOUT)

        try:
            body = fetch.result()
            records = extract(body, rules, source.name, source.base_host)
        except Exception as exc:
            return QueryOutcome(source, search_url, failure=FailureKind.SOURCE_ERROR, error=exc)

        batch = SourceBatch(
            source_id=source.id,
            source_name=source.name,
            source_host=source.base_host,
            search_url=search_url,
            records=tuple(records),
        )
        return QueryOutcome(source, search_url, batch=batch)
