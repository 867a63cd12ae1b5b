"""Tests for core/aggregator.py — fan-out, incremental delivery and supersession."""

from __future__ import annotations

import asyncio

import aiohttp
import pytest

import core.search as search_module
from core.aggregator import Aggregator, EventKind, MORE_SEARCH_HINT
from core.catalog import SourceCatalog
from core.search import FailureKind
from tests.conftest import FakeRoute, FakeSession, item_html, make_rules, make_source


class MemoryHintStore:
    def __init__(self, value: bool = True) -> None:
        self.value = value
        self.writes: list[bool] = []

    def get(self) -> bool:
        return self.value

    def set(self, value: bool) -> None:
        self.value = value
        self.writes.append(value)


class FixedTimeoutStore:
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.reads = 0

    def get(self) -> float:
        self.reads += 1
        return self.seconds


def _two_items() -> str:
    return item_html("1", "One", "/1.jpg") + item_html("2", "Two", "/2.jpg")


class TestSearchBasics:
    @pytest.mark.asyncio
    async def test_end_to_end_mixed_outcomes(self, three_source_catalog):
        http = FakeSession({
            "s1.example": FakeRoute(body=_two_items()),
            "s2.example": FakeRoute(body=item_html("9", "Never"), delay=10),
            "s3.example": FakeRoute(body="<html>no matches</html>"),
        })
        events = []
        aggregator = Aggregator(three_source_catalog, http_session=http)

        session = aggregator.search("naruto", timeout=0.1, listener=events.append)
        await asyncio.wait_for(session.wait(), timeout=2.0)

        assert session.terminal
        assert [b.source_id for b in session.batches] == [1]
        assert len(session.batches[0].records) == 2
        assert [r.title for r in session.records] == ["One", "Two"]
        assert session.notices == ["Source 2 search timed out"]
        assert session.failures == {2: FailureKind.TIMEOUT}
        assert session.outstanding == 0

        kinds = [e.kind for e in events]
        assert kinds.count(EventKind.BATCH) == 1
        assert kinds.count(EventKind.NOTICE) == 1
        assert kinds[-1] is EventKind.COMPLETE
        assert kinds.count(EventKind.COMPLETE) == 1
        notice = next(e for e in events if e.kind is EventKind.NOTICE)
        assert notice.source_id == 2

    @pytest.mark.asyncio
    async def test_search_returns_before_sources_finish(self, three_source_catalog):
        http = FakeSession({"example": FakeRoute(body=_two_items(), delay=0.05)})
        aggregator = Aggregator(three_source_catalog, http_session=http)

        session = aggregator.search("naruto", timeout=1)

        assert not session.terminal
        assert session.outstanding == 3
        assert session.batches == []
        await session.wait()
        assert {b.source_id for b in session.batches} == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_slow_source_does_not_delay_terminal_beyond_timeout(self, three_source_catalog):
        http = FakeSession({
            "s1.example": FakeRoute(body=_two_items()),
            "s2.example": FakeRoute(body=_two_items(), delay=30),
            "s3.example": FakeRoute(body=_two_items(), delay=0.01),
        })
        aggregator = Aggregator(three_source_catalog, http_session=http)
        loop = asyncio.get_running_loop()

        started = loop.time()
        session = aggregator.search("naruto", timeout=0.2)
        await session.wait()

        assert loop.time() - started < 0.2 + 0.8
        assert {b.source_id for b in session.batches} == {1, 3}

    @pytest.mark.asyncio
    async def test_all_sources_failing_still_completes(self, three_source_catalog):
        http = FakeSession({
            "s1.example": FakeRoute(status=500),
            "s2.example": FakeRoute(error=aiohttp.ClientConnectionError("down")),
            "s3.example": FakeRoute(body=""),
        })
        events = []
        aggregator = Aggregator(three_source_catalog, http_session=http)

        session = aggregator.search("naruto", timeout=1, listener=events.append)
        await session.wait()

        assert session.batches == []
        assert session.notices == []
        assert session.failures == {1: FailureKind.SOURCE_ERROR, 2: FailureKind.SOURCE_ERROR}
        assert [e.kind for e in events] == [EventKind.COMPLETE]

    @pytest.mark.asyncio
    async def test_source_error_is_logged(self, three_source_catalog, caplog):
        http = FakeSession({
            "s1.example": FakeRoute(status=500),
            "example": FakeRoute(body=""),
        })
        aggregator = Aggregator(three_source_catalog, http_session=http)

        with caplog.at_level("WARNING", logger="core.aggregator"):
            await aggregator.search("naruto", timeout=1).wait()

        assert "Source 1 search failed" in caplog.text

    @pytest.mark.asyncio
    async def test_extraction_error_skips_only_that_source(self, three_source_catalog, monkeypatch):
        real_extract = search_module.extract

        def flaky_extract(html, rules, source_name, source_host):
            if source_name == "Source 2":
                raise RuntimeError("bad pattern")
            return real_extract(html, rules, source_name, source_host)

        monkeypatch.setattr(search_module, "extract", flaky_extract)
        http = FakeSession({"example": FakeRoute(body=_two_items())})
        events = []
        aggregator = Aggregator(three_source_catalog, http_session=http)

        session = aggregator.search("naruto", timeout=1, listener=events.append)
        await asyncio.wait_for(session.wait(), timeout=2.0)

        assert {b.source_id for b in session.batches} == {1, 3}
        assert session.failures == {2: FailureKind.SOURCE_ERROR}
        assert session.notices == []
        assert session.outstanding == 0
        assert events[-1].kind is EventKind.COMPLETE

    @pytest.mark.asyncio
    async def test_only_enabled_adapted_sources_queried(self):
        catalog = SourceCatalog(
            [
                make_source(1),
                make_source(2, enabled=False),
                make_source(3, adaptation=False),
                make_source(4),  # eligible but no rules
            ],
            {1: make_rules(), 2: make_rules(), 3: make_rules()},
        )
        http = FakeSession({"example": FakeRoute(body=_two_items())})
        aggregator = Aggregator(catalog, http_session=http)

        session = aggregator.search("naruto", timeout=1)
        await session.wait()

        assert [url for url, _ in http.requests] == ["https://s1.example/search?wd=naruto"]
        assert session.failures == {4: FailureKind.CONFIG_ERROR}
        assert [b.source_id for b in session.batches] == [1]

    @pytest.mark.asyncio
    async def test_no_eligible_sources_completes_immediately(self):
        aggregator = Aggregator(SourceCatalog([], {}), http_session=FakeSession())
        events = []

        session = aggregator.search("naruto", listener=events.append)
        await asyncio.wait_for(session.wait(), timeout=1.0)

        assert session.batches == []
        assert [e.kind for e in events] == [EventKind.COMPLETE]

    @pytest.mark.asyncio
    async def test_blank_keyword_rejected(self, three_source_catalog):
        aggregator = Aggregator(three_source_catalog, http_session=FakeSession())
        with pytest.raises(ValueError, match="empty"):
            aggregator.search("   ")

    def test_search_requires_running_loop(self, three_source_catalog):
        aggregator = Aggregator(three_source_catalog, http_session=FakeSession())
        with pytest.raises(RuntimeError):
            aggregator.search("naruto")

    @pytest.mark.asyncio
    async def test_listener_error_does_not_break_session(self, three_source_catalog):
        http = FakeSession({"example": FakeRoute(body=_two_items())})
        aggregator = Aggregator(three_source_catalog, http_session=http)

        def broken(event):
            raise RuntimeError("listener bug")

        session = aggregator.search("naruto", timeout=1, listener=broken)
        await session.wait()

        assert len(session.batches) == 3


class TestTimeoutResolution:
    @pytest.mark.asyncio
    async def test_timeout_read_from_store_per_search(self, three_source_catalog):
        store = FixedTimeoutStore(3.5)
        aggregator = Aggregator(
            three_source_catalog, http_session=FakeSession(), timeout_store=store
        )

        first = aggregator.search("a")
        store.seconds = 7.0
        second = aggregator.search("b")
        await second.wait()
        await first.wait()

        assert first.timeout == 3.5
        assert second.timeout == 7.0
        assert store.reads == 2

    @pytest.mark.asyncio
    async def test_explicit_timeout_wins(self, three_source_catalog):
        store = FixedTimeoutStore(3.5)
        aggregator = Aggregator(
            three_source_catalog, http_session=FakeSession(), timeout_store=store
        )
        session = aggregator.search("a", timeout=0.5)
        await session.wait()

        assert session.timeout == 0.5
        assert store.reads == 0

    @pytest.mark.asyncio
    async def test_default_timeout_without_store(self, three_source_catalog):
        aggregator = Aggregator(
            three_source_catalog, http_session=FakeSession(), default_timeout=2.5
        )
        session = aggregator.search("a")
        await session.wait()
        assert session.timeout == 2.5


class TestSupersession:
    @pytest.mark.asyncio
    async def test_new_search_discards_previous_results(self, three_source_catalog):
        http = FakeSession({
            "wd=alpha": FakeRoute(body=_two_items(), delay=0.2),
            "wd=beta": FakeRoute(body=item_html("b", "Beta"), delay=0.01),
        })
        a_events, b_events = [], []
        aggregator = Aggregator(three_source_catalog, http_session=http)

        session_a = aggregator.search("alpha", timeout=5, listener=a_events.append)
        await asyncio.sleep(0.02)
        session_b = aggregator.search("beta", timeout=5, listener=b_events.append)
        await session_b.wait()
        # Give any straggling "alpha" replies time to land
        await asyncio.sleep(0.3)

        assert aggregator.active is session_b
        assert session_a.cancelled
        assert session_a.terminal
        assert session_a.batches == []
        assert all("wd=beta" in b.search_url for b in session_b.batches)
        assert {b.source_id for b in session_b.batches} == {1, 2, 3}
        assert len(http.aborted) == 3
        assert not any("wd=alpha" in url for url in http.completed)

        assert [e.kind for e in a_events] == [EventKind.COMPLETE]
        assert a_events[0].session.cancelled
        assert all(e.session is session_b for e in b_events)

    @pytest.mark.asyncio
    async def test_replies_landing_after_supersession_are_dropped(self, three_source_catalog):
        http = FakeSession({
            "wd=alpha": FakeRoute(body=_two_items(), delay=5, ignore_cancel=True),
            "wd=beta": FakeRoute(body=item_html("b", "Beta"), delay=0.01),
        })
        aggregator = Aggregator(three_source_catalog, http_session=http)

        session_a = aggregator.search("alpha", timeout=10)
        await asyncio.sleep(0.02)
        session_b = aggregator.search("beta", timeout=10)
        await asyncio.wait_for(asyncio.gather(session_a.wait(), session_b.wait()), timeout=2.0)

        # Every "alpha" page was still read in full after the cancel
        assert sum("wd=alpha" in url for url in http.completed) == 3
        assert http.aborted == []
        assert session_a.batches == []
        assert session_a.failures == {}
        assert len(session_b.records) == 3
        assert {r.title for r in session_b.records} == {"Beta"}

    @pytest.mark.asyncio
    async def test_explicit_cancel(self, three_source_catalog):
        http = FakeSession({"example": FakeRoute(body=_two_items(), delay=5)})
        events = []
        aggregator = Aggregator(three_source_catalog, http_session=http)

        session = aggregator.search("naruto", timeout=10, listener=events.append)
        await asyncio.sleep(0.01)
        aggregator.cancel()
        await asyncio.wait_for(session.wait(), timeout=1.0)

        assert session.cancelled
        assert session.batches == []
        assert session.notices == []
        assert [e.kind for e in events] == [EventKind.COMPLETE]

    @pytest.mark.asyncio
    async def test_cancel_after_terminal_is_noop(self, three_source_catalog):
        http = FakeSession({"example": FakeRoute(body=_two_items())})
        aggregator = Aggregator(three_source_catalog, http_session=http)

        session = aggregator.search("naruto", timeout=1)
        await session.wait()
        session.cancel()

        assert not session.cancelled
        assert len(session.batches) == 3

    @pytest.mark.asyncio
    async def test_close_cancels_and_keeps_injected_session_open(self, three_source_catalog):
        http = FakeSession({"example": FakeRoute(body=_two_items(), delay=5)})
        aggregator = Aggregator(three_source_catalog, http_session=http)

        session = aggregator.search("naruto", timeout=10)
        await aggregator.close()

        assert session.terminal
        assert session.cancelled
        assert not http.closed


class TestHint:
    @pytest.mark.asyncio
    async def test_hint_shown_once(self, three_source_catalog):
        http = FakeSession({"example": FakeRoute(body=_two_items())})
        hints = MemoryHintStore(True)
        aggregator = Aggregator(three_source_catalog, http_session=http, hint_store=hints)

        first_events, second_events = [], []
        await aggregator.search("a", timeout=1, listener=first_events.append).wait()
        await aggregator.search("b", timeout=1, listener=second_events.append).wait()

        first_kinds = [e.kind for e in first_events]
        assert first_kinds[-2:] == [EventKind.HINT, EventKind.COMPLETE]
        assert first_events[-2].message == MORE_SEARCH_HINT
        assert EventKind.HINT not in [e.kind for e in second_events]
        assert hints.writes == [False]

    @pytest.mark.asyncio
    async def test_no_hint_for_cancelled_session(self, three_source_catalog):
        http = FakeSession({"example": FakeRoute(body=_two_items(), delay=5)})
        hints = MemoryHintStore(True)
        aggregator = Aggregator(three_source_catalog, http_session=http, hint_store=hints)

        session = aggregator.search("a", timeout=10)
        aggregator.cancel()
        await session.wait()

        assert hints.value is True
        assert hints.writes == []
