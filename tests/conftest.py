"""Shared fixtures: sample catalog, rules and an in-memory aiohttp stand-in."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import aiohttp
import pytest

from core.catalog import SourceCatalog, parse_rules
from core.models import SourceDescriptor


# ── Fake HTTP layer ────────────────────────────────────────────────────────────


@dataclass
class FakeRoute:
    """Canned reply for requests whose URL contains the route key."""

    body: str = ""
    status: int = 200
    delay: float = 0.0
    error: Optional[BaseException] = None
    #: Finish the request even when the caller cancels it mid-flight.
    ignore_cancel: bool = False


class FakeResponse:
    def __init__(self, url: str, route: FakeRoute) -> None:
        self.url = url
        self.status = route.status
        self._body = route.body

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise aiohttp.ClientResponseError(
                request_info=None, history=(), status=self.status, message="fake error"
            )

    async def text(self, encoding: Optional[str] = None, errors: str = "strict") -> str:
        return self._body


class _FakeRequest:
    def __init__(self, owner: "FakeSession", url: str, route: FakeRoute) -> None:
        self._owner = owner
        self._url = url
        self._route = route

    async def __aenter__(self) -> FakeResponse:
        try:
            if self._route.delay:
                await asyncio.sleep(self._route.delay)
        except asyncio.CancelledError:
            if not self._route.ignore_cancel:
                self._owner.aborted.append(self._url)
                raise
        if self._route.error is not None:
            raise self._route.error
        self._owner.completed.append(self._url)
        return FakeResponse(self._url, self._route)

    async def __aexit__(self, *exc_info) -> bool:
        return False


@dataclass
class FakeSession:
    """Implements the slice of ``aiohttp.ClientSession`` used by ``SourceQuery``."""

    routes: dict[str, FakeRoute] = field(default_factory=dict)
    requests: list[tuple[str, dict]] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    aborted: list[str] = field(default_factory=list)
    closed: bool = False

    def get(self, url: str, headers: Optional[dict] = None, **kwargs) -> _FakeRequest:
        self.requests.append((url, dict(headers or {})))
        for match, route in self.routes.items():
            if match in url:
                return _FakeRequest(self, url, route)
        return _FakeRequest(self, url, FakeRoute(status=404))

    async def close(self) -> None:
        self.closed = True


# ── Sample configuration ───────────────────────────────────────────────────────

#: Three-group pattern (url, image, title) shared by the test sources.
ITEM_REGEX = (
    r'<div class="item"><a href="/detail/([^"]*)"><img src="([^"]*)"></a>'
    r'<p class="title">(.*?)</p></div>'
)


def make_rules(**overrides):
    data = {
        "url": "{host}/search?wd={q}",
        "item_regex": ITEM_REGEX,
        "fields": {
            "title": {"match_index": 3},
            "url": {"match_index": 1},
            "image": {"match_index": 2},
        },
        "details_format": "{host}/show/{result}",
    }
    data.update(overrides)
    return parse_rules({"search_config": data})


def make_source(source_id: int, **overrides) -> SourceDescriptor:
    data = {
        "id": source_id,
        "name": f"Source {source_id}",
        "url": f"https://s{source_id}.example",
        "enabled": True,
        "adaptation": True,
    }
    data.update(overrides)
    return SourceDescriptor.model_validate(data)


def item_html(url: str, title: str, image: str = "") -> str:
    return (
        f'<div class="item"><a href="/detail/{url}"><img src="{image}"></a>'
        f'<p class="title">{title}</p></div>'
    )


@pytest.fixture
def rules():
    return make_rules()


@pytest.fixture
def three_source_catalog() -> SourceCatalog:
    sources = [make_source(1), make_source(2), make_source(3)]
    return SourceCatalog(sources, {s.id: make_rules() for s in sources})


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point DB_PATH to a fresh temp file for each test."""
    db_file = tmp_path / "test_app.db"
    monkeypatch.setenv("DB_PATH", str(db_file))
    return db_file
