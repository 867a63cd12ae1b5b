"""
Flask web server for Source Radar.

Routes
──────
GET    /api/sources             Enabled sources (JSON)
GET    /api/sources/manual      Enabled sources without rules, for manual search
GET    /api/search/stream?q=... SSE: batches as each source completes
POST   /api/search/cancel       Cancel the running search
GET    /api/settings            Current search timeout
PUT    /api/settings            Update the search timeout
GET    /api/favorites           List favorites (keyword/limit/offset/order_by/order)
POST   /api/favorites           Save (upsert) a favorite
PATCH  /api/favorites           Rename / move a favorite
DELETE /api/favorites?url=...   Remove one favorite (no url: remove all)
GET    /api/favorites/exists    Whether a URL is a favorite

Searches run on a single background asyncio loop that owns one Aggregator,
so starting a new search supersedes the previous one.
"""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import os
import queue
import sqlite3
import sys
import threading
from collections.abc import Callable
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, stream_with_context

# Allow running as `python web/app.py` from the project root
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

load_dotenv()

from config.settings import Settings
from core import favorites as fav
from core import preferences as prefs
from core.aggregator import Aggregator, EventKind, SearchSession, SessionEvent
from core.catalog import load_catalog
from core.models import FavoriteItem

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

#: Extra seconds the stream waits beyond the source timeout before giving up.
_STREAM_GRACE_SECONDS = 10.0

settings = Settings()
settings.validate()
catalog = load_catalog(settings.sources_dir)
timeout_pref = prefs.TimeoutPreference(default=settings.search_timeout)
hint_pref = prefs.HintPreference()

app = Flask(__name__)

# Initialise the SQLite tables on startup
fav.init_db()
prefs.init_db()


# ── Background search loop ─────────────────────────────────────────────────

class SearchRunner:
    """Hosts one Aggregator on a dedicated event-loop thread.

    Flask handlers run on worker threads; they reach the loop through
    ``run_coroutine_threadsafe`` and get events back via a ``queue.Queue``.
    """

    def __init__(self, aggregator_factory: Callable[[], Aggregator]) -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name="search-loop", daemon=True
        )
        self._thread.start()
        self.aggregator = aggregator_factory()

    def _call(self, fn: Callable[[], object]) -> object:
        async def _invoke() -> object:
            return fn()

        return asyncio.run_coroutine_threadsafe(_invoke(), self._loop).result()

    def start(self, keyword: str, listener: Callable[[SessionEvent], None]) -> SearchSession:
        return self._call(lambda: self.aggregator.search(keyword, listener=listener))

    def cancel(self, session: Optional[SearchSession] = None) -> None:
        if session is None:
            self._call(self.aggregator.cancel)
        else:
            self._call(session.cancel)

    def shutdown(self) -> None:
        if not self._thread.is_alive():
            return
        asyncio.run_coroutine_threadsafe(self.aggregator.close(), self._loop).result()
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)


_runner: Optional[SearchRunner] = None
_runner_lock = threading.Lock()


def _get_runner() -> SearchRunner:
    """Lazy-initialise the background search loop."""
    global _runner
    with _runner_lock:
        if _runner is None:
            _runner = SearchRunner(
                lambda: Aggregator(
                    catalog,
                    timeout_store=timeout_pref,
                    hint_store=hint_pref,
                    user_agent=settings.user_agent,
                    default_timeout=settings.search_timeout,
                )
            )
            atexit.register(_runner.shutdown)
        return _runner


def _source_json(source) -> dict:
    return {
        "id": source.id,
        "name": source.name,
        "url": source.base_host,
        "desc": source.description,
        "icon": source.icon,
    }


def _sse(payload: dict | str) -> str:
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {data}\n\n"


# ── Catalog API ────────────────────────────────────────────────────────────

@app.route("/api/sources")
def list_sources():
    """Return every enabled source."""
    return jsonify([_source_json(s) for s in catalog.enabled()])


@app.route("/api/sources/manual")
def list_manual_sources():
    """Return enabled sources that have no extraction rules."""
    return jsonify([_source_json(s) for s in catalog.manual()])


# ── Search stream ──────────────────────────────────────────────────────────

@app.route("/api/search/stream")
def search_stream():
    """SSE endpoint that streams one aggregated search.

    Query params:
      q  (required) — the keyword

    SSE events emitted:
      {"type": "batch",    "data": {...}}                   one source's results
      {"type": "notice",   "source_id": 2, "message": "..."} a source timed out
      {"type": "hint",     "message": "..."}                one-time usage hint
      {"type": "complete", "batches": 3, "cancelled": false}
      {"type": "error",    "message": "..."}                on failure
    """
    keyword = request.args.get("q", "").strip()
    if not keyword:
        return jsonify({"error": "q query param is required"}), 400

    runner = _get_runner()

    def generate():
        events: queue.Queue[SessionEvent] = queue.Queue()
        session: Optional[SearchSession] = None
        try:
            session = runner.start(keyword, events.put)
            wait_seconds = session.timeout + _STREAM_GRACE_SECONDS
            while True:
                event = events.get(timeout=wait_seconds)
                if event.kind is EventKind.BATCH:
                    yield _sse({"type": "batch", "data": event.batch.model_dump()})
                elif event.kind is EventKind.NOTICE:
                    yield _sse({"type": "notice", "source_id": event.source_id, "message": event.message})
                elif event.kind is EventKind.HINT:
                    yield _sse({"type": "hint", "message": event.message})
                elif event.kind is EventKind.COMPLETE:
                    yield _sse({
                        "type": "complete",
                        "batches": len(session.batches),
                        "cancelled": session.cancelled,
                    })
                    break
        except queue.Empty:
            logger.error("Search stream for q=%r stalled", keyword)
            yield _sse({"type": "error", "message": "search stalled"})
        except Exception as exc:
            logger.exception("Search stream error for q=%r", keyword)
            yield _sse({"type": "error", "message": str(exc)})
        finally:
            # Client went away (or we bailed out) before the session settled
            if session is not None and not session.terminal:
                runner.cancel(session)

        yield _sse("[DONE]")

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.route("/api/search/cancel", methods=["POST"])
def cancel_search():
    """Cancel whichever search is currently running."""
    _get_runner().cancel()
    return jsonify({"cancelled": True})


# ── Settings API ───────────────────────────────────────────────────────────

@app.route("/api/settings")
def get_settings():
    return jsonify({"search_timeout": timeout_pref.get()})


@app.route("/api/settings", methods=["PUT"])
def update_settings():
    """Update the per-source search timeout (seconds)."""
    body = request.get_json(silent=True) or {}
    try:
        timeout_pref.set(body["search_timeout"])
    except (KeyError, TypeError, ValueError) as exc:
        return jsonify({"error": f"invalid search_timeout: {exc}"}), 400
    return jsonify({"search_timeout": timeout_pref.get()})


# ── Favorites API ──────────────────────────────────────────────────────────

@app.route("/api/favorites")
def list_favorites():
    args = request.args
    entries = fav.get_all(
        limit=args.get("limit", 200, type=int),
        offset=args.get("offset", 0, type=int),
        keyword=args.get("keyword"),
        order_by=args.get("order_by", "name"),
        order=args.get("order", "ASC"),
    )
    return jsonify([e.model_dump() for e in entries])


@app.route("/api/favorites/exists")
def favorite_exists():
    url = request.args.get("url", "")
    try:
        return jsonify({"url": url, "exists": fav.exists(url)})
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400


@app.route("/api/favorites", methods=["POST"])
def save_favorite():
    body = request.get_json(silent=True) or {}
    try:
        item = FavoriteItem(name=body.get("name", ""), url=body.get("url", ""))
        fav.upsert(item)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify(fav.get_by_url(item.url).model_dump()), 201


@app.route("/api/favorites", methods=["PATCH"])
def update_favorite():
    body = request.get_json(silent=True) or {}
    try:
        updated = fav.update_by_url(
            body.get("url", ""), name=body.get("name"), new_url=body.get("new_url")
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    except sqlite3.IntegrityError:
        return jsonify({"error": "URL is already a favorite"}), 409
    if not updated:
        return jsonify({"error": "Not found"}), 404
    return jsonify({"updated": True})


@app.route("/api/favorites", methods=["DELETE"])
def delete_favorite():
    url = request.args.get("url")
    if url is None:
        fav.clear()
        return jsonify({"cleared": True})
    try:
        deleted = fav.remove_by_url(url)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    if not deleted:
        return jsonify({"error": "Not found"}), 404
    return jsonify({"deleted": url})


# ── Entry point ────────────────────────────────────────────────────────────

if __name__ == "__main__":
    app.run(debug=settings.debug, host="0.0.0.0", port=settings.port, threaded=True)
