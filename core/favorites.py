"""
SQLite-backed favorites for Source Radar, keyed by detail-page URL.

Schema
──────
table: favorites
  name  TEXT NOT NULL
  url   TEXT NOT NULL UNIQUE
index: idx_favorites_name (name)
"""

from __future__ import annotations

import logging
from typing import Optional

from core.db import connect, db_path
from core.models import FavoriteItem

logger = logging.getLogger(__name__)

_ORDER_COLUMNS = ("name", "url")


def _require(value: str, field: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValueError(f"{field} must not be empty.")
    return value


def init_db() -> None:
    """Create the favorites table and its index if they don't exist yet."""
    with connect() as conn:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS favorites (
                name TEXT NOT NULL,
                url  TEXT NOT NULL UNIQUE
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_favorites_name ON favorites(name)")
    logger.info("Favorites DB initialised at %s", db_path())


def upsert(item: FavoriteItem) -> None:
    """Insert a favorite, or rename it if the URL is already stored."""
    name = _require(item.name, "name")
    url = _require(item.url, "url")
    with connect() as conn:
        conn.execute(
            "INSERT INTO favorites (name, url) VALUES (?, ?) "
            "ON CONFLICT(url) DO UPDATE SET name = excluded.name",
            (name, url),
        )
    logger.info("Saved favorite %r -> %s", name, url)


def add(item: FavoriteItem) -> None:
    """Insert a new favorite.

    Raises:
        ValueError: If name or url is blank.
        sqlite3.IntegrityError: If the URL is already a favorite.
    """
    name = _require(item.name, "name")
    url = _require(item.url, "url")
    with connect() as conn:
        conn.execute("INSERT INTO favorites (name, url) VALUES (?, ?)", (name, url))


def exists(url: str) -> bool:
    url = _require(url, "url")
    with connect() as conn:
        row = conn.execute(
            "SELECT COUNT(1) AS cnt FROM favorites WHERE url = ?", (url,)
        ).fetchone()
    return row["cnt"] > 0


def get_by_url(url: str) -> FavoriteItem | None:
    """Fetch a single favorite by URL.

    Returns:
        A FavoriteItem, or None if not found.
    """
    url = _require(url, "url")
    with connect() as conn:
        row = conn.execute(
            "SELECT name, url FROM favorites WHERE url = ?", (url,)
        ).fetchone()
    if row is None:
        return None
    return FavoriteItem(name=row["name"], url=row["url"])


def get_all(
    limit: int = 200,
    offset: int = 0,
    keyword: Optional[str] = None,
    order_by: str = "name",
    order: str = "ASC",
) -> list[FavoriteItem]:
    """Return favorites, optionally filtered by a substring of name or url.

    Args:
        limit: Maximum number of entries to return.
        offset: Number of entries to skip.
        keyword: Case-insensitive (ASCII) substring to match in name or url.
        order_by: ``"name"`` or ``"url"``; anything else sorts by name.
        order: ``"ASC"`` or ``"DESC"``; anything else sorts ascending.

    Returns:
        A list of FavoriteItem objects.
    """
    column = order_by if order_by in _ORDER_COLUMNS else "name"
    direction = "DESC" if str(order).upper() == "DESC" else "ASC"

    sql = "SELECT name, url FROM favorites"
    params: list[object] = []
    if keyword and keyword.strip():
        pattern = f"%{keyword.strip()}%"
        sql += " WHERE name LIKE ? OR url LIKE ?"
        params += [pattern, pattern]
    sql += f" ORDER BY {column} {direction} LIMIT ? OFFSET ?"
    params += [limit, offset]

    with connect() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [FavoriteItem(name=row["name"], url=row["url"]) for row in rows]


def remove_by_url(url: str) -> bool:
    """Delete a favorite by URL.

    Returns:
        True if a row was deleted, False if not found.
    """
    url = _require(url, "url")
    with connect() as conn:
        cursor = conn.execute("DELETE FROM favorites WHERE url = ?", (url,))
    deleted = cursor.rowcount > 0
    if deleted:
        logger.info("Removed favorite %s", url)
    return deleted


def clear() -> None:
    with connect() as conn:
        conn.execute("DELETE FROM favorites")
    logger.info("Cleared all favorites")


def update_by_url(
    url: str,
    name: Optional[str] = None,
    new_url: Optional[str] = None,
) -> bool:
    """Rename a favorite and/or move it to a new URL.

    Returns:
        True if a row was updated; False if nothing matched or nothing
        was requested.

    Raises:
        ValueError: If any given value is blank.
        sqlite3.IntegrityError: If *new_url* is already another favorite.
    """
    url = _require(url, "url")
    assignments: list[str] = []
    params: list[object] = []
    if name is not None:
        assignments.append("name = ?")
        params.append(_require(name, "name"))
    if new_url is not None:
        assignments.append("url = ?")
        params.append(_require(new_url, "url"))
    if not assignments:
        return False

    with connect() as conn:
        cursor = conn.execute(
            f"UPDATE favorites SET {', '.join(assignments)} WHERE url = ?",
            (*params, url),
        )
    return cursor.rowcount > 0
