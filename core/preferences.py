"""
Small persisted user preferences.

Schema
──────
table: preferences
  key    TEXT PRIMARY KEY
  value  TEXT NOT NULL

Keys
────
search_timeout     per-source search timeout in seconds (default 5)
more_search_alert  whether the one-time "search more sites" hint is still due
"""

from __future__ import annotations

import logging
from typing import Optional

from core.db import connect, db_path

logger = logging.getLogger(__name__)

KEY_SEARCH_TIMEOUT = "search_timeout"
KEY_MORE_SEARCH_ALERT = "more_search_alert"

DEFAULT_SEARCH_TIMEOUT = 5.0


def init_db() -> None:
    """Create the preferences table if it doesn't exist yet."""
    with connect() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS preferences (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
    logger.info("Preferences table ready in %s", db_path())


def get_value(key: str) -> Optional[str]:
    """Return the stored string for *key*, or None if unset."""
    with connect() as conn:
        row = conn.execute(
            "SELECT value FROM preferences WHERE key = ?", (key,)
        ).fetchone()
    return None if row is None else row["value"]


def set_value(key: str, value: str) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO preferences (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )


class TimeoutPreference:
    """The per-source search timeout, in seconds."""

    def __init__(self, default: float = DEFAULT_SEARCH_TIMEOUT) -> None:
        self.default = default

    def get(self) -> float:
        raw = get_value(KEY_SEARCH_TIMEOUT)
        if raw is None:
            return self.default
        try:
            seconds = float(raw)
        except ValueError:
            logger.warning("Ignoring corrupt %s value %r", KEY_SEARCH_TIMEOUT, raw)
            return self.default
        if not seconds > 0:
            logger.warning("Ignoring non-positive %s value %r", KEY_SEARCH_TIMEOUT, raw)
            return self.default
        return seconds

    def set(self, seconds: float) -> None:
        """Store a new timeout.

        Raises:
            ValueError: If *seconds* is not a positive number.
        """
        seconds = float(seconds)
        if not seconds > 0:
            raise ValueError("Search timeout must be a positive number of seconds.")
        set_value(KEY_SEARCH_TIMEOUT, repr(seconds))
        logger.info("Search timeout set to %ss", seconds)


class HintPreference:
    """One-shot flag: True until the "search more sites" hint has been shown."""

    def __init__(self, default: bool = True) -> None:
        self.default = default

    def get(self) -> bool:
        raw = get_value(KEY_MORE_SEARCH_ALERT)
        return self.default if raw is None else raw == "true"

    def set(self, value: bool) -> None:
        set_value(KEY_MORE_SEARCH_ALERT, "true" if value else "false")
