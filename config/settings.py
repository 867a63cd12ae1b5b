"""Application settings — all configuration loaded from environment variables.

Usage:
    from config.settings import Settings
    settings = Settings()
    settings.validate()   # raises ValueError if the sources dir is missing
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

#: Directory shipped with the repo holding ``index.json`` + ``config_<id>.json``.
DEFAULT_SOURCES_DIR = Path(__file__).parent.parent / "data" / "sources"

#: Sent with every source request; several sites reject unknown clients.
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)


@dataclass
class Settings:
    """Centralised application configuration.

    All values are read from environment variables at instantiation time
    so that tests can override them by patching ``os.environ``.
    """

    # ── Sources ─────────────────────────────────────────────────────────────
    sources_dir: Path = field(
        default_factory=lambda: Path(os.environ.get("SOURCES_DIR", str(DEFAULT_SOURCES_DIR)))
    )

    # ── Search ──────────────────────────────────────────────────────────────
    #: Per-source timeout in seconds, used until the user stores their own.
    search_timeout: float = field(
        default_factory=lambda: float(os.environ.get("SEARCH_TIMEOUT", "5"))
    )
    user_agent: str = field(
        default_factory=lambda: os.environ.get("USER_AGENT", DEFAULT_USER_AGENT)
    )

    # ── Flask ───────────────────────────────────────────────────────────────
    debug: bool = field(
        default_factory=lambda: os.environ.get("FLASK_DEBUG", "0") == "1"
    )
    port: int = field(
        default_factory=lambda: int(os.environ.get("PORT", "5000"))
    )

    def validate(self) -> None:
        """Raise ``ValueError`` if any setting is unusable."""
        if not (self.sources_dir / "index.json").is_file():
            raise ValueError(
                f"No source manifest found at {self.sources_dir / 'index.json'}. "
                "Set SOURCES_DIR to a directory containing index.json."
            )
        if self.search_timeout <= 0:
            raise ValueError("SEARCH_TIMEOUT must be a positive number of seconds.")
