"""
Source catalog: the static list of sites plus their extraction rules.

Layout of a sources directory
─────────────────────────────
index.json          list of source descriptors
config_<id>.json    rules for each adapted source, optionally nested
                    under a ``"search_config"`` key
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Optional

from pydantic import ValidationError

from core.models import ExtractionRuleSet, SourceDescriptor

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """Raised when the source manifest itself cannot be used."""


class SourceCatalog:
    """Immutable view over the configured sources and their rule sets."""

    def __init__(
        self,
        sources: Iterable[SourceDescriptor],
        rules: Mapping[int, ExtractionRuleSet],
    ) -> None:
        self._sources: tuple[SourceDescriptor, ...] = tuple(sources)
        seen: set[int] = set()
        for source in self._sources:
            if source.id in seen:
                raise CatalogError(f"Duplicate source id {source.id}")
            seen.add(source.id)
        self._rules = MappingProxyType(dict(rules))

    def __len__(self) -> int:
        return len(self._sources)

    @property
    def sources(self) -> tuple[SourceDescriptor, ...]:
        return self._sources

    def rules_for(self, source_id: int) -> Optional[ExtractionRuleSet]:
        return self._rules.get(source_id)

    def eligible(self) -> list[SourceDescriptor]:
        """Sources that take part in aggregated search (enabled and adapted)."""
        return [s for s in self._sources if s.eligible]

    def enabled(self) -> list[SourceDescriptor]:
        return [s for s in self._sources if s.enabled]

    def manual(self) -> list[SourceDescriptor]:
        """Enabled sources without rules; the user has to search these by hand."""
        return [s for s in self._sources if s.enabled and not s.adapted]


def parse_rules(data: dict) -> ExtractionRuleSet:
    """Validate one rules document, unwrapping ``search_config`` if present.

    Raises:
        pydantic.ValidationError: On missing keys, a bad regex or group indices
            beyond the pattern's group count.
    """
    return ExtractionRuleSet.model_validate(data.get("search_config", data))


def load_catalog(sources_dir: Path) -> SourceCatalog:
    """Load ``index.json`` and every adapted source's rules from *sources_dir*.

    Rule files that are missing or invalid are skipped; the affected sources
    stay in the catalog but are never queried.

    Raises:
        CatalogError: If ``index.json`` is missing, unreadable or invalid.
    """
    index_path = Path(sources_dir) / "index.json"
    try:
        entries = json.loads(index_path.read_text(encoding="utf-8"))
        sources = [SourceDescriptor.model_validate(entry) for entry in entries]
    except (OSError, json.JSONDecodeError, ValidationError, TypeError) as exc:
        raise CatalogError(f"Cannot load source manifest {index_path}: {exc}") from exc

    rules: dict[int, ExtractionRuleSet] = {}
    for source in sources:
        if not source.adapted:
            continue
        rules_path = index_path.parent / f"config_{source.id}.json"
        if not rules_path.is_file():
            logger.debug("No rules file for source id=%d (%s)", source.id, source.name)
            continue
        try:
            rules[source.id] = parse_rules(
                json.loads(rules_path.read_text(encoding="utf-8"))
            )
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as exc:
            logger.warning("Skipping invalid rules for %s (%s): %s", source.name, rules_path, exc)

    logger.info(
        "Loaded %d sources (%d with rules) from %s", len(sources), len(rules), sources_dir
    )
    return SourceCatalog(sources, rules)
