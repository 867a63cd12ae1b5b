"""
Pydantic models shared across the Source Radar core.

Manifest files use the short keys of the source list format
(``url``, ``adaptation``, ``item_regex``, ``details_format``); the models
accept those as aliases and expose descriptive attribute names.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

#: JavaScript named group ``(?<name>`` (but not lookbehind ``(?<=`` / ``(?<!``).
_JS_NAMED_GROUP = re.compile(r"\(\?<(?![=!])")


class SourceDescriptor(BaseModel):
    """One external content site from the catalog manifest."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    name: str
    base_host: str = Field(alias="url")
    enabled: bool = True
    adapted: bool = Field(default=False, alias="adaptation")
    description: Optional[str] = Field(default=None, alias="desc")
    icon: str = ""

    @field_validator("base_host")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def eligible(self) -> bool:
        """True when the source takes part in aggregated search."""
        return self.enabled and self.adapted


class FieldMap(BaseModel):
    """Capture-group index for each extracted field."""

    model_config = ConfigDict(frozen=True)

    title: int = Field(ge=0)
    url: int = Field(ge=0)
    image: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _flatten_match_index(cls, data: Any) -> Any:
        # Manifests write each field as {"match_index": n}
        if isinstance(data, dict):
            return {
                key: value.get("match_index") if isinstance(value, dict) else value
                for key, value in data.items()
            }
        return data


class ExtractionRuleSet(BaseModel):
    """Declarative scraping rules for one adapted source."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    search_url_template: str = Field(alias="url")
    item_pattern: re.Pattern[str] = Field(alias="item_regex")
    fields: FieldMap
    detail_url_template: str = Field(alias="details_format")

    @field_validator("item_pattern", mode="before")
    @classmethod
    def _translate_named_groups(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _JS_NAMED_GROUP.sub("(?P<", value)
        return value

    @model_validator(mode="after")
    def _check_group_indices(self) -> "ExtractionRuleSet":
        groups = self.item_pattern.groups
        for name in ("title", "url", "image"):
            index = getattr(self.fields, name)
            if index is not None and index > groups:
                raise ValueError(
                    f"fields.{name} refers to group {index} but item_regex "
                    f"only has {groups} group(s)"
                )
        return self


class ResultRecord(BaseModel):
    """A single normalised search hit extracted from a source page."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    image_url: str = ""
    detail_url: str
    source_name: str


class SourceBatch(BaseModel):
    """All records one source produced for one search."""

    model_config = ConfigDict(frozen=True)

    source_id: int
    source_name: str
    source_host: str
    search_url: str
    records: tuple[ResultRecord, ...] = ()


class FavoriteItem(BaseModel):
    """A bookmarked detail page, keyed by URL."""

    name: str
    url: str
