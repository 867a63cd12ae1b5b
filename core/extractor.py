"""Declarative, regex-driven result extraction.

A single generic interpreter for every source's ``ExtractionRuleSet``:
scan the page with the item pattern, read the title / url / image capture
groups by index and normalise them into ``ResultRecord`` objects.

The function here is pure (no network or storage access), so it can be
tested against fixed HTML fixtures.
"""

from __future__ import annotations

import logging
import re
from typing import Optional
from urllib.parse import urlparse

from core.models import ExtractionRuleSet, ResultRecord

logger = logging.getLogger(__name__)

#: Any inline tag, e.g. ``<span class="hl">`` highlight wrappers around the keyword.
_TAG_RE = re.compile(r"<[^>]*>")


def strip_markup(text: str) -> str:
    """Remove inline markup tags and trim surrounding whitespace.

    Examples:
        >>> strip_markup('<span class="hl">Foo</span> Bar')
        'Foo Bar'
    """
    return _TAG_RE.sub("", text).strip()


def resolve_image(image: str, host: str) -> str:
    """Make a captured image reference absolute against *host*.

    Examples:
        >>> resolve_image("/img/x.jpg", "https://example.com")
        'https://example.com/img/x.jpg'
        >>> resolve_image("//cdn.example.com/x.jpg", "https://example.com")
        'https://cdn.example.com/x.jpg'
        >>> resolve_image("https://cdn.example.com/x.jpg", "https://example.com")
        'https://cdn.example.com/x.jpg'
    """
    if image.startswith("//"):
        scheme = urlparse(host).scheme or "https"
        image = f"{scheme}:{image}"
    elif image.startswith("/"):
        image = host + image
    return image.strip()


def build_detail_url(template: str, host: str, result: str) -> str:
    """Fill ``{host}`` and ``{result}`` in a detail-page URL template."""
    return template.replace("{host}", host).replace("{result}", result)


def _group(match: re.Match[str], index: Optional[int]) -> str:
    if index is None or index > (match.re.groups or 0):
        return ""
    return match.group(index) or ""


def extract(
    html: str,
    rules: ExtractionRuleSet,
    source_name: str,
    source_host: str,
) -> list[ResultRecord]:
    """Extract ordered result records from a source's search page.

    Matches missing a title or url are dropped; a missing image yields an
    empty ``image_url``. Records keep the order the matches appear in *html*.

    Args:
        html: Raw response body of the source's search page.
        rules: The source's extraction rules.
        source_name: Display name, used in record ids.
        source_host: Base URL used to resolve images and detail URLs.

    Returns:
        A list of ``ResultRecord`` (possibly empty).
    """
    fields = rules.fields
    records: list[ResultRecord] = []

    for match in rules.item_pattern.finditer(html):
        raw_url = _group(match, fields.url)
        title = strip_markup(_group(match, fields.title))
        if not title or not raw_url.strip():
            continue

        records.append(
            ResultRecord(
                id=f"{source_name}-{raw_url}",
                title=title,
                image_url=resolve_image(_group(match, fields.image), source_host),
                detail_url=build_detail_url(
                    rules.detail_url_template, source_host, raw_url.strip()
                ),
                source_name=source_name,
            )
        )

    logger.debug("%s: extracted %d records", source_name, len(records))
    return records
