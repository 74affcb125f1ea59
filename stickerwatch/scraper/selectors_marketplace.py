"""Selectors and query building for the marketplace search page."""

from __future__ import annotations

import json
import re
import urllib.parse
from dataclasses import dataclass
from typing import Tuple

from . import config


@dataclass(frozen=True)
class MarketplaceSelectors:
    """Selector hints for the sticker search results page.

    The results header renders the total as ``.count``; empty searches and
    throttled searches each render their own banner instead of the header.
    Banner selectors are probed in order and may legitimately be absent.
    """

    count_selector: str = ".count.ng-star-inserted"
    rate_limit_selectors: Tuple[str, ...] = (
        '.header:has-text("Failed to fetch items")',
        '.sub-text:has-text("making a lot of searches")',
        "span:has-text(\"Woah, you've been making a lot of searches\")",
        'mat-icon:has-text("error")',
    )
    no_results_selectors: Tuple[str, ...] = (
        "text=Found No Items",
        "text=impossible",
    )


MARKETPLACE_SELECTORS = MarketplaceSelectors()

_RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")
_COUNT_RE = re.compile(r"\d[\d,]*")


class CountParseError(ValueError):
    """Raised when the results header does not contain a number."""


def build_search_url(sticker_id: str, application_count: int, *, base_url: str | None = None) -> str:
    """Return the search URL for ``sticker_id`` applied ``application_count`` times."""

    if application_count < 1:
        raise ValueError("application_count must be at least 1")
    stickers = [{"i": sticker_id}] * application_count
    encoded = urllib.parse.quote(
        json.dumps(stickers, separators=(",", ":")), safe="!*'()"
    )
    return f"{base_url or config.SEARCH_URL}?min=0&max=1&stickers={encoded}"


def parse_count(text: str | None) -> int:
    """Parse ``"1,234 items"`` style header text into ``1234``."""

    if text is None:
        raise CountParseError("count text missing")
    match = _COUNT_RE.search(text)
    if not match:
        raise CountParseError(f"no number in count text {text.strip()[:60]!r}")
    return int(match.group(0).replace(",", ""))


def looks_rate_limited(message: str | None) -> bool:
    """Return ``True`` when an error message indicates throttling."""

    lowered = (message or "").lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


__all__ = [
    "MarketplaceSelectors",
    "MARKETPLACE_SELECTORS",
    "CountParseError",
    "build_search_url",
    "parse_count",
    "looks_rate_limited",
]
