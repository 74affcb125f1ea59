from __future__ import annotations

import json
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from . import config
from .config_validation import ConfigError
from .logging_utils import _scraper_event

GroupKey = Tuple[str, str]


@dataclass(frozen=True)
class Item:
    """A sticker from the catalog. Immutable; loaded once per process."""

    id: str
    name: str
    collection: str
    rarity: str
    image_url: Optional[str] = None


@dataclass(frozen=True)
class Catalog:
    """Read-once view over ``stickers-config.json``.

    Items keep the file's order: collection, then rarity, then listing order.
    """

    items: Tuple[Item, ...]

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Item]:
        return iter(self.items)

    @property
    def collections(self) -> List[str]:
        seen: Dict[str, None] = {}
        for item in self.items:
            seen.setdefault(item.collection, None)
        return list(seen)

    @cached_property
    def _by_id(self) -> Dict[str, Item]:
        return {item.id: item for item in self.items}

    def get(self, item_id: str) -> Optional[Item]:
        return self._by_id.get(item_id)

    def groups(self) -> Dict[GroupKey, Tuple[Item, ...]]:
        """Return items partitioned by ``(collection, rarity)`` in catalog order."""

        grouped: Dict[GroupKey, List[Item]] = {}
        for item in self.items:
            grouped.setdefault((item.collection, item.rarity), []).append(item)
        return {key: tuple(values) for key, values in grouped.items()}

    def filter_collections(self, names: Optional[Iterable[str]]) -> "Catalog":
        """Return a catalog restricted to ``names``; ``None`` or empty keeps everything."""

        wanted = {name.strip() for name in (names or []) if name and name.strip()}
        if not wanted:
            return self
        unknown = wanted.difference(self.collections)
        if unknown:
            _scraper_event(
                "state",
                phase="catalog",
                kind="unknown_collections",
                collections=sorted(unknown),
            )
        return Catalog(tuple(item for item in self.items if item.collection in wanted))


def parse_catalog(data: object, *, source: str = "<memory>") -> Catalog:
    """Flatten the nested ``collections -> rarity -> [sticker]`` mapping."""

    if not isinstance(data, dict) or not isinstance(data.get("collections"), dict):
        raise ConfigError(f"{source}: expected an object with a 'collections' mapping")

    items: List[Item] = []
    seen_ids: set[str] = set()
    for collection, rarities in data["collections"].items():
        if not isinstance(rarities, dict):
            raise ConfigError(f"{source}: collection {collection!r} must map rarities to lists")
        for rarity, stickers in rarities.items():
            if not isinstance(stickers, list):
                raise ConfigError(
                    f"{source}: {collection!r}/{rarity!r} must be a list of stickers"
                )
            for entry in stickers:
                if not isinstance(entry, dict) or entry.get("id") in (None, ""):
                    raise ConfigError(
                        f"{source}: sticker in {collection!r}/{rarity!r} is missing an id"
                    )
                sticker_id = str(entry["id"])
                if sticker_id in seen_ids:
                    raise ConfigError(f"{source}: duplicate sticker id {sticker_id!r}")
                seen_ids.add(sticker_id)
                items.append(
                    Item(
                        id=sticker_id,
                        name=str(entry.get("name") or sticker_id),
                        collection=str(collection),
                        rarity=str(rarity),
                        image_url=entry.get("imageUrl"),
                    )
                )
    return Catalog(tuple(items))


def load_catalog(path: Optional[Path] = None) -> Catalog:
    """Load the sticker catalog; raise :class:`ConfigError` if it is missing or malformed."""

    catalog_path = Path(path or config.CATALOG_FILE)
    if not catalog_path.exists():
        raise ConfigError(f"Catalog file not found: {catalog_path}")
    try:
        data = json.loads(catalog_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Catalog file {catalog_path} is not valid JSON: {exc}") from exc

    catalog = parse_catalog(data, source=str(catalog_path))
    _scraper_event(
        "plan",
        phase="catalog",
        path=str(catalog_path),
        items=len(catalog),
        collections=len(catalog.collections),
    )
    return catalog


__all__ = ["Item", "Catalog", "GroupKey", "parse_catalog", "load_catalog"]
