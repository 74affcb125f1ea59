"""Durable record of scraped application counts.

The ledger is the only authority for resume decisions. Every recorded outcome
is flushed to disk immediately (temp file + rename), so a crash loses at most
the unit that was in flight.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from . import config
from .catalog import Item
from .error_codes import ErrorCode
from .logging_utils import _scraper_event
from .utils import backup_file, load_json_file, log_line, now_iso, save_json_file

Outcome = Optional[int]

_RESULT_KEYS = {
    "stickerId",
    "sticker",
    "timestamp",
    "collection",
    "rarity",
    "applications",
    "uploaded",
    "uploadedToServer",
    "lastError",
    "error",
}


class LedgerError(RuntimeError):
    """Raised when a ledger invariant would be violated."""


def application_key(application_count: int) -> str:
    return f"{application_count}x"


def parse_application_key(key: str) -> Optional[int]:
    try:
        return int(str(key).strip().lower().rstrip("x"))
    except ValueError:
        return None


@dataclass
class Result:
    """Per-sticker aggregate of application counts."""

    sticker_id: str
    name: str
    collection: str
    rarity: str
    timestamp: str = field(default_factory=now_iso)
    applications: Dict[int, Outcome] = field(default_factory=dict)
    uploaded: bool = False
    last_error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_item(cls, item: Item) -> "Result":
        return cls(
            sticker_id=item.id,
            name=item.name,
            collection=item.collection,
            rarity=item.rarity,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Result":
        applications: Dict[int, Outcome] = {}
        for key, value in (data.get("applications") or {}).items():
            count = parse_application_key(key)
            if count is None:
                continue
            applications[count] = None if value is None else int(value)
        uploaded = data.get("uploaded")
        if uploaded is None:
            uploaded = data.get("uploadedToServer", False)
        return cls(
            sticker_id=str(data["stickerId"]),
            name=str(data.get("sticker") or data["stickerId"]),
            collection=str(data.get("collection") or ""),
            rarity=str(data.get("rarity") or ""),
            timestamp=str(data.get("timestamp") or now_iso()),
            applications=applications,
            uploaded=bool(uploaded),
            last_error=data.get("lastError") or data.get("error"),
            extra={k: v for k, v in data.items() if k not in _RESULT_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "sticker": self.name,
            "stickerId": self.sticker_id,
            "collection": self.collection,
            "rarity": self.rarity,
            "applications": {
                application_key(count): self.applications[count]
                for count in sorted(self.applications)
            },
            "uploaded": self.uploaded,
        }
        if self.last_error:
            payload["lastError"] = self.last_error
        payload.update(self.extra)
        return payload

    def covers(self, counts: Iterable[int]) -> bool:
        return all(count in self.applications for count in counts)

    def missing_counts(self, counts: Iterable[int]) -> List[int]:
        return [count for count in counts if count not in self.applications]

    def unknown_counts(self) -> List[int]:
        return sorted(count for count, value in self.applications.items() if value is None)


class ResultStore:
    """Ordered, id-keyed collection of :class:`Result` with write-through persistence."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._results: Dict[str, Result] = {}

    # ------------------------------------------------------------------
    # Serialisation hooks
    # ------------------------------------------------------------------

    def to_payload(self) -> Any:
        raise NotImplementedError

    def flush(self) -> None:
        save_json_file(self.path, self.to_payload())

    def _load_results(self, raw_results: Any) -> None:
        for raw in raw_results or []:
            if not isinstance(raw, dict) or "stickerId" not in raw:
                log_line(f"[LEDGER][WARN] Ignoring malformed result entry in {self.path}")
                continue
            result = Result.from_dict(raw)
            self._results[result.sticker_id] = result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def results(self) -> List[Result]:
        return list(self._results.values())

    def get(self, sticker_id: str) -> Optional[Result]:
        return self._results.get(sticker_id)

    def snapshot(self, sticker_ids: Optional[Iterable[str]] = None) -> List[Result]:
        """Return deep copies of the selected results (all when ``sticker_ids`` is ``None``)."""

        if sticker_ids is None:
            selected = self.results
        else:
            selected = [self._results[sid] for sid in sticker_ids if sid in self._results]
        return [copy.deepcopy(result) for result in selected]

    def covers(self, sticker_id: str, counts: Iterable[int]) -> bool:
        result = self._results.get(sticker_id)
        return result is not None and result.covers(counts)

    def pending_counts(self, sticker_id: str, counts: Sequence[int]) -> List[int]:
        result = self._results.get(sticker_id)
        if result is None:
            return list(counts)
        return result.missing_counts(counts)

    def results_with_unknowns(self) -> List[Result]:
        return [result for result in self._results.values() if result.unknown_counts()]

    def not_uploaded(self) -> List[Result]:
        return [result for result in self._results.values() if not result.uploaded]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def result_for(self, item: Item) -> Result:
        result = self._results.get(item.id)
        if result is None:
            result = Result.for_item(item)
            self._results[item.id] = result
        return result

    def record_outcome(
        self,
        item: Item,
        application_count: int,
        outcome: Outcome,
        *,
        error: Optional[str] = None,
    ) -> Result:
        """Store the terminal outcome for ``(item, application_count)`` and flush.

        Re-recording overwrites the previous value, so a unit re-entered after
        a restart never produces a second entry.
        """

        if outcome is not None and outcome < 0:
            raise LedgerError(f"negative count {outcome} for {item.id} {application_key(application_count)}")

        result = self.result_for(item)
        changed = (
            application_count not in result.applications
            or result.applications[application_count] != outcome
        )
        result.applications[application_count] = outcome
        if outcome is None:
            result.last_error = error or result.last_error or ErrorCode.RETRIES_EXHAUSTED
        elif not result.unknown_counts():
            result.last_error = None
        if changed:
            result.uploaded = False
        self.flush()
        return result

    def mark_uploaded(self, sticker_ids: Iterable[str]) -> int:
        marked = 0
        for sticker_id in sticker_ids:
            result = self._results.get(sticker_id)
            if result is not None and not result.uploaded:
                result.uploaded = True
                marked += 1
        self.flush()
        return marked


class ProgressLedger(ResultStore):
    """``{"completedItemIds": [...], "results": [...]}`` at ``LEDGER_FILE``."""

    def __init__(self, path: Optional[Path] = None) -> None:
        super().__init__(Path(path or config.LEDGER_FILE))
        self._completed: List[str] = []
        self._completed_set: set[str] = set()
        self._extra: Dict[str, Any] = {}

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ProgressLedger":
        """Load the ledger from disk, or return an empty one on first run."""

        ledger = cls(path)
        try:
            data = load_json_file(ledger.path)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            backup = backup_file(ledger.path, "corrupted")
            log_line(f"[LEDGER] Progress file corrupted ({exc}); backed up to {backup}")
            _scraper_event("error", phase="ledger", kind="corrupted", path=str(ledger.path))
            return ledger

        if data is None:
            _scraper_event("state", phase="ledger", kind="fresh", path=str(ledger.path))
            return ledger
        if not isinstance(data, dict):
            backup = backup_file(ledger.path, "corrupted")
            log_line(f"[LEDGER] Progress file has unexpected shape; backed up to {backup}")
            return ledger

        completed = data.get("completedItemIds")
        if completed is None:
            completed = data.get("completedStickers", [])
        ledger._load_results(data.get("results"))
        for item_id in completed or []:
            ledger._add_completed(str(item_id))
        ledger._extra = {
            k: v
            for k, v in data.items()
            if k not in {"completedItemIds", "completedStickers", "results"}
        }
        _scraper_event(
            "state",
            phase="ledger",
            kind="loaded",
            path=str(ledger.path),
            completed=len(ledger._completed),
            results=len(ledger._results),
        )
        return ledger

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self._extra)
        payload["completedItemIds"] = list(self._completed)
        payload["results"] = [result.to_dict() for result in self._results.values()]
        return payload

    def _add_completed(self, item_id: str) -> bool:
        if item_id in self._completed_set:
            return False
        self._completed.append(item_id)
        self._completed_set.add(item_id)
        return True

    @property
    def completed_item_ids(self) -> List[str]:
        return list(self._completed)

    def is_complete(self, item_id: str) -> bool:
        return item_id in self._completed_set

    def mark_item_complete(self, item_id: str, counts: Optional[Sequence[int]] = None) -> None:
        """Mark ``item_id`` as fully processed; every count must have an outcome."""

        wanted = list(counts) if counts is not None else config.application_counts()
        result = self._results.get(item_id)
        if result is None or not result.covers(wanted):
            missing = wanted if result is None else result.missing_counts(wanted)
            raise LedgerError(
                f"cannot complete {item_id}: no outcome for "
                + ", ".join(application_key(c) for c in missing)
            )
        if self._add_completed(item_id):
            self.flush()

    def completed_results(self) -> List[Result]:
        return [self._results[i] for i in self._completed if i in self._results]

    def strike(self, item_ids: Iterable[str]) -> int:
        """Remove items from ``completedItemIds`` and ``results`` to force a re-scrape."""

        targets = set(item_ids)
        removed = 0
        for item_id in targets:
            if self._results.pop(item_id, None) is not None:
                removed += 1
            if item_id in self._completed_set:
                self._completed_set.discard(item_id)
                self._completed.remove(item_id)
        self.flush()
        _scraper_event("state", phase="ledger", kind="strike", items=sorted(targets), removed=removed)
        return removed

    def zero_unknowns(self) -> int:
        """Replace every Unknown outcome with 0. Returns the number of units changed."""

        changed = 0
        for result in self._results.values():
            unknown = result.unknown_counts()
            for count in unknown:
                result.applications[count] = 0
            if unknown:
                changed += len(unknown)
                result.last_error = None
                result.uploaded = False
        if changed:
            self.flush()
        return changed

    def summary(self, counts: Optional[Sequence[int]] = None) -> Dict[str, int]:
        wanted = list(counts) if counts is not None else config.application_counts()
        unknown_units = sum(len(r.unknown_counts()) for r in self._results.values())
        return {
            "completed": len(self._completed),
            "results": len(self._results),
            "partial": sum(
                1
                for r in self._results.values()
                if r.sticker_id not in self._completed_set and not r.covers(wanted)
            ),
            "unknown_units": unknown_units,
            "uploaded": sum(1 for r in self._results.values() if r.uploaded),
        }


__all__ = [
    "Outcome",
    "Result",
    "ResultStore",
    "ProgressLedger",
    "LedgerError",
    "application_key",
    "parse_application_key",
]
