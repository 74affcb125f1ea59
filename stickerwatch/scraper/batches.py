from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from . import config
from .catalog import Item
from .ledger import ResultStore
from .utils import (
    backup_file,
    load_json_file,
    log_line,
    now_iso,
    sanitize_filename_component,
    save_json_file,
)

_DATE_FOLDER_LEN = len("YYYY-MM-DD")
_ACTIVE_RUN_FILE = "active-run.json"


def batch_path(
    collection: str,
    rarity: str,
    *,
    run_date: Optional[str] = None,
    batch_dir: Optional[Path] = None,
) -> Path:
    """Return ``BATCH_DIR/<YYYY-MM-DD>/<collection>_<rarity>.json``."""

    folder = Path(batch_dir or config.BATCH_DIR) / (run_date or date.today().isoformat())
    safe_collection = sanitize_filename_component(collection, separator="_") or "collection"
    safe_rarity = sanitize_filename_component(rarity, separator="_") or "rarity"
    return folder / f"{safe_collection}_{safe_rarity}.json"


def _active_run_marker(batch_dir: Optional[Path] = None) -> Path:
    return Path(batch_dir or config.BATCH_DIR) / _ACTIVE_RUN_FILE


def active_run_date(batch_dir: Optional[Path] = None) -> Optional[str]:
    """Return the date folder of the grouped run that has not finished yet, if any."""

    marker = _active_run_marker(batch_dir)
    try:
        data = load_json_file(marker)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        backup = backup_file(marker, "corrupted")
        log_line(f"[BATCH] {marker.name} corrupted ({exc}); backed up to {backup}")
        return None
    run_date = data.get("date") if isinstance(data, dict) else None
    if not isinstance(run_date, str) or len(run_date) != _DATE_FOLDER_LEN:
        return None
    return run_date


def set_active_run_date(run_date: str, batch_dir: Optional[Path] = None) -> None:
    save_json_file(_active_run_marker(batch_dir), {"date": run_date, "updatedAt": now_iso()})


def clear_active_run_date(run_date: str, batch_dir: Optional[Path] = None) -> bool:
    """Drop the marker once ``run_date`` is fully scraped and uploaded."""

    if active_run_date(batch_dir) != run_date:
        return False
    _active_run_marker(batch_dir).unlink(missing_ok=True)
    log_line(f"[BATCH] Run {run_date} complete; the next grouped run starts a new folder")
    return True


class BatchFile(ResultStore):
    """One ``(collection, rarity)`` group, persisted as a JSON array of results."""

    @classmethod
    def load(cls, path: Path) -> "BatchFile":
        batch = cls(path)
        try:
            data = load_json_file(batch.path)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            backup = backup_file(batch.path, "corrupted")
            log_line(f"[BATCH] {batch.path.name} corrupted ({exc}); backed up to {backup}")
            return batch
        if data is None:
            return batch
        if not isinstance(data, list):
            backup = backup_file(batch.path, "corrupted")
            log_line(f"[BATCH] {batch.path.name} is not a JSON array; backed up to {backup}")
            return batch
        batch._load_results(data)
        return batch

    def to_payload(self) -> List[Dict[str, Any]]:
        return [result.to_dict() for result in self._results.values()]

    def is_scraped(self, items: Sequence[Item], counts: Sequence[int]) -> bool:
        """Every catalog item of the group has an outcome for every count."""

        return all(self.covers(item.id, counts) for item in items)

    def is_complete(self, items: Sequence[Item], counts: Sequence[int]) -> bool:
        """Scraped, same size as the catalog group, and fully uploaded."""

        if len(self._results) != len(items):
            return False
        if not self.is_scraped(items, counts):
            return False
        return all(result.uploaded for result in self._results.values())


def list_batch_dates(batch_dir: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Return the dated batch folders, newest first."""

    root = Path(batch_dir or config.BATCH_DIR)
    if not root.exists():
        return []
    folders = []
    for entry in sorted(root.iterdir(), reverse=True):
        if not entry.is_dir() or len(entry.name) != _DATE_FOLDER_LEN:
            continue
        folders.append(
            {
                "date": entry.name,
                "fileCount": sum(1 for p in entry.glob("*.json")),
            }
        )
    return folders


def describe_batch_files(run_date: str, batch_dir: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Summarise each batch file in ``run_date`` with an upload status.

    ``status`` is ``uploaded`` when every entry is flagged, ``partial`` when
    some are, ``pending`` when none are and ``error`` when the file is
    unreadable.
    """

    folder = Path(batch_dir or config.BATCH_DIR) / run_date
    if not folder.is_dir():
        raise FileNotFoundError(run_date)

    described: List[Dict[str, Any]] = []
    for path in sorted(folder.glob("*.json")):
        try:
            data = load_json_file(path)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            described.append({"filename": path.name, "status": "error", "error": str(exc)})
            continue
        if not isinstance(data, list):
            described.append({"filename": path.name, "status": "error", "error": "not a list"})
            continue
        total = len(data)
        uploaded = sum(
            1
            for entry in data
            if isinstance(entry, dict) and (entry.get("uploaded") or entry.get("uploadedToServer"))
        )
        if total and uploaded == total:
            status = "uploaded"
        elif uploaded:
            status = "partial"
        else:
            status = "pending"
        described.append(
            {
                "filename": path.name,
                "totalItems": total,
                "uploadedCount": uploaded,
                "status": status,
            }
        )
    return described


__all__ = [
    "BatchFile",
    "active_run_date",
    "batch_path",
    "clear_active_run_date",
    "describe_batch_files",
    "list_batch_dates",
    "set_active_run_date",
]
