"""Per-run telemetry: every unit outcome plus counters, one JSON file per run."""

from __future__ import annotations

import time
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from .utils import save_json_file


def _ts() -> str:
    return time.strftime("%Y%m%d_%H%M%S")


class RunTelemetry:
    """Collect unit outcomes for a single scrape run."""

    def __init__(self, mode: str, runs_dir: Optional[Path] = None) -> None:
        self.run_id = f"{_ts()}_{uuid.uuid4().hex[:8]}"
        self.mode = mode
        self.runs_dir = Path(runs_dir or config.RUNS_DIR)
        self.started_at = time.time()
        self.entries: List[Dict[str, Any]] = []
        self.summary: Dict[str, Any] = defaultdict(int)

    def add(self, status: str, reason: str, meta: Dict[str, Any]) -> None:
        self.entries.append(
            {
                "status": status,
                "reason": reason,
                **meta,
            }
        )
        self.summary[f"count_{status}"] += 1
        if reason:
            self.summary[f"reason_{reason}"] += 1

    def finalize(self, extra: Optional[Dict[str, Any]] = None) -> Path:
        payload = {
            "run_id": self.run_id,
            "mode": self.mode,
            "started_at": self.started_at,
            "ended_at": time.time(),
            "summary": dict(self.summary),
            "entries": self.entries,
            **(extra or {}),
        }
        path = self.runs_dir / f"run_{self.run_id}.json"
        save_json_file(path, payload)
        return path


def latest_run_file(runs_dir: Optional[Path] = None) -> Optional[Path]:
    root = Path(runs_dir or config.RUNS_DIR)
    if not root.exists():
        return None
    files = sorted(root.glob("run_*.json"))
    return files[-1] if files else None


__all__ = ["RunTelemetry", "latest_run_file"]
