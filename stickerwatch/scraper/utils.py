from __future__ import annotations

import json
import logging
import os
import re
import shutil
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from . import config

LOGGER = logging.getLogger("stickerwatch")
_LOGGER_INITIALISED = False
_CURRENT_LOG_FILE: Path = config.LOG_FILE

_LOG_FORMAT = logging.Formatter(fmt="[%(asctime)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
_UNSAFE_FILENAME_CHARS = re.compile(r"[\x00-\x1f\\/:*?\"<>|]+")


def _configure_logger(log_path: Path) -> None:
    """Point the shared logger at stdout plus ``log_path``, replacing old handlers."""

    global _LOGGER_INITIALISED, _CURRENT_LOG_FILE

    log_path.parent.mkdir(parents=True, exist_ok=True)

    stale = list(LOGGER.handlers)
    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_path, encoding="utf-8"),
    ]
    for handler in handlers:
        handler.setFormatter(_LOG_FORMAT)
        LOGGER.addHandler(handler)
    for handler in stale:
        LOGGER.removeHandler(handler)
        try:
            handler.close()
        except Exception:  # noqa: BLE001
            continue

    LOGGER.setLevel(logging.INFO)
    LOGGER.propagate = False
    _CURRENT_LOG_FILE = log_path
    _LOGGER_INITIALISED = True


def _ensure_logger() -> None:
    if not _LOGGER_INITIALISED:
        _configure_logger(config.LOG_FILE)


def setup_run_logger() -> Path:
    """Start a fresh ``scrape_<ts>.log`` for the current run and return its path."""

    log_path = config.LOG_DIR / f"scrape_{datetime.utcnow():%Y%m%d_%H%M%S}.log"
    _configure_logger(log_path)
    LOGGER.info("Logging to %s", log_path)
    return log_path


def get_current_log_path() -> Path:
    _ensure_logger()
    return _CURRENT_LOG_FILE


def read_last_log_lines(limit: int = 100) -> list[str]:
    """Return the trailing ``limit`` lines of the active log file."""

    path = get_current_log_path()
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as handle:
        lines = handle.readlines()[-limit:]
    return [line.rstrip("\n") for line in lines]


def ensure_dirs() -> None:
    """Create the data, log, snapshot and batch directories."""

    for directory in (config.DATA_DIR, config.LOG_DIR, config.RAW_DIR, config.BATCH_DIR):
        directory.mkdir(parents=True, exist_ok=True)


def log_line(message: str) -> None:
    """Write a timestamped line to stdout and the active log file."""

    _ensure_logger()
    LOGGER.info(message)


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with millisecond precision."""

    return datetime.utcnow().isoformat(timespec="milliseconds") + "Z"


def file_timestamp() -> str:
    """Return a filesystem-safe timestamp such as ``2024-05-01T10-20-30``."""

    return datetime.utcnow().strftime("%Y-%m-%dT%H-%M-%S")


def short_error_message(exc: BaseException | str, max_length: int = 200) -> str:
    """Return a truncated string representation of ``exc`` for ledgers and logs."""

    message = str(exc).strip().splitlines()[0] if str(exc).strip() else repr(exc)
    if len(message) > max_length:
        return message[: max_length - 3] + "..."
    return message


def sanitize_filename_component(component: str | None, *, separator: str = " ") -> str:
    """Make ``component`` safe for a file name; whitespace runs become ``separator``."""

    words = _UNSAFE_FILENAME_CHARS.sub(" ", component or "").split()
    return separator.join(words).strip(" ._")


def load_json_file(path: Path) -> Any:
    """Read JSON from ``path``; ``None`` when the file does not exist."""

    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def save_json_file(path: Path, payload: Any) -> None:
    """Atomically write ``payload`` as pretty JSON to ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
    tmp_path.replace(path)


def backup_file(path: Path, label: str) -> Path | None:
    """Copy ``path`` next to itself as ``<stem>.<label>.<ts><suffix>``."""

    if not path.exists():
        return None
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    backup_path = path.with_name(f"{path.stem}.{label}.{timestamp}{path.suffix}")
    shutil.copy2(path, backup_path)
    return backup_path


def data_dir_writable() -> bool:
    """Return ``True`` when a probe file can be written into ``DATA_DIR``."""

    probe = config.DATA_DIR / ".write_probe"
    try:
        config.DATA_DIR.mkdir(parents=True, exist_ok=True)
        probe.write_text("ok", encoding="utf-8")
        probe.unlink()
        return True
    except OSError:
        return False


__all__ = [
    "ensure_dirs",
    "setup_run_logger",
    "get_current_log_path",
    "read_last_log_lines",
    "log_line",
    "now_iso",
    "file_timestamp",
    "short_error_message",
    "sanitize_filename_component",
    "load_json_file",
    "save_json_file",
    "backup_file",
    "data_dir_writable",
]
