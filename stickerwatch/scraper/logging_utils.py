from __future__ import annotations

from threading import Lock
from typing import Any, Callable, Dict, List

from .utils import log_line

EventListener = Callable[[str, Dict[str, Any]], None]

_LISTENERS: List[EventListener] = []
_LISTENERS_LOCK = Lock()


def add_event_listener(listener: EventListener) -> None:
    """Register ``listener`` to receive every structured event as ``(label, fields)``."""

    with _LISTENERS_LOCK:
        if listener not in _LISTENERS:
            _LISTENERS.append(listener)


def remove_event_listener(listener: EventListener) -> None:
    with _LISTENERS_LOCK:
        if listener in _LISTENERS:
            _LISTENERS.remove(listener)


def _dispatch(label: str, fields: Dict[str, Any]) -> None:
    with _LISTENERS_LOCK:
        listeners = list(_LISTENERS)
    for listener in listeners:
        try:
            listener(label, dict(fields))
        except Exception:  # noqa: BLE001
            continue


def _scraper_event(label: str = "", *, phase: str | None = None, **fields: Any) -> None:
    """Emit a structured scraper log line and notify registered listeners.

    ``phase`` may be used as a keyword alias for the label. When both
    ``label`` and ``phase`` are provided, ``phase`` is emitted as part of the
    payload so the caller still captures the event stage.
    """

    try:
        phase_label = label or (phase or "")
        if phase and label:
            fields.setdefault("phase", phase)
        payload = ", ".join(f"{k}={repr(v)}" for k, v in sorted(fields.items()))
        log_line(f"[SCRAPER][{phase_label.upper()}] {payload}")
        _dispatch(phase_label.lower(), fields)
    except Exception:
        # Never let logging break the scraper.
        return


__all__ = ["_scraper_event", "add_event_listener", "remove_event_listener", "EventListener"]
