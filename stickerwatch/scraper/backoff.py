"""Adaptive cooldown for marketplace rate limiting.

The marketplace throttles by IP address rather than by session, so a fixed
retry delay only keeps tripping the limiter. Each consecutive rate-limit
signal lengthens the cooldown; any accepted request resets it.
"""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Optional

from . import config
from .logging_utils import _scraper_event


@dataclass
class BackoffState:
    """Process-wide cooldown state. Never persisted; a restart starts from base."""

    current_cooldown_ms: float
    consecutive_rate_limit_hits: int = 0


class BackoffController:
    """Escalate the cooldown on consecutive rate limits and decay it on success."""

    def __init__(
        self,
        *,
        base_cooldown_ms: Optional[int] = None,
        multiplier: Optional[float] = None,
        max_cooldown_ms: Optional[int] = None,
        state: Optional[BackoffState] = None,
    ) -> None:
        self.base_cooldown_ms = (
            config.INITIAL_COOLDOWN_MS if base_cooldown_ms is None else base_cooldown_ms
        )
        self.multiplier = config.COOLDOWN_MULTIPLIER if multiplier is None else multiplier
        self.max_cooldown_ms = (
            config.MAX_COOLDOWN_MS if max_cooldown_ms is None else max_cooldown_ms
        )
        if self.multiplier <= 1:
            raise ValueError("Backoff multiplier must be greater than 1")
        if self.base_cooldown_ms > self.max_cooldown_ms:
            raise ValueError("Base cooldown must not exceed the maximum cooldown")

        self.state = state or BackoffState(current_cooldown_ms=float(self.base_cooldown_ms))
        self._lock = Lock()

    def on_rate_limit(self) -> int:
        """Register a rate-limit hit and return the delay (ms) to sleep before retrying.

        The returned value is the cooldown *before* escalation, so the first
        hit after a success waits exactly the base cooldown.
        """

        with self._lock:
            self.state.consecutive_rate_limit_hits += 1
            delay_ms = int(round(min(self.state.current_cooldown_ms, self.max_cooldown_ms)))
            self.state.current_cooldown_ms = min(
                self.state.current_cooldown_ms * self.multiplier,
                float(self.max_cooldown_ms),
            )
            hits = self.state.consecutive_rate_limit_hits
            next_ms = self.state.current_cooldown_ms

        _scraper_event(
            "backoff",
            kind="rate_limit",
            consecutive_hits=hits,
            delay_ms=delay_ms,
            next_cooldown_ms=int(round(next_ms)),
        )
        return delay_ms

    def on_success(self) -> None:
        """Reset the hit counter and drop the cooldown back to base."""

        with self._lock:
            escalated = (
                self.state.consecutive_rate_limit_hits > 0
                or self.state.current_cooldown_ms > self.base_cooldown_ms
            )
            self.state.consecutive_rate_limit_hits = 0
            self.state.current_cooldown_ms = float(self.base_cooldown_ms)

        if escalated:
            _scraper_event("backoff", kind="reset", cooldown_ms=self.base_cooldown_ms)

    @property
    def consecutive_hits(self) -> int:
        with self._lock:
            return self.state.consecutive_rate_limit_hits

    @property
    def current_cooldown_ms(self) -> int:
        with self._lock:
            return int(round(self.state.current_cooldown_ms))

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "current_cooldown_ms": int(round(self.state.current_cooldown_ms)),
                "consecutive_rate_limit_hits": self.state.consecutive_rate_limit_hits,
                "base_cooldown_ms": self.base_cooldown_ms,
                "max_cooldown_ms": self.max_cooldown_ms,
            }


__all__ = ["BackoffController", "BackoffState"]
