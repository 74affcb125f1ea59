from __future__ import annotations

import math
import threading
import time
from typing import Callable, Optional

from . import config
from .logging_utils import _scraper_event
from .utils import log_line


class ScrapeStopped(Exception):
    """Raised when a stop was requested while the worker was waiting or between units."""


class Pacer:
    """Cancellable sleeps for request pacing, rate-limit cooldowns and batch breaks.

    Every suspension point in the scraper goes through one ``Pacer`` so a single
    ``stop()`` (signal handler, control app) interrupts whichever sleep is in
    progress.
    """

    def __init__(
        self,
        *,
        countdown_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stop = threading.Event()
        self._clock = clock
        self.countdown_interval = (
            config.COUNTDOWN_LOG_INTERVAL_SECONDS
            if countdown_interval is None
            else countdown_interval
        )

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def check(self) -> None:
        """Raise :class:`ScrapeStopped` if a stop has been requested."""

        if self._stop.is_set():
            raise ScrapeStopped("stop requested")

    def _wait(self, seconds: float) -> bool:
        """Block for ``seconds``; return ``True`` when interrupted by ``stop()``."""

        return self._stop.wait(seconds)

    def sleep(self, seconds: float, *, reason: str, countdown: bool = False) -> None:
        """Sleep ``seconds``, logging a countdown when requested.

        Raises :class:`ScrapeStopped` if ``stop()`` is called before or during
        the wait.
        """

        self.check()
        if seconds is None or seconds <= 0:
            return

        if countdown:
            log_line(f"[PACE] Waiting {math.ceil(seconds)} seconds ({reason})...")
            _scraper_event("pace", kind="sleep_start", reason=reason, seconds=round(seconds, 1))

        deadline = self._clock() + seconds
        interval = self.countdown_interval if countdown else seconds
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            if self._wait(min(interval, remaining)):
                _scraper_event("pace", kind="sleep_interrupted", reason=reason)
                raise ScrapeStopped(f"stop requested during {reason}")
            remaining = deadline - self._clock()
            if countdown and remaining > 0:
                log_line(f"[PACE]   {math.ceil(remaining)} seconds remaining...")

        if countdown:
            _scraper_event("pace", kind="sleep_done", reason=reason)

    def sleep_ms(self, milliseconds: float, *, reason: str, countdown: bool = False) -> None:
        self.sleep(milliseconds / 1000.0, reason=reason, countdown=countdown)


__all__ = ["Pacer", "ScrapeStopped"]
