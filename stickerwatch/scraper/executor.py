"""Resolve one (sticker, application count) unit against the marketplace.

A unit always ends in exactly one terminal outcome: a non-negative count, or
``None`` (Unknown) once the local retry budget is spent. Rate limiting is
handled separately: it never consumes the local budget and is retried after
an escalating cooldown until the marketplace accepts the request again.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

from . import config
from .backoff import BackoffController
from .browser import Banner, NavigationError, PageSession
from .catalog import Item
from .error_codes import ErrorCode
from .ledger import Result, ResultStore
from .logging_utils import _scraper_event
from .pacing import Pacer
from .retry_policy import decide_retry
from .selectors_marketplace import (
    MARKETPLACE_SELECTORS,
    CountParseError,
    MarketplaceSelectors,
    build_search_url,
    looks_rate_limited,
    parse_count,
)
from .utils import log_line, short_error_message


class UnitState(str, Enum):
    FETCHING = "fetching"
    RATE_LIMITED = "rate_limited"
    BACKOFF = "backoff"
    TRANSIENT_ERROR = "transient_error"
    SUCCESS = "success"
    NO_RESULTS = "no_results"
    UNKNOWN = "unknown"


class UnitStatus:
    SUCCESS = "success"
    NO_RESULTS = "no_results"
    UNKNOWN = "unknown"
    PRUNED = "pruned"


@dataclass
class Outcome:
    application_count: int
    count: Optional[int]
    status: str
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0
    rate_limit_hits: int = 0
    fetched: bool = True


class RateLimitExhausted(RuntimeError):
    """Consecutive rate-limit hits exceeded ``MAX_RATE_LIMIT_RETRIES``."""


class TransientFetchError(Exception):
    """A page load that neither produced a count nor a terminal banner."""

    def __init__(self, message: str, *, error_code: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class UnitOfWorkExecutor:
    def __init__(
        self,
        backoff: BackoffController,
        pacer: Pacer,
        *,
        selectors: MarketplaceSelectors = MARKETPLACE_SELECTORS,
        local_retry_limit: Optional[int] = None,
        max_rate_limit_retries: Optional[int] = None,
        telemetry: Any = None,
    ) -> None:
        self.backoff = backoff
        self.pacer = pacer
        self.selectors = selectors
        self.local_retry_limit = (
            config.LOCAL_RETRY_LIMIT if local_retry_limit is None else local_retry_limit
        )
        self.max_rate_limit_retries = (
            config.MAX_RATE_LIMIT_RETRIES
            if max_rate_limit_retries is None
            else max_rate_limit_retries
        )
        self.telemetry = telemetry

    # ------------------------------------------------------------------
    # Single fetch
    # ------------------------------------------------------------------

    def _attempt(self, url: str, session: PageSession) -> Tuple[UnitState, Optional[int]]:
        try:
            handle = session.fetch_page(url)
        except NavigationError as exc:
            if looks_rate_limited(str(exc)):
                return UnitState.RATE_LIMITED, None
            code = ErrorCode.NAV_TIMEOUT if exc.timed_out else ErrorCode.NAV_ERROR
            raise TransientFetchError(str(exc), error_code=code) from exc

        banner = session.detect_terminal_banner(handle)
        if banner is Banner.RATE_LIMITED:
            return UnitState.RATE_LIMITED, None
        if banner is Banner.NO_RESULTS:
            return UnitState.NO_RESULTS, 0

        timeout_ms = int(config.COUNT_TIMEOUT_SECONDS * 1000)
        text = session.text_of(handle, self.selectors.count_selector, timeout_ms)
        try:
            return UnitState.SUCCESS, parse_count(text)
        except CountParseError as exc:
            # The banner can render late; look once more before giving up.
            banner = session.detect_terminal_banner(handle)
            if banner is Banner.RATE_LIMITED:
                return UnitState.RATE_LIMITED, None
            if banner is Banner.NO_RESULTS:
                log_line("[SCRAPE]     Detected 'no results' after missing count")
                return UnitState.NO_RESULTS, 0
            code = ErrorCode.COUNT_NOT_FOUND if text is None else ErrorCode.COUNT_PARSE
            raise TransientFetchError(str(exc), error_code=code) from exc

    def _request_delay(self) -> None:
        self.pacer.sleep_ms(config.REQUEST_DELAY_MS, reason="request delay")

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def resolve(self, item: Item, application_count: int, session: PageSession) -> Outcome:
        """Drive one unit to a terminal outcome."""

        url = build_search_url(item.id, application_count)
        label = f"{item.name} {application_count}x"
        state = UnitState.FETCHING
        count: Optional[int] = None
        attempts = 0
        failures = 0
        hits = 0
        delay_ms = 0
        last_error: Optional[str] = None
        last_code: Optional[str] = None

        while True:
            if state is UnitState.FETCHING:
                self.pacer.check()
                attempts += 1
                log_line(f"[SCRAPE]   Checking {label} (attempt {attempts})...")
                try:
                    state, count = self._attempt(url, session)
                except TransientFetchError as exc:
                    last_error = short_error_message(exc)
                    last_code = exc.error_code
                    state = UnitState.TRANSIENT_ERROR
                except Exception as exc:  # noqa: BLE001
                    if looks_rate_limited(str(exc)):
                        state = UnitState.RATE_LIMITED
                    else:
                        last_error = short_error_message(exc)
                        last_code = ErrorCode.PAGE_ERROR
                        state = UnitState.TRANSIENT_ERROR

            elif state is UnitState.RATE_LIMITED:
                hits += 1
                delay_ms = self.backoff.on_rate_limit()
                consecutive = self.backoff.consecutive_hits
                log_line(
                    f"[RATE LIMIT] Detected on {label} (consecutive hit #{consecutive}); "
                    f"cooling down {round(delay_ms / 1000)}s"
                )
                if self.max_rate_limit_retries and consecutive > self.max_rate_limit_retries:
                    _scraper_event(
                        "error",
                        phase="scrape",
                        error_code=ErrorCode.RATE_LIMITED,
                        sticker_id=item.id,
                        application_count=application_count,
                        consecutive_hits=consecutive,
                    )
                    raise RateLimitExhausted(
                        f"{consecutive} consecutive rate limits (limit {self.max_rate_limit_retries})"
                    )
                state = UnitState.BACKOFF

            elif state is UnitState.BACKOFF:
                self.pacer.sleep_ms(delay_ms, reason="rate limit cooldown", countdown=True)
                log_line("[RATE LIMIT] Cooldown complete; restarting browser session")
                session.restart()
                state = UnitState.FETCHING

            elif state is UnitState.TRANSIENT_ERROR:
                failures += 1
                log_line(f"[SCRAPE]     Error on {label}: {last_error}")
                if decide_retry(failures, self.local_retry_limit, error_code=last_code):
                    state = UnitState.FETCHING
                else:
                    state = UnitState.UNKNOWN

            elif state in (UnitState.SUCCESS, UnitState.NO_RESULTS):
                self.backoff.on_success()
                if state is UnitState.NO_RESULTS:
                    log_line(f"[SCRAPE]     {label}: no items (0)")
                else:
                    log_line(f"[SCRAPE]     {label}: {count:,} items")
                outcome = Outcome(
                    application_count=application_count,
                    count=count,
                    status=UnitStatus.SUCCESS
                    if state is UnitState.SUCCESS
                    else UnitStatus.NO_RESULTS,
                    attempts=attempts,
                    rate_limit_hits=hits,
                )
                return outcome

            else:
                log_line(
                    f"[SCRAPE]     {label}: giving up after {failures} failures; recording Unknown"
                )
                _scraper_event(
                    "state",
                    phase="scrape",
                    kind="unit_unknown",
                    sticker_id=item.id,
                    application_count=application_count,
                    error_code=last_code,
                    attempts=attempts,
                )
                outcome = Outcome(
                    application_count=application_count,
                    count=None,
                    status=UnitStatus.UNKNOWN,
                    error_message=last_error,
                    error_code=last_code or ErrorCode.RETRIES_EXHAUSTED,
                    attempts=attempts,
                    rate_limit_hits=hits,
                )
                return outcome

    # ------------------------------------------------------------------
    # Per-item driver
    # ------------------------------------------------------------------

    @staticmethod
    def _zero_below(result: Optional[Result], application_count: int) -> bool:
        if result is None:
            return False
        return any(
            value == 0 for count, value in result.applications.items() if count < application_count
        )

    def resolve_item(
        self,
        item: Item,
        counts: Sequence[int],
        session: PageSession,
        store: ResultStore,
    ) -> List[Outcome]:
        """Resolve ``counts`` for ``item`` in ascending order, recording each outcome.

        A sticker with no listings at ``k`` applications cannot have listings
        at ``k + 1``, so every count above a recorded zero is stored as 0
        without a fetch.
        """

        outcomes: List[Outcome] = []
        for application_count in sorted(set(counts)):
            self.pacer.check()
            if self._zero_below(store.get(item.id), application_count):
                store.record_outcome(item, application_count, 0)
                outcome = Outcome(
                    application_count=application_count,
                    count=0,
                    status=UnitStatus.PRUNED,
                    fetched=False,
                )
                log_line(f"[SCRAPE]     {item.name} {application_count}x: pruned (0)")
            else:
                outcome = self.resolve(item, application_count, session)
                store.record_outcome(
                    item,
                    application_count,
                    outcome.count,
                    error=outcome.error_message or outcome.error_code,
                )
            outcomes.append(outcome)
            self._record_telemetry(item, outcome)
            if outcome.fetched:
                self._request_delay()
        return outcomes

    def _record_telemetry(self, item: Item, outcome: Outcome) -> None:
        if self.telemetry is None:
            return
        self.telemetry.add(
            outcome.status,
            outcome.error_code or "",
            {
                "sticker_id": item.id,
                "sticker": item.name,
                "application_count": outcome.application_count,
                "count": outcome.count,
                "attempts": outcome.attempts,
                "rate_limit_hits": outcome.rate_limit_hits,
            },
        )


__all__ = [
    "UnitState",
    "UnitStatus",
    "Outcome",
    "RateLimitExhausted",
    "TransientFetchError",
    "UnitOfWorkExecutor",
]
