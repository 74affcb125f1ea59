from __future__ import annotations

from typing import Optional

from .error_codes import ErrorCode
from .logging_utils import _scraper_event

# Page-level failures that a fresh load of the same search usually fixes.
RETRYABLE_ERROR_CODES = {
    ErrorCode.NAV_TIMEOUT,
    ErrorCode.NAV_ERROR,
    ErrorCode.COUNT_NOT_FOUND,
    ErrorCode.COUNT_PARSE,
    ErrorCode.PAGE_ERROR,
}

NON_RETRYABLE_ERROR_CODES = {
    ErrorCode.CONFIG,
    ErrorCode.SESSION_MISSING,
    ErrorCode.INTERNAL,
    # Rate limiting has its own unbounded cooldown loop and never consumes
    # the local budget.
    ErrorCode.RATE_LIMITED,
}


def _decision(
    kind: str,
    will_retry: bool,
    *,
    code: str,
    attempt_index: int,
    max_attempts: int,
    **extra: object,
) -> bool:
    _scraper_event(
        "state",
        phase="retry_decision",
        kind=kind,
        error_code=code or None,
        attempt=attempt_index,
        max_attempts=max_attempts,
        will_retry=will_retry,
        **extra,
    )
    return will_retry


def decide_retry(
    attempt_index: int,
    max_attempts: int,
    error: BaseException | None = None,
    *,
    error_code: Optional[str] = None,
) -> bool:
    """Decide whether a unit should be fetched again after a local failure.

    ``attempt_index`` is the 1-based number of failures seen so far for the
    unit; once it reaches ``max_attempts`` the unit is resolved as Unknown.
    """

    code = (error_code or "").strip()
    budget = {"code": code, "attempt_index": attempt_index, "max_attempts": max_attempts}

    if attempt_index >= max_attempts:
        return _decision("capped", False, **budget)
    if code in NON_RETRYABLE_ERROR_CODES:
        return _decision("non_retryable", False, **budget)
    if code in RETRYABLE_ERROR_CODES:
        return _decision("retryable", True, **budget)

    # Unclassified failure: one more attempt while the budget has room.
    return _decision(
        "unknown" if code else "missing_error_code",
        attempt_index < max_attempts - 1,
        error_repr=repr(error) if error is not None else None,
        **budget,
    )


__all__ = ["decide_retry", "RETRYABLE_ERROR_CODES", "NON_RETRYABLE_ERROR_CODES"]
