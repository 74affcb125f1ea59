from __future__ import annotations

import pytest

from stickerwatch.scraper import retry_policy


@pytest.fixture
def event_recorder(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []

    def _record(event_phase: str, **fields: object) -> None:
        events.append((event_phase, fields))

    monkeypatch.setattr(retry_policy, "_scraper_event", _record)
    return events


@pytest.mark.parametrize(
    "attempt, expected, kind",
    [
        (1, True, "retryable"),
        (2, True, "retryable"),
        (3, False, "capped"),
        (5, False, "capped"),
    ],
)
def test_count_not_found_retry_limits(
    attempt: int, expected: bool, kind: str, event_recorder: list[tuple[str, dict]]
) -> None:
    result = retry_policy.decide_retry(attempt, 3, error_code="count_not_found")
    assert result is expected
    assert len(event_recorder) == 1
    phase, fields = event_recorder[0]
    assert phase == "state"
    assert fields["phase"] == "retry_decision"
    assert fields["error_code"] == "count_not_found"
    assert fields["attempt"] == attempt
    assert fields["max_attempts"] == 3
    assert fields["will_retry"] is expected
    assert fields["kind"] == kind


@pytest.mark.parametrize(
    "error_code",
    ["config", "session_missing", "internal", "rate_limited"],
)
def test_non_retryable_error_codes(error_code: str, event_recorder: list[tuple[str, dict]]) -> None:
    assert error_code in retry_policy.NON_RETRYABLE_ERROR_CODES
    result = retry_policy.decide_retry(1, 3, error_code=error_code)
    assert result is False
    assert len(event_recorder) == 1
    _, fields = event_recorder[0]
    assert fields["kind"] == "non_retryable"
    assert fields["will_retry"] is False
    assert fields["error_code"] == error_code


@pytest.mark.parametrize(
    "error_code",
    ["nav_timeout", "nav_error", "count_not_found", "count_parse", "page_error"],
)
def test_page_failures_are_retryable(error_code: str, event_recorder: list[tuple[str, dict]]) -> None:
    assert retry_policy.decide_retry(1, 3, error_code=error_code) is True
    assert event_recorder[0][1]["kind"] == "retryable"


@pytest.mark.parametrize(
    "error_code, attempt, expected, expected_kind",
    [
        (None, 1, True, "missing_error_code"),
        ("", 2, False, "missing_error_code"),
        ("unexpected_code", 1, True, "unknown"),
        ("unexpected_code", 2, False, "unknown"),
    ],
)
def test_missing_or_unknown_error_codes(
    error_code: str | None,
    attempt: int,
    expected: bool,
    expected_kind: str,
    event_recorder: list[tuple[str, dict]],
) -> None:
    error = RuntimeError("boom")
    assert retry_policy.decide_retry(attempt, 3, error, error_code=error_code) is expected
    assert len(event_recorder) == 1
    _, fields = event_recorder[0]
    assert fields["will_retry"] is expected
    assert fields["kind"] == expected_kind
    assert fields["error_repr"] == repr(error)
