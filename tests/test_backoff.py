import threading

import pytest

from stickerwatch.scraper import backoff as backoff_module
from stickerwatch.scraper.backoff import BackoffController


def test_escalation_sequence_from_defaults() -> None:
    controller = BackoffController()

    delays = [controller.on_rate_limit() for _ in range(5)]

    assert delays == [630_000, 945_000, 1_417_500, 1_800_000, 1_800_000]
    assert controller.consecutive_hits == 5
    assert controller.current_cooldown_ms == 1_800_000


def test_success_resets_to_base() -> None:
    controller = BackoffController(base_cooldown_ms=1000, multiplier=2.0, max_cooldown_ms=10_000)
    controller.on_rate_limit()
    controller.on_rate_limit()

    controller.on_success()

    assert controller.consecutive_hits == 0
    assert controller.current_cooldown_ms == 1000
    assert controller.on_rate_limit() == 1000


def test_stats_report_current_state() -> None:
    controller = BackoffController(base_cooldown_ms=1000, multiplier=3.0, max_cooldown_ms=5000)
    controller.on_rate_limit()

    assert controller.get_stats() == {
        "current_cooldown_ms": 3000,
        "consecutive_rate_limit_hits": 1,
        "base_cooldown_ms": 1000,
        "max_cooldown_ms": 5000,
    }


@pytest.mark.parametrize(
    "kwargs",
    [
        {"multiplier": 1.0},
        {"base_cooldown_ms": 5000, "max_cooldown_ms": 1000},
    ],
)
def test_invalid_parameters_rejected(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        BackoffController(**kwargs)


def test_events_only_on_escalation_and_reset(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[tuple[str, dict]] = []
    monkeypatch.setattr(
        backoff_module, "_scraper_event", lambda label, **fields: events.append((label, fields))
    )
    controller = BackoffController(base_cooldown_ms=100, multiplier=2.0, max_cooldown_ms=1000)

    controller.on_success()
    controller.on_rate_limit()
    controller.on_success()

    assert [fields["kind"] for _, fields in events] == ["rate_limit", "reset"]
    assert events[0][1]["delay_ms"] == 100
    assert events[0][1]["next_cooldown_ms"] == 200


def test_concurrent_hits_are_counted_once_each() -> None:
    controller = BackoffController(base_cooldown_ms=1, multiplier=1.01, max_cooldown_ms=10)
    threads = [threading.Thread(target=controller.on_rate_limit) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert controller.consecutive_hits == 20
