import json
import urllib.parse
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from stickerwatch.scraper import config
from stickerwatch.scraper.backoff import BackoffController
from stickerwatch.scraper.browser import Banner, NavigationError
from stickerwatch.scraper.error_codes import ErrorCode
from stickerwatch.scraper.executor import (
    RateLimitExhausted,
    UnitOfWorkExecutor,
    UnitStatus,
)
from stickerwatch.scraper.ledger import ProgressLedger
from stickerwatch.scraper.pacing import Pacer, ScrapeStopped

from tests.test_ledger import _configure_temp_paths, _item

Step = Tuple[Any, ...]
UnitKey = Tuple[str, int]


class RecordingPacer(Pacer):
    """Pacer that records requested sleeps instead of blocking."""

    def __init__(self) -> None:
        super().__init__(countdown_interval=30)
        self.sleeps: List[Tuple[str, float]] = []

    def sleep(self, seconds: float, *, reason: str, countdown: bool = False) -> None:
        self.check()
        self.sleeps.append((reason, seconds))

    def sleeps_for(self, reason: str) -> List[float]:
        return [seconds for r, seconds in self.sleeps if r == reason]


class FakeSession:
    """Scripted page session keyed by ``(sticker_id, application_count)``.

    Each unit has a list of steps consumed one per fetch; the last step repeats.
    Steps: ``("count", n)``, ``("no_results",)``, ``("rate_limited",)``,
    ``("nav_error", msg)``, ``("nav_timeout",)``, ``("missing",)``,
    ``("garbage", text)``, ``("late_no_results",)``.
    """

    def __init__(
        self,
        script: Optional[Dict[UnitKey, List[Step]]] = None,
        *,
        default: Step = ("count", 100),
        on_fetch: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.script = {key: list(steps) for key, steps in (script or {}).items()}
        self.default = default
        self.on_fetch = on_fetch
        self.fetches: List[UnitKey] = []
        self.restarts = 0
        self.closed = False

    @staticmethod
    def _unit_from_url(url: str) -> UnitKey:
        query = urllib.parse.urlparse(url).query
        stickers = json.loads(urllib.parse.parse_qs(query)["stickers"][0])
        return stickers[0]["i"], len(stickers)

    def fetch_page(self, url: str) -> Dict[str, Any]:
        key = self._unit_from_url(url)
        self.fetches.append(key)
        steps = self.script.get(key)
        if steps:
            step = steps.pop(0) if len(steps) > 1 else steps[0]
        else:
            step = self.default
        if self.on_fetch is not None:
            self.on_fetch(len(self.fetches))
        if step[0] == "nav_error":
            raise NavigationError(step[1])
        if step[0] == "nav_timeout":
            raise NavigationError("Timeout 60000ms exceeded", timed_out=True)
        return {"key": key, "step": step, "banner_checks": 0}

    def detect_terminal_banner(self, handle: Dict[str, Any]) -> Banner:
        handle["banner_checks"] += 1
        kind = handle["step"][0]
        if kind == "rate_limited":
            return Banner.RATE_LIMITED
        if kind == "no_results":
            return Banner.NO_RESULTS
        if kind == "late_no_results" and handle["banner_checks"] > 1:
            return Banner.NO_RESULTS
        return Banner.NONE

    def text_of(self, handle: Dict[str, Any], selector: str, timeout_ms: int) -> Optional[str]:
        step = handle["step"]
        if step[0] == "count":
            return f"{step[1]:,} items"
        if step[0] == "garbage":
            return step[1]
        return None

    def is_visible(self, handle: Dict[str, Any], selector: str) -> bool:
        return False

    def restart(self) -> None:
        self.restarts += 1

    def close(self) -> None:
        self.closed = True


def _executor(pacer: Optional[RecordingPacer] = None, **kwargs: Any) -> UnitOfWorkExecutor:
    return UnitOfWorkExecutor(BackoffController(), pacer or RecordingPacer(), **kwargs)


def test_success_parses_count_and_paces(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    pacer = RecordingPacer()
    session = FakeSession({("a1", 1): [("count", 1234)]})
    executor = _executor(pacer)
    ledger = ProgressLedger.load()

    outcomes = executor.resolve_item(_item("a1"), [1], session, ledger)

    assert [o.count for o in outcomes] == [1234]
    assert outcomes[0].status == UnitStatus.SUCCESS
    assert outcomes[0].attempts == 1
    assert ledger.get("a1").applications == {1: 1234}
    assert pacer.sleeps_for("request delay") == [config.REQUEST_DELAY_MS / 1000.0]


def test_no_results_banner_resolves_to_zero(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    session = FakeSession({("a1", 3): [("no_results",)]})

    outcome = _executor().resolve(_item("a1"), 3, session)

    assert outcome.count == 0
    assert outcome.status == UnitStatus.NO_RESULTS


def test_rate_limit_backoff_sequence_then_success(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    pacer = RecordingPacer()
    backoff = BackoffController()
    executor = UnitOfWorkExecutor(backoff, pacer)
    session = FakeSession(
        {
            ("a1", 1): [
                ("rate_limited",),
                ("rate_limited",),
                ("rate_limited",),
                ("count", 5),
            ]
        }
    )

    outcome = executor.resolve(_item("a1"), 1, session)

    assert outcome.count == 5
    assert outcome.rate_limit_hits == 3
    assert outcome.attempts == 4
    assert pacer.sleeps_for("rate limit cooldown") == [630.0, 945.0, 1417.5]
    assert session.restarts == 3
    assert backoff.consecutive_hits == 0
    assert backoff.current_cooldown_ms == 630_000


def test_rate_limits_do_not_consume_local_retries(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    session = FakeSession(
        {
            ("a1", 1): [
                ("missing",),
                ("rate_limited",),
                ("missing",),
                ("rate_limited",),
                ("count", 8),
            ]
        }
    )

    outcome = _executor(local_retry_limit=3).resolve(_item("a1"), 1, session)

    assert outcome.count == 8
    assert outcome.status == UnitStatus.SUCCESS


def test_navigation_error_mentioning_429_is_a_rate_limit(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    pacer = RecordingPacer()
    session = FakeSession(
        {("a1", 1): [("nav_error", "net::ERR_HTTP_RESPONSE_CODE_FAILURE 429"), ("count", 2)]}
    )

    outcome = _executor(pacer).resolve(_item("a1"), 1, session)

    assert outcome.count == 2
    assert outcome.rate_limit_hits == 1
    assert pacer.sleeps_for("rate limit cooldown") == [630.0]


def test_missing_count_exhausts_to_unknown_never_zero(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    session = FakeSession({("a1", 1): [("missing",)]})
    ledger = ProgressLedger.load()

    outcomes = _executor(local_retry_limit=3).resolve_item(_item("a1"), [1], session, ledger)

    outcome = outcomes[0]
    assert outcome.count is None
    assert outcome.status == UnitStatus.UNKNOWN
    assert outcome.attempts == 3
    assert outcome.error_code == ErrorCode.COUNT_NOT_FOUND
    assert session.fetches == [("a1", 1)] * 3
    result = ledger.get("a1")
    assert result.applications == {1: None}
    assert result.last_error == "count text missing"


def test_transient_error_then_success(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    session = FakeSession({("a1", 2): [("nav_timeout",), ("garbage", "Loading..."), ("count", 7)]})

    outcome = _executor().resolve(_item("a1"), 2, session)

    assert outcome.count == 7
    assert outcome.attempts == 3


def test_late_no_results_banner_after_missing_count(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    session = FakeSession({("a1", 1): [("late_no_results",)]})

    outcome = _executor().resolve(_item("a1"), 1, session)

    assert outcome.count == 0
    assert outcome.status == UnitStatus.NO_RESULTS
    assert session.fetches == [("a1", 1)]


def test_rate_limit_safety_valve(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    pacer = RecordingPacer()
    session = FakeSession({("a1", 1): [("rate_limited",)]})

    with pytest.raises(RateLimitExhausted):
        _executor(pacer, max_rate_limit_retries=2).resolve(_item("a1"), 1, session)

    assert pacer.sleeps_for("rate limit cooldown") == [630.0, 945.0]


def test_zero_prunes_higher_counts(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    session = FakeSession({("a1", 1): [("count", 40)], ("a1", 2): [("no_results",)]})
    ledger = ProgressLedger.load()

    outcomes = _executor().resolve_item(_item("a1"), [1, 2, 3, 4, 5], session, ledger)

    assert session.fetches == [("a1", 1), ("a1", 2)]
    assert [o.status for o in outcomes] == [
        UnitStatus.SUCCESS,
        UnitStatus.NO_RESULTS,
        UnitStatus.PRUNED,
        UnitStatus.PRUNED,
        UnitStatus.PRUNED,
    ]
    assert ledger.get("a1").applications == {1: 40, 2: 0, 3: 0, 4: 0, 5: 0}


def test_recorded_zero_prunes_without_fetch(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    ledger = ProgressLedger.load()
    ledger.record_outcome(_item("a1"), 1, 0)
    session = FakeSession()

    outcomes = _executor().resolve_item(_item("a1"), [2, 3], session, ledger)

    assert session.fetches == []
    assert [o.count for o in outcomes] == [0, 0]
    assert all(not o.fetched for o in outcomes)


def test_stop_request_raises_between_units(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    pacer = RecordingPacer()
    session = FakeSession(on_fetch=lambda n: pacer.stop())
    ledger = ProgressLedger.load()

    with pytest.raises(ScrapeStopped):
        _executor(pacer).resolve_item(_item("a1"), [1, 2], session, ledger)

    assert session.fetches == [("a1", 1)]
    assert ledger.get("a1").applications == {1: 100}


def test_telemetry_receives_each_outcome(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)

    class _Telemetry:
        def __init__(self) -> None:
            self.entries: List[Tuple[str, str, Dict[str, Any]]] = []

        def add(self, status: str, reason: str, meta: Dict[str, Any]) -> None:
            self.entries.append((status, reason, meta))

    telemetry = _Telemetry()
    session = FakeSession({("a1", 1): [("no_results",)]})

    _executor(telemetry=telemetry).resolve_item(_item("a1"), [1, 2], session, ProgressLedger.load())

    assert [(s, m["application_count"]) for s, _, m in telemetry.entries] == [
        ("no_results", 1),
        ("pruned", 2),
    ]
