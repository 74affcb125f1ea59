import json
from pathlib import Path

import pytest

from stickerwatch.scraper import config, session
from stickerwatch.scraper.config_validation import ConfigError
from stickerwatch.scraper.telemetry import RunTelemetry, latest_run_file

from tests.test_ledger import _configure_temp_paths


def test_load_session_requires_storage_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)

    assert session.load_session() is None

    config.AUTH_FILE.write_text("not json", encoding="utf-8")
    assert session.load_session() is None

    config.AUTH_FILE.write_text(json.dumps({"origins": []}), encoding="utf-8")
    assert session.load_session() is None

    config.AUTH_FILE.write_text(json.dumps({"cookies": [], "origins": []}), encoding="utf-8")
    assert session.load_session() == {"cookies": [], "origins": []}


def test_ensure_session_without_login_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)

    with pytest.raises(ConfigError):
        session.ensure_session(interactive=False)


def test_ensure_session_runs_interactive_login(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)
    logins: list[Path] = []
    monkeypatch.setattr(session, "interactive_login", lambda path: logins.append(path))

    assert session.ensure_session(interactive=True) == config.AUTH_FILE
    assert logins == [config.AUTH_FILE]


def test_telemetry_counts_statuses_and_reasons(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = _configure_temp_paths(tmp_path, monkeypatch)
    telemetry = RunTelemetry("grouped")
    telemetry.add("success", "", {"sticker_id": "a1", "application_count": 1})
    telemetry.add("unknown", "count_not_found", {"sticker_id": "a1", "application_count": 2})
    telemetry.add("unknown", "count_not_found", {"sticker_id": "a2", "application_count": 2})

    path = telemetry.finalize({"status": "completed"})

    assert path.parent == data_dir / "runs"
    assert latest_run_file() == path
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["mode"] == "grouped"
    assert payload["status"] == "completed"
    assert payload["summary"] == {
        "count_success": 1,
        "count_unknown": 2,
        "reason_count_not_found": 2,
    }
    assert payload["entries"][1]["application_count"] == 2


def test_latest_run_file_without_runs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_temp_paths(tmp_path, monkeypatch)

    assert latest_run_file() is None
