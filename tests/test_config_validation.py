from stickerwatch.scraper import config
from stickerwatch.scraper.config_validation import ConfigError, validate_runtime_config
import pytest


def test_unknown_mode_rejected() -> None:
    with pytest.raises(ConfigError):
        validate_runtime_config("cli", mode="parallel")


def test_known_modes_accepted() -> None:
    validate_runtime_config("ui", mode="flat")
    validate_runtime_config("cli", mode=" Grouped ")


def test_max_applications_must_be_positive(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "MAX_APPLICATIONS", 0)
    with pytest.raises(ValueError):
        validate_runtime_config("cli")


def test_multiplier_must_escalate(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "COOLDOWN_MULTIPLIER", 1.0)
    with pytest.raises(ValueError):
        validate_runtime_config("cli")


def test_initial_cooldown_above_cap(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "INITIAL_COOLDOWN_MS", config.MAX_COOLDOWN_MS + 1)
    with pytest.raises(ValueError):
        validate_runtime_config("ui")


def test_invalid_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "NAV_TIMEOUT_SECONDS", 0)
    with pytest.raises(ValueError):
        validate_runtime_config("cli")


def test_retry_limit_must_allow_one_attempt(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "LOCAL_RETRY_LIMIT", 0)
    with pytest.raises(ValueError):
        validate_runtime_config("tests")


def test_batch_knobs_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "BATCH_SIZE", -1)
    monkeypatch.setattr(config, "BATCH_SLEEP_SECONDS", -10.0)

    validate_runtime_config("tests")

    assert config.BATCH_SIZE == 0
    assert config.BATCH_SLEEP_SECONDS == 0.0
