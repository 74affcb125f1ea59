from __future__ import annotations

from typing import Literal

from . import config
from .error_codes import ErrorCode
from .logging_utils import _scraper_event
from .utils import log_line

Entrypoint = Literal["ui", "cli", "tests"]


class ConfigError(ValueError):
    """Blocking misconfiguration detected before any scraping starts."""


def _raise_config_error(
    message: str, *, entrypoint: Entrypoint, error: str, mode: str | None
) -> None:
    _scraper_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        error_code=ErrorCode.CONFIG,
        entrypoint=entrypoint,
        mode=mode,
    )
    mode_fragment = f", mode={mode}" if mode else ""
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint}{mode_fragment})")
    raise ConfigError(message)


def _clamp(field: str, value: float, adjusted: float, *, entrypoint: Entrypoint, mode: str | None) -> None:
    _scraper_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field,
        value=value,
        adjusted=adjusted,
        entrypoint=entrypoint,
        mode=mode,
    )
    log_line(f"[CONFIG] {field}={value} is negative; clamping to {adjusted}.")
    setattr(config, field, adjusted)


def validate_runtime_config(entrypoint: Entrypoint, *, mode: str | None = None) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises :class:`ConfigError` when a blocking misconfiguration is detected.
    A negative batch size or batch sleep disables batch pacing instead.
    """

    if mode is not None and mode.strip().lower() not in config.SCRAPE_MODES:
        _raise_config_error(
            f"Unknown scrape mode {mode!r}; expected one of {', '.join(config.SCRAPE_MODES)}.",
            entrypoint=entrypoint,
            error="invalid_mode",
            mode=mode,
        )

    blocking = [
        (config.MAX_APPLICATIONS < 1, "MAX_APPLICATIONS must be at least 1.", "invalid_application_range"),
        (config.COOLDOWN_MULTIPLIER <= 1, "COOLDOWN_MULTIPLIER must be greater than 1.", "invalid_multiplier"),
        (
            config.INITIAL_COOLDOWN_MS <= 0 or config.INITIAL_COOLDOWN_MS > config.MAX_COOLDOWN_MS,
            "INITIAL_COOLDOWN_MS must be positive and not exceed MAX_COOLDOWN_MS.",
            "invalid_cooldown",
        ),
        (config.LOCAL_RETRY_LIMIT < 1, "LOCAL_RETRY_LIMIT must be at least 1.", "invalid_retry_limit"),
    ]
    for field_name in ("NAV_TIMEOUT_SECONDS", "COUNT_TIMEOUT_SECONDS"):
        blocking.append(
            (getattr(config, field_name) <= 0, f"{field_name} must be greater than zero.", "invalid_timeout")
        )

    for failed, message, error in blocking:
        if failed:
            _raise_config_error(message, entrypoint=entrypoint, error=error, mode=mode)

    if config.BATCH_SIZE < 0:
        _clamp("BATCH_SIZE", config.BATCH_SIZE, 0, entrypoint=entrypoint, mode=mode)
    if config.BATCH_SLEEP_SECONDS < 0:
        _clamp("BATCH_SLEEP_SECONDS", config.BATCH_SLEEP_SECONDS, 0.0, entrypoint=entrypoint, mode=mode)


__all__ = ["validate_runtime_config", "ConfigError", "Entrypoint"]
