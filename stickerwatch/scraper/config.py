"""Configuration constants for the sticker application scraper."""
from __future__ import annotations

import os
from pathlib import Path


def _parse_int(env_var: str, default: int, *, minimum: int | None = None) -> int:
    """Parse an integer from the environment, falling back to ``default``."""

    try:
        value = int(os.getenv(env_var, str(default)))
    except ValueError:
        return default
    if minimum is not None:
        return max(minimum, value)
    return value


def _parse_float(env_var: str, default: float) -> float:
    try:
        return float(os.getenv(env_var, str(default)))
    except ValueError:
        return default


def _parse_bool(env_var: str, default: bool) -> bool:
    raw = os.getenv(env_var)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


DATA_DIR: Path = Path(os.getenv("STICKERWATCH_DATA_DIR", "data"))
LOG_DIR: Path = DATA_DIR / "logs"
LOG_FILE: Path = LOG_DIR / "latest.log"
LEDGER_FILE: Path = DATA_DIR / "scrape-progress.json"
LATEST_FILE: Path = DATA_DIR / "latest.json"
RAW_DIR: Path = DATA_DIR / "raw"
BATCH_DIR: Path = DATA_DIR / "batches"
RUNS_DIR: Path = DATA_DIR / "runs"

CATALOG_FILE: Path = Path(os.getenv("STICKERWATCH_CATALOG", "stickers-config.json"))
AUTH_FILE: Path = Path(os.getenv("STICKERWATCH_AUTH_FILE", "auth.json"))

BASE_URL: str = "https://csfloat.com"
SEARCH_URL: str = f"{BASE_URL}/db"
UPLOAD_URL: str = os.getenv(
    "STICKERWATCH_UPLOAD_URL", "https://api.cs2stickertracker.com/api/upload"
).strip()
UPLOAD_TIMEOUT_SECONDS: int = _parse_int("STICKERWATCH_UPLOAD_TIMEOUT_SECONDS", 60)

SCRAPE_MODES: tuple[str, ...] = ("flat", "grouped")
SCRAPE_MODE_DEFAULT: str = (
    os.getenv("STICKERWATCH_SCRAPE_MODE", "flat").strip().lower() or "flat"
)

# Application counts queried per sticker (1x .. MAX_APPLICATIONS x).
MAX_APPLICATIONS: int = _parse_int("STICKERWATCH_MAX_APPLICATIONS", 5)

# Rate-limit backoff (milliseconds). The marketplace limits by IP address.
INITIAL_COOLDOWN_MS: int = _parse_int("STICKERWATCH_INITIAL_COOLDOWN_MS", 630_000)
MAX_COOLDOWN_MS: int = _parse_int("STICKERWATCH_MAX_COOLDOWN_MS", 1_800_000)
COOLDOWN_MULTIPLIER: float = _parse_float("STICKERWATCH_COOLDOWN_MULTIPLIER", 1.5)
# 0 disables the ceiling on consecutive rate-limit retries for a single unit.
MAX_RATE_LIMIT_RETRIES: int = _parse_int("STICKERWATCH_MAX_RATE_LIMIT_RETRIES", 0, minimum=0)
COUNTDOWN_LOG_INTERVAL_SECONDS: int = _parse_int(
    "STICKERWATCH_COUNTDOWN_LOG_INTERVAL_SECONDS", 30, minimum=1
)

# Pacing
REQUEST_DELAY_MS: int = _parse_int("STICKERWATCH_REQUEST_DELAY_MS", 8_000, minimum=0)
PAGE_SETTLE_MS: int = _parse_int("STICKERWATCH_PAGE_SETTLE_MS", 3_000, minimum=0)
BATCH_SIZE: int = _parse_int("STICKERWATCH_BATCH_SIZE", 20)
BATCH_SLEEP_SECONDS: float = _parse_float("STICKERWATCH_BATCH_SLEEP_SECONDS", 600.0)

LOCAL_RETRY_LIMIT: int = _parse_int("STICKERWATCH_LOCAL_RETRY_LIMIT", 3)
REPAIR_UNKNOWNS_DEFAULT: bool = _parse_bool("STICKERWATCH_REPAIR_UNKNOWNS", True)
UPLOAD_ENABLED_DEFAULT: bool = _parse_bool("STICKERWATCH_UPLOAD", True)

# Playwright timeouts (seconds)
NAV_TIMEOUT_SECONDS: int = _parse_int("STICKERWATCH_NAV_TIMEOUT_SECONDS", 60)
COUNT_TIMEOUT_SECONDS: int = _parse_int("STICKERWATCH_COUNT_TIMEOUT_SECONDS", 30)
HEADLESS: bool = _parse_bool("STICKERWATCH_HEADLESS", False)

VIEWPORT: dict[str, int] = {"width": 1920, "height": 1080}
BROWSER_ARGS: list[str] = ["--disable-blink-features=AutomationControlled"]

COMMON_HEADERS: dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
}


def application_counts() -> list[int]:
    """Return the configured application counts in ascending order."""

    return list(range(1, MAX_APPLICATIONS + 1))


def is_grouped_mode(mode: str) -> bool:
    """Return ``True`` when ``mode`` requests per collection/rarity batch files."""

    return str(mode).strip().lower() == "grouped"
