from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from . import config
from .catalog import load_catalog
from .config_validation import validate_runtime_config
from .ledger import ProgressLedger
from .logging_utils import _scraper_event
from .session import load_session
from .utils import data_dir_writable, ensure_dirs, log_line


@dataclass
class HealthResult:
    ok: bool
    checks: dict[str, dict[str, Any]]


def run_health_checks(entrypoint: str = "cli") -> HealthResult:
    checks: dict[str, dict[str, Any]] = {}

    try:
        validate_runtime_config(entrypoint or "cli", mode=None)
        checks["config"] = {"ok": True}
    except ValueError as exc:
        checks["config"] = {"ok": False, "error": str(exc)}

    ensure_dirs()
    checks["filesystem"] = {
        "ok": data_dir_writable(),
        "data_dir": str(config.DATA_DIR),
    }

    try:
        catalog = load_catalog()
        checks["catalog"] = {
            "ok": len(catalog) > 0,
            "items": len(catalog),
            "collections": len(catalog.collections),
        }
    except ValueError as exc:
        checks["catalog"] = {"ok": False, "error": str(exc)}

    # A missing session only degrades scraping; it is not fatal for the UI.
    checks["session"] = {
        "ok": load_session(config.AUTH_FILE) is not None,
        "path": str(config.AUTH_FILE),
    }

    try:
        ledger = ProgressLedger.load()
        checks["ledger"] = {"ok": True, **ledger.summary()}
    except Exception as exc:  # noqa: BLE001
        checks["ledger"] = {"ok": False, "error": str(exc)}

    strict_session = entrypoint == "cli"
    overall_ok = all(
        check.get("ok", False)
        for name, check in checks.items()
        if strict_session or name != "session"
    )

    _scraper_event(
        "state" if overall_ok else "error",
        phase="health",
        context="healthcheck",
        ok=overall_ok,
        checks=checks,
    )

    return HealthResult(ok=overall_ok, checks=checks)


def main() -> int:
    result = run_health_checks(entrypoint="cli")
    for name, info in result.checks.items():
        status = "OK" if info.get("ok") else "FAIL"
        log_line(f"[HEALTH] {name}: {status} {info}")
    return 0 if result.ok else 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
