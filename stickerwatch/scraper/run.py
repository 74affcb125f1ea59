from __future__ import annotations

import argparse
import signal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import config
from .backoff import BackoffController
from .browser import PageSession, PlaywrightSession
from .catalog import load_catalog
from .config_validation import ConfigError, validate_runtime_config
from .executor import UnitOfWorkExecutor
from .ledger import ProgressLedger
from .logging_utils import _scraper_event
from .orchestrator import BatchOrchestrator, ProgressCallback, RunSummary
from .pacing import Pacer, ScrapeStopped
from .session import ensure_session
from .telemetry import RunTelemetry
from .uploader import UploadReconciler
from .utils import (
    ensure_dirs,
    file_timestamp,
    log_line,
    save_json_file,
    setup_run_logger,
    short_error_message,
)

SessionFactory = Callable[[], PageSession]

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_STOPPED = 130


def _normalize_scrape_mode(raw: Optional[str]) -> str:
    mode = (raw or config.SCRAPE_MODE_DEFAULT).strip().lower()
    return mode or "flat"


def _parse_collections(raw: Optional[str | Sequence[str]]) -> Optional[List[str]]:
    if raw is None:
        return None
    if isinstance(raw, str):
        parts = raw.split(",")
    else:
        parts = list(raw)
    names = [part.strip() for part in parts if part and part.strip()]
    return names or None


def _default_session_factory() -> PageSession:
    return PlaywrightSession(config.AUTH_FILE).start()


def archive_ledger(ledger_path: Optional[Path] = None) -> Optional[Path]:
    """Move the current ledger into ``RAW_DIR`` so the next run starts a new epoch."""

    path = Path(ledger_path or config.LEDGER_FILE)
    if not path.exists():
        return None
    config.RAW_DIR.mkdir(parents=True, exist_ok=True)
    target = config.RAW_DIR / f"{path.stem}-{file_timestamp()}{path.suffix}"
    path.replace(target)
    log_line(f"[RUN] Archived previous ledger to {target}")
    _scraper_event("state", phase="ledger", kind="archived", path=str(target))
    return target


def write_snapshots(ledger: ProgressLedger) -> Dict[str, str]:
    """Write ``latest.json`` and a timestamped copy under ``RAW_DIR``."""

    payload = [result.to_dict() for result in ledger.results]
    raw_path = config.RAW_DIR / f"scrape-{file_timestamp()}.json"
    save_json_file(config.LATEST_FILE, payload)
    save_json_file(raw_path, payload)
    log_line(f"[RUN] Results saved to {config.LATEST_FILE} and {raw_path}")
    return {"latest_file": str(config.LATEST_FILE), "raw_file": str(raw_path)}


def run_scrape(
    mode: Optional[str] = None,
    *,
    collections: Optional[str | Sequence[str]] = None,
    repair: Optional[bool] = None,
    upload: Optional[bool] = None,
    new_epoch: bool = False,
    session_factory: Optional[SessionFactory] = None,
    pacer: Optional[Pacer] = None,
    reconciler: Optional[UploadReconciler] = None,
    progress_callback: Optional[ProgressCallback] = None,
    trigger: str = "cli",
    catalog_path: Optional[Path] = None,
) -> Dict[str, Any]:
    """Run one scrape over the catalog and return a summary dictionary.

    Raises :class:`ConfigError` before any fetch when the configuration,
    catalog or saved session is unusable, and :class:`ScrapeStopped` when
    ``pacer.stop()`` is called mid-run. Every recorded outcome is already
    durable when either escapes.
    """

    ensure_dirs()
    log_path = setup_run_logger()

    mode = _normalize_scrape_mode(mode)
    validate_runtime_config("cli" if trigger == "cli" else "ui", mode=mode)
    repair = config.REPAIR_UNKNOWNS_DEFAULT if repair is None else bool(repair)
    upload = config.UPLOAD_ENABLED_DEFAULT if upload is None else bool(upload)

    full_catalog = load_catalog(catalog_path)
    catalog = full_catalog.filter_collections(_parse_collections(collections))
    if not len(catalog):
        raise ConfigError("No stickers selected; check the catalog and --collections.")

    if session_factory is None:
        ensure_session(config.AUTH_FILE, interactive=False)
        session_factory = _default_session_factory

    pacer = pacer or Pacer()
    telemetry = RunTelemetry(mode)
    executor = UnitOfWorkExecutor(BackoffController(), pacer, telemetry=telemetry)
    if not upload:
        reconciler = None
    elif reconciler is None:
        reconciler = UploadReconciler()

    _scraper_event(
        "plan",
        mode=mode,
        trigger=trigger,
        items=len(catalog),
        collections=len(catalog.collections),
        repair=repair,
        upload=upload,
        new_epoch=new_epoch,
    )
    log_line(f"[RUN] Starting {mode} scrape of {len(catalog)} stickers ({trigger})")

    result: Dict[str, Any] = {"mode": mode, "trigger": trigger, "log_file": str(log_path)}
    summary: Optional[RunSummary] = None
    status = "failed"
    session = session_factory()
    try:
        orchestrator = BatchOrchestrator(
            executor,
            session,
            pacer=pacer,
            reconciler=reconciler,
            repair=repair,
            progress_callback=progress_callback,
        )
        if config.is_grouped_mode(mode):
            summary = orchestrator.run_grouped(catalog)
        else:
            if new_epoch:
                archive_ledger()
            ledger = ProgressLedger.load()
            summary = orchestrator.run(catalog, ledger)
            if all(ledger.is_complete(item.id) for item in full_catalog):
                result.update(write_snapshots(ledger))
        status = "completed"
    except ScrapeStopped:
        status = "stopped"
        log_line("[RUN] Stop requested; progress is saved and the next run resumes from here.")
        raise
    except ConfigError:
        raise
    except Exception as exc:
        _scraper_event(
            "error",
            phase="run",
            mode=mode,
            error=short_error_message(exc),
            error_type=type(exc).__name__,
        )
        raise
    finally:
        try:
            session.close()
        except Exception as exc:  # noqa: BLE001
            log_line(f"[RUN][WARN] Error while closing browser session: {exc}")
        try:
            result["telemetry_file"] = str(
                telemetry.finalize(
                    {"status": status, "summary_counts": summary.to_dict() if summary else None}
                )
            )
        except Exception as exc:  # noqa: BLE001
            log_line(f"[RUN][WARN] Unable to write run telemetry: {exc}")

    result["status"] = status
    result.update(summary.to_dict() if summary else {})
    log_line(
        f"[RUN] Done: {summary.items_processed} processed, {summary.items_skipped} skipped, "
        f"{summary.units_unknown} unknown, {summary.rate_limit_hits} rate limits"
    )
    return result


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scrape sticker application counts.")
    parser.add_argument(
        "--mode",
        choices=list(config.SCRAPE_MODES),
        default=config.SCRAPE_MODE_DEFAULT,
        help="flat: one progress ledger; grouped: one batch file per collection and rarity.",
    )
    parser.add_argument(
        "--collections",
        default=None,
        help="Comma-separated collection names to restrict the run to.",
    )
    parser.add_argument(
        "--no-repair",
        dest="repair",
        action="store_false",
        default=config.REPAIR_UNKNOWNS_DEFAULT,
        help="Skip the pass that re-checks Unknown counts.",
    )
    parser.add_argument(
        "--no-upload",
        dest="upload",
        action="store_false",
        default=config.UPLOAD_ENABLED_DEFAULT,
        help="Do not upload results after scraping.",
    )
    parser.add_argument(
        "--new-epoch",
        action="store_true",
        help="Archive the current ledger and start a fresh measurement (flat mode).",
    )
    return parser


def _install_signal_handlers(pacer: Pacer) -> None:
    def _handle(signum: int, _frame: Any) -> None:
        if pacer.stopped:
            raise KeyboardInterrupt
        log_line(f"[RUN] Received signal {signum}; stopping after the current step...")
        pacer.stop()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def main(argv: Sequence[str] | None = None, *, session_factory: Optional[SessionFactory] = None) -> int:
    """CLI entrypoint; returns the process exit code."""

    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    pacer = Pacer()
    _install_signal_handlers(pacer)

    try:
        run_scrape(
            args.mode,
            collections=args.collections,
            repair=args.repair,
            upload=args.upload,
            new_epoch=args.new_epoch,
            session_factory=session_factory,
            pacer=pacer,
        )
    except ConfigError as exc:
        log_line(f"[CONFIG] {exc}")
        return EXIT_CONFIG
    except ScrapeStopped:
        return EXIT_STOPPED
    except Exception as exc:  # noqa: BLE001
        log_line(f"[RUN] Fatal error: {short_error_message(exc)}")
        return EXIT_FATAL
    return EXIT_OK


__all__ = ["run_scrape", "main", "archive_ledger", "write_snapshots"]


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
