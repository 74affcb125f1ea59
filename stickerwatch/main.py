from __future__ import annotations

import re
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from flask import Flask, Response, jsonify, request

from stickerwatch.scraper import config
from stickerwatch.scraper.batches import BatchFile, describe_batch_files, list_batch_dates
from stickerwatch.scraper.catalog import load_catalog
from stickerwatch.scraper.config_validation import ConfigError, validate_runtime_config
from stickerwatch.scraper.healthcheck import run_health_checks
from stickerwatch.scraper.ledger import ProgressLedger
from stickerwatch.scraper.logging_utils import add_event_listener, remove_event_listener
from stickerwatch.scraper.pacing import Pacer, ScrapeStopped
from stickerwatch.scraper.run import run_scrape
from stickerwatch.scraper.uploader import UploadReconciler
from stickerwatch.scraper.utils import ensure_dirs, log_line, read_last_log_lines

app = Flask(__name__)

# Storage paths must exist for WSGI entrypoints as well as ``python main.py``.
ensure_dirs()

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ScraperController:
    """Run at most one scrape in a background thread and expose its status."""

    def __init__(self, runner: Callable[..., Dict[str, Any]] = run_scrape) -> None:
        self._runner = runner
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._pacer: Optional[Pacer] = None
        self._manual_upload = False
        self._status: Dict[str, Any] = {
            "running": False,
            "state": "idle",
            "mode": None,
            "started_at": None,
            "finished_at": None,
            "progress": None,
            "cooldown": None,
            "last_result": None,
            "last_error": None,
        }

    @property
    def running(self) -> bool:
        with self._lock:
            return bool(self._status["running"])

    def claim_batch_files(self) -> bool:
        """Reserve the batch files for a manual upload; refused while a scrape runs."""

        with self._lock:
            if self._status["running"] or self._manual_upload:
                return False
            self._manual_upload = True
            return True

    def release_batch_files(self) -> None:
        with self._lock:
            self._manual_upload = False

    def _on_progress(self, fields: Dict[str, Any]) -> None:
        with self._lock:
            self._status["progress"] = fields

    def _on_event(self, label: str, fields: Dict[str, Any]) -> None:
        if label == "backoff" and fields.get("kind") == "rate_limit":
            with self._lock:
                self._status["cooldown"] = {
                    "delay_ms": fields.get("delay_ms"),
                    "consecutive_hits": fields.get("consecutive_hits"),
                    "since": time.time(),
                }
        elif label == "backoff" and fields.get("kind") == "reset":
            with self._lock:
                self._status["cooldown"] = None

    def start(
        self,
        *,
        mode: str,
        collections: Optional[List[str]] = None,
        repair: bool = True,
        upload: bool = True,
    ) -> bool:
        with self._lock:
            if self._status["running"] or self._manual_upload:
                return False
            pacer = Pacer()
            self._pacer = pacer
            self._status.update(
                running=True,
                state="running",
                mode=mode,
                started_at=time.time(),
                finished_at=None,
                progress=None,
                cooldown=None,
                last_error=None,
            )

        def _run() -> None:
            add_event_listener(self._on_event)
            state = "failed"
            try:
                result = self._runner(
                    mode,
                    collections=collections,
                    repair=repair,
                    upload=upload,
                    pacer=pacer,
                    progress_callback=self._on_progress,
                    trigger="ui",
                )
                state = "completed"
                with self._lock:
                    self._status["last_result"] = result
            except ScrapeStopped:
                state = "stopped"
            except Exception as exc:  # noqa: BLE001
                log_line(f"Scrape thread failed: {exc}")
                with self._lock:
                    self._status["last_error"] = str(exc)
            finally:
                remove_event_listener(self._on_event)
                with self._lock:
                    self._status.update(running=False, state=state, finished_at=time.time())

        thread = threading.Thread(target=_run, daemon=True)
        self._thread = thread
        thread.start()
        return True

    def stop(self) -> bool:
        with self._lock:
            if not self._status["running"] or self._pacer is None:
                return False
            self._pacer.stop()
            self._status["state"] = "stopping"
            return True

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def snapshot(self, log_lines: int = 50) -> Dict[str, Any]:
        with self._lock:
            status = dict(self._status)
        status["logs"] = read_last_log_lines(log_lines)
        return status


controller = ScraperController()


def _build_reconciler() -> UploadReconciler:
    return app.config.get("UPLOAD_RECONCILER") or UploadReconciler()


def _json_error(message: str, status: int) -> tuple[Response, int]:
    return jsonify({"ok": False, "error": message}), status


@app.get("/api/health")
def api_health() -> Response:
    """Return a JSON health summary for configuration, filesystem, catalog and ledger."""

    result = run_health_checks(entrypoint="ui")
    status = 200 if result.ok else 503
    return jsonify({"ok": result.ok, "checks": result.checks}), status


@app.get("/api/collections")
def api_collections() -> Response:
    try:
        catalog = load_catalog()
    except ConfigError as exc:
        return _json_error(str(exc), 500)

    collections: Dict[str, Dict[str, int]] = {}
    for (collection, rarity), items in catalog.groups().items():
        collections.setdefault(collection, {})[rarity] = len(items)
    return jsonify(
        {
            "ok": True,
            "collections": [
                {"name": name, "rarities": rarities, "items": sum(rarities.values())}
                for name, rarities in collections.items()
            ],
        }
    )


@app.get("/api/scraper/status")
def api_scraper_status() -> Response:
    return jsonify(controller.snapshot())


@app.post("/api/scraper/start")
def api_scraper_start() -> Response:
    """Start a background scrape. Body: ``{mode, collections, repair, upload}``."""

    body = request.get_json(silent=True) or {}
    mode = str(body.get("mode") or config.SCRAPE_MODE_DEFAULT).strip().lower()
    raw_collections = body.get("collections")
    if isinstance(raw_collections, str):
        raw_collections = raw_collections.split(",")
    collections = [str(c).strip() for c in (raw_collections or []) if str(c).strip()] or None

    try:
        validate_runtime_config("ui", mode=mode)
    except ValueError as exc:
        return _json_error(str(exc), 400)

    started = controller.start(
        mode=mode,
        collections=collections,
        repair=bool(body.get("repair", config.REPAIR_UNKNOWNS_DEFAULT)),
        upload=bool(body.get("upload", config.UPLOAD_ENABLED_DEFAULT)),
    )
    if not started:
        return _json_error("Scraper is already running or a batch upload is in progress", 409)
    return jsonify({"ok": True, "mode": mode, "collections": collections}), 202


@app.post("/api/scraper/stop")
def api_scraper_stop() -> Response:
    if not controller.stop():
        return _json_error("Scraper is not running", 409)
    return jsonify({"ok": True})


@app.get("/api/data")
def api_data_dates() -> Response:
    return jsonify({"ok": True, "dates": list_batch_dates()})


@app.get("/api/data/<run_date>")
def api_data_files(run_date: str) -> Response:
    if not _DATE_RE.match(run_date):
        return _json_error("Date must be YYYY-MM-DD", 400)
    try:
        files = describe_batch_files(run_date)
    except FileNotFoundError:
        return _json_error(f"No batch folder for {run_date}", 404)
    return jsonify({"ok": True, "date": run_date, "files": files})


@app.post("/api/data/upload")
def api_data_upload() -> Response:
    """Upload the unflagged entries of one batch file. Body: ``{date, filename}``."""

    body = request.get_json(silent=True) or {}
    run_date = str(body.get("date") or "")
    filename = str(body.get("filename") or "")
    if not _DATE_RE.match(run_date) or not filename.endswith(".json") or Path(filename).name != filename:
        return _json_error("date (YYYY-MM-DD) and a batch filename are required", 400)

    path = config.BATCH_DIR / run_date / filename
    if not path.exists():
        return _json_error(f"{run_date}/{filename} not found", 404)

    # Batch files have one writer at a time: the running scrape or this upload.
    if not controller.claim_batch_files():
        return _json_error("A scrape is running; upload batch files after it finishes", 409)
    try:
        batch = BatchFile.load(path)
        pending = batch.not_uploaded()
        if not pending:
            return jsonify({"ok": True, "uploaded": 0, "message": "Already uploaded"})

        reconciler = _build_reconciler()
        if not reconciler.reconcile(batch.snapshot([r.sticker_id for r in pending]), store=batch):
            return _json_error("Upload failed; entries left unflagged", 502)
    finally:
        controller.release_batch_files()
    return jsonify({"ok": True, "uploaded": len(pending)})


@app.get("/api/ledger")
def api_ledger() -> Response:
    ledger = ProgressLedger.load()
    return jsonify(
        {
            "ok": True,
            "summary": ledger.summary(),
            "unknown": [
                {
                    "stickerId": result.sticker_id,
                    "sticker": result.name,
                    "counts": [f"{c}x" for c in result.unknown_counts()],
                    "lastError": result.last_error,
                }
                for result in ledger.results_with_unknowns()
            ],
        }
    )


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=8080)
