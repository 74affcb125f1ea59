"""Push scraped results to the ingestion API and flag what was accepted.

Delivery is at-least-once: results are flagged ``uploaded`` only after the
endpoint acknowledges the batch, and the endpoint upserts, so re-sending an
unflagged batch after a crash is harmless.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional

import requests

from . import config
from .error_codes import ErrorCode
from .ledger import Result, ResultStore
from .logging_utils import _scraper_event
from .utils import log_line, short_error_message


class UploadError(RuntimeError):
    def __init__(self, message: str, *, error_code: str, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.http_status = http_status


def build_http_session() -> requests.Session:
    session = requests.Session()
    session.headers.update(config.COMMON_HEADERS)
    session.headers["Content-Type"] = "application/json"
    return session


class UploadReconciler:
    def __init__(
        self,
        url: Optional[str] = None,
        *,
        session: Any = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.url = config.UPLOAD_URL if url is None else url
        self.session = session if session is not None else build_http_session()
        self.timeout = config.UPLOAD_TIMEOUT_SECONDS if timeout is None else timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def send(self, payload: List[dict]) -> int:
        """POST ``payload`` and return the acknowledged ``count``.

        Raises :class:`UploadError` for network failures, non-2xx responses
        and acknowledgements without an integer ``count``.
        """

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise UploadError(
                f"network error: {short_error_message(exc)}", error_code=ErrorCode.UPLOAD_NETWORK
            ) from exc

        status = response.status_code
        if not 200 <= status < 300:
            raise UploadError(
                f"HTTP {status}", error_code=ErrorCode.UPLOAD_HTTP, http_status=status
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise UploadError(
                "acknowledgement is not JSON", error_code=ErrorCode.UPLOAD_ACK, http_status=status
            ) from exc

        count = body.get("count") if isinstance(body, dict) else None
        if isinstance(count, bool) or not isinstance(count, int):
            raise UploadError(
                f"acknowledgement without count: {body!r}"[:200],
                error_code=ErrorCode.UPLOAD_ACK,
                http_status=status,
            )
        return count

    def reconcile(self, results: Iterable[Result], *, store: Optional[ResultStore] = None) -> bool:
        """Upload ``results``; on acknowledgement flag them as uploaded.

        With a ``store`` the flags are written through it (and persisted);
        without one the given ``Result`` objects are flagged in place. On any
        failure nothing is flagged and ``False`` is returned.
        """

        batch = list(results)
        if not batch:
            return True
        if not self.enabled:
            log_line("[UPLOAD] No upload URL configured; skipping upload")
            return False

        payload = [result.to_dict() for result in batch]
        log_line(f"[UPLOAD] Sending {len(payload)} results to {self.url}")
        try:
            accepted = self.send(payload)
        except UploadError as exc:
            log_line(f"[UPLOAD] Upload failed: {exc}")
            _scraper_event(
                "error",
                phase="upload",
                error_code=exc.error_code,
                http_status=exc.http_status,
                results=len(payload),
            )
            return False

        ids = [result.sticker_id for result in batch]
        if store is not None:
            store.mark_uploaded(ids)
        else:
            for result in batch:
                result.uploaded = True
        log_line(f"[UPLOAD] Server accepted {accepted} of {len(payload)} results")
        _scraper_event("upload", kind="acknowledged", sent=len(payload), accepted=accepted)
        return True


__all__ = ["UploadReconciler", "UploadError", "build_http_session"]
