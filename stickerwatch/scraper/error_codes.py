from __future__ import annotations

"""Centralised error code taxonomy for scrape and upload failures.

These codes are written to the ledger's ``lastError`` context, to run
telemetry and to structured logs so an operator can tell why a unit ended up
Unknown or why a batch stayed unuploaded. Keep them stable for reporting.
"""


class ErrorCode:
    RATE_LIMITED = "rate_limited"
    NAV_TIMEOUT = "nav_timeout"
    NAV_ERROR = "nav_error"
    COUNT_NOT_FOUND = "count_not_found"
    COUNT_PARSE = "count_parse"
    PAGE_ERROR = "page_error"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CONFIG = "config_error"
    SESSION_MISSING = "session_missing"
    UPLOAD_HTTP = "upload_http"
    UPLOAD_NETWORK = "upload_network"
    UPLOAD_ACK = "upload_ack"
    INTERNAL = "internal_error"


__all__ = ["ErrorCode"]
