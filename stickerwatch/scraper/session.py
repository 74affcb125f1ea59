"""Saved marketplace login (Playwright storage state) and the login helper."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

from playwright.sync_api import sync_playwright

from . import config
from .config_validation import ConfigError
from .error_codes import ErrorCode
from .logging_utils import _scraper_event
from .utils import log_line, save_json_file


def load_session(path: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    """Return the stored storage state, or ``None`` when absent or unreadable."""

    auth_path = Path(path or config.AUTH_FILE)
    if not auth_path.exists():
        return None
    try:
        state = json.loads(auth_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        log_line(f"[SESSION] {auth_path} is not valid JSON: {exc}")
        return None
    if not isinstance(state, dict) or "cookies" not in state:
        log_line(f"[SESSION] {auth_path} does not look like a Playwright storage state")
        return None
    return state


def ensure_session(path: Optional[Path] = None, *, interactive: bool = False) -> Path:
    """Make sure a session file exists, logging in interactively if allowed.

    Raises :class:`ConfigError` when the file is missing and ``interactive``
    is false.
    """

    auth_path = Path(path or config.AUTH_FILE)
    if load_session(auth_path) is not None:
        return auth_path
    if not interactive:
        _scraper_event("error", phase="session", error_code=ErrorCode.SESSION_MISSING, path=str(auth_path))
        raise ConfigError(
            f"No saved session at {auth_path}; run stickerwatch-login first."
        )
    interactive_login(auth_path)
    return auth_path


def interactive_login(
    path: Optional[Path] = None,
    *,
    prompt: Callable[[str], str] = input,
) -> Dict[str, Any]:
    """Open a headed browser on the marketplace and save the session after ENTER."""

    auth_path = Path(path or config.AUTH_FILE)
    log_line(f"[SESSION] Opening {config.BASE_URL}; log in, then press ENTER here")
    with sync_playwright() as pw:
        browser = pw.chromium.launch(headless=False, args=list(config.BROWSER_ARGS))
        try:
            context = browser.new_context(
                user_agent=config.COMMON_HEADERS["User-Agent"],
                viewport=dict(config.VIEWPORT),
            )
            page = context.new_page()
            page.goto(config.BASE_URL, timeout=config.NAV_TIMEOUT_SECONDS * 1000)
            prompt("Press ENTER once you are logged in... ")
            state = context.storage_state()
        finally:
            browser.close()

    save_json_file(auth_path, state)
    cookies = len(state.get("cookies", []))
    log_line(f"[SESSION] Saved session to {auth_path} ({cookies} cookies)")
    if cookies == 0:
        log_line("[SESSION][WARN] No cookies captured; the login may have failed")
    _scraper_event("state", phase="session", kind="saved", path=str(auth_path), cookies=cookies)
    return state


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Log in to the marketplace and save the session.")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help=f"Where to write the storage state (default: {config.AUTH_FILE}).",
    )
    args = parser.parse_args(list(argv) if argv is not None else None)
    interactive_login(args.output)
    return 0


__all__ = ["load_session", "ensure_session", "interactive_login", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
