"""Browser boundary for the scraper.

The executor only talks to a :class:`PageSession`: navigate, read an
element's text, probe visibility and classify the terminal banner. The
Playwright implementation below is a thin adapter; tests substitute fakes.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

from playwright.sync_api import (
    Browser,
    BrowserContext,
    Error as PWError,
    Page,
    Playwright,
    TimeoutError as PWTimeout,
    sync_playwright,
)

from . import config
from .logging_utils import _scraper_event
from .selectors_marketplace import MARKETPLACE_SELECTORS, MarketplaceSelectors
from .utils import log_line


class Banner(str, Enum):
    NONE = "none"
    NO_RESULTS = "no_results"
    RATE_LIMITED = "rate_limited"


class NavigationError(Exception):
    """Navigation failed or timed out."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class PageSession(Protocol):
    def fetch_page(self, url: str) -> Any: ...

    def text_of(self, handle: Any, selector: str, timeout_ms: int) -> Optional[str]: ...

    def is_visible(self, handle: Any, selector: str) -> bool: ...

    def detect_terminal_banner(self, handle: Any) -> Banner: ...

    def restart(self) -> None: ...

    def close(self) -> None: ...


def is_target_closed_error(exc: Exception) -> bool:
    """Return ``True`` if *exc* indicates the Playwright target is gone."""

    message = str(exc)
    return any(
        marker in message
        for marker in (
            "Target closed",
            "Target crashed",
            "has been closed",
            "Execution context was destroyed",
        )
    )


class PlaywrightSession:
    """One Chromium tab with the saved marketplace login, driven synchronously."""

    def __init__(
        self,
        auth_file: Optional[Path] = None,
        *,
        headless: Optional[bool] = None,
        selectors: MarketplaceSelectors = MARKETPLACE_SELECTORS,
    ) -> None:
        self.auth_file = Path(auth_file or config.AUTH_FILE)
        self.headless = config.HEADLESS if headless is None else headless
        self.selectors = selectors
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "PlaywrightSession":
        if self._pw is None:
            self._pw = sync_playwright().start()
        self._launch()
        return self

    def _launch(self) -> None:
        assert self._pw is not None
        self._browser = self._pw.chromium.launch(
            headless=self.headless,
            args=list(config.BROWSER_ARGS),
        )
        storage_state = str(self.auth_file) if self.auth_file.exists() else None
        if storage_state is None:
            log_line(f"[BROWSER] {self.auth_file} not found; continuing without a saved session")
        else:
            log_line(f"[BROWSER] Loading session from {self.auth_file}")
        self._context = self._browser.new_context(
            storage_state=storage_state,
            user_agent=config.COMMON_HEADERS["User-Agent"],
            viewport=dict(config.VIEWPORT),
        )
        self._page = self._context.new_page()
        _scraper_event("browser", kind="launched", headless=self.headless)

    def _shutdown_browser(self) -> None:
        for closer in (self._context, self._browser):
            if closer is None:
                continue
            try:
                closer.close()
            except PWError as exc:
                log_line(f"[BROWSER][WARN] Error while closing browser: {exc}")
        self._page = None
        self._context = None
        self._browser = None

    def restart(self) -> None:
        """Close the current browser and open a fresh one with the same session."""

        log_line("[BROWSER] Restarting session...")
        self._shutdown_browser()
        if self._pw is None:
            self._pw = sync_playwright().start()
        self._launch()

    def close(self) -> None:
        self._shutdown_browser()
        if self._pw is not None:
            try:
                self._pw.stop()
            except PWError as exc:
                log_line(f"[BROWSER][WARN] Error while stopping Playwright: {exc}")
            self._pw = None

    def __enter__(self) -> "PlaywrightSession":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    # ------------------------------------------------------------------
    # Page primitives
    # ------------------------------------------------------------------

    def fetch_page(self, url: str) -> Page:
        if self._page is None or self._page.is_closed():
            self.restart()
        assert self._page is not None
        try:
            self._page.goto(url, timeout=config.NAV_TIMEOUT_SECONDS * 1000)
            if config.PAGE_SETTLE_MS > 0:
                self._page.wait_for_timeout(config.PAGE_SETTLE_MS)
        except PWTimeout as exc:
            raise NavigationError(f"goto timed out: {exc}", timed_out=True) from exc
        except PWError as exc:
            if is_target_closed_error(exc):
                self._page = None
            raise NavigationError(f"goto failed: {exc}") from exc
        return self._page

    def text_of(self, handle: Page, selector: str, timeout_ms: int) -> Optional[str]:
        try:
            return handle.locator(selector).first.text_content(timeout=timeout_ms)
        except PWTimeout:
            return None

    def is_visible(self, handle: Page, selector: str) -> bool:
        """Check the settled page without waiting; banners are usually absent."""

        try:
            return handle.locator(selector).first.is_visible()
        except PWError:
            return False

    def detect_terminal_banner(self, handle: Page) -> Banner:
        for selector in self.selectors.rate_limit_selectors:
            if self.is_visible(handle, selector):
                log_line(f"[BROWSER] Detected rate limit message: {selector!r}")
                return Banner.RATE_LIMITED
        for selector in self.selectors.no_results_selectors:
            if self.is_visible(handle, selector):
                return Banner.NO_RESULTS
        return Banner.NONE


__all__ = [
    "Banner",
    "NavigationError",
    "PageSession",
    "PlaywrightSession",
    "is_target_closed_error",
]
