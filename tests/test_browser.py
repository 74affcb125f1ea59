from pathlib import Path
from typing import Any, Set

import pytest

from stickerwatch.scraper.browser import Banner, PlaywrightSession, is_target_closed_error
from stickerwatch.scraper.selectors_marketplace import MARKETPLACE_SELECTORS


class _VisibilitySetSession(PlaywrightSession):
    """Playwright session whose visibility checks are answered from a set."""

    def __init__(self, visible: Set[str]) -> None:
        super().__init__(Path("missing-auth.json"), headless=True)
        self.visible = visible
        self.checked: list[str] = []

    def is_visible(self, handle: Any, selector: str) -> bool:
        self.checked.append(selector)
        return selector in self.visible


def test_rate_limit_banner_checked_before_no_results() -> None:
    rate_limit = MARKETPLACE_SELECTORS.rate_limit_selectors[1]
    no_results = MARKETPLACE_SELECTORS.no_results_selectors[0]
    session = _VisibilitySetSession({rate_limit, no_results})

    assert session.detect_terminal_banner(object()) is Banner.RATE_LIMITED
    assert no_results not in session.checked


def test_no_results_banner() -> None:
    session = _VisibilitySetSession({MARKETPLACE_SELECTORS.no_results_selectors[-1]})

    assert session.detect_terminal_banner(object()) is Banner.NO_RESULTS


def test_no_banner() -> None:
    session = _VisibilitySetSession(set())

    assert session.detect_terminal_banner(object()) is Banner.NONE
    assert len(session.checked) == len(MARKETPLACE_SELECTORS.rate_limit_selectors) + len(
        MARKETPLACE_SELECTORS.no_results_selectors
    )


@pytest.mark.parametrize(
    "message, expected",
    [
        ("Target closed", True),
        ("Page.goto: Target page, context or browser has been closed", True),
        ("Execution context was destroyed, most likely because of a navigation", True),
        ("net::ERR_NAME_NOT_RESOLVED", False),
    ],
)
def test_is_target_closed_error(message: str, expected: bool) -> None:
    assert is_target_closed_error(RuntimeError(message)) is expected


class _FakeLocator:
    def __init__(self, page: "_FakePage", selector: str) -> None:
        self.page = page
        self.selector = selector

    @property
    def first(self) -> "_FakeLocator":
        return self

    def is_visible(self) -> bool:
        self.page.checked.append(self.selector)
        return self.selector in self.page.visible

    def wait_for(self, **kwargs: Any) -> None:
        raise AssertionError("banner checks must not wait")


class _FakePage:
    def __init__(self, visible: Set[str]) -> None:
        self.visible = visible
        self.checked: list[str] = []

    def locator(self, selector: str) -> _FakeLocator:
        return _FakeLocator(self, selector)


def test_banner_checks_do_not_wait_on_the_page() -> None:
    session = PlaywrightSession(Path("missing-auth.json"), headless=True)
    page = _FakePage(set())

    assert session.detect_terminal_banner(page) is Banner.NONE
    assert len(page.checked) == len(MARKETPLACE_SELECTORS.rate_limit_selectors) + len(
        MARKETPLACE_SELECTORS.no_results_selectors
    )

    page.visible.add(MARKETPLACE_SELECTORS.no_results_selectors[0])
    assert session.detect_terminal_banner(page) is Banner.NO_RESULTS
