"""Playwright browser ownership and page-level helpers."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional, Protocol

from playwright.sync_api import Browser, Page, Playwright, Route, sync_playwright
from playwright.sync_api import Error as PlaywrightError

from .errors import NavigationError
from .models import ExtractionConfig

LOGGER = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]

# Scroll in 100px steps every 100ms until the document bottom is reached.
AUTO_SCROLL_JS = """
async () => {
    await new Promise((resolve) => {
        let totalHeight = 0;
        const distance = 100;
        const timer = setInterval(() => {
            const scrollHeight = document.body.scrollHeight;
            window.scrollBy(0, distance);
            totalHeight += distance;
            if (totalHeight >= scrollHeight) {
                clearInterval(timer);
                resolve(true);
            }
        }, 100);
    });
}
"""


class PageProvider(Protocol):
    """Hands out rendering pages that are closed when the block exits."""

    def page(self, block_resource_types: Iterable[str] = ()) -> Iterator[Page]: ...


def setup_resource_blocking(page: Page, resource_types: Iterable[str]) -> None:
    """Abort every request whose resource type is in ``resource_types``."""
    blocked = frozenset(resource_types)

    def _handle(route: Route) -> None:
        if route.request.resource_type in blocked:
            LOGGER.debug("Blocking %s request %s", route.request.resource_type, route.request.url)
            route.abort()
        else:
            route.continue_()

    page.route("**/*", _handle)


class BrowserSession:
    """Process-owned Chromium instance, launched on first use.

    Create one per worker process and pass it to the worker; call ``close()``
    (or use it as a context manager) after the last task has finished.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        slow_mo: int = 0,
        user_agent: str = USER_AGENT,
    ) -> None:
        self.headless = headless
        self.slow_mo = slow_mo
        self.user_agent = user_agent
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    def _ensure_browser(self) -> Browser:
        if self._browser is None:
            try:
                self._playwright = sync_playwright().start()
                self._browser = self._playwright.chromium.launch(
                    headless=self.headless,
                    slow_mo=self.slow_mo,
                    args=LAUNCH_ARGS,
                )
            except PlaywrightError as exc:
                self.close()
                raise NavigationError(f"Failed to launch browser: {exc}") from exc
            LOGGER.info("Browser initialized (headless=%s)", self.headless)
        return self._browser

    @contextmanager
    def page(self, block_resource_types: Iterable[str] = ()) -> Iterator[Page]:
        """Open a fresh page; it is closed on every exit path."""
        browser = self._ensure_browser()
        try:
            page = browser.new_page(user_agent=self.user_agent)
        except PlaywrightError as exc:
            raise NavigationError(f"Failed to open page: {exc}") from exc
        try:
            if block_resource_types:
                setup_resource_blocking(page, block_resource_types)
            yield page
        finally:
            LOGGER.debug("Closing browser page")
            try:
                page.close()
            except PlaywrightError as exc:
                LOGGER.warning("Failed to close page: %s", exc)

    def close(self) -> None:
        if self._browser is not None:
            try:
                self._browser.close()
            except PlaywrightError as exc:
                LOGGER.warning("Failed to close browser: %s", exc)
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None
            LOGGER.info("Browser closed")

    def __enter__(self) -> BrowserSession:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def navigate(page: Page, url: str, config: ExtractionConfig) -> None:
    """Load ``url`` within the configured navigation timeout.

    Raises
    ------
    NavigationError
        On navigation failure or timeout
    """
    try:
        response = page.goto(
            url,
            wait_until=config.wait_until,
            timeout=config.navigation_timeout_ms,
        )
    except PlaywrightError as exc:
        raise NavigationError(f"Navigation to {url} failed: {exc}") from exc

    if response is not None and response.status >= 400:
        LOGGER.warning("Page %s answered HTTP %d", url, response.status)


def wait_for_content(page: Page, config: ExtractionConfig) -> None:
    if not config.wait_selector:
        return
    try:
        page.wait_for_selector(config.wait_selector, timeout=config.selector_timeout_ms)
    except PlaywrightError as exc:
        raise NavigationError(
            f"Selector {config.wait_selector!r} did not appear: {exc}"
        ) from exc


def auto_scroll(page: Page) -> None:
    LOGGER.debug("Starting auto-scroll")
    try:
        page.evaluate(AUTO_SCROLL_JS)
    except PlaywrightError as exc:
        raise NavigationError(f"Auto-scroll failed: {exc}") from exc


def has_next_page(page: Page, selector: str) -> bool:
    """Whether the next-page control exists and is not disabled."""
    try:
        element = page.query_selector(selector)
        if element is None:
            return False
        if element.get_attribute("disabled") is not None:
            return False
        if (element.get_attribute("aria-disabled") or "").lower() == "true":
            return False
        classes = (element.get_attribute("class") or "").split()
        return "disabled" not in classes
    except PlaywrightError as exc:
        raise NavigationError(f"Next-page check failed: {exc}") from exc
