"""Headless Chromium rendering for comparison pages behind bot checks.

Some comparison sites build their price tables client-side or answer plain
HTTP clients with a challenge page. ``HeadlessBrowser`` renders such pages
with Playwright and hands the resulting HTML to the normal parsers.
"""

import asyncio
import logging
import random
from contextlib import AsyncExitStack
from typing import Any

from playwright.async_api import BrowserContext, Route, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..utils import BROWSER_USER_AGENT

logger = logging.getLogger(__name__)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-extensions",
    "--disable-blink-features=AutomationControlled",
]
SKIPPED_RESOURCES = frozenset({"image", "media", "font"})
TRACKER_HOSTS = (
    "google-analytics",
    "googletagmanager",
    "facebook",
    "doubleclick",
    "adsystem",
    "hotjar",
)
HIDE_WEBDRIVER_JS = "Object.defineProperty(navigator, 'webdriver', { get: () => undefined });"
SELECTOR_TIMEOUT_MS = 15000
NAVIGATION_JITTER = (0.1, 0.5)


async def _skip_heavy_requests(route: Route) -> None:
    request = route.request
    if request.resource_type in SKIPPED_RESOURCES or any(host in request.url for host in TRACKER_HOSTS):
        await route.abort()
    else:
        await route.continue_()


class HeadlessBrowser:
    """One Chromium instance for the duration of an ``async with`` block.

    Attributes:
        timeout_ms: Navigation timeout in milliseconds.
    """

    def __init__(self, timeout_seconds: float = 90) -> None:
        self.timeout_ms = int(timeout_seconds * 1000)
        self._stack: AsyncExitStack | None = None
        self._context: BrowserContext | None = None

    async def __aenter__(self) -> "HeadlessBrowser":
        stack = AsyncExitStack()
        try:
            playwright = await stack.enter_async_context(async_playwright())
            browser = await playwright.chromium.launch(headless=True, args=CHROMIUM_ARGS)
            stack.push_async_callback(browser.close)
            self._context = await browser.new_context(
                user_agent=BROWSER_USER_AGENT,
                viewport={"width": 1366, "height": 768},
                locale="en-AU",
                timezone_id="Australia/Sydney",
                extra_http_headers={"Accept-Language": "en-AU,en;q=0.9"},
            )
            stack.push_async_callback(self._context.close)
            await self._context.route("**/*", _skip_heavy_requests)
        except Exception as e:
            logger.error(f"Could not launch headless Chromium: {e}")
            await stack.aclose()
            raise

        self._stack = stack
        logger.info("Headless browser ready")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        stack, self._stack, self._context = self._stack, None, None
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as e:
            logger.warning(f"Headless browser did not shut down cleanly: {e}")

    async def render(self, url: str, wait_for_selector: str | None = None) -> str:
        """Load a page and return the rendered HTML.

        Args:
            url: Page to load.
            wait_for_selector: Optional selector to wait for before reading
                the DOM. A timeout here is not fatal, the current DOM is
                returned.

        Returns:
            Rendered page HTML.
        """
        if self._context is None:
            raise RuntimeError("HeadlessBrowser must be used inside 'async with'")

        page = await self._context.new_page()
        try:
            await page.add_init_script(HIDE_WEBDRIVER_JS)
            await asyncio.sleep(random.uniform(*NAVIGATION_JITTER))
            await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
            if wait_for_selector:
                try:
                    await page.wait_for_selector(wait_for_selector, timeout=SELECTOR_TIMEOUT_MS)
                except PlaywrightTimeoutError:
                    logger.debug(f"{wait_for_selector} did not appear on {url}, using current DOM")
            return await page.content()
        finally:
            await page.close()
