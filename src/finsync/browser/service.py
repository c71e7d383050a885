"""
Browser service — one Playwright persistent context shared by portal connectors.

The context uses a persistent profile directory, so portal cookies survive
between runs and a warm profile can skip the login form entirely. Each
connector id owns exactly one page; the connector closes it on disconnect or
after a fatal error.
"""

from __future__ import annotations

import asyncio
import logging
import random
from pathlib import Path

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from finsync.browser.selectors import SelectorChain
from finsync.config import BrowserConfig
from finsync.errors import ConnectionFailedError

logger = logging.getLogger("finsync.browser")

COOKIE_CONSENT = SelectorChain(
    '[data-testid="cookie-accept"]',
    '[id*="cookie"] button[id*="accept"]',
    '[class*="cookie"] button[class*="accept"]',
    'button[id*="accept-cookies"]',
    'button[class*="accept-cookies"]',
    "#onetrust-accept-btn-handler",
    ".cc-accept",
    '[aria-label*="accept cookies"]',
    '[aria-label*="akzeptieren"]',
    'button:has-text("Alle akzeptieren")',
    'button:has-text("Accept all")',
    'button:has-text("Akzeptieren")',
    'button:has-text("Accept")',
)

VIEWPORT = {"width": 1366, "height": 768}


class BrowserService:
    """Owns the Playwright runtime, the persistent context and one page per connector.

    Usage::

        service = BrowserService(config.browser)
        page = await service.new_page("paypal-main")
        await service.navigate(page, "https://www.paypal.com/signin")
        ...
        await service.close()
    """

    def __init__(self, settings: BrowserConfig | None = None) -> None:
        self.settings = settings or BrowserConfig()
        self._playwright: Playwright | None = None
        self._context: BrowserContext | None = None
        self._pages: dict[str, Page] = {}
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._context is not None

    async def start(self) -> BrowserContext:
        """Launch the browser if it is not running yet."""
        async with self._lock:
            if self._context is not None:
                return self._context

            profile = Path(self.settings.user_data_dir).expanduser()
            profile.mkdir(parents=True, exist_ok=True)
            logger.info("Launching browser (headless=%s, profile=%s)", self.settings.headless, profile)

            self._playwright = await async_playwright().start()
            try:
                self._context = await self._playwright.chromium.launch_persistent_context(
                    str(profile),
                    headless=self.settings.headless,
                    slow_mo=self.settings.slow_mo_ms,
                    locale=self.settings.locale,
                    viewport=VIEWPORT,
                )
            except PlaywrightError as e:
                await self._playwright.stop()
                self._playwright = None
                raise ConnectionFailedError(f"Could not launch browser: {e}") from e

            self._context.on("close", lambda _: self._forget_context())
            return self._context

    def _forget_context(self) -> None:
        logger.info("Browser context closed")
        self._context = None
        self._pages.clear()

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def new_page(self, connector_id: str) -> Page:
        """Return the page bound to ``connector_id``, creating it if needed."""
        page = self._pages.get(connector_id)
        if page is not None and not page.is_closed():
            return page

        context = await self.start()
        page = await context.new_page()
        page.set_default_timeout(self.settings.default_timeout_ms)
        self._pages[connector_id] = page
        logger.debug("Opened browser page for %s", connector_id)
        return page

    def get_page(self, connector_id: str) -> Page | None:
        return self._pages.get(connector_id)

    async def close_page(self, connector_id: str) -> None:
        page = self._pages.pop(connector_id, None)
        if page is None or page.is_closed():
            return
        try:
            await page.close()
        except PlaywrightError as e:
            logger.warning("Error closing page for %s: %s", connector_id, e)
        logger.debug("Closed browser page for %s", connector_id)

    async def close(self) -> None:
        """Close every page, the context and the Playwright runtime."""
        for connector_id in list(self._pages):
            await self.close_page(connector_id)
        if self._context is not None:
            try:
                await self._context.close()
            except PlaywrightError as e:
                logger.warning("Error closing browser context: %s", e)
            self._context = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    # ------------------------------------------------------------------
    # Page helpers
    # ------------------------------------------------------------------

    async def navigate(self, page: Page, url: str, *, wait_until: str = "domcontentloaded") -> None:
        logger.debug("Navigating to %s", url)
        try:
            await page.goto(url, wait_until=wait_until)
        except PlaywrightError as e:
            raise ConnectionFailedError(f"Could not load {url}: {e}") from e

    async def dismiss_cookies(self, page: Page) -> bool:
        """Accept a cookie banner if one is showing. Returns True if one was clicked."""
        button = await COOKIE_CONSENT.first(page)
        if button is None:
            return False
        try:
            if not await button.is_visible():
                return False
            await button.click()
        except PlaywrightError as e:
            logger.debug("Cookie banner click failed: %s", e)
            return False
        logger.info("Cookie consent accepted")
        await self.random_delay()
        return True

    async def type_like_human(self, page: Page, selectors: SelectorChain, text: str) -> bool:
        """Type into the first matching field, one key at a time."""
        field = await selectors.first(page)
        if field is None:
            return False
        await field.click()
        await field.fill("")
        for char in text:
            await field.type(char, delay=random.randint(50, 150))
        return True

    async def click(self, page: Page, selectors: SelectorChain) -> bool:
        element = await selectors.first(page)
        if element is None:
            return False
        await self.random_delay(100, 300)
        await element.click()
        return True

    async def random_delay(self, min_ms: int | None = None, max_ms: int | None = None) -> None:
        low = self.settings.min_delay_ms if min_ms is None else min_ms
        high = self.settings.max_delay_ms if max_ms is None else max_ms
        await asyncio.sleep(random.randint(low, max(low, high)) / 1000)

    async def wait_for_settle(self, page: Page) -> None:
        """Wait for the page to finish loading after a click."""
        try:
            await page.wait_for_load_state("domcontentloaded")
        except PlaywrightError as e:
            logger.debug("Page did not settle: %s", e)
        await self.random_delay()
