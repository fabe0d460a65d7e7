"""Browser session owned by the sandbox agent.

Wraps one Playwright Chromium browser with a single page. The session is
an explicit object held by the executor and handed to request handlers;
there is no module-level browser state.
"""

from __future__ import annotations

import asyncio
import logging

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from chromevm.config import AgentConfig
from chromevm.errors import BrowserUnavailable, NavigationFailed

logger = logging.getLogger(__name__)


class BrowserSession:
    """Lazily started Chromium browser with one working page."""

    def __init__(self, config: AgentConfig):
        self.config = config
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._page: Page | None = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    @property
    def browser_version(self) -> str | None:
        return self._browser.version if self._browser is not None else None

    async def ensure(self) -> Page:
        """Return the working page, starting the browser if needed.

        Raises:
            BrowserUnavailable: The browser could not be launched.
        """
        async with self._lock:
            if self.connected and self._page is not None and not self._page.is_closed():
                return self._page
            await self._close_unlocked()
            try:
                await self._start_unlocked()
            except (PlaywrightError, OSError) as e:
                await self._close_unlocked()
                raise BrowserUnavailable(f"Browser failed to start: {e}") from e
            return self._page

    async def _start_unlocked(self) -> None:
        cfg = self.config
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=cfg.headless, args=cfg.browser_args
        )
        context = await self._browser.new_context(
            viewport={"width": cfg.viewport_width, "height": cfg.viewport_height}
        )
        self._page = await context.new_page()
        logger.info("Browser started: Chromium %s", self._browser.version)

    async def _close_unlocked(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.warning("Error closing browser: %s", e)
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except PlaywrightError as e:
                logger.warning("Error stopping Playwright: %s", e)
        self._browser = None
        self._page = None
        self._playwright = None

    async def close(self) -> None:
        async with self._lock:
            was_open = self._browser is not None
            await self._close_unlocked()
        if was_open:
            logger.info("Browser closed")

    async def restart(self) -> Page:
        """Close and relaunch the browser. Safe to call on a closed session."""
        await self.close()
        return await self.ensure()

    async def navigate(self, url: str) -> dict[str, str]:
        page = await self.ensure()
        try:
            await page.goto(
                url,
                wait_until="networkidle",
                timeout=self.config.navigation_timeout * 1000,
            )
        except PlaywrightError as e:
            raise NavigationFailed(f"Navigation to {url} failed: {e.message}") from e
        return {"url": page.url, "title": await page.title()}
