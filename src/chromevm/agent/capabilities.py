"""The fixed capability set exposed to user scripts.

Scripts never see the Playwright ``Page`` itself, only these wrappers.
DOM-level helpers run small fixed JavaScript routines in the page, so a
script's behaviour does not depend on which Playwright features exist.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from chromevm.errors import ScriptError, SelectorTimeout

script_logger = logging.getLogger("chromevm.agent.script")

DEFAULT_SELECTOR_TIMEOUT_MS = 30000

_CLICK_JS = """(selector) => {
    const element = document.querySelector(selector);
    if (!element) return false;
    element.click();
    return true;
}"""

_TYPE_JS = """([selector, text]) => {
    const element = document.querySelector(selector);
    if (!element) return false;
    element.focus();
    element.value = text;
    element.dispatchEvent(new Event('input', { bubbles: true }));
    return true;
}"""

# Resolves true as soon as the selector matches, false once the timeout
# elapses. The observer is always disconnected before the promise settles.
_WAIT_FOR_SELECTOR_JS = """([selector, timeout]) => new Promise((resolve) => {
    if (document.querySelector(selector)) {
        resolve(true);
        return;
    }
    let timer = null;
    const observer = new MutationObserver(() => {
        if (document.querySelector(selector)) {
            observer.disconnect();
            clearTimeout(timer);
            resolve(true);
        }
    });
    observer.observe(document.body || document.documentElement, {
        childList: true,
        subtree: true,
    });
    timer = setTimeout(() => {
        observer.disconnect();
        resolve(false);
    }, timeout);
})"""

_TEXT_CONTENT_JS = """(selector) => {
    const element = document.querySelector(selector);
    return element ? element.textContent : null;
}"""


class PageCapabilities:
    """The ``page`` object a script receives."""

    def __init__(self, page: Page, navigation_timeout: float = 30.0):
        self._page = page
        self._navigation_timeout_ms = navigation_timeout * 1000

    async def goto(self, url: str) -> str:
        """Navigate and wait for the load event. Returns the final URL."""
        if not isinstance(url, str) or not url:
            raise ScriptError("goto() needs a non-empty URL string")
        try:
            await self._page.goto(url, wait_until="load", timeout=self._navigation_timeout_ms)
        except PlaywrightError as e:
            raise ScriptError(f"Navigation to {url} failed: {e.message}") from e
        return self._page.url

    async def title(self) -> str:
        return await self._page.title()

    async def url(self) -> str:
        return self._page.url

    async def content(self) -> str:
        return await self._page.content()

    async def click(self, selector: str) -> bool:
        """Click the first match. Returns False when nothing matched."""
        return bool(await self._page.evaluate(_CLICK_JS, selector))

    async def type(self, selector: str, text: str) -> bool:
        """Set an input's value and fire an ``input`` event."""
        return bool(await self._page.evaluate(_TYPE_JS, [selector, str(text)]))

    async def text(self, selector: str) -> str | None:
        return await self._page.evaluate(_TEXT_CONTENT_JS, selector)

    async def wait_for_selector(
        self, selector: str, timeout_ms: int = DEFAULT_SELECTOR_TIMEOUT_MS
    ) -> bool:
        """Wait until ``selector`` matches.

        Raises:
            SelectorTimeout: Nothing matched within ``timeout_ms``.
        """
        found = await self._page.evaluate(_WAIT_FOR_SELECTOR_JS, [selector, int(timeout_ms)])
        if not found:
            raise SelectorTimeout(selector, int(timeout_ms))
        return True

    async def screenshot(self) -> str:
        """Full-page PNG, base64-encoded."""
        data = await self._page.screenshot(full_page=True, type="png")
        return base64.b64encode(data).decode("ascii")


class ScriptConsole:
    """The ``console`` object a script receives; lines go to the agent log."""

    def __init__(self, job_id: str):
        self._job_id = job_id

    def _emit(self, level: int, args: tuple[Any, ...]) -> None:
        line = " ".join(str(a) for a in args)
        script_logger.log(level, "[job %s] %s", self._job_id, line)

    def log(self, *args: Any) -> None:
        self._emit(logging.INFO, args)

    def warn(self, *args: Any) -> None:
        self._emit(logging.WARNING, args)

    def error(self, *args: Any) -> None:
        self._emit(logging.ERROR, args)


async def sleep(ms: float) -> None:
    """``await sleep(ms)`` for scripts; the only timer they get."""
    await asyncio.sleep(max(float(ms), 0.0) / 1000)
