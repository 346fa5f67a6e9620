"""Playwright-backed implementation of ``BrowserPage``."""

from __future__ import annotations

import logging
from typing import Any

from flowpilot.browser.viewports import Viewport

LOGGER = logging.getLogger(__name__)

NAVIGATION_TIMEOUT_MS = 30_000
CONSOLE_BUFFER_LIMIT = 500


class PlaywrightPage:
    """Chromium page owned by one flow or scenario run."""

    def __init__(self, playwright: Any, browser: Any, context: Any, page: Any) -> None:
        self._playwright = playwright
        self._browser = browser
        self._context = context
        self._page = page
        self._console: list[str] = []
        page.on("console", self._record_console)

    @classmethod
    async def launch(cls, viewport: Viewport, *, headless: bool = True) -> PlaywrightPage:
        from playwright.async_api import async_playwright

        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(headless=headless)
            context = await browser.new_context(
                ignore_https_errors=True,
                viewport={"width": viewport.width, "height": viewport.height},
                device_scale_factor=viewport.device_scale_factor,
                is_mobile=viewport.is_mobile,
                has_touch=viewport.is_mobile,
            )
            page = await context.new_page()
        except Exception:
            await playwright.stop()
            raise
        LOGGER.debug("Launched chromium with viewport %s", viewport.name)
        return cls(playwright, browser, context, page)

    def _record_console(self, message: Any) -> None:
        self._console.append(f"[{message.type}] {message.text}")
        if len(self._console) > CONSOLE_BUFFER_LIMIT:
            del self._console[: len(self._console) - CONSOLE_BUFFER_LIMIT]

    @property
    def url(self) -> str:
        return self._page.url

    async def goto(self, url: str) -> None:
        await self._page.goto(url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)

    async def evaluate(self, script: str) -> Any:
        return await self._page.evaluate(script)

    async def click(self, x: float, y: float) -> None:
        await self._page.mouse.click(x, y)

    async def type_text(self, text: str) -> None:
        await self._page.keyboard.type(text)

    async def press_key(self, key: str) -> None:
        await self._page.keyboard.press(key)

    async def scroll(self, delta_x: float, delta_y: float) -> None:
        await self._page.mouse.wheel(delta_x, delta_y)

    async def screenshot(self) -> bytes:
        return await self._page.screenshot(type="jpeg", quality=70)

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        try:
            await self._page.locator(selector).first.wait_for(
                state="visible", timeout=timeout_ms
            )
        except Exception:  # noqa: BLE001
            return False
        return True

    async def title(self) -> str:
        return await self._page.title()

    def console_messages(self) -> list[str]:
        return list(self._console)

    async def close(self) -> None:
        try:
            await self._context.close()
            await self._browser.close()
        finally:
            await self._playwright.stop()
