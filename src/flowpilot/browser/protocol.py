"""Browser page contract consumed by ``BrowserSession``."""

from __future__ import annotations

from typing import Any, Protocol


class BrowserPage(Protocol):
    """Low-level page operations; one page per active executor."""

    @property
    def url(self) -> str:
        """Current page URL."""

    async def goto(self, url: str) -> None:
        """Navigate and wait for DOM content."""

    async def evaluate(self, script: str) -> Any:
        """Evaluate a JavaScript expression in the page."""

    async def click(self, x: float, y: float) -> None:
        """Mouse click at viewport coordinates."""

    async def type_text(self, text: str) -> None:
        """Type into the focused element."""

    async def press_key(self, key: str) -> None:
        """Press a single keyboard key."""

    async def scroll(self, delta_x: float, delta_y: float) -> None:
        """Scroll the page by a pixel delta."""

    async def screenshot(self) -> bytes:
        """Capture the viewport as JPEG bytes."""

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        """Return True once ``selector`` is visible, False on timeout."""

    async def title(self) -> str:
        """Document title."""

    def console_messages(self) -> list[str]:
        """Console lines captured since the page opened."""

    async def close(self) -> None:
        """Release the page and its browser resources."""
