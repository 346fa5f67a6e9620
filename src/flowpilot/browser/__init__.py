"""Browser abstraction exports."""

from flowpilot.browser.playwright_page import PlaywrightPage
from flowpilot.browser.protocol import BrowserPage
from flowpilot.browser.session import BrowserSession, ToolOutcome
from flowpilot.browser.viewports import (
    VIEWPORTS,
    Viewport,
    get_viewport_by_name,
    resolve_viewport,
)

__all__ = [
    "BrowserPage",
    "BrowserSession",
    "PlaywrightPage",
    "ToolOutcome",
    "VIEWPORTS",
    "Viewport",
    "get_viewport_by_name",
    "resolve_viewport",
]
