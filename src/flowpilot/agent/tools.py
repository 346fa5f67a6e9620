"""Tool definitions offered to the scenario agent."""

from __future__ import annotations

from typing import Any

from flowpilot.browser.viewports import Viewport
from flowpilot.schemas.agent_models import ToolDefinition

REPORT_RESULT_TOOL = "report_result"


def _schema(properties: dict[str, Any] | None = None, required: list[str] | None = None) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties or {},
        "required": required or [],
    }


def browser_tools(viewport: Viewport) -> list[ToolDefinition]:
    """Browser actions, with coordinate ranges taken from ``viewport``."""
    width, height = viewport.width, viewport.height
    return [
        ToolDefinition(
            name="screenshot",
            description=(
                "Capture a screenshot of the current page state. click, type_text, "
                "scroll and navigate already return screenshots; use this only to "
                "observe the page without interacting."
            ),
            input_schema=_schema(),
        ),
        ToolDefinition(
            name="click",
            description=(
                f"Click at the given pixel coordinates. The viewport is {width}x{height}. "
                "Returns a screenshot of the result."
            ),
            input_schema=_schema(
                {
                    "x": {"type": "integer", "description": f"X coordinate in pixels (0-{width})"},
                    "y": {"type": "integer", "description": f"Y coordinate in pixels (0-{height})"},
                },
                ["x", "y"],
            ),
        ),
        ToolDefinition(
            name="type_text",
            description=(
                "Type text using the keyboard, optionally clicking at coordinates first "
                "to focus an element. Returns a screenshot of the result."
            ),
            input_schema=_schema(
                {
                    "text": {"type": "string", "description": "The text to type"},
                    "x": {"type": "integer", "description": "Optional X coordinate to click first"},
                    "y": {"type": "integer", "description": "Optional Y coordinate to click first"},
                },
                ["text"],
            ),
        ),
        ToolDefinition(
            name="scroll",
            description="Scroll the page in a direction. Returns a screenshot of the result.",
            input_schema=_schema(
                {
                    "direction": {
                        "type": "string",
                        "enum": ["up", "down", "left", "right"],
                        "description": "Direction to scroll",
                    },
                    "amount": {
                        "type": "integer",
                        "description": "Amount to scroll in pixels (default 300)",
                    },
                },
                ["direction"],
            ),
        ),
        ToolDefinition(
            name="evaluate_js",
            description=(
                "Run a JavaScript expression in the page and return the result. Useful "
                "for reading application state or DOM structure."
            ),
            input_schema=_schema(
                {"expression": {"type": "string", "description": "JavaScript expression"}},
                ["expression"],
            ),
        ),
        ToolDefinition(
            name="wait",
            description="Wait for a duration or until a CSS selector becomes visible (up to 5s).",
            input_schema=_schema(
                {
                    "milliseconds": {"type": "integer", "description": "Duration in milliseconds"},
                    "selector": {"type": "string", "description": "CSS selector to wait for"},
                }
            ),
        ),
        ToolDefinition(
            name="get_page_info",
            description="Get the page title, URL and visible text.",
            input_schema=_schema(),
        ),
        ToolDefinition(
            name="console_logs",
            description="Get recent browser console messages (errors, warnings, logs).",
            input_schema=_schema(),
        ),
        ToolDefinition(
            name="navigate",
            description="Navigate to a URL, or reload by passing the current URL.",
            input_schema=_schema(
                {"url": {"type": "string", "description": "The URL to navigate to"}},
                ["url"],
            ),
        ),
        ToolDefinition(
            name="press_key",
            description=(
                "Press a keyboard key such as Enter, Space, Escape, Tab, ArrowUp or a "
                "single character. Returns a screenshot."
            ),
            input_schema=_schema(
                {"key": {"type": "string", "description": "Key to press"}},
                ["key"],
            ),
        ),
        ToolDefinition(
            name="inspect_game_objects",
            description=(
                "List interactive objects from a Phaser or PixiJS scene graph with "
                "their screen coordinates."
            ),
            input_schema=_schema(),
        ),
    ]


def report_result_tool() -> ToolDefinition:
    return ToolDefinition(
        name=REPORT_RESULT_TOOL,
        description=(
            "Report the final result of the current test scenario. Call this when all "
            "steps are executed and verified, or when a step has failed."
        ),
        input_schema=_schema(
            {
                "status": {
                    "type": "string",
                    "enum": ["passed", "failed"],
                    "description": "Whether the scenario passed or failed",
                },
                "reason": {
                    "type": "string",
                    "description": "Why the scenario passed or failed",
                },
                "failedStep": {
                    "type": "integer",
                    "description": "1-based index of the failing step (failed only)",
                },
            },
            ["status", "reason"],
        ),
    )


def scenario_tools(viewport: Viewport) -> list[ToolDefinition]:
    return [*browser_tools(viewport), report_result_tool()]
