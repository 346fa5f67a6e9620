"""Tool-style browser abstraction shared by the flow and scenario executors."""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import orjson

from flowpilot.browser.protocol import BrowserPage
from flowpilot.browser.viewports import Viewport
from flowpilot.config.models import ExecutorConfig
from flowpilot.config.token_budget import TokenBudgeter
from flowpilot.errors import ToolExecutionError

LOGGER = logging.getLogger(__name__)

CLICK_HISTORY = 5
CLICK_REPEAT_COUNT = 3
CLICK_TOLERANCE_PX = 30
SELECTOR_WAIT_MS = 5_000
MAX_WAIT_MS = 10_000
CONSOLE_TAIL_LINES = 50
SCROLL_DIRECTIONS = {
    "up": (0, -1),
    "down": (0, 1),
    "left": (-1, 0),
    "right": (1, 0),
}

SCREENSHOT_TIMED_OUT = (
    "Screenshot timed out - page may have complex rendering. "
    "Try again or continue without it."
)
CLICK_REPEAT_WARNING = (
    " WARNING: You have clicked near these coordinates 3+ times with no visible "
    "change. The element may not be interactive, or the page may be in an "
    "animation or transition state. Wait a few seconds, inspect state with "
    "evaluate_js, try different coordinates, or move on to other areas."
)

VISIBLE_TEXT_SCRIPT = "document.body ? document.body.innerText.slice(0, 3000) : ''"

GAME_OBJECTS_SCRIPT = """(() => {
  const canvas = document.querySelector('canvas');
  const rect = canvas ? canvas.getBoundingClientRect() : {left: 0, top: 0, width: 0, height: 0};
  const objects = [];
  if (window.game && window.game.scene) {
    const sx = rect.width / (window.game.scale ? window.game.scale.width : canvas.width);
    const sy = rect.height / (window.game.scale ? window.game.scale.height : canvas.height);
    for (const scene of window.game.scene.scenes.filter(s => s.sys.settings.status >= 5)) {
      scene.children.list.forEach(obj => {
        if (!obj.active || !obj.visible) return;
        const interactive = !!(obj.input && obj.input.enabled);
        if (!interactive && !['Text', 'Sprite', 'Image'].includes(obj.type)) return;
        objects.push({
          scene: scene.sys.settings.key,
          name: obj.name || obj.type,
          type: obj.type,
          interactive: interactive,
          text: obj.text || undefined,
          x: Math.round(obj.x * sx + rect.left),
          y: Math.round(obj.y * sy + rect.top),
        });
      });
    }
    return JSON.stringify({engine: 'phaser', objects: objects.slice(0, 60)});
  }
  if (window.__PIXI_APP__ || window.app && window.app.stage) {
    const app = window.__PIXI_APP__ || window.app;
    const walk = (node) => {
      if (!node.visible) return;
      if (node.interactive || node.eventMode === 'static') {
        const b = node.getBounds();
        objects.push({
          name: node.name || node.constructor.name,
          interactive: true,
          x: Math.round(b.x + b.width / 2 + rect.left),
          y: Math.round(b.y + b.height / 2 + rect.top),
        });
      }
      (node.children || []).forEach(walk);
    };
    walk(app.stage);
    return JSON.stringify({engine: 'pixi', objects: objects.slice(0, 60)});
  }
  return JSON.stringify({engine: null, objects: []});
})()"""


@dataclass(frozen=True)
class ToolOutcome:
    """Text result of one tool call plus an optional base64 JPEG."""

    text: str
    screenshot: str | None = None


class BrowserSession:
    """Wraps one ``BrowserPage`` with timeouts, settle delays and tool dispatch."""

    def __init__(
        self,
        page: BrowserPage,
        viewport: Viewport,
        *,
        settings: ExecutorConfig | None = None,
        budgeter: TokenBudgeter | None = None,
        result_token_budget: int = 2000,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.page = page
        self.viewport = viewport
        self.settings = settings or ExecutorConfig()
        self._budgeter = budgeter
        self._result_token_budget = result_token_budget
        self._sleep = sleep_fn
        self._recent_clicks: list[tuple[int, int]] = []
        self._handlers: dict[str, Callable[[Mapping[str, Any]], Awaitable[ToolOutcome]]] = {
            "screenshot": self._tool_screenshot,
            "click": self._tool_click,
            "type_text": self._tool_type_text,
            "scroll": self._tool_scroll,
            "evaluate_js": self._tool_evaluate_js,
            "wait": self._tool_wait,
            "get_page_info": self._tool_page_info,
            "console_logs": self._tool_console_logs,
            "navigate": self._tool_navigate,
            "press_key": self._tool_press_key,
            "inspect_game_objects": self._tool_inspect_game_objects,
        }

    @property
    def tool_names(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    async def navigate(self, url: str) -> None:
        await self.page.goto(url)

    async def eval_script(self, script: str) -> str:
        result = await self.page.evaluate(script)
        if result is None:
            return ""
        if isinstance(result, str):
            return result
        return orjson.dumps(result).decode("utf-8")

    async def press_key(self, key: str) -> None:
        await self.page.press_key(key)

    async def settle(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)

    async def capture_screenshot(self, timeout: float | None = None) -> str:
        """Capture once within ``timeout``; returns base64 or raises."""
        limit = timeout if timeout is not None else self.settings.screenshot_timeout_seconds
        try:
            raw = await asyncio.wait_for(self.page.screenshot(), timeout=limit)
        except asyncio.TimeoutError as exc:
            raise ToolExecutionError(f"screenshot timed out after {limit:g}s") from exc
        if not raw:
            raise ToolExecutionError("screenshot returned no data")
        return base64.b64encode(raw).decode("ascii")

    async def try_screenshot(self, timeout: float | None = None) -> str | None:
        """Capture with one retry; ``None`` when both attempts stall or fail."""
        for attempt in (1, 2):
            try:
                return await self.capture_screenshot(timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                LOGGER.debug("Screenshot attempt %d failed: %s", attempt, exc)
        return None

    async def execute(self, tool_name: str, args: Mapping[str, Any] | None = None) -> ToolOutcome:
        """Run one named tool; failures raise ``ToolExecutionError``."""
        handler = self._handlers.get(tool_name)
        if handler is None:
            raise ToolExecutionError(f"unknown tool: {tool_name}")
        try:
            return await handler(args or {})
        except (ToolExecutionError, asyncio.CancelledError):
            raise
        except Exception as exc:  # noqa: BLE001
            raise ToolExecutionError(f"{tool_name}: {exc}") from exc

    async def close(self) -> None:
        await self.page.close()

    async def _after_action(self) -> str | None:
        await self.settle(self.settings.action_delay_seconds)
        return await self.try_screenshot()

    async def _tool_screenshot(self, args: Mapping[str, Any]) -> ToolOutcome:
        shot = await self.try_screenshot(self.settings.screenshot_tool_timeout_seconds)
        if shot is None:
            return ToolOutcome(SCREENSHOT_TIMED_OUT)
        return ToolOutcome("Screenshot captured successfully.", shot)

    async def _tool_click(self, args: Mapping[str, Any]) -> ToolOutcome:
        x = _int_arg(args, "x", "click")
        y = _int_arg(args, "y", "click")
        await self.page.click(x, y)
        shot = await self._after_action()
        return ToolOutcome(f"Clicked at ({x}, {y})." + self._click_warning(x, y), shot)

    def _click_warning(self, x: int, y: int) -> str:
        self._recent_clicks.append((x, y))
        del self._recent_clicks[:-CLICK_HISTORY]
        if len(self._recent_clicks) < CLICK_REPEAT_COUNT:
            return ""
        *earlier, (last_x, last_y) = self._recent_clicks[-CLICK_REPEAT_COUNT:]
        for prev_x, prev_y in earlier:
            if abs(prev_x - last_x) >= CLICK_TOLERANCE_PX or abs(prev_y - last_y) >= CLICK_TOLERANCE_PX:
                return ""
        return CLICK_REPEAT_WARNING

    async def _tool_type_text(self, args: Mapping[str, Any]) -> ToolOutcome:
        text = str(args.get("text", ""))
        if args.get("x") is not None and args.get("y") is not None:
            await self.page.click(_int_arg(args, "x", "type_text"), _int_arg(args, "y", "type_text"))
            await self.settle(0.1)
        await self.page.type_text(text)
        shot = await self.try_screenshot()
        return ToolOutcome(f'Typed "{text}".', shot)

    async def _tool_scroll(self, args: Mapping[str, Any]) -> ToolOutcome:
        direction = str(args.get("direction", ""))
        unit = SCROLL_DIRECTIONS.get(direction)
        if unit is None:
            raise ToolExecutionError(f'scroll: invalid direction "{direction}"')
        amount = float(args.get("amount") or self.settings.default_scroll_amount)
        await self.page.scroll(unit[0] * amount, unit[1] * amount)
        shot = await self._after_action()
        return ToolOutcome(f"Scrolled {direction} by {amount:.0f} pixels.", shot)

    async def _tool_evaluate_js(self, args: Mapping[str, Any]) -> ToolOutcome:
        expression = str(args.get("expression", ""))
        if not expression:
            raise ToolExecutionError("evaluate_js: expression is required")
        return ToolOutcome(self._truncate(await self.eval_script(expression)))

    async def _tool_wait(self, args: Mapping[str, Any]) -> ToolOutcome:
        selector = str(args.get("selector") or "")
        if selector:
            if await self.page.wait_for_selector(selector, SELECTOR_WAIT_MS):
                return ToolOutcome(f'Selector "{selector}" is now visible.')
            return ToolOutcome(f'Selector "{selector}" not visible after 5s.')
        milliseconds = int(args.get("milliseconds") or 0)
        if milliseconds > 0:
            milliseconds = min(milliseconds, MAX_WAIT_MS)
            await self.settle(milliseconds / 1000)
            return ToolOutcome(f"Waited {milliseconds}ms.")
        return ToolOutcome("No wait parameters specified.")

    async def _tool_page_info(self, args: Mapping[str, Any]) -> ToolOutcome:
        title = await self.page.title()
        text = await self.eval_script(VISIBLE_TEXT_SCRIPT)
        info = f"Title: {title}\nURL: {self.page.url}\n"
        if text:
            info += f"Visible Text:\n{self._truncate(text)}"
        return ToolOutcome(info)

    async def _tool_console_logs(self, args: Mapping[str, Any]) -> ToolOutcome:
        lines = self.page.console_messages()
        if not lines:
            return ToolOutcome("No console messages captured.")
        return ToolOutcome("\n".join(lines[-CONSOLE_TAIL_LINES:]))

    async def _tool_navigate(self, args: Mapping[str, Any]) -> ToolOutcome:
        url = str(args.get("url") or "")
        if not url:
            raise ToolExecutionError("navigate: url is required")
        await self.navigate(url)
        shot = await self.try_screenshot()
        return ToolOutcome(f"Navigated to {url}.", shot)

    async def _tool_press_key(self, args: Mapping[str, Any]) -> ToolOutcome:
        key = str(args.get("key") or "")
        if not key:
            raise ToolExecutionError("press_key: key is required")
        await self.press_key(key)
        shot = await self._after_action()
        return ToolOutcome(f'Pressed key "{key}".', shot)

    async def _tool_inspect_game_objects(self, args: Mapping[str, Any]) -> ToolOutcome:
        return ToolOutcome(self._truncate(await self.eval_script(GAME_OBJECTS_SCRIPT)))

    def _truncate(self, text: str) -> str:
        if self._budgeter is None:
            self._budgeter = TokenBudgeter()
        return self._budgeter.truncate(text, self._result_token_budget)


def _int_arg(args: Mapping[str, Any], key: str, tool: str) -> int:
    try:
        return int(round(float(args[key])))
    except KeyError as exc:
        raise ToolExecutionError(f"{tool}: missing parameter {key}") from exc
    except (TypeError, ValueError) as exc:
        raise ToolExecutionError(f"{tool}: invalid params: {key}={args[key]!r}") from exc
