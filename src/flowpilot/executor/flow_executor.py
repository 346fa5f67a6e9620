"""Recursive interpreter that runs parsed flows against a browser session."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Sequence

import orjson

from flowpilot.browser.session import BrowserSession
from flowpilot.cancellation import CancellationToken
from flowpilot.config.models import ExecutorConfig
from flowpilot.errors import (
    CommandFailedError,
    RecursionDetectedError,
    ToolExecutionError,
)
from flowpilot.executor import vision
from flowpilot.llm.clients import ModelClient
from flowpilot.resilience.retry import RetryExecutor
from flowpilot.schemas.enums import StepStatus
from flowpilot.schemas.flow_models import (
    Command,
    CommandListValue,
    CommandValue,
    Flow,
    ParametrizedCommand,
    RecordValue,
    ScalarValue,
    describe_command,
)
from flowpilot.schemas.job_models import StepResult

LOGGER = logging.getLogger(__name__)

FLOW_SUFFIXES = (".yaml", ".yml")
NO_OP_COMMANDS = frozenset({"launchApp", "clearState", "stopApp"})
ERASE_SCRIPT = "(() => {{ for (let i = 0; i < {count}; i++) document.execCommand('delete', false); }})()"
CLICK_BY_ID_SCRIPT = (
    "(() => {{ const el = document.getElementById({element_id}); "
    "if (el) {{ el.click(); return 'clicked'; }} return 'not_found'; }})()"
)


@dataclass(frozen=True)
class CommandOutcome:
    """Result of one command: text, optional screenshot and model reply."""

    text: str
    screenshot: str | None = None
    reasoning: str | None = None
    skipped: bool = False


@dataclass
class FlowContext:
    """Scratch state owned by one batch execution."""

    flows: Sequence[Flow]
    work_dir: Path | None = None
    visiting: set[str] = field(default_factory=set)

    def find(self, reference: str) -> Flow | None:
        """Resolve a ``runFlow`` reference by file path or flow name."""
        ref = reference.strip()
        stem = ref
        for suffix in FLOW_SUFFIXES:
            if stem.endswith(suffix):
                stem = stem[: -len(suffix)]
                break
        for flow in self.flows:
            if flow.name == stem or flow.name == ref:
                return flow
            if flow.source is not None and ref in {str(flow.source), flow.source.name}:
                return flow
            if flow.source is not None and self.work_dir is not None:
                if (self.work_dir / ref) == flow.source:
                    return flow
        return None


StepCallback = Callable[[Flow, StepResult], Awaitable[None]]
StartCallback = Callable[[Flow, int, str], Awaitable[None]]


class FlowExecutor:
    """Execute flow commands sequentially, stopping a flow at its first failure."""

    def __init__(
        self,
        session: BrowserSession,
        model: ModelClient | None = None,
        *,
        settings: ExecutorConfig | None = None,
        retry: RetryExecutor | None = None,
        cancel: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session = session
        self.model = model
        self.settings = settings or session.settings
        self._retry = retry
        self._cancel = cancel
        self._clock = clock
        self._sleep = sleep_fn
        self._handlers: dict[
            str, Callable[[CommandValue | None, FlowContext], Awaitable[CommandOutcome]]
        ] = {
            "openLink": self._open_link,
            "tapOn": self._tap_on,
            "inputText": self._input_text,
            "scroll": self._scroll,
            "extendedWaitUntil": self._wait_until,
            "assertVisible": self._assert_visible,
            "assertNotVisible": self._assert_not_visible,
            "takeScreenshot": self._take_screenshot,
            "back": self._back,
            "pressKey": self._press_key,
            "eraseText": self._erase_text,
            "evalScript": self._eval_script,
            "hideKeyboard": self._hide_keyboard,
            "repeat": self._repeat,
            "runFlow": self._run_flow,
        }

    async def execute_flow(
        self,
        flow: Flow,
        fctx: FlowContext,
        *,
        on_step_start: StartCallback | None = None,
        on_step: StepCallback | None = None,
    ) -> list[StepResult]:
        """Run every command of ``flow``; the step list ends at the first failure."""
        if flow.name in fctx.visiting:
            raise RecursionDetectedError(flow.name)
        fctx.visiting.add(flow.name)
        steps: list[StepResult] = []
        try:
            for index, command in enumerate(flow.commands):
                label = describe_command(command)
                if on_step_start is not None:
                    await on_step_start(flow, index, label)
                step = await self._execute_step(index, command, label, fctx)
                steps.append(step)
                if on_step is not None:
                    await on_step(flow, step)
                if step.status == StepStatus.FAILED:
                    break
        finally:
            fctx.visiting.discard(flow.name)
        return steps

    async def _execute_step(
        self, index: int, command: Command, label: str, fctx: FlowContext
    ) -> StepResult:
        started = self._clock()
        try:
            outcome = await self.execute_command(command, fctx)
        except CommandFailedError as exc:
            return StepResult(
                index=index,
                command=label,
                status=StepStatus.FAILED,
                error=str(exc),
                screenshot=exc.screenshot,
                reasoning=exc.reasoning,
                duration_ms=self._elapsed_ms(started),
            )
        except RecursionDetectedError as exc:
            return StepResult(
                index=index,
                command=label,
                status=StepStatus.FAILED,
                error=str(exc),
                duration_ms=self._elapsed_ms(started),
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Command %s raised unexpectedly", label)
            return StepResult(
                index=index,
                command=label,
                status=StepStatus.FAILED,
                error=f"{label}: {exc}",
                duration_ms=self._elapsed_ms(started),
            )
        return StepResult(
            index=index,
            command=label,
            status=StepStatus.SKIPPED if outcome.skipped else StepStatus.PASSED,
            result=outcome.text,
            screenshot=outcome.screenshot,
            reasoning=outcome.reasoning,
            duration_ms=self._elapsed_ms(started),
        )

    async def execute_command(self, command: Command, fctx: FlowContext) -> CommandOutcome:
        """Dispatch one command; failures raise ``CommandFailedError``."""
        if self._cancel is not None and self._cancel.cancelled:
            raise CommandFailedError(f"{command.name}: cancelled ({self._cancel.reason})")
        value = command.value if isinstance(command, ParametrizedCommand) else None
        if command.name in NO_OP_COMMANDS:
            return CommandOutcome(f"{command.name} (no-op in browser mode)")
        handler = self._handlers.get(command.name)
        if handler is None:
            LOGGER.info("Skipping unsupported command %s", command.name)
            return CommandOutcome(f"Skipped unsupported command: {command.name}", skipped=True)
        return await handler(value, fctx)

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._clock() - started) * 1000))

    async def _tool(self, tool_name: str, args: Mapping[str, object], *, label: str) -> CommandOutcome:
        try:
            outcome = await self.session.execute(tool_name, args)
        except ToolExecutionError as exc:
            raise CommandFailedError(f"{label}: {exc}") from exc
        return CommandOutcome(outcome.text, outcome.screenshot)

    async def _ask(self, prompt: str, screenshot: str) -> str:
        model = self.model
        if model is None:
            raise CommandFailedError("AI client not configured")
        if self._retry is None:
            return await model.analyze_with_image(prompt, screenshot)
        return await self._retry.run(
            lambda: model.analyze_with_image(prompt, screenshot),
            stage_name="vision",
        )

    async def _open_link(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        url = _text_argument(value, "url", "link")
        if not url:
            raise CommandFailedError("openLink: missing URL")
        return await self._tool("navigate", {"url": url}, label="openLink")

    async def _tap_on(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        if isinstance(value, ScalarValue):
            return await self._tap_on_text(value.as_text())
        if not isinstance(value, RecordValue):
            raise CommandFailedError("tapOn: no recognizable selector (text, point, or id)")
        if value.get("point") is not None:
            return await self._tap_on_point(value.text("point"))
        if value.get("text") is not None:
            return await self._tap_on_text(value.text("text"))
        if value.get("id") is not None:
            return await self._tap_on_id(value.text("id"))
        raise CommandFailedError("tapOn: no recognizable selector (text, point, or id)")

    async def _tap_on_id(self, element_id: str) -> CommandOutcome:
        script = CLICK_BY_ID_SCRIPT.format(element_id=orjson.dumps(element_id).decode("utf-8"))
        try:
            clicked = await self.session.eval_script(script) == "clicked"
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Click by id %s failed: %s", element_id, exc)
            clicked = False
        if not clicked:
            return await self._tap_on_text(element_id)
        await self.session.settle(0.25)
        shot = await self.session.try_screenshot()
        return CommandOutcome(f"Tapped element #{element_id}", shot)

    async def _tap_on_text(self, text: str) -> CommandOutcome:
        if self.model is None:
            raise CommandFailedError(f'tapOn text "{text}": AI client not configured')
        shot = await self.session.try_screenshot()
        if shot is None:
            raise CommandFailedError("tapOn text: screenshot failed")
        try:
            response = (await self._ask(vision.tap_prompt(text, self.session.viewport), shot)).strip()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommandFailedError(
                f'tapOn text "{text}": AI vision failed: {exc}', screenshot=shot
            ) from exc
        if vision.is_not_found(response):
            raise CommandFailedError(
                f'tapOn text "{text}": text not found on screen',
                screenshot=shot,
                reasoning=response,
            )
        try:
            x, y = vision.parse_coordinates(response)
        except ValueError as exc:
            raise CommandFailedError(
                f'tapOn text "{text}": could not parse coordinates from AI response "{response}"',
                screenshot=shot,
                reasoning=response,
            ) from exc
        try:
            clicked = await self.session.execute("click", {"x": x, "y": y})
        except ToolExecutionError as exc:
            raise CommandFailedError(
                f'tapOn text "{text}": click failed: {exc}', screenshot=shot, reasoning=response
            ) from exc
        return CommandOutcome(
            f'Tapped on "{text}" at ({x},{y}). {clicked.text}',
            clicked.screenshot,
            response,
        )

    async def _tap_on_point(self, point: str) -> CommandOutcome:
        try:
            x, y = vision.resolve_point(point, self.session.viewport)
        except ValueError as exc:
            raise CommandFailedError(f"tapOn point: {exc}") from exc
        return await self._tool("click", {"x": x, "y": y}, label="tapOn")

    async def _input_text(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        text = _text_argument(value, "text")
        if not text:
            raise CommandFailedError("inputText: empty text")
        return await self._tool("type_text", {"text": text}, label="inputText")

    async def _scroll(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        direction = "down"
        amount = self.settings.default_scroll_amount
        if isinstance(value, ScalarValue) and value.as_text():
            direction = value.as_text().lower()
        elif isinstance(value, RecordValue):
            direction = (value.text("direction") or direction).lower()
            if value.get("amount") is not None:
                amount = _int_value(value.get("amount"), amount)
        return await self._tool(
            "scroll", {"direction": direction, "amount": amount}, label="scroll"
        )

    async def _wait_until(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        if not isinstance(value, RecordValue):
            raise CommandFailedError("extendedWaitUntil: expected a visibility condition")
        visible_text = _condition_text(value.get("visible"))
        hidden_text = _condition_text(value.get("notVisible"))
        if not visible_text and not hidden_text:
            raise CommandFailedError("extendedWaitUntil: needs visible or notVisible condition")
        timeout_ms = _int_value(value.get("timeout"), self.settings.default_wait_timeout_ms)
        want_visible = bool(visible_text)
        target = visible_text or hidden_text

        if self.model is None:
            await self._sleep(timeout_ms / 1000)
            shot = await self.session.try_screenshot()
            return CommandOutcome(f"Waited {timeout_ms}ms (no AI for vision check)", shot)

        prompt = vision.visibility_prompt(target, self.session.viewport)
        deadline = self._clock() + timeout_ms / 1000
        last_shot: str | None = None
        last_response: str | None = None
        while self._clock() < deadline:
            if self._cancel is not None and self._cancel.cancelled:
                raise CommandFailedError(
                    "extendedWaitUntil: cancelled", screenshot=last_shot, reasoning=last_response
                )
            shot = await self.session.try_screenshot()
            if shot is not None:
                last_shot = shot
                response = await self._poll_visibility(prompt, shot)
                if response is not None:
                    last_response = response
                    if vision.is_affirmative(response) == want_visible:
                        text = (
                            f'Text "{target}" is now visible.'
                            if want_visible
                            else f'Text "{target}" is no longer visible.'
                        )
                        return CommandOutcome(text, shot, response)
            await self._sleep(self.settings.poll_interval_seconds)

        condition = "visible" if want_visible else "not visible"
        raise CommandFailedError(
            f'extendedWaitUntil: timed out waiting for "{target}" to be {condition} after {timeout_ms}ms',
            screenshot=last_shot,
            reasoning=last_response,
        )

    async def _poll_visibility(self, prompt: str, shot: str) -> str | None:
        try:
            return await self._ask(prompt, shot)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Visibility check failed, polling again: %s", exc)
            return None

    async def _assert_visible(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        return await self._assert(value, want_visible=True)

    async def _assert_not_visible(
        self, value: CommandValue | None, fctx: FlowContext
    ) -> CommandOutcome:
        return await self._assert(value, want_visible=False)

    async def _assert(self, value: CommandValue | None, *, want_visible: bool) -> CommandOutcome:
        name = "assertVisible" if want_visible else "assertNotVisible"
        text = _text_argument(value, "text")
        if not text:
            raise CommandFailedError(f"{name}: empty text")
        shot = await self.session.try_screenshot()
        if shot is None:
            raise CommandFailedError(f"{name}: screenshot failed")
        if self.model is None:
            return CommandOutcome(f'{name} "{text}" (no AI to verify)', shot)
        try:
            response = await self._ask(vision.visibility_prompt(text, self.session.viewport), shot)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommandFailedError(f"{name}: AI vision failed: {exc}", screenshot=shot) from exc
        visible = vision.is_affirmative(response)
        if want_visible and not visible:
            raise CommandFailedError(
                f'assertVisible failed: "{text}" not found on screen',
                screenshot=shot,
                reasoning=response,
            )
        if not want_visible and visible:
            raise CommandFailedError(
                f'assertNotVisible failed: "{text}" is visible on screen',
                screenshot=shot,
                reasoning=response,
            )
        verdict = "is visible" if want_visible else "is not visible"
        return CommandOutcome(f'{name} passed: "{text}" {verdict}.', shot, response)

    async def _take_screenshot(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        return CommandOutcome("Screenshot captured.", await self.session.try_screenshot())

    async def _back(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        try:
            await self.session.eval_script("history.back()")
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommandFailedError(f"back: {exc}") from exc
        await self.session.settle(self.settings.back_delay_seconds)
        return CommandOutcome("Navigated back.", await self.session.try_screenshot())

    async def _press_key(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        key = _text_argument(value, "key")
        if not key:
            raise CommandFailedError("pressKey: missing key")
        return await self._tool("press_key", {"key": key}, label="pressKey")

    async def _erase_text(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        count = self.settings.default_erase_count
        if isinstance(value, ScalarValue):
            count = _int_value(value.value, count)
        elif isinstance(value, RecordValue):
            count = _int_value(value.get("charactersToErase"), count)
        try:
            await self.session.eval_script(ERASE_SCRIPT.format(count=count))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommandFailedError(f"eraseText: {exc}") from exc
        return CommandOutcome(f"Erased {count} characters.", await self.session.try_screenshot())

    async def _eval_script(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        script = _text_argument(value, "script")
        if not script:
            raise CommandFailedError("evalScript: missing script")
        try:
            return CommandOutcome(await self.session.eval_script(script))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommandFailedError(f"evalScript: {exc}") from exc

    async def _hide_keyboard(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        return CommandOutcome("hideKeyboard (no-op in browser).")

    async def _repeat(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        times = 1
        commands: tuple[Command, ...] = ()
        if isinstance(value, RecordValue):
            times = _int_value(value.get("times"), 1)
            commands = value.commands
        elif isinstance(value, CommandListValue):
            commands = value.commands
        if not commands:
            raise CommandFailedError("repeat: no commands")

        last = CommandOutcome("")
        shot: str | None = None
        reasoning: str | None = None
        for iteration in range(1, times + 1):
            for command in commands:
                try:
                    last = await self.execute_command(command, fctx)
                except CommandFailedError as exc:
                    raise CommandFailedError(
                        f"repeat iteration {iteration}: {exc}",
                        screenshot=exc.screenshot or shot,
                        reasoning=exc.reasoning or reasoning,
                    ) from exc
                shot = last.screenshot or shot
                reasoning = last.reasoning or reasoning
        return CommandOutcome(f"Repeated {times} times. Last: {last.text}", shot, reasoning)

    async def _run_flow(self, value: CommandValue | None, fctx: FlowContext) -> CommandOutcome:
        if isinstance(value, RecordValue) and value.commands and not _text_argument(value, "file"):
            return await self._run_commands("inline", value.commands, fctx)
        reference = _text_argument(value, "file", "flow", "name", "path")
        if not reference:
            raise CommandFailedError("runFlow: missing flow filename")
        target = fctx.find(reference)
        if target is None:
            raise CommandFailedError(f'runFlow: flow "{reference}" not found')
        if target.name in fctx.visiting:
            raise RecursionDetectedError(reference)

        fctx.visiting.add(target.name)
        try:
            if target.metadata.start_url:
                try:
                    await self.session.navigate(target.metadata.start_url)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    raise CommandFailedError(
                        f'runFlow "{reference}": navigation to '
                        f"{target.metadata.start_url} failed: {exc}"
                    ) from exc
                await self.session.settle(self.settings.flow_settle_seconds)
            return await self._run_commands(reference, target.commands, fctx)
        finally:
            fctx.visiting.discard(target.name)

    async def _run_commands(
        self, reference: str, commands: Sequence[Command], fctx: FlowContext
    ) -> CommandOutcome:
        last = CommandOutcome("")
        shot: str | None = None
        reasoning: str | None = None
        for command in commands:
            try:
                last = await self.execute_command(command, fctx)
            except CommandFailedError as exc:
                raise CommandFailedError(
                    f'runFlow "{reference}": {exc}',
                    screenshot=exc.screenshot,
                    reasoning=exc.reasoning,
                ) from exc
            shot = last.screenshot or shot
            reasoning = last.reasoning or reasoning
        return CommandOutcome(
            f'runFlow "{reference}" completed ({len(commands)} commands). Last: {last.text}',
            shot,
            reasoning,
        )


def _text_argument(value: CommandValue | None, *keys: str) -> str:
    if isinstance(value, ScalarValue):
        return value.as_text().strip()
    if isinstance(value, RecordValue):
        for key in keys:
            text = value.text(key).strip()
            if text:
                return text
    return ""


def _condition_text(raw: object) -> str:
    if isinstance(raw, Mapping):
        raw = raw.get("text")
    if raw is None:
        return ""
    return str(raw).strip()


def _int_value(raw: object, default: int) -> int:
    if raw is None or isinstance(raw, bool):
        return default
    try:
        return int(float(str(raw)))
    except (ValueError, OverflowError):
        return default


__all__ = ["CommandOutcome", "FlowContext", "FlowExecutor"]
