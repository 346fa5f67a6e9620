"""Bounded tool-calling loop that drives the browser through one scenario."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from flowpilot.agent import prompts
from flowpilot.agent.tools import REPORT_RESULT_TOOL, scenario_tools
from flowpilot.agent.transcript import AgentTranscript
from flowpilot.browser.session import BrowserSession
from flowpilot.cancellation import CancellationToken
from flowpilot.config.models import AgentConfig
from flowpilot.errors import ToolExecutionError
from flowpilot.llm.clients import ModelClient
from flowpilot.resilience.retry import RetryExecutor
from flowpilot.schemas.agent_models import (
    AgentMessage,
    AgentStepRecord,
    ContentBlock,
    ImageBlock,
    ModelResponse,
    Scenario,
    ScenarioOutcome,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from flowpilot.schemas.enums import ScenarioVerdict

LOGGER = logging.getLogger(__name__)

STOPPED_WITHOUT_VERDICT = "agent stopped without calling report_result"
STEPS_EXHAUSTED = "agent exhausted maximum steps without reporting result"
RESULT_RECORDED = "Result recorded."

StepListener = Callable[[Scenario, AgentStepRecord], Awaitable[None]]


@dataclass
class _Verdict:
    passed: bool
    reason: str
    failed_step: int | None = None


class ScenarioExecutor:
    """Run scenarios until the model reports a verdict or the step budget runs out."""

    def __init__(
        self,
        session: BrowserSession,
        model: ModelClient,
        *,
        config: AgentConfig | None = None,
        retry: RetryExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.model = model
        self.config = config or AgentConfig()
        self._retry = retry
        self._clock = clock
        self._tools = scenario_tools(session.viewport)
        self._system_prompt = prompts.system_prompt(session.viewport)

    async def execute_scenario(
        self,
        scenario: Scenario,
        start_url: str,
        *,
        cancel: CancellationToken | None = None,
        on_step: StepListener | None = None,
    ) -> ScenarioOutcome:
        started = self._clock()
        steps: list[AgentStepRecord] = []
        try:
            await self.session.navigate(start_url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            return self._outcome(scenario, _Verdict(False, f"Navigation failed: {exc}"), steps, started)
        await self.session.settle(self.session.settings.scenario_settle_seconds)

        transcript = AgentTranscript(self.config.keep_screenshots)
        kickoff: list[ContentBlock] = [TextBlock(text=prompts.kickoff_text(scenario))]
        initial = await self.session.try_screenshot()
        if initial:
            kickoff.append(ImageBlock(data=initial))
        transcript.append(AgentMessage(role="user", content=kickoff))

        verdict = await self._loop(scenario, transcript, steps, cancel, on_step)
        return self._outcome(scenario, verdict, steps, started)

    async def _loop(
        self,
        scenario: Scenario,
        transcript: AgentTranscript,
        steps: list[AgentStepRecord],
        cancel: CancellationToken | None,
        on_step: StepListener | None,
    ) -> _Verdict:
        for _ in range(self.config.max_steps):
            if cancel is not None and cancel.cancelled:
                return _Verdict(False, f"cancelled: {cancel.reason}")
            try:
                response = await self._call_model(transcript)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                return _Verdict(False, f"AI call failed: {exc}")

            transcript.append(AgentMessage(role="assistant", content=list(response.content)))
            tool_uses = response.tool_uses()
            if not tool_uses:
                return _Verdict(False, STOPPED_WITHOUT_VERDICT)

            reasoning = response.text() or None
            results: list[ContentBlock] = []
            verdict: _Verdict | None = None
            for call in tool_uses:
                if call.name == REPORT_RESULT_TOOL:
                    verdict = _read_verdict(call.input)
                    results.append(
                        ToolResultBlock(tool_use_id=call.id, content=[TextBlock(text=RESULT_RECORDED)])
                    )
                    break
                record, block = await self._run_tool(call, len(steps) + 1, reasoning)
                steps.append(record)
                results.append(block)
                if on_step is not None:
                    await on_step(scenario, record)

            transcript.append(AgentMessage(role="user", content=results))
            if verdict is not None:
                return verdict
        return _Verdict(False, STEPS_EXHAUSTED)

    async def _call_model(self, transcript: AgentTranscript) -> ModelResponse:
        messages = list(transcript)
        if self._retry is None:
            return await self.model.call_with_tools(self._system_prompt, messages, self._tools)
        return await self._retry.run(
            lambda: self.model.call_with_tools(self._system_prompt, messages, self._tools),
            stage_name="agent model call",
        )

    async def _run_tool(
        self, call: ToolUseBlock, step_number: int, reasoning: str | None
    ) -> tuple[AgentStepRecord, ToolResultBlock]:
        started = self._clock()
        try:
            outcome = await self.session.execute(call.name, call.input)
        except ToolExecutionError as exc:
            LOGGER.debug("Tool %s failed: %s", call.name, exc)
            record = AgentStepRecord(
                step_number=step_number,
                tool_name=call.name,
                input=call.input,
                result=f"Error: {exc}",
                error=str(exc),
                reasoning=reasoning,
                duration_ms=self._elapsed_ms(started),
            )
            block = ToolResultBlock(
                tool_use_id=call.id,
                content=[TextBlock(text=f"Error: {exc}")],
                is_error=True,
            )
            return record, block

        content: list[Any] = [TextBlock(text=outcome.text)]
        if outcome.screenshot:
            content.append(ImageBlock(data=outcome.screenshot))
        record = AgentStepRecord(
            step_number=step_number,
            tool_name=call.name,
            input=call.input,
            result=outcome.text,
            reasoning=reasoning,
            screenshot=outcome.screenshot,
            duration_ms=self._elapsed_ms(started),
        )
        return record, ToolResultBlock(tool_use_id=call.id, content=content)

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._clock() - started) * 1000))

    def _outcome(
        self,
        scenario: Scenario,
        verdict: _Verdict,
        steps: list[AgentStepRecord],
        started: float,
    ) -> ScenarioOutcome:
        return ScenarioOutcome(
            scenario=scenario.name,
            verdict=ScenarioVerdict.PASSED if verdict.passed else ScenarioVerdict.FAILED,
            reason=verdict.reason,
            failed_step=verdict.failed_step,
            steps=steps,
            duration_ms=self._elapsed_ms(started),
        )


def _read_verdict(payload: dict[str, Any]) -> _Verdict:
    status = str(payload.get("status", "")).strip().lower()
    reason = str(payload.get("reason") or "")
    failed_step = payload.get("failedStep")
    if not isinstance(failed_step, int) or isinstance(failed_step, bool):
        failed_step = None
    if status == "passed":
        return _Verdict(True, reason)
    return _Verdict(False, reason or f"reported status {status or 'missing'}", failed_step)
