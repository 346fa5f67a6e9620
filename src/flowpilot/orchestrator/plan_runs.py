"""Test-plan execution in browser, agent and maestro modes."""

from __future__ import annotations

import asyncio
import logging
import re
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Mapping

from flowpilot.agent.prompts import scenarios_from_result
from flowpilot.agent.scenario_executor import ScenarioExecutor
from flowpilot.browser.session import BrowserSession
from flowpilot.browser.viewports import Viewport, resolve_viewport
from flowpilot.cancellation import CancellationToken
from flowpilot.constants import MODE_AGENT, MODE_BROWSER, MODE_MAESTRO
from flowpilot.errors import FlowPilotError, ProcessExitError
from flowpilot.executor.batch import BatchObserver, format_duration, run_flow_batch
from flowpilot.executor.flow_executor import FlowExecutor
from flowpilot.flows.parser import parse_flow_dir
from flowpilot.observability import progress_hub as events
from flowpilot.orchestrator.services import JobServices, new_job_id
from flowpilot.schemas.agent_models import AgentStepRecord, Scenario
from flowpilot.schemas.enums import JobKind, StepStatus
from flowpilot.schemas.flow_models import Flow
from flowpilot.schemas.job_models import FlowRunResult, StepResult, TestRunSummary, UnitResult, utcnow
from flowpilot.schemas.store_models import TestPlan
from flowpilot.security.redaction import redact_text
from flowpilot.store.flow_files import count_flow_files

LOGGER = logging.getLogger(__name__)

SAFE_NAME = re.compile(r"^[a-zA-Z0-9_\-\s.]+$")
_DURATION = re.compile(r"\((\d[\dhms.]*(?:ms|s|m|h))\)\s*$")
_LEADING_NUMBER = re.compile(r"^\d+\.\s*")
_PASS_MARKERS = ("✅", "PASS")
_FAIL_MARKERS = ("❌", "FAIL")


def parse_flow_line(line: str) -> UnitResult | None:
    """Read ``"   ✅ 1. LoginFlow (234ms)"`` style result lines; ``None`` otherwise."""
    trimmed = line.strip()
    if any(marker in trimmed for marker in _PASS_MARKERS):
        status = "passed"
    elif any(marker in trimmed for marker in _FAIL_MARKERS):
        status = "failed"
    else:
        return None
    duration = "0s"
    match = _DURATION.search(trimmed)
    if match:
        duration = match.group(1)
        trimmed = trimmed[: match.start()]
    trimmed = trimmed.strip()
    for prefix in (*_PASS_MARKERS, *_FAIL_MARKERS, ":", "-"):
        if trimmed.startswith(prefix):
            trimmed = trimmed[len(prefix) :].strip()
    name = _LEADING_NUMBER.sub("", trimmed)
    for suffix in (".yaml", ".yml"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    name = name.strip()
    if not name:
        return None
    return UnitResult(name=name, status=status, duration=duration)


@dataclass
class _RunState:
    test_id: str
    mode: str
    name: str
    plan_id: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    started: float = field(default_factory=time.monotonic)
    units: list[UnitResult] = field(default_factory=list)


class PlanRunOrchestrator:
    """Executes plans; browser and agent runs share the browser slot."""

    def __init__(self, services: JobServices) -> None:
        self.services = services

    def launch(
        self,
        plan: TestPlan,
        *,
        mode: str | None = None,
        viewport: str | None = None,
    ) -> str:
        """Start a supervised run of ``plan``; return the test id."""
        test_id = new_job_id("test")
        state = _RunState(
            test_id=test_id, mode=mode or plan.mode, name=plan.name, plan_id=plan.id
        )
        self.services.supervisor.spawn(
            test_id,
            self.run_plan(plan, state, viewport=viewport),
            on_failure=partial(self._crashed, state),
        )
        return test_id

    async def _crashed(self, state: _RunState, test_id: str, reason: str) -> None:
        del test_id
        self.finish(state, error=reason)

    async def run_plan(
        self, plan: TestPlan, state: _RunState, *, viewport: str | None = None
    ) -> TestRunSummary:
        if state.mode == MODE_MAESTRO:
            return await self._run_maestro(plan, state)
        if state.mode == MODE_AGENT:
            return await self._run_agent(plan, state, viewport)
        return await self._run_browser(plan, state, viewport)

    async def run_directory(
        self,
        flow_dir: Path,
        *,
        name: str,
        viewport: str | None = None,
        url_override: str | None = None,
    ) -> TestRunSummary:
        """Run every flow file in ``flow_dir`` without a stored plan."""
        state = _RunState(test_id=new_job_id("test"), mode=MODE_BROWSER, name=name)
        try:
            async with self.services.slots.browser.hold(
                state.test_id, on_queued=partial(self._queued, state)
            ):
                try:
                    flows = parse_flow_dir(flow_dir)
                except (FlowPilotError, OSError) as exc:
                    return self.finish(state, error=f"parsing flows: {exc}")
                return await self._execute_flows(state, flows, flow_dir, viewport, url_override)
        except FlowPilotError as exc:
            return self.finish(state, error=str(exc))

    # Browser mode

    async def _run_browser(
        self, plan: TestPlan, state: _RunState, viewport: str | None
    ) -> TestRunSummary:
        services = self.services
        try:
            async with services.slots.browser.hold(
                state.test_id, on_queued=partial(self._queued, state)
            ):
                with tempfile.TemporaryDirectory(prefix="flowpilot-run-") as tmp:
                    try:
                        flow_dir = services.files.prepare_run_dir(
                            plan, Path(tmp), load_result=self._load_result
                        )
                        flows = parse_flow_dir(flow_dir)
                    except (FlowPilotError, OSError) as exc:
                        return self.finish(state, error=f"parsing flows: {exc}")
                    return await self._execute_flows(state, flows, flow_dir, viewport, None)
        except FlowPilotError as exc:
            return self.finish(state, error=str(exc))

    async def _execute_flows(
        self,
        state: _RunState,
        flows: list[Flow],
        flow_dir: Path,
        viewport_name: str | None,
        url_override: str | None,
    ) -> TestRunSummary:
        services = self.services
        self._start(state, total=len(flows))
        viewport = resolve_viewport(viewport_name or services.config.executor.default_viewport)
        session = await self._open_session(state, viewport)
        if session is None:
            return self.finish(state, error="launching browser failed")
        scope = services.shutdown.child(
            timeout_seconds=services.config.orchestrator.test_execution_timeout_seconds
        )
        try:
            executor = FlowExecutor(
                session,
                services.model_provider(),
                settings=services.config.executor,
                retry=services.retry,
                cancel=scope,
            )
            await run_flow_batch(
                executor,
                flows,
                work_dir=flow_dir,
                observer=_FlowRelay(self, state),
                url_override=url_override,
                cancel=scope,
            )
        finally:
            await session.close()
        error = f"cancelled: {scope.reason}" if scope.cancelled else None
        return self.finish(state, error=error)

    async def _open_session(self, state: _RunState, viewport: Viewport) -> BrowserSession | None:
        self.log(state, "Launching headless browser...")
        try:
            page = await self.services.page_factory(viewport)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Test %s: browser launch failed: %s", state.test_id, exc)
            self.log(state, f"Browser launch failed: {exc}")
            return None
        self.log(
            state,
            f"Browser ready ({viewport.width}x{viewport.height} @ {viewport.device_scale_factor:.1f}x)",
        )
        return BrowserSession(
            page,
            viewport,
            settings=self.services.config.executor,
            result_token_budget=self.services.config.agent.tool_result_token_budget,
        )

    # Agent mode

    async def _run_agent(
        self, plan: TestPlan, state: _RunState, viewport_name: str | None
    ) -> TestRunSummary:
        services = self.services
        try:
            async with services.slots.browser.hold(
                state.test_id, on_queued=partial(self._queued, state)
            ):
                record = (
                    services.store.get_analysis(plan.analysis_id) if plan.analysis_id else None
                )
                if record is None or not record.result:
                    return self.finish(
                        state, error="extracting scenarios: plan has no analysis result"
                    )
                try:
                    scenarios = scenarios_from_result(record.result)
                except ValueError as exc:
                    return self.finish(state, error=f"extracting scenarios: {exc}")
                self._start(state, total=len(scenarios))
                model = services.model_provider()
                if model is None:
                    return self.finish(state, error="no model provider configured for agent mode")
                viewport = resolve_viewport(
                    viewport_name or services.config.executor.default_viewport
                )
                session = await self._open_session(state, viewport)
                if session is None:
                    return self.finish(state, error="launching browser failed")
                scope = services.shutdown.child(
                    timeout_seconds=services.config.orchestrator.test_execution_timeout_seconds
                )
                try:
                    executor = ScenarioExecutor(
                        session, model, config=services.config.agent, retry=services.retry
                    )
                    for index, scenario in enumerate(scenarios):
                        await self._run_scenario(state, executor, scenario, index, record.game_url, scope)
                finally:
                    await session.close()
                error = f"cancelled: {scope.reason}" if scope.cancelled else None
                return self.finish(state, error=error)
        except FlowPilotError as exc:
            return self.finish(state, error=str(exc))

    async def _run_scenario(
        self,
        state: _RunState,
        executor: ScenarioExecutor,
        scenario: Scenario,
        index: int,
        start_url: str,
        scope: CancellationToken,
    ) -> None:
        hub = self.services.hub
        hub.publish(
            events.TEST_FLOW_STARTED,
            {
                "testId": state.test_id,
                "flowName": scenario.name,
                "commandCount": len(scenario.steps),
                "flowIndex": index,
            },
        )
        self.log(state, f"--- Scenario {index + 1}: {scenario.name} ---")
        outcome = await executor.execute_scenario(
            scenario,
            start_url,
            cancel=scope,
            on_step=partial(self._agent_step, state),
        )
        unit = UnitResult(
            name=scenario.name,
            status="passed" if outcome.passed else "failed",
            duration=format_duration(outcome.duration_ms),
            reason=None if outcome.passed else outcome.reason,
        )
        self._record_unit(state, unit, index)

    async def _agent_step(self, state: _RunState, scenario: Scenario, record: AgentStepRecord) -> None:
        status = "failed" if record.error else "passed"
        data: dict[str, Any] = {
            "testId": state.test_id,
            "flowName": scenario.name,
            "stepIndex": record.step_number,
            "command": record.tool_name,
            "status": status,
            "reasoning": record.reasoning,
        }
        self.services.hub.publish(events.TEST_COMMAND_PROGRESS, data)
        if record.screenshot:
            self._publish_screenshot(state, scenario.name, record.step_number, record.screenshot, data, record.result)

    # Maestro mode

    async def _run_maestro(self, plan: TestPlan, state: _RunState) -> TestRunSummary:
        services = self.services
        with tempfile.TemporaryDirectory(prefix="flowpilot-maestro-") as tmp:
            try:
                flow_dir = services.files.prepare_run_dir(
                    plan, Path(tmp), load_result=self._load_result
                )
            except (FlowPilotError, OSError) as exc:
                return self.finish(state, error=f"preparing flows: {exc}")
            self._start(state, total=count_flow_files(flow_dir))
            args = ["run", "--flows", str(flow_dir)]
            if plan.name and SAFE_NAME.match(plan.name):
                args += ["--name", plan.name]
            error = await self._maestro_process(state, args)
        return self.finish(state, error=error)

    async def _maestro_process(self, state: _RunState, args: list[str]) -> str | None:
        services = self.services
        try:
            await services.runner.run(
                args,
                job_id=state.test_id,
                timeout_seconds=services.config.orchestrator.test_execution_timeout_seconds,
                label="Test run",
                on_stdout_line=partial(self._maestro_line, state),
                cancel=services.shutdown,
                hints=False,
            )
        except ProcessExitError as exc:
            message = f"CLI exited with code {exc.exit_code}"
            if exc.stderr_tail:
                message += f"\nstderr: {exc.stderr_tail}"
            return message
        except FlowPilotError as exc:
            return str(exc)
        return None

    async def _maestro_line(self, state: _RunState, line: str) -> None:
        unit = parse_flow_line(line)
        if unit is not None:
            state.units.append(unit)
            self.services.tracker.append_unit(state.test_id, unit)
        self.services.tracker.append_log(state.test_id, line)
        self.services.hub.publish(
            events.TEST_PROGRESS,
            {
                "testId": state.test_id,
                "planId": state.plan_id,
                "line": line,
                "flowName": unit.name if unit else "",
                "status": unit.status if unit else "",
                "duration": unit.duration if unit else "",
            },
        )

    # Shared bookkeeping

    def _load_result(self, analysis_id: str) -> Mapping[str, Any] | None:
        record = self.services.store.get_analysis(analysis_id)
        return record.result if record is not None else None

    async def _queued(self, state: _RunState) -> None:
        self.services.hub.publish(
            events.JOB_QUEUED,
            {"testId": state.test_id, "message": "Waiting for a free browser slot..."},
        )

    def _start(self, state: _RunState, *, total: int) -> None:
        services = self.services
        if state.plan_id:
            services.store.update_test_plan_status(state.plan_id, "running", state.test_id)
        services.tracker.register(
            state.test_id,
            kind=JobKind.TEST_RUN,
            mode=state.mode,
            total_units=total,
            plan_id=state.plan_id,
            name=state.name,
        )
        services.hub.publish(
            events.TEST_STARTED,
            {
                "testId": state.test_id,
                "planId": state.plan_id,
                "name": state.name,
                "totalFlows": total,
                "mode": state.mode,
            },
        )

    def log(self, state: _RunState, line: str) -> None:
        self.services.tracker.append_log(state.test_id, line)
        self.services.hub.publish(
            events.TEST_PROGRESS,
            {"testId": state.test_id, "planId": state.plan_id, "line": line},
        )

    def _record_unit(self, state: _RunState, unit: UnitResult, index: int) -> None:
        state.units.append(unit)
        self.services.tracker.append_unit(state.test_id, unit)
        marker = "PASS" if unit.status == "passed" else "FAIL"
        line = f"  {marker} {index + 1}. {unit.name} ({unit.duration})"
        if unit.reason:
            line += f" - {unit.reason}"
        self.services.tracker.append_log(state.test_id, line)
        self.services.hub.publish(
            events.TEST_PROGRESS,
            {
                "testId": state.test_id,
                "planId": state.plan_id,
                "line": line,
                "flowName": unit.name,
                "status": unit.status,
                "duration": unit.duration,
            },
        )

    def _publish_screenshot(
        self,
        state: _RunState,
        unit_name: str,
        index: int,
        screenshot: str,
        data: Mapping[str, Any],
        result: str,
    ) -> None:
        path = self.services.files.save_step_screenshot(state.test_id, unit_name, index, screenshot)
        self.services.hub.publish(
            events.TEST_STEP_SCREENSHOT,
            {**data, "screenshotPath": str(path) if path else "", "result": result},
        )

    def finish(self, state: _RunState, *, error: str | None) -> TestRunSummary:
        """Persist the result, update the plan and announce the outcome."""
        services = self.services
        services.tracker.remove(state.test_id)
        passed = sum(1 for unit in state.units if unit.status == "passed")
        if state.units:
            success_rate = passed / len(state.units) * 100
        else:
            success_rate = 100.0 if error is None else 0.0
        failed = error is not None or passed < len(state.units)
        duration = format_duration(int((time.monotonic() - state.started) * 1000))
        summary = TestRunSummary(
            test_id=state.test_id,
            plan_id=state.plan_id,
            name=state.name,
            mode=state.mode,
            status="failed" if failed else "passed",
            started_at=state.started_at,
            duration=duration,
            success_rate=success_rate,
            flows=list(state.units),
            error_output=redact_text(error or ""),
        )
        services.store.save_test_result(summary)
        if state.plan_id:
            services.store.update_test_plan_status(
                state.plan_id, "failed" if error else "completed", state.test_id
            )
        services.hub.publish(
            events.TEST_FAILED if error else events.TEST_COMPLETED,
            {
                "testId": state.test_id,
                "planId": state.plan_id,
                "status": summary.status,
                "duration": duration,
                "successRate": success_rate,
                "flowCount": len(state.units),
                "error": summary.error_output or None,
            },
        )
        if error:
            LOGGER.warning("Test run %s failed: %s", state.test_id, summary.error_output)
        return summary


class _FlowRelay(BatchObserver):
    """Publishes batch progress for one browser-mode run."""

    def __init__(self, runs: PlanRunOrchestrator, state: _RunState) -> None:
        self.runs = runs
        self.state = state

    async def flow_started(self, flow: Flow, index: int, total: int) -> None:
        self.runs.services.hub.publish(
            events.TEST_FLOW_STARTED,
            {
                "testId": self.state.test_id,
                "flowName": flow.name,
                "commandCount": len(flow.commands),
                "flowIndex": index,
            },
        )
        self.runs.log(
            self.state,
            f"--- Flow {index + 1}/{total}: {flow.name} ({len(flow.commands)} commands) ---",
        )

    async def step_started(self, flow: Flow, index: int, label: str) -> None:
        self.runs.services.hub.publish(
            events.TEST_COMMAND_PROGRESS,
            {
                "testId": self.state.test_id,
                "flowName": flow.name,
                "stepIndex": index,
                "command": label,
                "status": "running",
            },
        )

    async def step_finished(self, flow: Flow, step: StepResult) -> None:
        if step.status == StepStatus.FAILED:
            self.runs.log(self.state, f"  FAIL Step {step.index + 1}: {step.command} -> {step.error}")
        else:
            self.runs.log(self.state, f"  {step.status.value.upper()} Step {step.index + 1}: {step.command} -> {step.result}")
        data = {
            "testId": self.state.test_id,
            "flowName": flow.name,
            "stepIndex": step.index,
            "command": step.command,
            "status": step.status.value,
            "reasoning": step.reasoning,
        }
        if step.screenshot:
            self.runs._publish_screenshot(
                self.state, flow.name, step.index, step.screenshot, data, step.result
            )
        self.runs.services.hub.publish(events.TEST_COMMAND_PROGRESS, data)

    async def flow_finished(self, flow: Flow, index: int, result: FlowRunResult) -> None:
        unit = UnitResult(
            name=flow.name,
            status=result.status,
            duration=format_duration(result.duration_ms),
            reason=result.error,
        )
        self.runs._record_unit(self.state, unit, index)
