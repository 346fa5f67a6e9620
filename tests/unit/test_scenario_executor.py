"""Scenario agent loop tests."""

from __future__ import annotations

import asyncio

import pytest
from fakes import SHOT_B64, FakeBudgeter, FakeModel, FakePage, tool_call

from flowpilot.agent.prompts import scenarios_from_result
from flowpilot.agent.scenario_executor import (
    STEPS_EXHAUSTED,
    STOPPED_WITHOUT_VERDICT,
    ScenarioExecutor,
)
from flowpilot.browser.session import BrowserSession
from flowpilot.browser.viewports import resolve_viewport
from flowpilot.cancellation import CancellationToken
from flowpilot.config.models import AgentConfig, ExecutorConfig
from flowpilot.schemas.agent_models import (
    AgentStepRecord,
    ModelResponse,
    Scenario,
    TextBlock,
    ToolResultBlock,
)
from flowpilot.schemas.enums import ScenarioVerdict

SCENARIO = Scenario(name="Start game", description="Press play and see the board.")


async def _no_sleep(seconds: float) -> None:
    return None


def _executor(page: FakePage, model: FakeModel, **config: int) -> ScenarioExecutor:
    session = BrowserSession(
        page,
        resolve_viewport(None),
        settings=ExecutorConfig(),
        budgeter=FakeBudgeter(),
        sleep_fn=_no_sleep,
    )
    return ScenarioExecutor(session, model, config=AgentConfig(**config))


def test_reported_pass_ends_the_loop() -> None:
    """Tool calls run until report_result; the verdict carries the reason."""
    page = FakePage()
    model = FakeModel(
        responses=[
            tool_call("click", text="Clicking play", x=100, y=200),
            tool_call("report_result", call_id="t2", status="passed", reason="board visible"),
        ]
    )
    recorded: list[AgentStepRecord] = []

    async def on_step(scenario: Scenario, record: AgentStepRecord) -> None:
        recorded.append(record)

    outcome = asyncio.run(
        _executor(page, model).execute_scenario(SCENARIO, "https://game.test", on_step=on_step)
    )
    assert outcome.passed
    assert outcome.reason == "board visible"
    assert page.named("goto") == ["https://game.test"]
    assert page.named("click") == [(100, 200)]
    assert [step.tool_name for step in outcome.steps] == ["click"]
    assert outcome.steps[0].reasoning == "Clicking play"
    assert outcome.steps[0].screenshot == SHOT_B64
    assert recorded == outcome.steps


def test_reported_failure_keeps_failed_step() -> None:
    """A failed report keeps the reason and the failing step number."""
    model = FakeModel(
        responses=[tool_call("report_result", status="failed", reason="no board", failedStep=2)]
    )
    outcome = asyncio.run(_executor(FakePage(), model).execute_scenario(SCENARIO, "https://g"))
    assert outcome.verdict == ScenarioVerdict.FAILED
    assert outcome.reason == "no board"
    assert outcome.failed_step == 2


def test_reply_without_tool_call_fails() -> None:
    """Plain text replies end the scenario as failed."""
    model = FakeModel(responses=[ModelResponse(content=[TextBlock(text="All done!")])])
    outcome = asyncio.run(_executor(FakePage(), model).execute_scenario(SCENARIO, "https://g"))
    assert outcome.reason == STOPPED_WITHOUT_VERDICT


def test_step_budget_is_enforced() -> None:
    """The loop stops after max_steps model turns."""
    model = FakeModel(responses=[tool_call("wait", milliseconds=10)])
    outcome = asyncio.run(
        _executor(FakePage(), model, max_steps=4).execute_scenario(SCENARIO, "https://g")
    )
    assert outcome.reason == STEPS_EXHAUSTED
    assert len(model.turns) == 4
    assert len(outcome.steps) == 4


def test_tool_errors_are_returned_to_the_model() -> None:
    """A failing tool becomes an error tool result and the loop continues."""
    model = FakeModel(
        responses=[
            tool_call("scroll", direction="diagonal"),
            tool_call("report_result", call_id="t2", status="passed", reason="ok"),
        ]
    )
    outcome = asyncio.run(_executor(FakePage(), model).execute_scenario(SCENARIO, "https://g"))
    assert outcome.passed
    assert outcome.steps[0].error == 'scroll: invalid direction "diagonal"'
    error_turn = model.turns[1][-1]
    block = error_turn.content[0]
    assert isinstance(block, ToolResultBlock)
    assert block.is_error
    assert block.content[0] == TextBlock(text='Error: scroll: invalid direction "diagonal"')


def test_screenshots_sent_to_model_are_bounded() -> None:
    """No model turn ever sees more than keep_screenshots images."""
    model = FakeModel(responses=[tool_call("screenshot")])
    asyncio.run(
        _executor(FakePage(), model, max_steps=8, keep_screenshots=3).execute_scenario(
            SCENARIO, "https://g"
        )
    )
    assert model.image_counts[0] == 1
    assert max(model.image_counts) == 3


def test_model_failure_and_cancellation() -> None:
    """Model errors and cancelled scopes both end the scenario as failed."""
    model = FakeModel(responses=[RuntimeError("rate limited")])
    outcome = asyncio.run(_executor(FakePage(), model).execute_scenario(SCENARIO, "https://g"))
    assert outcome.reason == "AI call failed: rate limited"

    token = CancellationToken()
    token.cancel("shutting down")
    outcome = asyncio.run(
        _executor(FakePage(), FakeModel(responses=[tool_call("screenshot")])).execute_scenario(
            SCENARIO, "https://g", cancel=token
        )
    )
    assert outcome.reason == "cancelled: shutting down"


def test_navigation_failure_skips_the_model() -> None:
    """An unreachable start URL fails before the first model call."""
    model = FakeModel(responses=[tool_call("screenshot")])
    outcome = asyncio.run(
        _executor(FakePage(fail_goto=True), model).execute_scenario(SCENARIO, "https://g")
    )
    assert outcome.reason == "Navigation failed: net::ERR_NAME_NOT_RESOLVED"
    assert model.turns == []


def test_scenarios_from_result_shapes() -> None:
    """Scenarios are read from the nested analysis block or the top level."""
    nested = {"analysis": {"scenarios": [{"name": "A", "steps": [{"action": "click"}]}]}}
    assert scenarios_from_result(nested)[0].steps[0].action == "click"
    assert scenarios_from_result({"scenarios": [{"name": "B"}]})[0].name == "B"
    with pytest.raises(ValueError, match="no scenarios"):
        scenarios_from_result({"analysis": {}})
