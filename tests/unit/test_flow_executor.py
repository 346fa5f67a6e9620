"""Flow command interpreter tests."""

from __future__ import annotations

import asyncio

import pytest

from fakes import SHOT_B64, FakeBudgeter, FakeModel, FakePage

from flowpilot.browser.session import BrowserSession
from flowpilot.browser.viewports import resolve_viewport
from flowpilot.cancellation import CancellationToken
from flowpilot.config.models import ExecutorConfig
from flowpilot.errors import CommandFailedError
from flowpilot.executor.flow_executor import FlowContext, FlowExecutor
from flowpilot.flows.parser import parse_flow
from flowpilot.schemas.enums import StepStatus
from flowpilot.schemas.flow_models import Flow
from flowpilot.schemas.job_models import StepResult


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


async def _no_sleep(seconds: float) -> None:
    return None


def _executor(
    page: FakePage,
    model: FakeModel | None = None,
    *,
    clock: FakeClock | None = None,
    cancel: CancellationToken | None = None,
) -> FlowExecutor:
    session = BrowserSession(
        page,
        resolve_viewport("desktop-std"),
        settings=ExecutorConfig(),
        budgeter=FakeBudgeter(),
        sleep_fn=_no_sleep,
    )
    clock = clock or FakeClock()
    return FlowExecutor(session, model, cancel=cancel, clock=clock, sleep_fn=clock.sleep)


def _run(executor: FlowExecutor, flow: Flow, *others: Flow) -> list[StepResult]:
    fctx = FlowContext(flows=[flow, *others])
    return asyncio.run(executor.execute_flow(flow, fctx))


def test_tap_on_text_clicks_model_coordinates() -> None:
    """The vision reply is parsed and clicked; the reply is kept as reasoning."""
    page = FakePage()
    model = FakeModel(vision=["640,360"])
    steps = _run(_executor(page, model), parse_flow("play", "- tapOn: Play\n"))
    assert steps[0].status == StepStatus.PASSED
    assert steps[0].result.startswith('Tapped on "Play" at (640,360).')
    assert steps[0].reasoning == "640,360"
    assert page.named("click") == [(640, 360)]
    assert '"Play"' in model.prompts[0]


def test_failed_command_stops_the_flow() -> None:
    """A not-found tap fails the step and the remaining commands never run."""
    page = FakePage()
    steps = _run(
        _executor(page, FakeModel(vision=["NOT_FOUND"])),
        parse_flow("play", "- tapOn: Play\n- pressKey: Enter\n"),
    )
    assert len(steps) == 1
    assert steps[0].status == StepStatus.FAILED
    assert steps[0].error == 'tapOn text "Play": text not found on screen'
    assert steps[0].screenshot == SHOT_B64
    assert page.named("press_key") == []


def test_unparsable_vision_reply_fails_with_reply() -> None:
    """A reply without coordinates is quoted in the error."""
    steps = _run(
        _executor(FakePage(), FakeModel(vision=["top left corner"])),
        parse_flow("play", "- tapOn: Play\n"),
    )
    assert "could not parse coordinates" in (steps[0].error or "")
    assert steps[0].reasoning == "top left corner"


def test_tap_on_text_without_model_fails() -> None:
    """Text taps need a model client."""
    steps = _run(_executor(FakePage()), parse_flow("play", "- tapOn: Play\n"))
    assert steps[0].error == 'tapOn text "Play": AI client not configured'


def test_vision_question_without_model_is_a_command_failure() -> None:
    """Asking the model without one configured fails the command instead of asserting."""
    executor = _executor(FakePage())
    with pytest.raises(CommandFailedError, match="AI client not configured"):
        asyncio.run(executor._ask("Is Play visible?", SHOT_B64))


def test_tap_on_point_uses_viewport_percentages() -> None:
    """Point selectors resolve percentages against the session viewport."""
    page = FakePage()
    steps = _run(_executor(page), parse_flow("p", "- tapOn:\n    point: 50%,25%\n"))
    assert steps[0].status == StepStatus.PASSED
    assert page.named("click") == [(640, 180)]


def test_tap_on_id_prefers_script_then_falls_back_to_vision() -> None:
    """Element ids are clicked by script; a miss falls back to a text tap."""
    page = FakePage(eval_results={"getElementById": "clicked"})
    steps = _run(_executor(page), parse_flow("i", "- tapOn:\n    id: start-btn\n"))
    assert steps[0].result == "Tapped element #start-btn"
    assert page.named("click") == []

    page = FakePage(eval_results={"getElementById": "not_found"})
    steps = _run(
        _executor(page, FakeModel(vision=["5,6"])),
        parse_flow("i", "- tapOn:\n    id: start-btn\n"),
    )
    assert page.named("click") == [(5, 6)]


def test_unknown_and_device_commands_do_not_fail() -> None:
    """Unsupported commands are skipped; device-only commands are no-ops."""
    page = FakePage()
    steps = _run(_executor(page), parse_flow("misc", "- launchApp\n- launchRocket\n- back\n"))
    assert [step.status for step in steps] == [
        StepStatus.PASSED,
        StepStatus.SKIPPED,
        StepStatus.PASSED,
    ]
    assert steps[0].result == "launchApp (no-op in browser mode)"
    assert "history.back()" in page.named("evaluate")


def test_repeat_failure_names_the_iteration() -> None:
    """Nested failures inside repeat are prefixed with the iteration number."""
    page = FakePage()
    model = FakeModel(vision=["10,10", "10,10", "NOT_FOUND"])
    flow = parse_flow(
        "loop", "- repeat:\n    times: 3\n    commands:\n      - tapOn: Play\n"
    )
    steps = _run(_executor(page, model), flow)
    assert steps[0].error is not None
    assert steps[0].error.startswith('repeat iteration 3: tapOn text "Play"')
    assert len(page.named("click")) == 2


def test_run_flow_self_reference_is_detected() -> None:
    """A flow that runs itself fails with a recursion error."""
    flow = parse_flow("a", "- runFlow: a.yaml\n")
    steps = _run(_executor(FakePage()), flow)
    assert steps[0].status == StepStatus.FAILED
    assert "recursive loop detected" in (steps[0].error or "")


def test_run_flow_transitive_cycle_is_detected() -> None:
    """Cycles through another flow are detected and the visiting set is cleared."""
    first = parse_flow("a", "- runFlow: b\n")
    second = parse_flow("b", "- pressKey: Enter\n- runFlow: a\n")
    page = FakePage()
    executor = _executor(page)
    fctx = FlowContext(flows=[first, second])
    steps = asyncio.run(executor.execute_flow(first, fctx))
    assert "recursive loop detected" in (steps[0].error or "")
    assert page.named("press_key") == ["Enter"]
    assert fctx.visiting == set()


def test_run_flow_inline_and_missing_reference() -> None:
    """Inline command lists run in place; unknown references fail."""
    page = FakePage()
    flow = parse_flow(
        "wrapper",
        "- runFlow:\n    commands:\n      - pressKey: Enter\n- runFlow: missing.yaml\n",
    )
    steps = _run(_executor(page), flow)
    assert steps[0].status == StepStatus.PASSED
    assert page.named("press_key") == ["Enter"]
    assert steps[1].error == 'runFlow: flow "missing.yaml" not found'


def test_wait_until_polls_until_visible() -> None:
    """The condition is polled at the configured interval until the model agrees."""
    clock = FakeClock()
    model = FakeModel(vision=["NO", "NO", "YES"])
    flow = parse_flow(
        "wait", "- extendedWaitUntil:\n    visible: Start\n    timeout: 5000\n"
    )
    steps = _run(_executor(FakePage(), model, clock=clock), flow)
    assert steps[0].status == StepStatus.PASSED
    assert steps[0].result == 'Text "Start" is now visible.'
    assert clock.slept == [1.0, 1.0]


def test_wait_until_times_out() -> None:
    """A condition that never holds fails after the timeout with the last reply."""
    clock = FakeClock()
    flow = parse_flow(
        "wait", "- extendedWaitUntil:\n    visible: Start\n    timeout: 2000\n"
    )
    steps = _run(_executor(FakePage(), FakeModel(vision=["NO"]), clock=clock), flow)
    assert steps[0].error == (
        'extendedWaitUntil: timed out waiting for "Start" to be visible after 2000ms'
    )
    assert steps[0].reasoning == "NO"


def test_wait_until_without_model_sleeps_for_timeout() -> None:
    """Without a model the wait degrades to a plain sleep."""
    clock = FakeClock()
    flow = parse_flow(
        "wait", "- extendedWaitUntil:\n    notVisible: Loading\n    timeout: 3000\n"
    )
    steps = _run(_executor(FakePage(), clock=clock), flow)
    assert steps[0].result == "Waited 3000ms (no AI for vision check)"
    assert clock.slept == [3.0]


def test_assertions_follow_model_verdict() -> None:
    """assertVisible needs YES; assertNotVisible needs NO."""
    passed = _run(
        _executor(FakePage(), FakeModel(vision=["YES"])),
        parse_flow("a", "- assertVisible: Score\n"),
    )
    assert passed[0].result == 'assertVisible passed: "Score" is visible.'
    failed = _run(
        _executor(FakePage(), FakeModel(vision=["YES"])),
        parse_flow("a", "- assertNotVisible: Game Over\n"),
    )
    assert failed[0].error == 'assertNotVisible failed: "Game Over" is visible on screen'


def test_cancelled_scope_fails_next_command() -> None:
    """Commands check the cancellation scope before running."""
    token = CancellationToken()
    token.cancel("test timeout")
    steps = _run(_executor(FakePage(), cancel=token), parse_flow("c", "- back\n"))
    assert steps[0].error == "back: cancelled (test timeout)"


def test_step_callbacks_fire_in_order() -> None:
    """Start and finish hooks wrap every executed command."""
    events: list[str] = []

    async def started(flow: Flow, index: int, label: str) -> None:
        events.append(f"start {index} {label}")

    async def finished(flow: Flow, step: StepResult) -> None:
        events.append(f"done {step.index} {step.status.value}")

    flow = parse_flow("keys", "- pressKey: Enter\n- eraseText: 3\n")
    executor = _executor(FakePage())
    asyncio.run(
        executor.execute_flow(
            flow, FlowContext(flows=[flow]), on_step_start=started, on_step=finished
        )
    )
    assert events == [
        "start 0 pressKey: Enter",
        "done 0 passed",
        "start 1 eraseText: 3",
        "done 1 passed",
    ]
