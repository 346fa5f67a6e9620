"""Flow batch runner tests."""

from __future__ import annotations

import asyncio

from fakes import FakeBudgeter, FakeModel, FakePage

from flowpilot.browser.session import BrowserSession
from flowpilot.browser.viewports import resolve_viewport
from flowpilot.cancellation import CancellationToken
from flowpilot.config.models import ExecutorConfig
from flowpilot.executor.batch import BatchObserver, format_duration, run_flow_batch
from flowpilot.executor.flow_executor import FlowExecutor
from flowpilot.flows.parser import parse_flow
from flowpilot.schemas.flow_models import Flow
from flowpilot.schemas.job_models import FlowRunResult, StepResult


async def _no_sleep(seconds: float) -> None:
    return None


def _executor(page: FakePage, model: FakeModel | None = None) -> FlowExecutor:
    session = BrowserSession(
        page,
        resolve_viewport(None),
        settings=ExecutorConfig(),
        budgeter=FakeBudgeter(),
        sleep_fn=_no_sleep,
    )
    return FlowExecutor(session, model, sleep_fn=_no_sleep)


class RecordingObserver(BatchObserver):
    def __init__(self) -> None:
        self.events: list[str] = []

    async def flow_started(self, flow: Flow, index: int, total: int) -> None:
        self.events.append(f"flow {index + 1}/{total} {flow.name}")

    async def step_finished(self, flow: Flow, step: StepResult) -> None:
        self.events.append(f"step {flow.name} {step.status.value}")

    async def flow_finished(self, flow: Flow, index: int, result: FlowRunResult) -> None:
        self.events.append(f"end {flow.name} {result.status}")


def test_setup_runs_first_and_failures_do_not_stop_siblings() -> None:
    """The setup flow leads; a failing flow is recorded and the batch continues."""
    flows = [
        parse_flow("broken", "- inputText: ''\n"),
        parse_flow("play", "- pressKey: Space\n"),
        parse_flow("setup", "- pressKey: Enter\n"),
    ]
    observer = RecordingObserver()
    page = FakePage()
    results = asyncio.run(run_flow_batch(_executor(page), flows, observer=observer))
    assert [result.name for result in results] == ["setup", "broken", "play"]
    assert [result.status for result in results] == ["passed", "failed", "passed"]
    assert results[1].error == "inputText: empty text"
    assert page.named("press_key") == ["Enter", "Space"]
    assert observer.events[0] == "flow 1/3 setup"
    assert "end broken failed" in observer.events
    assert observer.events[-1] == "end play passed"


def test_unusable_repeat_count_falls_back_to_one_pass() -> None:
    """An infinite repeat count runs once and the next flow still runs."""
    flows = [
        parse_flow("spin", "- repeat:\n    times: .inf\n    commands:\n      - pressKey: Tab\n"),
        parse_flow("play", "- pressKey: Space\n"),
    ]
    page = FakePage()
    results = asyncio.run(run_flow_batch(_executor(page), flows))
    assert [(result.name, result.status) for result in results] == [
        ("spin", "passed"),
        ("play", "passed"),
    ]
    assert page.named("press_key") == ["Tab", "Space"]


class BrokenKeyboardExecutor(FlowExecutor):
    async def _hide_keyboard(self, value, fctx):  # type: ignore[no-untyped-def]
        raise KeyError("keyboard")


def test_unexpected_command_error_fails_only_that_flow() -> None:
    """A command raising an unexpected error becomes a failed step."""
    flows = [
        parse_flow("keyboard", "- hideKeyboard\n- pressKey: Tab\n"),
        parse_flow("play", "- pressKey: Space\n"),
    ]
    page = FakePage()
    session = _executor(page).session
    executor = BrokenKeyboardExecutor(session, None, sleep_fn=_no_sleep)
    results = asyncio.run(run_flow_batch(executor, flows))
    assert [(result.name, result.status) for result in results] == [
        ("keyboard", "failed"),
        ("play", "passed"),
    ]
    assert results[0].error == "hideKeyboard: 'keyboard'"
    assert len(results[0].steps) == 1
    assert page.named("press_key") == ["Space"]


def test_start_url_and_override_navigation() -> None:
    """Flows navigate to their header URL unless an override is given."""
    flows = [parse_flow("game", "url: https://game.test\n---\n- pressKey: Enter\n")]
    page = FakePage()
    asyncio.run(run_flow_batch(_executor(page), flows))
    assert page.named("goto") == ["https://game.test"]

    page = FakePage()
    asyncio.run(run_flow_batch(_executor(page), flows, url_override="https://staging.test"))
    assert page.named("goto") == ["https://staging.test"]


def test_navigation_failure_fails_only_that_flow() -> None:
    """A failed initial navigation yields a failed flow without steps."""
    flows = [parse_flow("game", "url: https://game.test\n---\n- pressKey: Enter\n")]
    results = asyncio.run(run_flow_batch(_executor(FakePage(fail_goto=True)), flows))
    assert results[0].status == "failed"
    assert results[0].steps == []
    assert results[0].error == "Navigation failed: net::ERR_NAME_NOT_RESOLVED"


def test_cancelled_batch_marks_remaining_flows_failed() -> None:
    """Once the scope is cancelled no further flow executes."""
    token = CancellationToken()
    token.cancel("test execution timed out")
    page = FakePage()
    flows = [parse_flow("one", "- pressKey: A\n"), parse_flow("two", "- pressKey: B\n")]
    results = asyncio.run(run_flow_batch(_executor(page), flows, cancel=token))
    assert {result.error for result in results} == {"cancelled: test execution timed out"}
    assert page.named("press_key") == []


def test_format_duration() -> None:
    """Durations switch from milliseconds to seconds at one second."""
    assert format_duration(850) == "850ms"
    assert format_duration(1500) == "1.5s"
