"""Sequential execution of a batch of flows against one browser session."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Sequence

from flowpilot.cancellation import CancellationToken
from flowpilot.errors import RecursionDetectedError
from flowpilot.executor.flow_executor import FlowContext, FlowExecutor
from flowpilot.flows.serializer import order_flows
from flowpilot.schemas.enums import StepStatus
from flowpilot.schemas.flow_models import Flow
from flowpilot.schemas.job_models import FlowRunResult, StepResult

LOGGER = logging.getLogger(__name__)


class BatchObserver:
    """Hooks invoked while a batch runs; the default implementation ignores them."""

    async def flow_started(self, flow: Flow, index: int, total: int) -> None:
        return None

    async def step_started(self, flow: Flow, index: int, label: str) -> None:
        return None

    async def step_finished(self, flow: Flow, step: StepResult) -> None:
        return None

    async def flow_finished(self, flow: Flow, index: int, result: FlowRunResult) -> None:
        return None


def format_duration(milliseconds: int) -> str:
    """``"850ms"`` below one second, otherwise ``"1.5s"``."""
    if milliseconds < 1000:
        return f"{milliseconds}ms"
    return f"{milliseconds / 1000:.1f}s"


def order_parsed_flows(flows: Sequence[Flow]) -> list[Flow]:
    by_name = [{"name": flow.name, "flow": flow} for flow in flows]
    return [entry["flow"] for entry in order_flows(by_name)]


async def run_flow_batch(
    executor: FlowExecutor,
    flows: Sequence[Flow],
    *,
    work_dir: Path | None = None,
    observer: BatchObserver | None = None,
    url_override: str | None = None,
    cancel: CancellationToken | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> list[FlowRunResult]:
    """Run flows one after another; a failing flow never stops its siblings."""
    observer = observer or BatchObserver()
    ordered = order_parsed_flows(flows)
    fctx = FlowContext(flows=ordered, work_dir=work_dir)
    results: list[FlowRunResult] = []
    for index, flow in enumerate(ordered):
        started = clock()
        await observer.flow_started(flow, index, len(ordered))
        if cancel is not None and cancel.cancelled:
            result = FlowRunResult(
                name=flow.name, status="failed", error=f"cancelled: {cancel.reason}"
            )
        else:
            result = await _run_one(executor, flow, fctx, observer, url_override, started, clock)
        results.append(result)
        await observer.flow_finished(flow, index, result)
    return results


async def _run_one(
    executor: FlowExecutor,
    flow: Flow,
    fctx: FlowContext,
    observer: BatchObserver,
    url_override: str | None,
    started: float,
    clock: Callable[[], float],
) -> FlowRunResult:
    start_url = url_override or flow.metadata.start_url
    if start_url:
        try:
            await executor.session.navigate(start_url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Navigation for flow %s failed: %s", flow.name, exc)
            return FlowRunResult(
                name=flow.name,
                status="failed",
                error=f"Navigation failed: {exc}",
                duration_ms=int((clock() - started) * 1000),
            )
        await executor.session.settle(executor.settings.flow_settle_seconds)

    try:
        steps = await executor.execute_flow(
            flow,
            fctx,
            on_step_start=observer.step_started,
            on_step=observer.step_finished,
        )
    except RecursionDetectedError as exc:
        return FlowRunResult(
            name=flow.name,
            status="failed",
            error=str(exc),
            duration_ms=int((clock() - started) * 1000),
        )
    failed = next((step for step in steps if step.status == StepStatus.FAILED), None)
    return FlowRunResult(
        name=flow.name,
        status="failed" if failed else "passed",
        steps=steps,
        error=failed.error if failed else None,
        duration_ms=int((clock() - started) * 1000),
    )
