"""Flow command execution exports."""

from flowpilot.executor.batch import (
    BatchObserver,
    format_duration,
    order_parsed_flows,
    run_flow_batch,
)
from flowpilot.executor.flow_executor import CommandOutcome, FlowContext, FlowExecutor
from flowpilot.executor.vision import parse_coordinates, resolve_point

__all__ = [
    "BatchObserver",
    "CommandOutcome",
    "FlowContext",
    "FlowExecutor",
    "format_duration",
    "order_parsed_flows",
    "parse_coordinates",
    "resolve_point",
    "run_flow_batch",
]
