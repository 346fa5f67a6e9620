"""Job orchestration exports."""

from flowpilot.orchestrator.analysis import AnalysisOrchestrator, build_scout_args
from flowpilot.orchestrator.plan_runs import PlanRunOrchestrator, parse_flow_line
from flowpilot.orchestrator.process_runner import ProcessResult, ProcessRunner
from flowpilot.orchestrator.progress import ProgressEvent, parse_progress_line
from flowpilot.orchestrator.registry import HintRejectedError, ProcessRegistry, RunningJobTracker
from flowpilot.orchestrator.services import JobServices
from flowpilot.orchestrator.slots import ConcurrencySlot, SlotRegistry

__all__ = [
    "AnalysisOrchestrator",
    "ConcurrencySlot",
    "HintRejectedError",
    "JobServices",
    "PlanRunOrchestrator",
    "ProcessRegistry",
    "ProcessResult",
    "ProcessRunner",
    "ProgressEvent",
    "RunningJobTracker",
    "SlotRegistry",
    "build_scout_args",
    "parse_flow_line",
    "parse_progress_line",
]
