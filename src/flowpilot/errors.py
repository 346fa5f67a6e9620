"""Exception taxonomy for flow execution and job orchestration."""

from __future__ import annotations


class FlowPilotError(Exception):
    """Base class for all engine errors."""


class MalformedFlowError(FlowPilotError):
    """Raised when flow text cannot be turned into a flow."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"malformed flow {name!r}: {reason}")
        self.name = name
        self.reason = reason


class RecursionDetectedError(FlowPilotError):
    """Raised when a flow invokes itself directly or transitively."""

    def __init__(self, name: str) -> None:
        super().__init__(f"runFlow {name!r}: recursive loop detected")
        self.name = name


class CommandFailedError(FlowPilotError):
    """Raised when a flow command fails; aborts the remaining commands of the flow."""

    def __init__(
        self,
        message: str,
        *,
        screenshot: str | None = None,
        reasoning: str | None = None,
    ) -> None:
        super().__init__(message)
        self.screenshot = screenshot
        self.reasoning = reasoning


class ToolExecutionError(FlowPilotError):
    """Raised by a browser tool; surfaced to the model as an error tool result."""


class JobTimeoutError(FlowPilotError):
    """Raised when a unit of work exceeds its deadline."""


class ProcessExitError(FlowPilotError):
    """Raised when the external analysis process exits with a non-zero code."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int,
        last_step: str | None = None,
        stderr_tail: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.last_step = last_step
        self.stderr_tail = stderr_tail


class QueueTimeoutError(FlowPilotError):
    """Raised when a concurrency slot was not granted within the wait bound."""


class ShutdownAbortError(FlowPilotError):
    """Raised when work is abandoned because the service is shutting down."""


class ResumeUnavailableError(FlowPilotError):
    """Raised when a job cannot be continued from a checkpoint."""


class ValidationFailedError(FlowPilotError, ValueError):
    """Raised for invalid job parameters."""
