"""Observability exports."""

from flowpilot.observability.progress_hub import (
    ProgressHub,
    ProgressMessage,
    Subscription,
)
from flowpilot.observability.tracing import (
    LangfuseTracer,
    NoOpTracer,
    TracerProtocol,
    create_tracer,
)

__all__ = [
    "LangfuseTracer",
    "NoOpTracer",
    "ProgressHub",
    "ProgressMessage",
    "Subscription",
    "TracerProtocol",
    "create_tracer",
]
