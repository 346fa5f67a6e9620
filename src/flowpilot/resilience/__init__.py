"""Resilience helpers."""

from flowpilot.resilience.retry import RetryExecutor, RetryPolicy

__all__ = ["RetryExecutor", "RetryPolicy"]
