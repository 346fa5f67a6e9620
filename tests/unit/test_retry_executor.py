"""Retry executor tests."""

from __future__ import annotations

import asyncio

import pytest

from flowpilot.resilience.retry import RetryExecutor, RetryPolicy


def test_retry_executor_retries_then_succeeds() -> None:
    """Executor should retry failed attempts and eventually return success."""
    attempts = {"count": 0}
    slept: list[float] = []

    async def operation() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise RuntimeError("temporary failure")
        return "ok"

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)

    executor = RetryExecutor(
        RetryPolicy(max_attempts=3, backoff_seconds=0.1, jitter_seconds=0.0),
        sleep_fn=fake_sleep,
        jitter_fn=lambda _a, _b: 0.0,
    )
    result = asyncio.run(executor.run(operation, stage_name="retry-test"))
    assert result == "ok"
    assert attempts["count"] == 3
    assert slept == [0.1, 0.2]


def test_retry_executor_timeout_raises() -> None:
    """A per-attempt timeout should surface as a wrapped runtime error."""
    executor = RetryExecutor(
        RetryPolicy(max_attempts=1, backoff_seconds=0.0, jitter_seconds=0.0)
    )

    async def operation() -> None:
        await asyncio.sleep(0.5)

    with pytest.raises(RuntimeError, match="timeout-test failed after 1 attempt"):
        asyncio.run(executor.run(operation, stage_name="timeout-test", timeout_seconds=0.01))


def test_retry_executor_rejects_zero_attempts() -> None:
    """A policy without attempts is a configuration error."""
    executor = RetryExecutor(RetryPolicy(max_attempts=0, backoff_seconds=0.0))

    async def operation() -> str:
        return "never"

    with pytest.raises(ValueError):
        asyncio.run(executor.run(operation, stage_name="zero"))
