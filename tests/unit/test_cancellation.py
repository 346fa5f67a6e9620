"""Cancellation scope tests."""

from __future__ import annotations

import asyncio
import gc

from flowpilot.cancellation import CancellationToken


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_cancel_propagates_to_children() -> None:
    """Cancelling a parent cancels every nested scope with the same reason."""
    parent = CancellationToken()
    child = parent.child()
    grandchild = child.child(timeout_seconds=60)
    parent.cancel("server shutting down")
    assert child.cancelled
    assert grandchild.cancelled
    assert grandchild.reason == "server shutting down"


def test_finished_children_are_not_retained() -> None:
    """A long-lived scope only tracks children that are still referenced."""
    root = CancellationToken()
    kept = root.child()
    for _ in range(1000):
        root.child()
    gc.collect()
    assert len(root._children) == 1
    root.cancel("server shutting down")
    assert kept.reason == "server shutting down"


def test_child_of_cancelled_parent_starts_cancelled() -> None:
    """A scope created under a cancelled parent is already cancelled."""
    parent = CancellationToken()
    parent.cancel("stop")
    assert parent.child().reason == "stop"


def test_deadline_uses_nearest_ancestor() -> None:
    """The remaining time is bounded by the tightest deadline in the chain."""
    clock = FakeClock()
    parent = CancellationToken(timeout_seconds=30, clock=clock)
    child = parent.child(timeout_seconds=120)
    assert child.remaining() == 30
    clock.now += 31
    assert child.deadline_exceeded
    assert child.cancelled
    assert child.reason == "deadline exceeded"
    assert child.remaining() == 0.0


def test_unbounded_scope_has_no_remaining_time() -> None:
    """Scopes without deadlines report None."""
    assert CancellationToken().remaining() is None


def test_sleep_returns_false_when_cancelled_midway() -> None:
    """Sleeping on a scope wakes up early once it is cancelled."""

    async def scenario() -> tuple[bool, bool]:
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")
        interrupted = await token.sleep(5)
        fresh = CancellationToken()
        completed = await fresh.sleep(0.01)
        return interrupted, completed

    interrupted, completed = asyncio.run(scenario())
    assert interrupted is False
    assert completed is True


def test_wait_returns_reason_on_deadline() -> None:
    """Waiting on a deadline-bound scope returns once the deadline passes."""

    async def scenario() -> str:
        return await CancellationToken(timeout_seconds=0.01).wait()

    assert asyncio.run(scenario()) == "deadline exceeded"
