"""Running job tracker and hint delivery tests."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import orjson
import pytest

from flowpilot.orchestrator.registry import HintRejectedError, ProcessRegistry, RunningJobTracker
from flowpilot.schemas.enums import JobKind
from flowpilot.schemas.job_models import UnitResult


class FakeStdin:
    def __init__(self, *, broken: bool = False) -> None:
        self.lines: list[bytes] = []
        self.broken = broken
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.broken:
            raise BrokenPipeError("pipe closed")
        self.lines.append(data)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_tracker_bounds_logs_and_returns_copies() -> None:
    """Logs keep only the newest lines and reads never expose live state."""
    tracker = RunningJobTracker(log_limit=3)
    tracker.register("t1", kind=JobKind.TEST_RUN, mode="browser", total_units=2)
    for number in range(5):
        tracker.append_log("t1", f"line {number}")
    tracker.append_unit("t1", UnitResult(name="login", status="passed", duration="2s"))

    job = tracker.get("t1")
    assert job is not None
    assert job.logs == ["line 2", "line 3", "line 4"]
    job.logs.clear()
    assert tracker.snapshot()["t1"].logs == ["line 2", "line 3", "line 4"]
    assert tracker.snapshot()["t1"].completed_units[0].name == "login"


def test_tracker_ignores_unknown_jobs_and_sweeps_stale() -> None:
    """Updates for unknown ids are no-ops; old entries are swept."""
    tracker = RunningJobTracker()
    tracker.append_log("missing", "x")
    tracker.register("old", kind=JobKind.ANALYSIS, mode="analysis")
    tracker.register("new", kind=JobKind.TEST_RUN, mode="agent")
    tracker._jobs["old"].started_at -= timedelta(hours=1)

    assert tracker.sweep_stale(1800) == ["old"]
    assert list(tracker.snapshot()) == ["new"]


def test_unknown_mode_is_rejected() -> None:
    """Running jobs only accept known run modes."""
    with pytest.raises(ValueError, match="unknown run mode"):
        RunningJobTracker().register("x", kind=JobKind.TEST_RUN, mode="desktop")


def test_hint_is_written_as_json_line_and_truncated() -> None:
    """Hints are trimmed, truncated and written as one JSON line."""

    async def scenario() -> FakeStdin:
        stdin = FakeStdin()
        registry = ProcessRegistry(hint_max_chars=5)
        registry.register("job", stdin)  # type: ignore[arg-type]
        await registry.send_hint("job", "  try the settings menu ")
        return stdin

    stdin = asyncio.run(scenario())
    assert orjson.loads(stdin.lines[0]) == {"type": "user_hint", "message": "try t"}
    assert stdin.lines[0].endswith(b"\n")


def test_hint_rejections() -> None:
    """Empty, cooldown-limited and undeliverable hints are rejected with a reason."""

    async def scenario() -> list[str]:
        clock = FakeClock()
        registry = ProcessRegistry(hint_cooldown_seconds=5, clock=clock)
        registry.register("job", FakeStdin())  # type: ignore[arg-type]
        registry.register("broken", FakeStdin(broken=True))  # type: ignore[arg-type]
        reasons: list[str] = []
        attempts = [("job", " "), ("job", "first"), ("job", "again"), ("gone", "hi"), ("broken", "hi")]
        for job_id, message in attempts:
            try:
                await registry.send_hint(job_id, message)
                reasons.append("sent")
            except HintRejectedError as exc:
                reasons.append(exc.reason)
        clock.now = 6
        await registry.send_hint("job", "later")
        reasons.append("sent")
        return reasons

    assert asyncio.run(scenario()) == ["invalid", "sent", "cooldown", "gone", "gone", "sent"]


def test_close_removes_process_and_closes_stdin() -> None:
    """Closing a process makes it unreachable for hints."""

    async def scenario() -> tuple[bool, bool]:
        stdin = FakeStdin()
        registry = ProcessRegistry()
        registry.register("job", stdin)  # type: ignore[arg-type]
        await registry.close("job")
        return registry.is_active("job"), stdin.closed

    assert asyncio.run(scenario()) == (False, True)
