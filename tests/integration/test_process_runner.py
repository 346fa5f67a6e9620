"""ProcessRunner against the stand-in CLI."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from fakes import write_fake_cli
from flowpilot.cancellation import CancellationToken
from flowpilot.config.models import OrchestratorConfig
from flowpilot.errors import (
    FlowPilotError,
    JobTimeoutError,
    ProcessExitError,
    ShutdownAbortError,
)
from flowpilot.orchestrator.progress import ProgressEvent
from flowpilot.orchestrator.process_runner import ProcessRunner
from flowpilot.orchestrator.registry import ProcessRegistry


def _runner(tmp_path: Path, behavior: str, **settings: int) -> ProcessRunner:
    config = OrchestratorConfig(cli_path=str(write_fake_cli(tmp_path)), **settings)
    env = {**os.environ, "FAKE_CLI_BEHAVIOR": behavior}
    return ProcessRunner(config, processes=ProcessRegistry(), env=env)


def _args(tmp_path: Path) -> list[str]:
    output = tmp_path / "out"
    output.mkdir(exist_ok=True)
    return ["scout", "--game", "https://snake.test", "--output", str(output)]


def test_progress_is_streamed_and_stdout_returned(tmp_path: Path) -> None:
    """Tagged stderr lines reach the handler; plain lines fill the tail."""
    seen: list[ProgressEvent] = []

    async def on_progress(event: ProgressEvent) -> None:
        seen.append(event)

    result = asyncio.run(
        _runner(tmp_path, "ok").run(
            _args(tmp_path), job_id="job-1", timeout_seconds=30, on_progress=on_progress
        )
    )

    assert [event.step for event in seen] == [
        "scouting",
        "agent_reasoning",
        "agent_step_detail",
        "agent_screenshot",
        "analyzing",
    ]
    assert result.last_step == "analyzing"
    assert result.stderr_tail == ["debug: model warmed up"]
    assert '"gameInfo"' in result.stdout
    assert result.stdout.startswith("scout finished")


def test_exit_error_names_the_step_and_redacts(tmp_path: Path) -> None:
    """A non-zero exit reports the last step and the last stderr line."""
    with pytest.raises(ProcessExitError) as excinfo:
        asyncio.run(_runner(tmp_path, "fail").run(_args(tmp_path), job_id="job-2", timeout_seconds=30))

    error = excinfo.value
    assert error.exit_code == 2
    assert str(error) == (
        "CLI exited with code 2 (failed during: analyzing)\nquota exceeded for key [REDACTED]"
    )
    assert "sk-abc" not in error.stderr_tail


def test_deadline_kills_the_process(tmp_path: Path) -> None:
    """A hung process is killed and reported with its last step."""
    with pytest.raises(JobTimeoutError, match=r"^Analysis timed out after 0 minutes \(last step: analyzing\)$"):
        asyncio.run(
            _runner(tmp_path, "hang").run(_args(tmp_path), job_id="job-3", timeout_seconds=3)
        )


def test_shutdown_cancels_the_process(tmp_path: Path) -> None:
    """Cancelling the parent scope aborts the run."""
    shutdown = CancellationToken()

    async def scenario() -> None:
        asyncio.get_running_loop().call_later(1.0, shutdown.cancel, "server shutting down")
        await _runner(tmp_path, "hang").run(
            _args(tmp_path), job_id="job-4", timeout_seconds=60, cancel=shutdown
        )

    with pytest.raises(ShutdownAbortError, match="Analysis cancelled: server shutting down"):
        asyncio.run(scenario())


def test_oversized_stdout_is_truncated(tmp_path: Path) -> None:
    """Output past the byte limit is dropped and flagged."""
    result = asyncio.run(
        _runner(tmp_path, "ok", max_stdout_bytes=10).run(
            _args(tmp_path), job_id="job-5", timeout_seconds=30
        )
    )

    assert result.stdout_truncated
    assert result.stdout == "scout fini"


def test_missing_executable_is_reported(tmp_path: Path) -> None:
    """A CLI path that cannot be started raises before any output."""
    runner = ProcessRunner(OrchestratorConfig(cli_path=str(tmp_path / "absent")), env={})
    with pytest.raises(FlowPilotError, match="Failed to start CLI"):
        asyncio.run(runner.run(["scout"], job_id="job-6", timeout_seconds=5))
