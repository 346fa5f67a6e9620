"""Supervised execution of the external analysis CLI."""

from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Sequence

from flowpilot.cancellation import CancellationToken
from flowpilot.config.models import OrchestratorConfig
from flowpilot.errors import (
    FlowPilotError,
    JobTimeoutError,
    ProcessExitError,
    ShutdownAbortError,
)
from flowpilot.orchestrator.progress import ProgressEvent, parse_progress_line
from flowpilot.orchestrator.registry import ProcessRegistry
from flowpilot.security.redaction import redact_text

LOGGER = logging.getLogger(__name__)

STDOUT_CHUNK_BYTES = 64 * 1024
MAX_REASON_LINE_CHARS = 200

ProgressHandler = Callable[[ProgressEvent], Awaitable[None]]
LineHandler = Callable[[str], Awaitable[None]]


@dataclass
class ProcessResult:
    """Output of a process that exited with code 0."""

    stdout: str
    exit_code: int = 0
    last_step: str | None = None
    stderr_tail: list[str] = field(default_factory=list)
    stdout_truncated: bool = False


@dataclass
class _StreamState:
    tail: deque[str]
    last_step: str | None = None
    stdout: bytes = b""
    stdout_truncated: bool = False


class ProcessRunner:
    """Spawn the CLI, stream tagged stderr lines and enforce the deadline."""

    def __init__(
        self,
        settings: OrchestratorConfig | None = None,
        *,
        processes: ProcessRegistry | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings or OrchestratorConfig()
        self.processes = processes
        self._env = dict(os.environ if env is None else env)
        self._env["NO_COLOR"] = "1"

    @property
    def env(self) -> dict[str, str]:
        return dict(self._env)

    async def run(
        self,
        args: Sequence[str],
        *,
        job_id: str,
        timeout_seconds: float,
        label: str = "Analysis",
        on_progress: ProgressHandler | None = None,
        on_stdout_line: LineHandler | None = None,
        cancel: CancellationToken | None = None,
        cwd: Path | None = None,
        hints: bool = True,
    ) -> ProcessResult:
        """Run ``cli_path *args``; raise a reason-tagged error unless it exits 0.

        With ``on_stdout_line`` stdout is streamed line by line as well as
        collected. ``hints=False`` keeps the process out of the hint registry.
        """
        scope = (
            cancel.child(timeout_seconds=timeout_seconds)
            if cancel is not None
            else CancellationToken(timeout_seconds=timeout_seconds)
        )
        LOGGER.info("Job %s: running %s %s", job_id, self.settings.cli_path, " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                self.settings.cli_path,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
                cwd=str(cwd) if cwd else None,
                limit=self.settings.max_stderr_line_bytes,
            )
        except OSError as exc:
            raise FlowPilotError(f"Failed to start CLI: {exc}") from exc

        processes = self.processes if hints else None
        if processes is not None:
            processes.register(job_id, proc.stdin)
        elif proc.stdin is not None:
            proc.stdin.close()

        state = _StreamState(tail=deque(maxlen=self.settings.stderr_tail_lines))
        io_task = asyncio.ensure_future(
            self._communicate(proc, state, job_id, on_progress, on_stdout_line)
        )
        cancel_task = asyncio.ensure_future(scope.wait())
        try:
            await asyncio.wait({io_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._terminate(proc, io_task)
            raise
        finally:
            cancel_task.cancel()
            if processes is not None:
                await processes.close(job_id)

        if not io_task.done():
            await self._terminate(proc, io_task)
            minutes = int(timeout_seconds // 60)
            if scope.deadline_exceeded:
                message = f"{label} timed out after {minutes} minutes"
                if state.last_step:
                    message += f" (last step: {state.last_step})"
                raise JobTimeoutError(message)
            raise ShutdownAbortError(f"{label} cancelled: {scope.reason}")

        io_task.result()
        exit_code = proc.returncode if proc.returncode is not None else -1
        if exit_code != 0:
            raise ProcessExitError(
                _exit_message(exit_code, state),
                exit_code=exit_code,
                last_step=state.last_step,
                stderr_tail=redact_text("\n".join(state.tail)),
            )
        return ProcessResult(
            stdout=state.stdout.decode("utf-8", errors="replace"),
            exit_code=exit_code,
            last_step=state.last_step,
            stderr_tail=list(state.tail),
            stdout_truncated=state.stdout_truncated,
        )

    async def _communicate(
        self,
        proc: asyncio.subprocess.Process,
        state: _StreamState,
        job_id: str,
        on_progress: ProgressHandler | None,
        on_stdout_line: LineHandler | None,
    ) -> None:
        read_stdout = (
            self._read_stdout(proc, state, job_id)
            if on_stdout_line is None
            else self._stream_stdout(proc, state, job_id, on_stdout_line)
        )
        await asyncio.gather(
            read_stdout,
            self._read_stderr(proc, state, job_id, on_progress),
        )
        await proc.wait()

    async def _read_stdout(
        self, proc: asyncio.subprocess.Process, state: _StreamState, job_id: str
    ) -> None:
        assert proc.stdout is not None
        buffer = bytearray()
        while True:
            chunk = await proc.stdout.read(STDOUT_CHUNK_BYTES)
            if not chunk:
                break
            self._collect(buffer, chunk, state, job_id)
        state.stdout = bytes(buffer)

    async def _stream_stdout(
        self,
        proc: asyncio.subprocess.Process,
        state: _StreamState,
        job_id: str,
        on_line: LineHandler,
    ) -> None:
        assert proc.stdout is not None
        buffer = bytearray()
        while True:
            try:
                raw = await proc.stdout.readline()
            except ValueError:
                LOGGER.warning("Job %s: dropped oversized stdout line", job_id)
                continue
            if not raw:
                break
            self._collect(buffer, raw, state, job_id)
            try:
                await on_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Job %s: stdout handler failed: %s", job_id, exc)
        state.stdout = bytes(buffer)

    def _collect(self, buffer: bytearray, chunk: bytes, state: _StreamState, job_id: str) -> None:
        limit = self.settings.max_stdout_bytes
        room = limit - len(buffer)
        if room > 0:
            buffer.extend(chunk[:room])
        if len(chunk) > room and not state.stdout_truncated:
            state.stdout_truncated = True
            LOGGER.warning("Job %s: stdout exceeded %d bytes; discarding overflow", job_id, limit)

    async def _read_stderr(
        self,
        proc: asyncio.subprocess.Process,
        state: _StreamState,
        job_id: str,
        on_progress: ProgressHandler | None,
    ) -> None:
        assert proc.stderr is not None
        while True:
            try:
                raw = await proc.stderr.readline()
            except ValueError:
                LOGGER.warning("Job %s: dropped oversized stderr line", job_id)
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            event = parse_progress_line(line)
            if event is None:
                state.tail.append(line)
                LOGGER.debug("Job %s stderr: %s", job_id, line)
                continue
            state.last_step = event.step
            if on_progress is None:
                continue
            try:
                await on_progress(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Job %s: progress handler failed for %s: %s", job_id, event.step, exc)

    async def _terminate(
        self, proc: asyncio.subprocess.Process, io_task: asyncio.Future[None]
    ) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=5)
        except asyncio.TimeoutError:
            LOGGER.warning("Process %s did not exit after kill", proc.pid)
        io_task.cancel()
        try:
            await io_task
        except asyncio.CancelledError:
            pass


def _exit_message(exit_code: int, state: _StreamState) -> str:
    message = f"CLI exited with code {exit_code}"
    if state.last_step:
        message += f" (failed during: {state.last_step})"
    for line in reversed(state.tail):
        stripped = line.strip()
        if stripped:
            if len(stripped) > MAX_REASON_LINE_CHARS:
                stripped = stripped[:MAX_REASON_LINE_CHARS] + "..."
            message += "\n" + redact_text(stripped)
            break
    return message
