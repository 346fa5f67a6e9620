"""Owned registries for running jobs and live analysis processes."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import orjson

from flowpilot.schemas.enums import JobKind, JobStatus
from flowpilot.schemas.job_models import RunningJob, UnitResult, utcnow

LOGGER = logging.getLogger(__name__)


class RunningJobTracker:
    """Live state of in-flight jobs for observers that reconnect mid-run.

    Every read returns a deep copy so callers never share mutable state with
    the running job.
    """

    def __init__(self, *, log_limit: int = 500) -> None:
        self._log_limit = log_limit
        self._jobs: dict[str, RunningJob] = {}
        self._lock = threading.Lock()

    def register(
        self,
        job_id: str,
        *,
        kind: JobKind,
        mode: str,
        total_units: int = 0,
        plan_id: str | None = None,
        name: str | None = None,
    ) -> RunningJob:
        job = RunningJob(
            id=job_id,
            kind=kind,
            mode=mode,
            total_units=total_units,
            plan_id=plan_id,
            name=name,
        )
        with self._lock:
            self._jobs[job_id] = job
        return job.model_copy(deep=True)

    def append_log(self, job_id: str, line: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            logs = job.logs
            logs.append(line)
            if len(logs) > self._log_limit:
                del logs[: len(logs) - self._log_limit]

    def append_unit(self, job_id: str, unit: UnitResult) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.completed_units.append(unit)

    def set_total(self, job_id: str, total_units: int) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.total_units = total_units

    def set_phase(self, job_id: str, phase: str, *, status: JobStatus | None = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.phase = phase
            if status is not None:
                job.status = status

    def remove(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def get(self, job_id: str) -> RunningJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def snapshot(self) -> dict[str, RunningJob]:
        with self._lock:
            return {job_id: job.model_copy(deep=True) for job_id, job in self._jobs.items()}

    def sweep_stale(self, max_age_seconds: float) -> list[str]:
        """Drop entries older than ``max_age_seconds``; return the removed ids."""
        now = utcnow()
        removed: list[str] = []
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if (now - job.started_at).total_seconds() > max_age_seconds:
                    removed.append(job_id)
                    del self._jobs[job_id]
        for job_id in removed:
            LOGGER.info("Cleaning up stale running job %s", job_id)
        return removed


class HintRejectedError(Exception):
    """Raised when a user hint cannot be delivered."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass
class _ActiveProcess:
    stdin: asyncio.StreamWriter | None
    last_hint_at: float | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ProcessRegistry:
    """Active analysis subprocesses reachable for live user hints."""

    def __init__(
        self,
        *,
        hint_cooldown_seconds: float = 5.0,
        hint_max_chars: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cooldown = hint_cooldown_seconds
        self._max_chars = hint_max_chars
        self._clock = clock
        self._active: dict[str, _ActiveProcess] = {}
        self._lock = threading.Lock()

    def register(self, job_id: str, stdin: asyncio.StreamWriter | None) -> None:
        with self._lock:
            self._active[job_id] = _ActiveProcess(stdin=stdin)

    def remove(self, job_id: str) -> None:
        with self._lock:
            self._active.pop(job_id, None)

    async def close(self, job_id: str) -> None:
        """Remove the process and close its stdin once no hint is mid-write."""
        with self._lock:
            active = self._active.pop(job_id, None)
        if active is None or active.stdin is None:
            return
        async with active.lock:
            if not active.stdin.is_closing():
                active.stdin.close()

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    async def send_hint(self, job_id: str, message: str) -> None:
        """Write one ``user_hint`` JSON line to the process stdin."""
        text = message.strip()
        if not text:
            raise HintRejectedError("message is required", reason="invalid")
        text = text[: self._max_chars]
        with self._lock:
            active = self._active.get(job_id)
        if active is None or active.stdin is None:
            raise HintRejectedError("analysis is not running", reason="gone")
        async with active.lock:
            now = self._clock()
            if active.last_hint_at is not None and now - active.last_hint_at < self._cooldown:
                raise HintRejectedError(
                    "please wait before sending another hint", reason="cooldown"
                )
            if not self.is_active(job_id) or active.stdin.is_closing():
                raise HintRejectedError("analysis has ended", reason="gone")
            line = orjson.dumps({"type": "user_hint", "message": text}) + b"\n"
            try:
                active.stdin.write(line)
                await active.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise HintRejectedError("analysis has ended", reason="gone") from exc
            active.last_hint_at = now
