"""Task supervision: every spawned job ends in a terminal status."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine

LOGGER = logging.getLogger(__name__)

FailureHandler = Callable[[str, str], Awaitable[None]]


class TaskSupervisor:
    """Spawn job coroutines and convert unexpected faults into failures."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def active(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    def spawn(
        self,
        job_id: str,
        coro: Coroutine[Any, Any, None],
        *,
        on_failure: FailureHandler,
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(self._guard(job_id, coro, on_failure), name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return task

    async def _guard(
        self,
        job_id: str,
        coro: Coroutine[Any, Any, None],
        on_failure: FailureHandler,
    ) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            await self._report(job_id, "cancelled", on_failure)
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Job %s crashed", job_id)
            await self._report(job_id, f"internal error: {exc}", on_failure)

    async def _report(self, job_id: str, reason: str, on_failure: FailureHandler) -> None:
        try:
            await on_failure(job_id, reason)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Failure handler for job %s raised: %s", job_id, exc)

    async def wait_all(self, timeout: float | None = None) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def cancel_all(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
