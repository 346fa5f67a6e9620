"""Single-slot concurrency gates for resource-heavy work."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from flowpilot.errors import QueueTimeoutError, ShutdownAbortError

LOGGER = logging.getLogger(__name__)

QueuedCallback = Callable[[], Awaitable[None]]


class ConcurrencySlot:
    """At most one holder at a time; waiters queue until served, timed out or shut down."""

    def __init__(
        self,
        name: str,
        *,
        queue_wait_seconds: float,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        self.name = name
        self.queue_wait_seconds = queue_wait_seconds
        self._semaphore = asyncio.Semaphore(1)
        self._shutdown = shutdown or asyncio.Event()
        self._holder: str | None = None
        self.waiting = 0

    @property
    def holder(self) -> str | None:
        return self._holder

    @property
    def busy(self) -> bool:
        return self._semaphore.locked()

    def shutdown(self) -> None:
        self._shutdown.set()

    async def acquire(self, job_id: str, *, on_queued: QueuedCallback | None = None) -> None:
        """Take the slot for ``job_id`` or raise the reason it was not granted."""
        if self._shutdown.is_set():
            raise ShutdownAbortError(f"{self.name}: server shutting down")
        if self._semaphore.locked() and on_queued is not None:
            await on_queued()
        self.waiting += 1
        acquire_task = asyncio.ensure_future(self._semaphore.acquire())
        shutdown_task = asyncio.ensure_future(self._shutdown.wait())
        try:
            done, _ = await asyncio.wait(
                {acquire_task, shutdown_task},
                timeout=self.queue_wait_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            self._abandon(acquire_task)
            raise
        finally:
            self.waiting -= 1
            shutdown_task.cancel()
        if acquire_task in done:
            if self._shutdown.is_set():
                self._semaphore.release()
                raise ShutdownAbortError(f"{self.name}: server shutting down")
            self._holder = job_id
            LOGGER.debug("%s slot granted to %s", self.name, job_id)
            return
        acquire_task.cancel()
        try:
            await acquire_task
        except asyncio.CancelledError:
            pass
        else:
            # Granted between the timeout and the cancel.
            self._semaphore.release()
        if shutdown_task in done:
            raise ShutdownAbortError(f"{self.name}: server shutting down")
        raise QueueTimeoutError(
            f"{self.name}: not started within {self.queue_wait_seconds:g}s (queue full)"
        )

    def _abandon(self, acquire_task: asyncio.Future[bool]) -> None:
        if not acquire_task.done():
            acquire_task.cancel()
        elif not acquire_task.cancelled() and acquire_task.exception() is None:
            # Granted to a waiter that is going away.
            self._semaphore.release()

    def release(self) -> None:
        if self._holder is None and not self._semaphore.locked():
            return
        LOGGER.debug("%s slot released by %s", self.name, self._holder)
        self._holder = None
        self._semaphore.release()

    @asynccontextmanager
    async def hold(
        self, job_id: str, *, on_queued: QueuedCallback | None = None
    ) -> AsyncIterator[SlotLease]:
        lease = SlotLease(self)
        await self.acquire(job_id, on_queued=on_queued)
        try:
            yield lease
        finally:
            lease.release()


class SlotLease:
    """Releasable handle so a holder can give the slot up early, exactly once."""

    def __init__(self, slot: ConcurrencySlot) -> None:
        self._slot = slot
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._slot.release()


class SlotRegistry:
    """The two independent gates: analysis work and browser test work."""

    def __init__(self, *, queue_wait_seconds: float) -> None:
        self._shutdown = asyncio.Event()
        self.analysis = ConcurrencySlot(
            "analysis", queue_wait_seconds=queue_wait_seconds, shutdown=self._shutdown
        )
        self.browser = ConcurrencySlot(
            "browser", queue_wait_seconds=queue_wait_seconds, shutdown=self._shutdown
        )

    @property
    def shutting_down(self) -> bool:
        return self._shutdown.is_set()

    def shutdown(self) -> None:
        self._shutdown.set()
