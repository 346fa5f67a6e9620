"""In-process progress sink with per-subscriber bounded queues."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

import orjson

LOGGER = logging.getLogger(__name__)

JOB_QUEUED = "job_queued"
JOB_STARTED = "job_started"
JOB_PROGRESS = "job_progress"
STEP_DETAIL = "step_detail"
REASONING = "reasoning"
SCREENSHOT_AVAILABLE = "screenshot_available"
USER_HINT = "user_hint"
JOB_COMPLETED = "job_completed"
JOB_FAILED = "job_failed"

TEST_STARTED = "test_started"
TEST_FLOW_STARTED = "test_flow_started"
TEST_PROGRESS = "test_progress"
TEST_COMMAND_PROGRESS = "test_command_progress"
TEST_STEP_SCREENSHOT = "test_step_screenshot"
TEST_COMPLETED = "test_completed"
TEST_FAILED = "test_failed"


@dataclass(frozen=True)
class ProgressMessage:
    """One typed progress event."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> bytes:
        return orjson.dumps({"type": self.type, "data": self.data}, default=str)


class Subscription:
    """Handle returned by ``ProgressHub.subscribe``."""

    def __init__(self, hub: ProgressHub, maxsize: int) -> None:
        self._hub = hub
        self.queue: asyncio.Queue[ProgressMessage] = asyncio.Queue(maxsize=maxsize)
        self.dropped = False

    async def get(self) -> ProgressMessage:
        return await self.queue.get()

    def drain(self) -> list[ProgressMessage]:
        """Return every message currently buffered without waiting."""
        items: list[ProgressMessage] = []
        while not self.queue.empty():
            items.append(self.queue.get_nowait())
        return items

    def close(self) -> None:
        self._hub.unsubscribe(self)


class ProgressHub:
    """Fan progress messages out to subscribers; a full subscriber is dropped.

    ``publish`` never blocks the job that emits the event.
    """

    def __init__(self, *, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()
        self.published = 0

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._queue_size)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, message_type: str, data: dict[str, Any] | None = None) -> None:
        message = ProgressMessage(type=message_type, data=dict(data or {}))
        with self._lock:
            self.published += 1
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            try:
                subscription.queue.put_nowait(message)
            except asyncio.QueueFull:
                LOGGER.warning("Dropping slow progress subscriber (queue full)")
                subscription.dropped = True
                self.unsubscribe(subscription)
