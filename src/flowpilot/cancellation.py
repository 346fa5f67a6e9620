"""Cooperative cancellation scopes shared by executors and orchestrators."""

from __future__ import annotations

import asyncio
import time
import weakref
from typing import Callable


class CancellationToken:
    """Cancellation scope with an optional deadline and parent scope.

    A token is cancelled when ``cancel`` is called on it or any ancestor, or
    when its deadline (or an ancestor's) passes.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        parent: CancellationToken | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._parent = parent
        self._deadline = (
            clock() + timeout_seconds if timeout_seconds is not None else None
        )
        self._reason: str | None = None
        self._event = asyncio.Event()
        # Weak so finished scopes drop out of long-lived parents.
        self._children: weakref.WeakSet[CancellationToken] = weakref.WeakSet()
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")

    def child(self, *, timeout_seconds: float | None = None) -> CancellationToken:
        """Create a nested scope that is cancelled together with this one."""
        return CancellationToken(
            timeout_seconds=timeout_seconds, parent=self, clock=self._clock
        )

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel this scope and every nested scope."""
        if self._reason is None:
            self._reason = reason
            self._event.set()
        for child in list(self._children):
            child.cancel(reason)

    @property
    def deadline_exceeded(self) -> bool:
        if self._deadline is not None and self._clock() >= self._deadline:
            return True
        return self._parent.deadline_exceeded if self._parent is not None else False

    @property
    def cancelled(self) -> bool:
        if self._reason is not None:
            return True
        if self.deadline_exceeded:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> str | None:
        if self._reason is None and self.deadline_exceeded:
            return "deadline exceeded"
        return self._reason

    def remaining(self) -> float | None:
        """Seconds until the nearest deadline, or None when unbounded."""
        candidates: list[float] = []
        token: CancellationToken | None = self
        while token is not None:
            if token._deadline is not None:
                candidates.append(token._deadline - self._clock())
            token = token._parent
        if not candidates:
            return None
        return max(0.0, min(candidates))

    async def wait(self) -> str:
        """Block until the scope is cancelled or its deadline passes."""
        remaining = self.remaining()
        if remaining is None:
            await self._event.wait()
        else:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                self.cancel("deadline exceeded")
        return self.reason or "cancelled"

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return False if cancelled meanwhile."""
        if self.cancelled:
            return False
        remaining = self.remaining()
        timeout = seconds if remaining is None else min(seconds, remaining)
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return not self.cancelled
        return False
