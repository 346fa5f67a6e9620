"""Agent conversation history with a bounded window of live screenshots."""

from __future__ import annotations

from collections import deque
from typing import Iterator

from flowpilot.schemas.agent_models import (
    AgentMessage,
    ImageBlock,
    TextBlock,
    ToolResultBlock,
)

SCREENSHOT_PLACEHOLDER = "[Screenshot removed]"


class ScreenshotWindow:
    """Keeps the ``keep`` most recent image blocks; older ones become placeholders.

    Slots are tracked in append order, so eviction always removes the oldest
    surviving image and the live count never exceeds ``keep``.
    """

    def __init__(self, keep: int) -> None:
        if keep < 0:
            raise ValueError("keep must be >= 0")
        self.keep = keep
        self._slots: deque[tuple[list, int]] = deque()
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._slots)

    def track(self, container: list, index: int) -> None:
        self._slots.append((container, index))
        while len(self._slots) > self.keep:
            old_container, old_index = self._slots.popleft()
            old_container[old_index] = TextBlock(text=SCREENSHOT_PLACEHOLDER)
            self.evicted += 1


class AgentTranscript:
    """Append-only message list fed to the model on every turn."""

    def __init__(self, keep_screenshots: int = 5) -> None:
        self.messages: list[AgentMessage] = []
        self._window = ScreenshotWindow(keep_screenshots)

    def __len__(self) -> int:
        return len(self.messages)

    def __iter__(self) -> Iterator[AgentMessage]:
        return iter(self.messages)

    @property
    def live_images(self) -> int:
        return len(self._window)

    def append(self, message: AgentMessage) -> AgentMessage:
        self.messages.append(message)
        for container, index in _image_slots(message):
            self._window.track(container, index)
        return message

    def image_count(self) -> int:
        """Count image blocks currently present anywhere in the transcript."""
        return sum(1 for message in self.messages for _ in _image_slots(message))


def _image_slots(message: AgentMessage) -> Iterator[tuple[list, int]]:
    for index, block in enumerate(message.content):
        if isinstance(block, ImageBlock):
            yield message.content, index
        elif isinstance(block, ToolResultBlock):
            for inner, item in enumerate(block.content):
                if isinstance(item, ImageBlock):
                    yield block.content, inner
