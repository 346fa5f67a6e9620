"""Screenshot window tests for the agent transcript."""

from __future__ import annotations

import pytest

from flowpilot.agent.transcript import (
    SCREENSHOT_PLACEHOLDER,
    AgentTranscript,
    ScreenshotWindow,
)
from flowpilot.schemas.agent_models import (
    AgentMessage,
    ImageBlock,
    TextBlock,
    ToolResultBlock,
)


def _tool_result(index: int) -> AgentMessage:
    return AgentMessage(
        role="user",
        content=[
            ToolResultBlock(
                tool_use_id=f"t{index}",
                content=[TextBlock(text=f"step {index}"), ImageBlock(data=f"img{index}")],
            )
        ],
    )


def test_window_keeps_most_recent_images() -> None:
    """After N+k images only the newest N survive; older ones become placeholders."""
    transcript = AgentTranscript(keep_screenshots=3)
    transcript.append(
        AgentMessage(role="user", content=[TextBlock(text="go"), ImageBlock(data="img0")])
    )
    counts = []
    for index in range(1, 6):
        transcript.append(_tool_result(index))
        counts.append(transcript.image_count())

    assert counts == [2, 3, 3, 3, 3]
    assert transcript.live_images == 3
    assert transcript.messages[0].content[1] == TextBlock(text=SCREENSHOT_PLACEHOLDER)
    survivors = [
        item.data
        for message in transcript.messages
        for block in message.content
        if isinstance(block, ToolResultBlock)
        for item in block.content
        if isinstance(item, ImageBlock)
    ]
    assert survivors == ["img3", "img4", "img5"]


def test_window_of_zero_strips_every_image() -> None:
    """A zero-sized window never keeps an image."""
    transcript = AgentTranscript(keep_screenshots=0)
    transcript.append(_tool_result(1))
    assert transcript.image_count() == 0
    assert len(transcript) == 1


def test_negative_window_is_rejected() -> None:
    """The window size cannot be negative."""
    with pytest.raises(ValueError, match="keep must be >= 0"):
        ScreenshotWindow(-1)
