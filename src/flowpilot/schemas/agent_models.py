"""Scenario and agent transcript contracts."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import Field

from flowpilot.schemas.base import LenientSchemaModel, StrictSchemaModel
from flowpilot.schemas.enums import ScenarioVerdict


class ScenarioStep(LenientSchemaModel):
    """One expected interaction of a scenario."""

    action: str = ""
    target: str = ""
    value: str | None = None
    expected: str | None = None


class Scenario(LenientSchemaModel):
    """Named natural-language test scenario produced by analysis."""

    name: str = Field(min_length=1)
    description: str = ""
    steps: list[ScenarioStep] = Field(default_factory=list)


class TextBlock(StrictSchemaModel):
    type: Literal["text"] = "text"
    text: str


class ImageBlock(StrictSchemaModel):
    type: Literal["image"] = "image"
    media_type: str = "image/jpeg"
    data: str


class ToolUseBlock(StrictSchemaModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(StrictSchemaModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: list[Annotated[Union[TextBlock, ImageBlock], Field(discriminator="type")]]
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class AgentMessage(StrictSchemaModel):
    """Conversation turn; content is appended, images are later swept."""

    role: Literal["user", "assistant"]
    content: list[ContentBlock]


class ToolDefinition(StrictSchemaModel):
    """Tool made available to the model."""

    name: str = Field(min_length=1)
    description: str
    input_schema: dict[str, Any]


class ModelResponse(StrictSchemaModel):
    """Assistant reply from a tool-calling model call."""

    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: str | None = None

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def text(self) -> str:
        return "\n".join(
            block.text for block in self.content if isinstance(block, TextBlock)
        ).strip()


class AgentStepRecord(StrictSchemaModel):
    """Step-level record of one tool call made by the agent."""

    step_number: int = Field(ge=1)
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    result: str = ""
    error: str | None = None
    reasoning: str | None = None
    screenshot: str | None = None
    duration_ms: int = 0


class ScenarioOutcome(StrictSchemaModel):
    """Terminal verdict of one scenario run."""

    scenario: str
    verdict: ScenarioVerdict
    reason: str
    failed_step: int | None = None
    steps: list[AgentStepRecord] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def passed(self) -> bool:
        return self.verdict == ScenarioVerdict.PASSED
