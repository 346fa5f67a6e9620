"""Tool-calling and vision model clients.

Both clients translate the provider-neutral transcript in
``flowpilot.schemas.agent_models`` into the provider's wire format and back.
Neither retries internally; callers wrap calls in ``RetryExecutor``.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, Sequence

import orjson

from flowpilot.schemas.agent_models import (
    AgentMessage,
    ContentBlock,
    ImageBlock,
    ModelResponse,
    TextBlock,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
)

LOGGER = logging.getLogger(__name__)


class ModelClient(Protocol):
    """Model contract consumed by the flow and scenario executors."""

    model: str

    async def analyze_with_image(
        self, prompt: str, image_b64: str, *, media_type: str = "image/jpeg"
    ) -> str:
        """Ask a single question about one screenshot."""

    async def call_with_tools(
        self,
        system_prompt: str,
        messages: Sequence[AgentMessage],
        tools: Sequence[ToolDefinition],
    ) -> ModelResponse:
        """Run one tool-calling turn over the full transcript."""


class AnthropicModelClient:
    """Messages API client backed by ``anthropic.AsyncAnthropic``."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout_seconds: float,
        base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        if client is None:
            from anthropic import AsyncAnthropic

            kwargs: dict[str, Any] = {"api_key": api_key, "timeout": timeout_seconds}
            if base_url:
                kwargs["base_url"] = base_url
            client = AsyncAnthropic(**kwargs)
        self._client = client

    async def analyze_with_image(
        self, prompt: str, image_b64: str, *, media_type: str = "image/jpeg"
    ) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            messages=[
                {
                    "role": "user",
                    "content": [
                        _anthropic_image(media_type, image_b64),
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
        )
        return "".join(
            getattr(block, "text", "") for block in response.content
        ).strip()

    async def call_with_tools(
        self,
        system_prompt: str,
        messages: Sequence[AgentMessage],
        tools: Sequence[ToolDefinition],
    ) -> ModelResponse:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system=system_prompt,
            messages=[_anthropic_message(message) for message in messages],
            tools=[
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.input_schema,
                }
                for tool in tools
            ],
        )
        content: list[ContentBlock] = []
        for block in response.content:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                content.append(TextBlock(text=block.text))
            elif block_type == "tool_use":
                content.append(
                    ToolUseBlock(id=block.id, name=block.name, input=dict(block.input or {}))
                )
        return ModelResponse(content=content, stop_reason=response.stop_reason)


def _anthropic_image(media_type: str, data: str) -> dict[str, Any]:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": media_type, "data": data},
    }


def _anthropic_block(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        return _anthropic_image(block.media_type, block.data)
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {
        "type": "tool_result",
        "tool_use_id": block.tool_use_id,
        "content": [_anthropic_block(item) for item in block.content],
        "is_error": block.is_error,
    }


def _anthropic_message(message: AgentMessage) -> dict[str, Any]:
    return {
        "role": message.role,
        "content": [_anthropic_block(block) for block in message.content],
    }


class OpenAIModelClient:
    """Chat Completions client backed by ``openai.AsyncOpenAI``.

    Also serves OpenAI-compatible local servers such as LM Studio.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        temperature: float,
        max_tokens: int,
        timeout_seconds: float,
        base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        if client is None:
            from openai import AsyncOpenAI

            kwargs: dict[str, Any] = {"api_key": api_key, "timeout": timeout_seconds}
            if base_url:
                kwargs["base_url"] = base_url
            client = AsyncOpenAI(**kwargs)
        self._client = client

    async def analyze_with_image(
        self, prompt: str, image_b64: str, *, media_type: str = "image/jpeg"
    ) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            messages=[
                {
                    "role": "user",
                    "content": [
                        _openai_image(media_type, image_b64),
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
        )
        return (response.choices[0].message.content or "").strip()

    async def call_with_tools(
        self,
        system_prompt: str,
        messages: Sequence[AgentMessage],
        tools: Sequence[ToolDefinition],
    ) -> ModelResponse:
        wire_messages: list[dict[str, Any]] = [
            {"role": "system", "content": system_prompt}
        ]
        for message in messages:
            wire_messages.extend(_openai_messages(message))
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            messages=wire_messages,
            tools=[
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema,
                    },
                }
                for tool in tools
            ],
        )
        choice = response.choices[0]
        content: list[ContentBlock] = []
        if choice.message.content:
            content.append(TextBlock(text=choice.message.content))
        for call in choice.message.tool_calls or []:
            content.append(
                ToolUseBlock(
                    id=call.id,
                    name=call.function.name,
                    input=_decode_arguments(call.function.arguments),
                )
            )
        return ModelResponse(content=content, stop_reason=choice.finish_reason)


def _openai_image(media_type: str, data: str) -> dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{media_type};base64,{data}"},
    }


def _openai_messages(message: AgentMessage) -> list[dict[str, Any]]:
    if message.role == "assistant":
        text = "\n".join(
            block.text for block in message.content if isinstance(block, TextBlock)
        )
        wire: dict[str, Any] = {"role": "assistant", "content": text or None}
        calls = [
            {
                "id": block.id,
                "type": "function",
                "function": {
                    "name": block.name,
                    "arguments": orjson.dumps(block.input).decode("utf-8"),
                },
            }
            for block in message.content
            if isinstance(block, ToolUseBlock)
        ]
        if calls:
            wire["tool_calls"] = calls
        return [wire]

    # Tool results become ``tool`` messages; their images follow in a user
    # message because tool messages only carry text.
    wire_messages: list[dict[str, Any]] = []
    user_parts: list[dict[str, Any]] = []
    for block in message.content:
        if isinstance(block, ToolResultBlock):
            texts = [item.text for item in block.content if isinstance(item, TextBlock)]
            wire_messages.append(
                {
                    "role": "tool",
                    "tool_call_id": block.tool_use_id,
                    "content": "\n".join(texts),
                }
            )
            user_parts.extend(
                _openai_image(item.media_type, item.data)
                for item in block.content
                if isinstance(item, ImageBlock)
            )
        elif isinstance(block, TextBlock):
            user_parts.append({"type": "text", "text": block.text})
        elif isinstance(block, ImageBlock):
            user_parts.append(_openai_image(block.media_type, block.data))
    if user_parts:
        wire_messages.append({"role": "user", "content": user_parts})
    return wire_messages


def _decode_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        decoded = orjson.loads(raw)
    except orjson.JSONDecodeError:
        LOGGER.warning("Model returned undecodable tool arguments: %.200s", raw)
        return {}
    return decoded if isinstance(decoded, dict) else {}
