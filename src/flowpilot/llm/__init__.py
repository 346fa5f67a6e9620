"""Model client exports."""

from flowpilot.llm.clients import AnthropicModelClient, ModelClient, OpenAIModelClient

__all__ = ["AnthropicModelClient", "ModelClient", "OpenAIModelClient"]
