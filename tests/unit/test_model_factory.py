"""Model factory tests."""

from __future__ import annotations

from typing import Any

import pytest

import flowpilot.config.model_factory as model_factory_module
from flowpilot.config.model_factory import ModelFactory
from flowpilot.config.models import AppConfig


def _build_config() -> AppConfig:
    return AppConfig.model_validate(
        {
            "default_provider_profile": "openai-default",
            "provider_profiles": {
                "openai-default": {
                    "provider_type": "openai",
                    "model": "gpt-4o",
                    "api_key_env": "OPENAI_API_KEY",
                    "max_tokens": 1024,
                    "capabilities": {"context_window": 4096},
                },
                "anthropic-default": {
                    "provider_type": "anthropic",
                    "model": "claude-sonnet",
                    "api_key_env": "ANTHROPIC_API_KEY",
                    "max_tokens": 1024,
                    "capabilities": {"context_window": 200000},
                },
                "lm-studio-default": {
                    "provider_type": "lm_studio",
                    "model": "lm_studio/qwen/qwen3-vl-30b",
                    "api_key_env": "LM_STUDIO_AUTH_TOKEN",
                    "base_url": "http://127.0.0.1:1234/v1/chat/completions",
                    "max_tokens": 1024,
                    "capabilities": {"context_window": 16384},
                },
            },
        }
    )


class _FakeClient:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs


@pytest.fixture
def fake_clients(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(model_factory_module, "OpenAIModelClient", _FakeClient)
    monkeypatch.setattr(model_factory_module, "AnthropicModelClient", _FakeClient)


def test_unknown_profile_name_is_rejected() -> None:
    """Factory should reject unknown profile names."""
    with pytest.raises(ValueError):
        ModelFactory(_build_config()).get_profile("missing-profile")


def test_missing_api_key_is_rejected() -> None:
    """Factory must fail fast when the key is absent."""
    with pytest.raises(ValueError):
        ModelFactory(_build_config()).create_client(env={})


def test_try_create_client_returns_none_without_key() -> None:
    """The lenient variant signals a missing model with None."""
    assert ModelFactory(_build_config()).try_create_client(env={}) is None


def test_unsupported_capability_window_is_rejected() -> None:
    """max_tokens cannot exceed context window."""
    with pytest.raises(ValueError):
        AppConfig.model_validate(
            {
                "default_provider_profile": "p",
                "provider_profiles": {
                    "p": {
                        "provider_type": "openai",
                        "model": "gpt-4o",
                        "api_key_env": "OPENAI_API_KEY",
                        "max_tokens": 8192,
                        "capabilities": {"context_window": 4096},
                    }
                },
            }
        )


def test_anthropic_profile_builds_anthropic_client(fake_clients: None) -> None:
    """Anthropic profiles get their key from the configured env var."""
    client = ModelFactory(_build_config()).create_client(
        profile_name="anthropic-default", env={"ANTHROPIC_API_KEY": "sk-ant"}
    )
    assert isinstance(client, _FakeClient)
    assert client.kwargs["api_key"] == "sk-ant"
    assert client.kwargs["model"] == "claude-sonnet"


def test_lmstudio_profile_is_normalized(fake_clients: None) -> None:
    """LM Studio URLs and model prefixes normalize; a placeholder key is allowed."""
    client = ModelFactory(_build_config()).create_client(
        profile_name="lm-studio-default", env={}
    )
    assert client.kwargs["base_url"] == "http://127.0.0.1:1234/v1"
    assert client.kwargs["model"] == "qwen/qwen3-vl-30b"
    assert client.kwargs["api_key"] == "lm-studio"


def test_model_override_wins(fake_clients: None) -> None:
    """An explicit model override replaces the profile model."""
    client = ModelFactory(_build_config()).create_client(
        env={"OPENAI_API_KEY": "sk"}, model_override="gpt-4o-mini"
    )
    assert client.kwargs["model"] == "gpt-4o-mini"
