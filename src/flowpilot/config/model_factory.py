"""Provider-specific model client factory."""

from __future__ import annotations

from typing import Mapping

from flowpilot.config.models import AppConfig, ProviderProfile
from flowpilot.llm.clients import AnthropicModelClient, ModelClient, OpenAIModelClient
from flowpilot.schemas.enums import ProviderType

LM_STUDIO_PLACEHOLDER_KEY = "lm-studio"


class ModelFactory:
    """Factory for provider-specific model clients."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def get_profile(self, profile_name: str | None = None) -> ProviderProfile:
        """Resolve provider profile by name."""
        active_profile = profile_name or self._config.default_provider_profile
        profile = self._config.provider_profiles.get(active_profile)
        if profile is None:
            raise ValueError(f"Unknown provider profile: {active_profile}")
        return profile

    def create_client(
        self,
        *,
        profile_name: str | None = None,
        env: Mapping[str, str],
        model_override: str | None = None,
    ) -> ModelClient:
        """Create a model client for the active profile."""
        profile = self.get_profile(profile_name)
        model_name = model_override or profile.model

        if profile.provider_type == ProviderType.LM_STUDIO:
            assert profile.base_url is not None
            api_key = (
                (env.get(profile.api_key_env) if profile.api_key_env else None)
                or env.get("LM_STUDIO_API_KEY")
                or LM_STUDIO_PLACEHOLDER_KEY
            )
            return OpenAIModelClient(
                api_key=api_key,
                model=_normalize_lmstudio_model(model_name),
                temperature=profile.temperature,
                max_tokens=profile.max_tokens,
                timeout_seconds=profile.timeout_seconds,
                base_url=_normalize_lmstudio_base_url(profile.base_url),
            )

        assert profile.api_key_env is not None
        api_key = env.get(profile.api_key_env)
        if not api_key:
            raise ValueError(f"Missing API key env var: {profile.api_key_env}")
        client_cls = (
            AnthropicModelClient
            if profile.provider_type == ProviderType.ANTHROPIC
            else OpenAIModelClient
        )
        return client_cls(
            api_key=api_key,
            model=model_name,
            temperature=profile.temperature,
            max_tokens=profile.max_tokens,
            timeout_seconds=profile.timeout_seconds,
            base_url=profile.base_url,
        )

    def try_create_client(
        self,
        *,
        profile_name: str | None = None,
        env: Mapping[str, str],
    ) -> ModelClient | None:
        """Create a client, or return None when credentials are missing."""
        try:
            return self.create_client(profile_name=profile_name, env=env)
        except ValueError:
            return None


def _normalize_lmstudio_base_url(base_url: str) -> str:
    normalized = base_url.rstrip("/")
    if normalized.endswith("/chat/completions"):
        normalized = normalized[: -len("/chat/completions")]
    return normalized


def _normalize_lmstudio_model(model_name: str) -> str:
    normalized = model_name.strip()
    for prefix in ("lm_studio/", "lm-studio/"):
        if normalized.startswith(prefix):
            return normalized[len(prefix) :]
    return normalized
