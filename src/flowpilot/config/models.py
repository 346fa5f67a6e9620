"""Pydantic models for central YAML configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator, model_validator

from flowpilot.constants import DEFAULT_VIEWPORT, SCHEMA_VERSION
from flowpilot.schemas.base import StrictSchemaModel
from flowpilot.schemas.enums import ProviderType, normalize_provider_type


class RetryConfig(StrictSchemaModel):
    """Retry controls for model calls."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_seconds: float = Field(default=1.0, ge=0.0)
    jitter_seconds: float = Field(default=0.2, ge=0.0, le=5.0)


class ProviderCapabilities(StrictSchemaModel):
    """Capabilities metadata for a provider profile."""

    context_window: int = Field(gt=0)
    supports_vision: bool = True
    supports_tools: bool = True


class ProviderProfile(StrictSchemaModel):
    """Provider profile definition."""

    provider_type: ProviderType
    model: str = Field(min_length=1)
    api_key_env: str | None = None
    base_url: str | None = None
    temperature: float = Field(default=0.3, ge=0.0, le=1.0)
    max_tokens: int = Field(default=4096, gt=0)
    timeout_seconds: int = Field(default=120, gt=0)
    capabilities: ProviderCapabilities

    @field_validator("provider_type", mode="before")
    @classmethod
    def normalize_provider(cls, value: str | ProviderType) -> ProviderType:
        return normalize_provider_type(value)

    @model_validator(mode="after")
    def validate_provider_requirements(self) -> "ProviderProfile":
        if self.provider_type in {ProviderType.OPENAI, ProviderType.ANTHROPIC}:
            if not self.api_key_env:
                raise ValueError(
                    f"{self.provider_type.value} profiles must define api_key_env"
                )
        if self.provider_type == ProviderType.LM_STUDIO and not self.base_url:
            raise ValueError("LM Studio profiles must define base_url")
        if self.max_tokens > self.capabilities.context_window:
            raise ValueError("max_tokens cannot exceed provider context_window")
        return self


class ExecutorConfig(StrictSchemaModel):
    """Timings and defaults for the flow command executor."""

    screenshot_timeout_seconds: float = Field(default=20.0, gt=0)
    screenshot_tool_timeout_seconds: float = Field(default=30.0, gt=0)
    flow_settle_seconds: float = Field(default=1.0, ge=0)
    scenario_settle_seconds: float = Field(default=2.0, ge=0)
    back_delay_seconds: float = Field(default=0.5, ge=0)
    action_delay_seconds: float = Field(default=0.15, ge=0)
    default_wait_timeout_ms: int = Field(default=10_000, gt=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    default_scroll_amount: int = Field(default=300, gt=0)
    default_erase_count: int = Field(default=10, ge=0)
    default_viewport: str = DEFAULT_VIEWPORT


class AgentConfig(StrictSchemaModel):
    """Bounds for the scenario agent loop."""

    max_steps: int = Field(default=30, ge=1, le=200)
    keep_screenshots: int = Field(default=5, ge=0)
    tool_result_token_budget: int = Field(default=2000, gt=0)
    provider_profile: str | None = None


class OrchestratorConfig(StrictSchemaModel):
    """Subprocess, queueing and running-job controls."""

    cli_path: str = Field(default="wizards-qa", min_length=1)
    queue_wait_seconds: float = Field(default=600.0, gt=0)
    max_stdout_bytes: int = Field(default=1024 * 1024, gt=0)
    max_stderr_line_bytes: int = Field(default=256 * 1024, gt=0)
    stderr_tail_lines: int = Field(default=200, gt=0)
    hint_cooldown_seconds: float = Field(default=5.0, ge=0)
    hint_max_chars: int = Field(default=500, gt=0)
    test_execution_timeout_seconds: float = Field(default=600.0, gt=0)
    running_log_limit: int = Field(default=500, gt=0)
    stale_job_seconds: float = Field(default=1800.0, gt=0)
    stale_sweep_seconds: float = Field(default=300.0, gt=0)
    subscriber_queue_size: int = Field(default=256, gt=0)


class TimeoutPolicyConfig(StrictSchemaModel):
    """Deadline policy for the external analysis process, in seconds."""

    default_seconds: int = Field(default=5 * 60, gt=0)
    default_agent_steps: int = Field(default=20, ge=1)
    per_step_seconds: int = Field(default=75, gt=0)
    buffer_seconds: int = Field(default=10 * 60, ge=0)
    adaptive_buffer_seconds: int = Field(default=8 * 60, ge=0)
    min_seconds: int = Field(default=10 * 60, gt=0)
    max_seconds: int = Field(default=45 * 60, gt=0)
    adaptive_max_seconds: int = Field(default=60 * 60, gt=0)
    batch_ceiling_seconds: int = Field(default=3 * 60 * 60, gt=0)
    continue_seconds: int = Field(default=5 * 60, gt=0)
    continue_agent_seconds: int = Field(default=8 * 60, gt=0)
    continue_adaptive_seconds: int = Field(default=10 * 60, gt=0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "TimeoutPolicyConfig":
        if self.min_seconds > self.max_seconds:
            raise ValueError("min_seconds cannot exceed max_seconds")
        if self.max_seconds > self.adaptive_max_seconds:
            raise ValueError("max_seconds cannot exceed adaptive_max_seconds")
        return self


class PathsConfig(StrictSchemaModel):
    """Filesystem locations for persisted state."""

    data_dir: Path = Path(".flowpilot/data")
    flows_dir: Path = Path(".flowpilot/flows")
    db_path: Path = Path(".flowpilot/flowpilot.db")


class AppConfig(StrictSchemaModel):
    """Central application configuration."""

    schema_version: str = Field(default=SCHEMA_VERSION, min_length=1)
    default_provider_profile: str = Field(min_length=1)
    provider_profiles: dict[str, ProviderProfile]
    retries: RetryConfig = Field(default_factory=RetryConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    timeout_policy: TimeoutPolicyConfig = Field(default_factory=TimeoutPolicyConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @model_validator(mode="after")
    def validate_default_profile(self) -> "AppConfig":
        if self.default_provider_profile not in self.provider_profiles:
            raise ValueError("default_provider_profile must exist in provider_profiles")
        agent_profile = self.agent.provider_profile
        if agent_profile and agent_profile not in self.provider_profiles:
            raise ValueError("agent.provider_profile must exist in provider_profiles")
        return self
