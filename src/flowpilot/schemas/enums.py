"""Enum definitions for canonical contracts."""

from __future__ import annotations

from enum import Enum


class ProviderType(str, Enum):
    OPENAI = "openai"
    LM_STUDIO = "lm_studio"
    ANTHROPIC = "anthropic"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    RESUMING = "resuming"
    COMPLETED = "completed"
    FAILED = "failed"


class JobKind(str, Enum):
    ANALYSIS = "analysis"
    BATCH_ANALYSIS = "batch_analysis"
    TEST_RUN = "test_run"


class StepStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ScenarioVerdict(str, Enum):
    PASSED = "passed"
    FAILED = "failed"


class ProgressKind(str, Enum):
    """Classification of a structured progress line from the analysis process."""

    STATUS = "status"
    AGENT_STEP_DETAIL = "agent_step_detail"
    AGENT_REASONING = "agent_reasoning"
    AGENT_SCREENSHOT = "agent_screenshot"
    USER_HINT = "user_hint"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

LEGACY_PROVIDER_MAP: dict[str, ProviderType] = {
    "openai": ProviderType.OPENAI,
    "lmstudio": ProviderType.LM_STUDIO,
    "lm-studio": ProviderType.LM_STUDIO,
    "lm_studio": ProviderType.LM_STUDIO,
    "anthropic": ProviderType.ANTHROPIC,
    "claude": ProviderType.ANTHROPIC,
}


def normalize_provider_type(raw_value: str | ProviderType) -> ProviderType:
    """Normalize provider labels into canonical enum values."""
    if isinstance(raw_value, ProviderType):
        return raw_value
    normalized = LEGACY_PROVIDER_MAP.get(raw_value.strip().lower())
    if normalized is None:
        raise ValueError(f"Unsupported provider type: {raw_value}")
    return normalized
