"""Job, checkpoint and run-result contracts."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal
from urllib.parse import urlparse

import orjson
from pydantic import Field, ValidationError, field_validator, model_validator

from flowpilot.constants import RUN_MODES
from flowpilot.errors import ValidationFailedError
from flowpilot.schemas.base import StrictSchemaModel
from flowpilot.schemas.enums import JobKind, JobStatus, StepStatus


def utcnow() -> datetime:
    return datetime.now(UTC)


class AnalysisModules(StrictSchemaModel):
    """Optional analysis modules; ``None`` means the process default (enabled)."""

    uiux: bool | None = None
    wording: bool | None = None
    game_design: bool | None = None
    test_flows: bool | None = None


class AnalysisProfile(StrictSchemaModel):
    """Flags that shape one analysis run; persisted for resume."""

    agent_mode: bool = False
    model: str | None = None
    max_tokens: int | None = Field(default=None, ge=256, le=32768)
    agent_steps: int | None = Field(default=None, ge=1, le=100)
    temperature: float | None = Field(default=None, ge=0.0, le=1.0)
    adaptive: bool = False
    max_total_steps: int | None = Field(default=None, ge=1, le=100)
    adaptive_timeout: bool = False
    max_total_timeout: int | None = Field(default=None, ge=1, le=60)
    viewport: str | None = None

    @model_validator(mode="after")
    def validate_step_budget(self) -> "AnalysisProfile":
        if (
            self.max_total_steps is not None
            and self.agent_steps is not None
            and self.max_total_steps < self.agent_steps
        ):
            raise ValueError("max_total_steps must be >= agent_steps")
        return self

    def to_json(self) -> str:
        """Serialize only the fields that were set to a non-default value."""
        payload = self.model_dump(mode="json", exclude_none=True, exclude_defaults=True)
        return orjson.dumps(payload, option=orjson.OPT_SORT_KEYS).decode("utf-8")

    @classmethod
    def from_json(cls, raw: str | None) -> "AnalysisProfile":
        if not raw:
            return cls()
        return cls.model_validate(orjson.loads(raw))


class AnalysisRequest(StrictSchemaModel):
    """Request to run the external analysis pipeline."""

    game_url: str = Field(min_length=1)
    project_id: str | None = None
    profile: AnalysisProfile = Field(default_factory=AnalysisProfile)
    modules: AnalysisModules = Field(default_factory=AnalysisModules)
    devices: list[str] = Field(default_factory=list)
    auto_test: bool = False
    auto_test_mode: Literal["agent", "browser", "maestro"] = "browser"

    @field_validator("game_url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("game_url must be an http or https URL")
        return value.strip()

    @field_validator("devices")
    @classmethod
    def dedupe_devices(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for device in value:
            name = device.strip()
            if name and name not in seen:
                seen.append(name)
        return seen


def build_analysis_request(**fields: Any) -> AnalysisRequest:
    """Validate request fields; the error names the first rejected field."""
    try:
        return AnalysisRequest.model_validate(fields)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "request"
        raise ValidationFailedError(f"{location}: {first['msg']}") from exc


class Checkpoint(StrictSchemaModel):
    """Resumable snapshot of a failed analysis process."""

    step: str = Field(min_length=1)
    payload: dict[str, Any]

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Checkpoint":
        step = payload.get("step")
        if not isinstance(step, str) or not step:
            raise ValueError("checkpoint payload has no step")
        return cls(step=step, payload=payload)

    def to_json(self) -> str:
        return orjson.dumps(self.payload).decode("utf-8")


class StepResult(StrictSchemaModel):
    """Outcome of one flow command."""

    index: int = Field(ge=0)
    command: str
    status: StepStatus
    result: str = ""
    error: str | None = None
    screenshot: str | None = None
    reasoning: str | None = None
    duration_ms: int = 0


class FlowRunResult(StrictSchemaModel):
    """Outcome of one flow within a batch."""

    name: str
    status: Literal["passed", "failed"]
    steps: list[StepResult] = Field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0


class UnitResult(StrictSchemaModel):
    """Per-flow or per-scenario summary tracked for running jobs."""

    name: str
    status: Literal["passed", "failed", "skipped"]
    duration: str = "0s"
    reason: str | None = None


class RunningJob(StrictSchemaModel):
    """Live state of one in-flight execution, read by reconnecting observers."""

    id: str
    kind: JobKind
    mode: str
    started_at: datetime = Field(default_factory=utcnow)
    total_units: int = 0
    completed_units: list[UnitResult] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)
    status: JobStatus = JobStatus.RUNNING
    phase: str | None = None
    plan_id: str | None = None
    name: str | None = None

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, value: str) -> str:
        if value not in RUN_MODES and value != "analysis":
            raise ValueError(f"unknown run mode: {value}")
        return value


class DeviceOutcome(StrictSchemaModel):
    """Per-device result of a batch analysis."""

    device: str
    status: Literal["completed", "failed"]
    error: str | None = None
    flow_count: int = 0


class TestRunSummary(StrictSchemaModel):
    """Persisted result of a test execution."""

    __test__ = False

    test_id: str
    plan_id: str | None = None
    name: str = ""
    mode: str = "browser"
    status: Literal["passed", "failed"]
    started_at: datetime
    duration: str
    success_rate: float = Field(ge=0.0, le=100.0)
    flows: list[UnitResult] = Field(default_factory=list)
    error_output: str = ""
