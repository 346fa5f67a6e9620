"""Rows persisted by the job store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

import orjson
from pydantic import Field

from flowpilot.schemas.base import StrictSchemaModel
from flowpilot.schemas.enums import JobStatus
from flowpilot.schemas.job_models import (
    AnalysisModules,
    AnalysisProfile,
    Checkpoint,
    utcnow,
)

PlanStatus = Literal["draft", "running", "completed", "failed"]


class AnalysisRecord(StrictSchemaModel):
    """One analysis job as stored."""

    id: str
    game_url: str
    status: JobStatus = JobStatus.QUEUED
    step: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    project_id: str | None = None
    modules: AnalysisModules = Field(default_factory=AnalysisModules)
    profile: AnalysisProfile = Field(default_factory=AnalysisProfile)
    devices: list[str] = Field(default_factory=list)
    result: dict[str, Any] | None = None
    partial_result: str | None = None
    error_message: str = ""
    game_name: str = ""
    framework: str = ""
    flow_count: int = 0

    def checkpoint(self) -> Checkpoint | None:
        """Decode the stored checkpoint, ``None`` when absent or unusable."""
        if not self.partial_result:
            return None
        try:
            payload = orjson.loads(self.partial_result)
        except orjson.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        try:
            return Checkpoint.from_payload(payload)
        except ValueError:
            return None


class AgentStepRow(StrictSchemaModel):
    """Agent step reported by the analysis process."""

    id: int | None = None
    analysis_id: str
    step_number: int = 0
    tool_name: str = ""
    input: str = ""
    result: str = ""
    duration_ms: int = 0
    error: str = ""
    reasoning: str = ""
    screenshot_path: str | None = None


class TestPlan(StrictSchemaModel):
    """Set of flows to execute, optionally tied to the analysis that produced them."""

    __test__ = False

    id: str
    name: str
    analysis_id: str | None = None
    project_id: str | None = None
    flow_names: list[str] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    mode: Literal["agent", "browser", "maestro"] = "browser"
    status: PlanStatus = "draft"
    last_run_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class JobTransition(StrictSchemaModel):
    """Status change recorded for a job."""

    job_id: str
    from_status: str
    to_status: str
    step: str
    timestamp: str
    reason: str
