"""SQLite persistence for jobs, checkpoints, agent steps, plans and test results."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import orjson

from flowpilot.schemas.enums import JobStatus
from flowpilot.schemas.job_models import (
    AnalysisModules,
    AnalysisProfile,
    Checkpoint,
    TestRunSummary,
)
from flowpilot.schemas.store_models import (
    AgentStepRow,
    AnalysisRecord,
    JobTransition,
    PlanStatus,
    TestPlan,
)
from flowpilot.security.redaction import redact_text

LOGGER = logging.getLogger(__name__)

INTERRUPTED_REASON = "interrupted by restart"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS analyses (
    id TEXT PRIMARY KEY,
    game_url TEXT NOT NULL,
    status TEXT NOT NULL,
    step TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    project_id TEXT,
    modules_json TEXT NOT NULL,
    profile_json TEXT NOT NULL,
    devices_json TEXT NOT NULL,
    result_json TEXT,
    partial_result TEXT,
    error_message TEXT NOT NULL DEFAULT '',
    game_name TEXT NOT NULL DEFAULT '',
    framework TEXT NOT NULL DEFAULT '',
    flow_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS job_transitions (
    job_id TEXT NOT NULL,
    from_status TEXT NOT NULL,
    to_status TEXT NOT NULL,
    step TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    reason TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    analysis_id TEXT NOT NULL,
    step_number INTEGER NOT NULL,
    tool_name TEXT NOT NULL,
    input TEXT NOT NULL,
    result TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    error TEXT NOT NULL,
    reasoning TEXT NOT NULL,
    screenshot_path TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS test_plans (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    analysis_id TEXT,
    project_id TEXT,
    flow_names_json TEXT NOT NULL,
    variables_json TEXT NOT NULL,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    last_run_id TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS test_results (
    test_id TEXT PRIMARY KEY,
    payload_json TEXT NOT NULL,
    plan_id TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

_ANALYSIS_COLUMNS = (
    "id, game_url, status, step, created_at, updated_at, project_id, modules_json, "
    "profile_json, devices_json, result_json, partial_result, error_message, "
    "game_name, framework, flow_count"
)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _dumps(value: Any) -> str:
    return orjson.dumps(value).decode("utf-8")


class JobStore:
    """SQLite-backed store used by the orchestrator and the CLI."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.executescript(_SCHEMA)

    # Analyses

    def save_analysis(self, record: AnalysisRecord) -> None:
        """Insert or replace an analysis row."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                f"""
                INSERT INTO analyses ({_ANALYSIS_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    game_url=excluded.game_url,
                    status=excluded.status,
                    step=excluded.step,
                    updated_at=excluded.updated_at,
                    project_id=excluded.project_id,
                    modules_json=excluded.modules_json,
                    profile_json=excluded.profile_json,
                    devices_json=excluded.devices_json,
                    result_json=excluded.result_json,
                    partial_result=excluded.partial_result,
                    error_message=excluded.error_message,
                    game_name=excluded.game_name,
                    framework=excluded.framework,
                    flow_count=excluded.flow_count
                """,
                (
                    record.id,
                    record.game_url,
                    record.status.value,
                    record.step,
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                    record.project_id,
                    record.modules.model_dump_json(),
                    record.profile.to_json(),
                    _dumps(record.devices),
                    _dumps(record.result) if record.result is not None else None,
                    record.partial_result,
                    record.error_message,
                    record.game_name,
                    record.framework,
                    record.flow_count,
                ),
            )

    def get_analysis(self, analysis_id: str) -> AnalysisRecord | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                f"SELECT {_ANALYSIS_COLUMNS} FROM analyses WHERE id = ?",
                (analysis_id,),
            ).fetchone()
        return _analysis_from_row(row) if row is not None else None

    def list_analyses(self, *, status: JobStatus | None = None) -> list[AnalysisRecord]:
        query = f"SELECT {_ANALYSIS_COLUMNS} FROM analyses"
        params: tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY created_at DESC"
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_analysis_from_row(row) for row in rows]

    def update_analysis_status(
        self,
        analysis_id: str,
        status: JobStatus,
        step: str | None = None,
        *,
        reason: str = "",
    ) -> None:
        """Set status/step and log the transition when the status changes."""
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT status, step FROM analyses WHERE id = ?", (analysis_id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"unknown analysis: {analysis_id}")
            previous_status, previous_step = row
            new_step = step if step is not None else previous_step
            conn.execute(
                "UPDATE analyses SET status = ?, step = ?, updated_at = ? WHERE id = ?",
                (status.value, new_step, _now(), analysis_id),
            )
            if previous_status != status.value:
                conn.execute(
                    """
                    INSERT INTO job_transitions (job_id, from_status, to_status, step, timestamp, reason)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        analysis_id,
                        previous_status,
                        status.value,
                        new_step or "",
                        _now(),
                        redact_text(reason),
                    ),
                )

    def update_analysis_error(self, analysis_id: str, message: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE analyses SET error_message = ?, updated_at = ? WHERE id = ?",
                (redact_text(message), _now(), analysis_id),
            )

    def set_checkpoint(self, analysis_id: str, checkpoint: Checkpoint | None) -> None:
        """Store a checkpoint; ``None`` clears it."""
        payload = checkpoint.to_json() if checkpoint is not None else None
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE analyses SET partial_result = ?, updated_at = ? WHERE id = ?",
                (payload, _now(), analysis_id),
            )

    def get_checkpoint(self, analysis_id: str) -> Checkpoint | None:
        record = self.get_analysis(analysis_id)
        return record.checkpoint() if record is not None else None

    def update_analysis_result(
        self,
        analysis_id: str,
        *,
        result: dict[str, Any],
        game_name: str,
        framework: str,
        flow_count: int,
    ) -> None:
        """Store the final result, clear the checkpoint and mark the job completed."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                UPDATE analyses
                SET result_json = ?, game_name = ?, framework = ?, flow_count = ?,
                    partial_result = NULL, error_message = '', updated_at = ?
                WHERE id = ?
                """,
                (_dumps(result), game_name, framework, flow_count, _now(), analysis_id),
            )
        self.update_analysis_status(analysis_id, JobStatus.COMPLETED, "completed")

    def list_transitions(self, job_id: str) -> list[JobTransition]:
        """Return transitions in insertion order for a job."""
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT job_id, from_status, to_status, step, timestamp, reason
                FROM job_transitions
                WHERE job_id = ?
                ORDER BY rowid ASC
                """,
                (job_id,),
            ).fetchall()
        return [
            JobTransition(
                job_id=r[0],
                from_status=r[1],
                to_status=r[2],
                step=r[3],
                timestamp=r[4],
                reason=r[5],
            )
            for r in rows
        ]

    def recover_interrupted(self) -> list[str]:
        """Mark jobs left running by a previous process as failed."""
        stale = [
            record.id
            for status in (JobStatus.RUNNING, JobStatus.RESUMING, JobStatus.QUEUED)
            for record in self.list_analyses(status=status)
        ]
        for analysis_id in stale:
            self.update_analysis_status(
                analysis_id, JobStatus.FAILED, reason=INTERRUPTED_REASON
            )
            self.update_analysis_error(analysis_id, INTERRUPTED_REASON)
            LOGGER.warning("Analysis %s was %s", analysis_id, INTERRUPTED_REASON)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE test_plans SET status = 'failed' WHERE status = 'running'"
            )
        return stale

    # Agent steps

    def save_agent_step(self, step: AgentStepRow) -> int:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO agent_steps (
                    analysis_id, step_number, tool_name, input, result, duration_ms,
                    error, reasoning, screenshot_path, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    step.analysis_id,
                    step.step_number,
                    step.tool_name,
                    step.input,
                    step.result,
                    step.duration_ms,
                    redact_text(step.error),
                    step.reasoning,
                    step.screenshot_path,
                    _now(),
                ),
            )
            return int(cursor.lastrowid or 0)

    def update_agent_step_screenshot(self, step_id: int, screenshot_path: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE agent_steps SET screenshot_path = ? WHERE id = ?",
                (screenshot_path, step_id),
            )

    def list_agent_steps(self, analysis_id: str) -> list[AgentStepRow]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT id, analysis_id, step_number, tool_name, input, result,
                       duration_ms, error, reasoning, screenshot_path
                FROM agent_steps
                WHERE analysis_id = ?
                ORDER BY id ASC
                """,
                (analysis_id,),
            ).fetchall()
        return [
            AgentStepRow(
                id=r[0],
                analysis_id=r[1],
                step_number=r[2],
                tool_name=r[3],
                input=r[4],
                result=r[5],
                duration_ms=r[6],
                error=r[7],
                reasoning=r[8],
                screenshot_path=r[9],
            )
            for r in rows
        ]

    # Test plans and results

    def save_test_plan(self, plan: TestPlan) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO test_plans (
                    id, name, analysis_id, project_id, flow_names_json, variables_json,
                    mode, status, last_run_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name,
                    flow_names_json=excluded.flow_names_json,
                    variables_json=excluded.variables_json,
                    mode=excluded.mode,
                    status=excluded.status,
                    last_run_id=excluded.last_run_id
                """,
                (
                    plan.id,
                    plan.name,
                    plan.analysis_id,
                    plan.project_id,
                    _dumps(plan.flow_names),
                    _dumps(plan.variables),
                    plan.mode,
                    plan.status,
                    plan.last_run_id,
                    plan.created_at.isoformat(),
                ),
            )

    def get_test_plan(self, plan_id: str) -> TestPlan | None:
        return self._one_plan("WHERE id = ?", (plan_id,))

    def find_plan_for_analysis(self, analysis_id: str) -> TestPlan | None:
        return self._one_plan(
            "WHERE analysis_id = ? ORDER BY created_at ASC LIMIT 1", (analysis_id,)
        )

    def _one_plan(self, clause: str, params: tuple[Any, ...]) -> TestPlan | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                f"""
                SELECT id, name, analysis_id, project_id, flow_names_json, variables_json,
                       mode, status, last_run_id, created_at
                FROM test_plans {clause}
                """,
                params,
            ).fetchone()
        if row is None:
            return None
        return TestPlan(
            id=row[0],
            name=row[1],
            analysis_id=row[2],
            project_id=row[3],
            flow_names=orjson.loads(row[4]),
            variables=orjson.loads(row[5]),
            mode=row[6],
            status=row[7],
            last_run_id=row[8],
            created_at=datetime.fromisoformat(row[9]),
        )

    def update_test_plan_status(
        self, plan_id: str, status: PlanStatus, run_id: str | None = None
    ) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE test_plans SET status = ?, last_run_id = COALESCE(?, last_run_id) WHERE id = ?",
                (status, run_id, plan_id),
            )

    def save_test_result(self, summary: TestRunSummary) -> None:
        payload = summary.model_dump(mode="json")
        payload["error_output"] = redact_text(summary.error_output)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO test_results (test_id, payload_json, plan_id, status, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(test_id) DO UPDATE SET
                    payload_json=excluded.payload_json,
                    status=excluded.status
                """,
                (summary.test_id, _dumps(payload), summary.plan_id, summary.status, _now()),
            )

    def get_test_result(self, test_id: str) -> TestRunSummary | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT payload_json FROM test_results WHERE test_id = ?", (test_id,)
            ).fetchone()
        if row is None:
            return None
        return TestRunSummary.model_validate(orjson.loads(row[0]))


def _analysis_from_row(row: tuple[Any, ...]) -> AnalysisRecord:
    return AnalysisRecord(
        id=row[0],
        game_url=row[1],
        status=JobStatus(row[2]),
        step=row[3],
        created_at=datetime.fromisoformat(row[4]),
        updated_at=datetime.fromisoformat(row[5]),
        project_id=row[6],
        modules=AnalysisModules.model_validate_json(row[7]),
        profile=AnalysisProfile.from_json(row[8]),
        devices=orjson.loads(row[9]),
        result=orjson.loads(row[10]) if row[10] else None,
        partial_result=row[11],
        error_message=row[12],
        game_name=row[13],
        framework=row[14],
        flow_count=row[15],
    )
