"""Analysis jobs against a stand-in CLI process."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from fakes import make_services, settle
from flowpilot.errors import ResumeUnavailableError
from flowpilot.observability import progress_hub as events
from flowpilot.orchestrator.analysis import AnalysisOrchestrator, build_scout_args
from flowpilot.orchestrator.plan_runs import PlanRunOrchestrator
from flowpilot.schemas.enums import JobStatus
from flowpilot.schemas.job_models import AnalysisModules, AnalysisProfile, AnalysisRequest


def _submit(orchestrator: AnalysisOrchestrator, request: AnalysisRequest) -> str:
    async def scenario() -> str:
        job_id = orchestrator.submit(request)
        await settle(orchestrator.services)
        return job_id

    return asyncio.run(scenario())


def _profile_flags(args: list[str]) -> list[str]:
    """Drop the per-run directory and resume arguments."""
    flags: list[str] = []
    skip = False
    for arg in args:
        if skip:
            skip = False
            continue
        if arg in ("--output", "--resume-from", "--resume-data"):
            skip = True
            continue
        flags.append(arg)
    return flags


def test_analysis_persists_result_flows_steps_and_plan(tmp_path: Path) -> None:
    """A successful run stores the result, copies flows and creates a plan."""
    services = make_services(tmp_path)
    subscription = services.hub.subscribe()
    job_id = _submit(
        AnalysisOrchestrator(services), AnalysisRequest(game_url="https://snake.test/play")
    )

    record = services.store.get_analysis(job_id)
    assert record is not None
    assert record.status == JobStatus.COMPLETED
    assert record.game_name == "Snake"
    assert record.framework == "phaser"
    assert record.flow_count == 1
    assert [path.name for path in services.files.generated_dir(job_id).iterdir()] == [
        "start-game.yaml"
    ]

    steps = services.store.list_agent_steps(job_id)
    assert [(step.tool_name, step.reasoning) for step in steps] == [
        ("click", "The play button is centered")
    ]
    assert steps[0].screenshot_path == "step-1.jpg"

    plan = services.store.find_plan_for_analysis(job_id)
    assert plan is not None
    assert plan.name == "Snake - generated"
    assert plan.flow_names == ["Start game"]

    types = [message.type for message in subscription.drain()]
    assert types[0] == events.JOB_STARTED
    assert events.STEP_DETAIL in types
    assert events.SCREENSHOT_AVAILABLE in types
    assert types[-1] == events.JOB_COMPLETED
    transitions = [(t.from_status, t.to_status) for t in services.store.list_transitions(job_id)]
    assert ("queued", "running") in transitions
    assert services.tracker.snapshot() == {}


def test_failed_analysis_keeps_checkpoint_and_continues(tmp_path: Path) -> None:
    """A failure stores the redacted stderr and checkpoint; continue reuses the flags."""
    log = tmp_path / "calls.jsonl"
    services = make_services(
        tmp_path, env={"FAKE_CLI_BEHAVIOR": "fail", "FAKE_CLI_LOG": str(log)}
    )
    orchestrator = AnalysisOrchestrator(services)
    subscription = services.hub.subscribe()
    request = AnalysisRequest(
        game_url="https://snake.test/play",
        profile=AnalysisProfile(
            agent_mode=True,
            model="claude-sonnet-4-5",
            max_tokens=4096,
            agent_steps=5,
            temperature=0.3,
            adaptive=True,
            max_total_steps=20,
            adaptive_timeout=True,
            max_total_timeout=30,
            viewport="iphone-16",
        ),
        modules=AnalysisModules(uiux=False, wording=False, game_design=False, test_flows=False),
    )

    async def scenario() -> str:
        job_id = orchestrator.submit(request)
        await settle(services)
        record = services.store.get_analysis(job_id)
        assert record is not None
        assert record.status == JobStatus.FAILED
        assert "quota exceeded" in record.error_message
        assert "sk-abcdefghijklmnopqrstuvwx" not in record.error_message
        failed = [m for m in subscription.drain() if m.type == events.JOB_FAILED]
        assert failed[-1].data["resumable"] is True
        assert "failed during: analyzing" in failed[-1].data["error"]

        assert orchestrator.continue_job(job_id).step == "analyzed"
        await settle(services)
        return job_id

    job_id = asyncio.run(scenario())

    record = services.store.get_analysis(job_id)
    assert record is not None
    assert record.status == JobStatus.COMPLETED
    assert record.error_message == ""
    statuses = [t.to_status for t in services.store.list_transitions(job_id)]
    assert statuses == ["running", "failed", "resuming", "running", "completed"]
    first, resumed = [json.loads(line) for line in log.read_text().splitlines()]
    assert "--resume-from" not in first
    assert resumed[resumed.index("--resume-from") + 1] == "analyzed"
    expected = _profile_flags(
        build_scout_args(request.game_url, request.profile, request.modules, tmp_path)
    )
    assert _profile_flags(first) == expected
    assert _profile_flags(resumed) == expected
    for flag in ("--model", "--max-tokens", "--temperature", "--max-total-timeout", "--no-uiux"):
        assert flag in expected


def test_continue_rejects_completed_jobs(tmp_path: Path) -> None:
    """Only failed analyses with a checkpoint can be continued."""
    services = make_services(tmp_path)
    orchestrator = AnalysisOrchestrator(services)
    job_id = _submit(orchestrator, AnalysisRequest(game_url="https://snake.test/play"))

    with pytest.raises(ResumeUnavailableError, match="only failed"):
        orchestrator.continue_job(job_id)
    with pytest.raises(ResumeUnavailableError, match="not found"):
        orchestrator.continue_job("analysis-missing")


def test_batch_completes_when_one_device_fails(tmp_path: Path) -> None:
    """Device failures are recorded; the batch still completes with merged flows."""
    services = make_services(tmp_path, env={"FAKE_CLI_BEHAVIOR": "fail:iphone-16"})
    devices = ["desktop-std", "iphone-16", "pixel-9"]
    job_id = _submit(
        AnalysisOrchestrator(services),
        AnalysisRequest(game_url="https://snake.test/play", devices=devices),
    )

    record = services.store.get_analysis(job_id)
    assert record is not None
    assert record.status == JobStatus.COMPLETED
    assert record.result is not None
    statuses = {item["device"]: item["status"] for item in record.result["devices"]}
    assert statuses == {
        "desktop-std": "completed",
        "iphone-16": "failed",
        "pixel-9": "completed",
    }
    assert sorted(record.result["deviceResults"]) == ["desktop-std", "pixel-9"]
    assert record.flow_count == 2
    assert sorted(path.name for path in services.files.generated_dir(job_id).iterdir()) == [
        "desktop-std_start-game.yaml",
        "pixel-9_start-game.yaml",
    ]


def test_batch_fails_when_every_device_fails(tmp_path: Path) -> None:
    """The job fails only once no device produced a result."""
    services = make_services(tmp_path, env={"FAKE_CLI_BEHAVIOR": "fail:iphone-16,pixel-9"})
    job_id = _submit(
        AnalysisOrchestrator(services),
        AnalysisRequest(
            game_url="https://snake.test/play",
            devices=["iphone-16", "pixel-9", " iphone-16"],
        ),
    )

    record = services.store.get_analysis(job_id)
    assert record is not None
    assert record.devices == ["iphone-16", "pixel-9"]
    assert record.status == JobStatus.FAILED
    assert record.checkpoint() is None
    assert "all 2 devices failed" in services.store.list_transitions(job_id)[-1].reason


def test_auto_test_runs_generated_flows_in_browser(tmp_path: Path) -> None:
    """With auto_test the generated plan runs once the analysis completes."""
    services = make_services(tmp_path)
    orchestrator = AnalysisOrchestrator(services, plan_runs=PlanRunOrchestrator(services))
    job_id = _submit(
        orchestrator,
        AnalysisRequest(game_url="https://snake.test/play", auto_test=True),
    )

    plan = services.store.find_plan_for_analysis(job_id)
    assert plan is not None
    assert plan.status == "completed"
    assert plan.last_run_id is not None
    summary = services.store.get_test_result(plan.last_run_id)
    assert summary is not None
    assert summary.status == "passed"
    assert [(unit.name, unit.status) for unit in summary.flows] == [("start-game", "passed")]
