"""Analysis jobs: spawn the external CLI, relay progress, checkpoint and resume."""

from __future__ import annotations

import base64
import logging
import tempfile
from functools import partial
from pathlib import Path, PurePosixPath
from typing import Any, Mapping
from urllib.parse import urlparse

import orjson

from flowpilot.cancellation import CancellationToken
from flowpilot.errors import (
    FlowPilotError,
    JobTimeoutError,
    ProcessExitError,
    ResumeUnavailableError,
)
from flowpilot.flows.serializer import sanitize_filename
from flowpilot.observability import progress_hub as events
from flowpilot.orchestrator.checkpoints import read_best_checkpoint, write_resume_data
from flowpilot.orchestrator.plan_runs import PlanRunOrchestrator
from flowpilot.orchestrator.progress import ProgressEvent
from flowpilot.orchestrator.services import JobServices, new_job_id
from flowpilot.orchestrator.timeout_policy import (
    analysis_timeout,
    batch_timeout,
    continue_timeout,
)
from flowpilot.schemas.enums import JobKind, JobStatus, ProgressKind
from flowpilot.schemas.job_models import (
    AnalysisModules,
    AnalysisProfile,
    AnalysisRequest,
    Checkpoint,
    DeviceOutcome,
    UnitResult,
)
from flowpilot.schemas.store_models import AgentStepRow, AnalysisRecord, TestPlan
from flowpilot.security.redaction import redact_text

LOGGER = logging.getLogger(__name__)

ANALYSIS_MODE = "analysis"

_MODULE_FLAGS = (
    ("uiux", "--no-uiux"),
    ("wording", "--no-wording"),
    ("game_design", "--no-game-design"),
    ("test_flows", "--no-test-flows"),
)


def build_scout_args(
    game_url: str,
    profile: AnalysisProfile,
    modules: AnalysisModules,
    output_dir: Path,
    *,
    resume: tuple[str, Path] | None = None,
) -> list[str]:
    """Command line for one analysis run; a resume reapplies the same flags."""
    args = [
        "scout",
        "--game",
        game_url,
        "--json",
        "--save-flows",
        "--output",
        str(output_dir),
        "--headless",
        "--timeout",
        "60",
    ]
    if resume is not None:
        step, data_path = resume
        args += ["--resume-from", step, "--resume-data", str(data_path)]
    if profile.agent_mode:
        args.append("--agent")
    if profile.model:
        args += ["--model", profile.model]
    if profile.max_tokens:
        args += ["--max-tokens", str(profile.max_tokens)]
    if profile.temperature is not None:
        args += ["--temperature", f"{profile.temperature:g}"]
    if profile.agent_steps:
        args += ["--agent-steps", str(profile.agent_steps)]
    if profile.adaptive:
        args.append("--adaptive")
    if profile.max_total_steps:
        args += ["--max-total-steps", str(profile.max_total_steps)]
    if profile.adaptive_timeout:
        args.append("--adaptive-timeout")
    if profile.max_total_timeout:
        args += ["--max-total-timeout", str(profile.max_total_timeout)]
    if profile.viewport:
        args += ["--viewport", profile.viewport]
    for field_name, flag in _MODULE_FLAGS:
        if getattr(modules, field_name) is False:
            args.append(flag)
    return args


def parse_cli_output(raw: str) -> dict[str, Any]:
    """Decode the JSON result object, tolerating log noise around it."""
    text = raw.strip()
    try:
        result = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        start, end = text.find("{"), text.rfind("}")
        if start < 0 or end <= start:
            raise FlowPilotError(f"Failed to parse CLI output: {exc}") from exc
        try:
            result = orjson.loads(text[start : end + 1])
        except orjson.JSONDecodeError as fallback_exc:
            raise FlowPilotError(
                f"Failed to parse CLI output: {exc} (fallback: {fallback_exc})"
            ) from fallback_exc
    if not isinstance(result, dict):
        raise FlowPilotError("Failed to parse CLI output: result is not an object")
    return result


def summarize_result(result: Mapping[str, Any]) -> tuple[str, str, int]:
    """Return ``(game_name, framework, flow_count)`` from a result object."""
    game_name = ""
    framework = ""
    page_meta = result.get("pageMeta")
    if isinstance(page_meta, Mapping):
        game_name = str(page_meta.get("title") or "")
        framework = str(page_meta.get("framework") or "")
    analysis = result.get("analysis")
    if isinstance(analysis, Mapping):
        game_info = analysis.get("gameInfo")
        if isinstance(game_info, Mapping) and game_info.get("name"):
            game_name = str(game_info["name"])
    flows = result.get("flows")
    return game_name, framework, len(flows) if isinstance(flows, list) else 0


class _ProgressRelay:
    """Turns progress events of one process into persistence and broadcasts."""

    def __init__(self, services: JobServices, job_id: str, output_dir: Path) -> None:
        self.services = services
        self.job_id = job_id
        self.output_dir = output_dir
        self.reasoning: str | None = None
        self.last_step_id: int | None = None
        self.phase: str | None = None

    async def __call__(self, event: ProgressEvent) -> None:
        hub = self.services.hub
        kind = event.kind
        if kind == ProgressKind.AGENT_STEP_DETAIL:
            self._step_detail(event)
        elif kind == ProgressKind.AGENT_REASONING:
            self.reasoning = event.message
            hub.publish(events.REASONING, {"jobId": self.job_id, "text": event.message})
        elif kind == ProgressKind.AGENT_SCREENSHOT:
            self._screenshot(event.message)
        elif kind == ProgressKind.USER_HINT:
            hub.publish(events.USER_HINT, {"jobId": self.job_id, "message": event.message})
        else:
            self._status(event)
        hub.publish(
            events.JOB_PROGRESS,
            {"jobId": self.job_id, "step": event.step, "message": event.message},
        )

    def _status(self, event: ProgressEvent) -> None:
        self.services.store.update_analysis_status(self.job_id, JobStatus.RUNNING, event.step)
        self.services.tracker.set_phase(self.job_id, event.step)
        self.services.tracker.append_log(self.job_id, f"{event.step}: {event.message}")
        if event.step == self.phase:
            return
        self.close_phase()
        self.phase = event.step
        self.services.tracer.record_phase(
            job_id=self.job_id, phase=event.step, metadata={"status": "running"}
        )

    def close_phase(self) -> None:
        if self.phase is None:
            return
        self.services.tracer.record_phase(
            job_id=self.job_id, phase=self.phase, metadata={"status": "completed"}
        )
        self.phase = None

    def _step_detail(self, event: ProgressEvent) -> None:
        detail = event.detail()
        if detail is None:
            LOGGER.warning("Job %s: undecodable agent step detail", self.job_id)
            return
        detail["jobId"] = self.job_id
        self.services.hub.publish(events.STEP_DETAIL, detail)
        row = AgentStepRow(
            analysis_id=self.job_id,
            step_number=_int_field(detail, "stepNumber"),
            tool_name=_str_field(detail, "toolName"),
            input=_str_field(detail, "input"),
            result=_str_field(detail, "result"),
            duration_ms=_int_field(detail, "durationMs"),
            error=_str_field(detail, "error"),
            reasoning=self.reasoning or "",
        )
        self.last_step_id = self.services.store.save_agent_step(row)
        self.reasoning = None

    def _screenshot(self, message: str) -> None:
        filename = PurePosixPath(message.replace("\\", "/")).name
        if filename in {"", ".", ".."}:
            return
        path = self.output_dir / "agent-screenshots" / filename
        try:
            data = path.read_bytes()
        except OSError:
            LOGGER.debug("Job %s: screenshot %s not readable", self.job_id, filename)
            return
        self.services.hub.publish(
            events.SCREENSHOT_AVAILABLE,
            {
                "jobId": self.job_id,
                "filename": filename,
                "imageData": base64.b64encode(data).decode("ascii"),
            },
        )
        try:
            self.services.files.save_agent_screenshot(self.job_id, filename, data)
        except OSError as exc:
            LOGGER.warning("Job %s: could not persist screenshot %s: %s", self.job_id, filename, exc)
            return
        if self.last_step_id is not None:
            self.services.store.update_agent_step_screenshot(self.last_step_id, filename)


class AnalysisOrchestrator:
    """Runs analysis jobs one at a time behind the analysis slot."""

    def __init__(
        self,
        services: JobServices,
        *,
        plan_runs: PlanRunOrchestrator | None = None,
    ) -> None:
        self.services = services
        self.plan_runs = plan_runs

    def submit(self, request: AnalysisRequest) -> str:
        """Persist a queued job and start it in the background."""
        job_id = new_job_id("analysis")
        self.services.store.save_analysis(
            AnalysisRecord(
                id=job_id,
                game_url=request.game_url,
                status=JobStatus.QUEUED,
                step="queued",
                project_id=request.project_id,
                modules=request.modules,
                profile=request.profile,
                devices=request.devices,
            )
        )
        self.services.supervisor.spawn(job_id, self.run(job_id, request), on_failure=self.fail_job)
        return job_id

    async def run(self, job_id: str, request: AnalysisRequest) -> None:
        services = self.services
        batch = len(request.devices) > 1
        services.tracer.start_job(
            job_id=job_id,
            metadata={"kind": "batch" if batch else "analysis", "devices": request.devices},
            input_payload=request.model_dump(mode="json"),
        )
        plan: TestPlan | None = None
        try:
            async with services.slots.analysis.hold(
                job_id, on_queued=partial(self._queued, job_id)
            ) as lease:
                services.store.update_analysis_status(job_id, JobStatus.RUNNING, "scouting")
                services.tracker.register(
                    job_id,
                    kind=JobKind.BATCH_ANALYSIS if batch else JobKind.ANALYSIS,
                    mode=ANALYSIS_MODE,
                    total_units=max(1, len(request.devices)),
                    name=request.game_url,
                )
                services.hub.publish(
                    events.JOB_STARTED,
                    {"jobId": job_id, "gameUrl": request.game_url, "devices": request.devices},
                )
                if batch:
                    result = await self._run_batch(job_id, request)
                else:
                    device = request.devices[0] if request.devices else None
                    result = await self._run_single(job_id, request, device=device)
                self._complete(job_id, result)
                plan = self._ensure_test_plan(job_id, request, result)
                lease.release()
        except FlowPilotError as exc:
            await self.fail_job(job_id, str(exc))
            return
        finally:
            services.tracker.remove(job_id)

        if request.auto_test and plan is not None and self.plan_runs is not None:
            LOGGER.info("Analysis %s: launching %s test run for plan %s", job_id, request.auto_test_mode, plan.id)
            self.plan_runs.launch(plan, mode=request.auto_test_mode, viewport=request.profile.viewport)

    async def _queued(self, job_id: str) -> None:
        self.services.store.update_analysis_status(job_id, JobStatus.QUEUED, "queued")
        self.services.hub.publish(
            events.JOB_QUEUED,
            {"jobId": job_id, "message": "Waiting for a free analysis slot..."},
        )

    async def _run_single(
        self,
        job_id: str,
        request: AnalysisRequest,
        *,
        device: str | None = None,
        cancel: CancellationToken | None = None,
        keep_checkpoint: bool = True,
    ) -> dict[str, Any]:
        profile = request.profile
        if device is not None:
            profile = profile.model_copy(update={"viewport": device})
        timeout = analysis_timeout(profile, self.services.config.timeout_policy)
        with tempfile.TemporaryDirectory(prefix="flowpilot-analysis-") as tmp:
            output_dir = Path(tmp)
            args = build_scout_args(request.game_url, profile, request.modules, output_dir)
            result = await self._invoke(
                job_id,
                args,
                output_dir,
                timeout,
                label="Analysis",
                cancel=cancel,
                keep_checkpoint=keep_checkpoint,
            )
            prefix = sanitize_filename(device) if device and len(request.devices) > 1 else ""
            self.services.files.save_generated(job_id, output_dir, prefix=prefix)
        return result

    async def _run_batch(self, job_id: str, request: AnalysisRequest) -> dict[str, Any]:
        """One run per device under a shared deadline; fails only if every device fails."""
        services = self.services
        total = batch_timeout(request.profile, request.devices, services.config.timeout_policy)
        scope = services.shutdown.child(timeout_seconds=total)
        outcomes: list[DeviceOutcome] = []
        results: dict[str, dict[str, Any]] = {}
        for index, device in enumerate(request.devices, start=1):
            services.hub.publish(
                events.JOB_PROGRESS,
                {
                    "jobId": job_id,
                    "step": "device",
                    "message": f"Analyzing on {device} ({index}/{len(request.devices)})",
                },
            )
            if scope.cancelled:
                outcome = DeviceOutcome(device=device, status="failed", error=f"cancelled: {scope.reason}")
            else:
                try:
                    result = await self._run_single(
                        job_id, request, device=device, cancel=scope, keep_checkpoint=False
                    )
                except FlowPilotError as exc:
                    LOGGER.warning("Analysis %s: device %s failed: %s", job_id, device, exc)
                    outcome = DeviceOutcome(device=device, status="failed", error=redact_text(str(exc)))
                else:
                    results[device] = result
                    outcome = DeviceOutcome(
                        device=device, status="completed", flow_count=summarize_result(result)[2]
                    )
            outcomes.append(outcome)
            services.tracker.append_unit(
                job_id,
                UnitResult(
                    name=device,
                    status="passed" if outcome.status == "completed" else "failed",
                    reason=outcome.error,
                ),
            )
        if not results:
            details = "; ".join(f"{outcome.device}: {outcome.error}" for outcome in outcomes)
            raise FlowPilotError(f"all {len(outcomes)} devices failed: {details}")
        merged = dict(next(iter(results.values())))
        merged["flows"] = [
            flow
            for result in results.values()
            for flow in (result.get("flows") or [])
            if isinstance(flow, dict)
        ]
        merged["devices"] = [outcome.model_dump(mode="json") for outcome in outcomes]
        merged["deviceResults"] = results
        return merged

    async def _invoke(
        self,
        job_id: str,
        args: list[str],
        output_dir: Path,
        timeout: int,
        *,
        label: str,
        cancel: CancellationToken | None = None,
        keep_checkpoint: bool = True,
    ) -> dict[str, Any]:
        services = self.services
        relay = _ProgressRelay(services, job_id, output_dir)
        try:
            outcome = await services.runner.run(
                args,
                job_id=job_id,
                timeout_seconds=timeout,
                label=label,
                on_progress=relay,
                cancel=cancel or services.shutdown,
            )
        except (ProcessExitError, JobTimeoutError) as exc:
            tail = exc.stderr_tail if isinstance(exc, ProcessExitError) else ""
            services.store.update_analysis_error(job_id, tail or str(exc))
            if keep_checkpoint:
                checkpoint = read_best_checkpoint(output_dir)
                if checkpoint is not None:
                    LOGGER.info("Analysis %s: saved checkpoint %s", job_id, checkpoint.step)
                    services.store.set_checkpoint(job_id, checkpoint)
            raise
        finally:
            relay.close_phase()
        services.hub.publish(
            events.JOB_PROGRESS,
            {"jobId": job_id, "step": "saving", "message": "Saving generated flows..."},
        )
        return parse_cli_output(outcome.stdout)

    def _complete(self, job_id: str, result: dict[str, Any]) -> None:
        game_name, framework, flow_count = summarize_result(result)
        self.services.store.update_analysis_result(
            job_id,
            result=result,
            game_name=game_name,
            framework=framework,
            flow_count=flow_count,
        )
        self.services.hub.publish(
            events.JOB_COMPLETED,
            {"jobId": job_id, "result": result, "flowCount": flow_count},
        )
        self.services.tracer.finish_job(
            job_id=job_id,
            metadata={"status": "completed"},
            output_payload={"flowCount": flow_count, "gameName": game_name},
        )
        LOGGER.info("Analysis %s completed with %d flows", job_id, flow_count)

    def _ensure_test_plan(
        self, job_id: str, request: AnalysisRequest, result: Mapping[str, Any]
    ) -> TestPlan | None:
        """Create the plan for this job's flows unless one already exists."""
        store = self.services.store
        existing = store.find_plan_for_analysis(job_id)
        if existing is not None:
            return existing
        flows = result.get("flows")
        names = [
            str(flow["name"])
            for flow in (flows if isinstance(flows, list) else [])
            if isinstance(flow, dict) and flow.get("name")
        ]
        if not names and request.auto_test_mode != "agent":
            return None
        game_name = summarize_result(result)[0] or urlparse(request.game_url).netloc
        plan = TestPlan(
            id=new_job_id("plan"),
            name=f"{game_name} - generated",
            analysis_id=job_id,
            project_id=request.project_id,
            flow_names=names,
            mode=request.auto_test_mode,
        )
        store.save_test_plan(plan)
        return plan

    async def fail_job(self, job_id: str, reason: str) -> None:
        """Move the job to ``failed`` and tell observers whether it can resume."""
        services = self.services
        reason = redact_text(reason)
        record = services.store.get_analysis(job_id)
        if record is None:
            LOGGER.warning("Cannot fail unknown analysis %s", job_id)
            return
        if record.status == JobStatus.COMPLETED:
            LOGGER.warning("Analysis %s already completed; ignoring failure: %s", job_id, reason)
            return
        LOGGER.error("Analysis %s failed: %s", job_id, reason)
        services.store.update_analysis_status(job_id, JobStatus.FAILED, reason=reason)
        if not record.error_message:
            services.store.update_analysis_error(job_id, reason)
        resumable = services.store.get_checkpoint(job_id) is not None
        services.hub.publish(
            events.JOB_FAILED,
            {"jobId": job_id, "error": reason, "resumable": resumable},
        )
        services.tracker.remove(job_id)
        services.tracer.finish_job(
            job_id=job_id, metadata={"status": "failed", "error": reason}
        )

    def continue_job(self, job_id: str) -> Checkpoint:
        """Resume a failed job from its stored checkpoint using its stored flags."""
        store = self.services.store
        record = store.get_analysis(job_id)
        if record is None:
            raise ResumeUnavailableError(f"analysis not found: {job_id}")
        if record.status != JobStatus.FAILED:
            raise ResumeUnavailableError("only failed analyses can be continued")
        if len(record.devices) > 1:
            raise ResumeUnavailableError("batch analyses cannot be continued")
        checkpoint = record.checkpoint()
        if checkpoint is None:
            raise ResumeUnavailableError("no checkpoint data available; retry instead")
        store.update_analysis_status(
            job_id, JobStatus.RESUMING, "resuming", reason=f"resume from {checkpoint.step}"
        )
        store.update_analysis_error(job_id, "")
        self.services.supervisor.spawn(
            job_id, self._run_continue(record, checkpoint), on_failure=self.fail_job
        )
        return checkpoint

    async def _run_continue(self, record: AnalysisRecord, checkpoint: Checkpoint) -> None:
        services = self.services
        job_id = record.id
        services.tracer.start_job(
            job_id=job_id, metadata={"kind": "continue", "resumeFrom": checkpoint.step}
        )
        try:
            async with services.slots.analysis.hold(job_id, on_queued=partial(self._queued, job_id)):
                services.store.update_analysis_status(job_id, JobStatus.RUNNING, "resuming")
                services.tracker.register(
                    job_id, kind=JobKind.ANALYSIS, mode=ANALYSIS_MODE, total_units=1, name=record.game_url
                )
                services.hub.publish(
                    events.JOB_PROGRESS,
                    {"jobId": job_id, "step": "resuming", "message": "Resuming from checkpoint..."},
                )
                timeout = continue_timeout(record.profile, services.config.timeout_policy)
                with tempfile.TemporaryDirectory(prefix="flowpilot-continue-") as tmp:
                    output_dir = Path(tmp)
                    data_path = write_resume_data(output_dir, checkpoint)
                    args = build_scout_args(
                        record.game_url,
                        record.profile,
                        record.modules,
                        output_dir,
                        resume=(checkpoint.step, data_path),
                    )
                    result = await self._invoke(
                        job_id, args, output_dir, timeout, label="Continued analysis"
                    )
                    services.files.save_generated(job_id, output_dir)
                self._complete(job_id, result)
        except FlowPilotError as exc:
            await self.fail_job(job_id, str(exc))
        finally:
            services.tracker.remove(job_id)

    async def send_hint(self, job_id: str, message: str) -> None:
        await self.services.processes.send_hint(job_id, message)


def _int_field(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    return 0


def _str_field(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return orjson.dumps(value).decode("utf-8")
