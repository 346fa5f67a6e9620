"""CLI for FlowPilot."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, NoReturn

import orjson
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from flowpilot.agent import ScenarioExecutor, scenarios_from_result
from flowpilot.browser import BrowserSession, PlaywrightPage, resolve_viewport
from flowpilot.config import ModelFactory, load_app_config
from flowpilot.config.models import AppConfig
from flowpilot.constants import MODE_BROWSER, PACKAGE_VERSION, RUN_MODES
from flowpilot.errors import FlowPilotError
from flowpilot.flows import normalize_flow_text, parse_flow_dir, parse_flow_file
from flowpilot.flows.validator import FlowValidator
from flowpilot.observability import ProgressMessage, Subscription
from flowpilot.observability import progress_hub as events
from flowpilot.orchestrator import AnalysisOrchestrator, JobServices, PlanRunOrchestrator
from flowpilot.resilience.retry import RetryExecutor, RetryPolicy
from flowpilot.schemas.agent_models import ScenarioOutcome
from flowpilot.schemas.job_models import (
    AnalysisModules,
    AnalysisRequest,
    TestRunSummary,
    build_analysis_request,
)
from flowpilot.schemas.store_models import AnalysisRecord
from flowpilot.security.redaction import redact_text

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="FlowPilot flow execution and test orchestration engine.",
)
console = Console()

_CONFIG_OPTION = typer.Option(None, "--config", help="Path to settings.yaml override.")
_CLI_PATH_OPTION = typer.Option(None, "--cli-path", help="External analysis CLI binary.")
_DATA_DIR_OPTION = typer.Option(None, "--data-dir", help="Directory for persisted state.")

_QUIET_TYPES = {events.TEST_COMMAND_PROGRESS, events.STEP_DETAIL, events.REASONING}


@app.command()
def version() -> None:
    """Print the FlowPilot version."""
    typer.echo(PACKAGE_VERSION)


@app.command("validate-config")
def validate_config(config: Path | None = _CONFIG_OPTION) -> None:
    """Validate configuration and print provider profiles."""
    try:
        config_model = load_app_config(config)
    except Exception as exc:  # noqa: BLE001
        console.print(f"[red]Configuration validation failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    table = Table(title="Provider Profiles")
    table.add_column("Profile")
    table.add_column("Type")
    table.add_column("Model")
    table.add_column("Base URL")
    table.add_column("Context Window", justify="right")
    for profile_name, profile in config_model.provider_profiles.items():
        table.add_row(
            profile_name,
            profile.provider_type.value,
            profile.model,
            profile.base_url or "-",
            str(profile.capabilities.context_window),
        )
    console.print(table)


@app.command("normalize")
def normalize(flow_file: Path = typer.Argument(..., help="Flow YAML file.")) -> None:
    """Print the normalized text of a flow file."""
    try:
        text = flow_file.read_text(encoding="utf-8")
    except OSError as exc:
        _fail("Normalize failed", exc)
    typer.echo(normalize_flow_text(text), nl=False)


@app.command("parse")
def parse(target: Path = typer.Argument(..., help="Flow file or directory of flows.")) -> None:
    """Parse flows and list their commands."""
    try:
        flows = parse_flow_dir(target) if target.is_dir() else [parse_flow_file(target)]
    except (FlowPilotError, OSError) as exc:
        _fail("Parse failed", exc)
    table = Table(title="Flows")
    table.add_column("Name")
    table.add_column("Start URL")
    table.add_column("Commands", justify="right")
    table.add_column("First command")
    for flow in flows:
        first = flow.commands[0].name if flow.commands else "-"
        table.add_row(flow.name, flow.metadata.start_url or "-", str(len(flow.commands)), first)
    console.print(table)


@app.command("validate")
def validate(
    targets: list[Path] = typer.Argument(..., help="Flow files or directories of flows."),
) -> None:
    """Check flow files for errors and warnings without running them."""
    results = FlowValidator().validate_paths(targets)
    table = Table(title="Flow Validation")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Findings")
    for result in results:
        status = "[green]valid[/green]" if result.valid else "[red]invalid[/red]"
        findings = [f"error: {error}" for error in result.errors]
        findings += [f"warning: {warning}" for warning in result.warnings]
        table.add_row(result.path.name, status, "\n".join(findings) or "-")
    console.print(table)
    invalid = sum(1 for result in results if not result.valid)
    console.print(f"{len(results) - invalid}/{len(results)} flow file(s) valid")
    if invalid:
        raise typer.Exit(code=1)


@app.command("run-flows")
def run_flows(
    flow_dir: Path = typer.Argument(..., help="Directory of flow files."),
    url_override: str | None = typer.Option(
        None, "--url-override", help="Open this URL instead of each flow's url."
    ),
    viewport: str | None = typer.Option(None, "--viewport", help="Viewport preset name."),
    config: Path | None = _CONFIG_OPTION,
    data_dir: Path | None = _DATA_DIR_OPTION,
) -> None:
    """Execute a directory of flows in a headless browser."""
    try:
        cfg = _load_config(config, data_dir=data_dir)
        summary = asyncio.run(
            _run_directory(cfg, flow_dir, viewport=viewport, url_override=url_override)
        )
    except typer.Exit:
        raise
    except Exception as exc:  # noqa: BLE001
        _fail("Flow run failed", exc)
    _render_summary(summary)
    if summary.status != "passed":
        raise typer.Exit(code=1)


@app.command("run-scenario")
def run_scenario(
    analysis_json: Path = typer.Argument(..., help="Analysis result JSON with scenarios."),
    index: int = typer.Option(0, "--index", min=0, help="Scenario index to run."),
    url: str | None = typer.Option(None, "--url", help="Start URL; defaults to the result's gameUrl."),
    viewport: str | None = typer.Option(None, "--viewport", help="Viewport preset name."),
    provider_profile: str | None = typer.Option(
        None, "--provider-profile", help="Provider profile name from config."
    ),
    config: Path | None = _CONFIG_OPTION,
) -> None:
    """Run one scenario from an analysis result through the agent loop."""
    try:
        cfg = _load_config(config, provider_profile=provider_profile)
        result = orjson.loads(analysis_json.read_bytes())
        if not isinstance(result, dict):
            raise FlowPilotError("analysis result must be a JSON object")
        scenarios = scenarios_from_result(result)
        if index >= len(scenarios):
            raise typer.BadParameter(f"index {index} out of range ({len(scenarios)} scenarios)")
        start_url = url or str(result.get("gameUrl") or result.get("url") or "")
        if not start_url:
            raise typer.BadParameter("No start URL: pass --url")
        outcome = asyncio.run(
            _run_scenario(cfg, scenarios[index], start_url, viewport, provider_profile)
        )
    except (typer.Exit, typer.BadParameter):
        raise
    except Exception as exc:  # noqa: BLE001
        _fail("Scenario run failed", exc)
    _render_outcome(outcome)
    if not outcome.passed:
        raise typer.Exit(code=1)


@app.command("analyze")
def analyze(
    game_url: str = typer.Argument(..., help="URL of the game to analyze."),
    agent: bool = typer.Option(False, "--agent", help="Let the analysis agent explore."),
    model: str | None = typer.Option(None, "--model", help="Model override."),
    max_tokens: int | None = typer.Option(None, "--max-tokens"),
    temperature: float | None = typer.Option(None, "--temperature"),
    agent_steps: int | None = typer.Option(None, "--agent-steps"),
    adaptive: bool = typer.Option(False, "--adaptive"),
    max_total_steps: int | None = typer.Option(None, "--max-total-steps"),
    adaptive_timeout: bool = typer.Option(False, "--adaptive-timeout"),
    max_total_timeout: int | None = typer.Option(None, "--max-total-timeout", help="Minutes."),
    viewport: str | None = typer.Option(None, "--viewport", help="Viewport preset name."),
    no_uiux: bool = typer.Option(False, "--no-uiux"),
    no_wording: bool = typer.Option(False, "--no-wording"),
    no_game_design: bool = typer.Option(False, "--no-game-design"),
    no_test_flows: bool = typer.Option(False, "--no-test-flows"),
    auto_test: bool = typer.Option(False, "--auto-test", help="Run the generated plan afterwards."),
    auto_test_mode: str = typer.Option(MODE_BROWSER, "--auto-test-mode"),
    config: Path | None = _CONFIG_OPTION,
    cli_path: str | None = _CLI_PATH_OPTION,
    data_dir: Path | None = _DATA_DIR_OPTION,
) -> None:
    """Analyze a game with the external CLI and store generated flows."""
    try:
        cfg = _load_config(config, cli_path=cli_path, data_dir=data_dir)
        request = build_analysis_request(
            game_url=game_url,
            profile={
                "agent_mode": agent,
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "agent_steps": agent_steps,
                "adaptive": adaptive,
                "max_total_steps": max_total_steps,
                "adaptive_timeout": adaptive_timeout,
                "max_total_timeout": max_total_timeout,
                "viewport": viewport,
            },
            modules=_modules(no_uiux, no_wording, no_game_design, no_test_flows),
            auto_test=auto_test,
            auto_test_mode=_check_mode(auto_test_mode),
        )
    except typer.Exit:
        raise
    except Exception as exc:  # noqa: BLE001
        _fail("Invalid analysis request", exc)
    _finish_analysis(cfg, request)


@app.command("batch")
def batch(
    game_url: str = typer.Argument(..., help="URL of the game to analyze."),
    device: list[str] = typer.Option(..., "--device", help="Viewport preset; repeat per device."),
    agent: bool = typer.Option(False, "--agent", help="Let the analysis agent explore."),
    model: str | None = typer.Option(None, "--model", help="Model override."),
    config: Path | None = _CONFIG_OPTION,
    cli_path: str | None = _CLI_PATH_OPTION,
    data_dir: Path | None = _DATA_DIR_OPTION,
) -> None:
    """Analyze one game once per device and merge the flows."""
    try:
        cfg = _load_config(config, cli_path=cli_path, data_dir=data_dir)
        request = build_analysis_request(
            game_url=game_url,
            profile={"agent_mode": agent, "model": model},
            devices=device,
        )
    except typer.Exit:
        raise
    except Exception as exc:  # noqa: BLE001
        _fail("Invalid batch request", exc)
    _finish_analysis(cfg, request)


@app.command("continue")
def continue_job(
    job_id: str = typer.Argument(..., help="Failed analysis job id."),
    config: Path | None = _CONFIG_OPTION,
    cli_path: str | None = _CLI_PATH_OPTION,
    data_dir: Path | None = _DATA_DIR_OPTION,
) -> None:
    """Resume a failed analysis from its saved checkpoint."""
    try:
        cfg = _load_config(config, cli_path=cli_path, data_dir=data_dir)
        record = asyncio.run(_continue(cfg, job_id))
    except typer.Exit:
        raise
    except Exception as exc:  # noqa: BLE001
        _fail("Continue failed", exc)
    _render_record(record)
    if record is None or record.status.value != "completed":
        raise typer.Exit(code=1)


@app.command("healthcheck")
def healthcheck(
    config: Path | None = _CONFIG_OPTION,
    data_dir: Path | None = _DATA_DIR_OPTION,
    quiet: bool = typer.Option(False, "--quiet", help="Suppress success output."),
) -> None:
    """Validate runtime readiness for deployment health checks."""
    try:
        cfg = _load_config(config, data_dir=data_dir)
        services = JobServices.from_config(cfg)
        services.store.list_analyses()
        if not quiet:
            console.print(
                f"[green]OK[/green] provider={cfg.default_provider_profile} "
                f"db={cfg.paths.db_path} cli={cfg.orchestrator.cli_path}"
            )
    except Exception as exc:  # noqa: BLE001
        _fail("Healthcheck failed", exc)


def _load_config(
    config: Path | None,
    *,
    cli_path: str | None = None,
    data_dir: Path | None = None,
    provider_profile: str | None = None,
) -> AppConfig:
    overrides: dict[str, Any] = {
        "cli_path": cli_path,
        "default_provider_profile": provider_profile,
    }
    if data_dir is not None:
        overrides.update(
            data_dir=str(data_dir),
            flows_dir=str(data_dir / "flows"),
            db_path=str(data_dir / "flowpilot.db"),
        )
    return load_app_config(config, cli_overrides=overrides)


def _modules(
    no_uiux: bool, no_wording: bool, no_game_design: bool, no_test_flows: bool
) -> AnalysisModules:
    return AnalysisModules(
        uiux=False if no_uiux else None,
        wording=False if no_wording else None,
        game_design=False if no_game_design else None,
        test_flows=False if no_test_flows else None,
    )


def _check_mode(mode: str) -> str:
    normalized = mode.strip().lower()
    if normalized not in RUN_MODES:
        raise typer.BadParameter(f"mode must be one of: {', '.join(RUN_MODES)}")
    return normalized


def _finish_analysis(cfg: AppConfig, request: AnalysisRequest) -> None:
    try:
        record = asyncio.run(_analyze(cfg, request))
    except Exception as exc:  # noqa: BLE001
        _fail("Analysis failed", exc)
    _render_record(record)
    if record is None or record.status.value != "completed":
        raise typer.Exit(code=1)


async def _analyze(cfg: AppConfig, request: AnalysisRequest) -> AnalysisRecord | None:
    services = JobServices.from_config(cfg)
    services.recover()
    orchestrator = AnalysisOrchestrator(services, plan_runs=PlanRunOrchestrator(services))
    printer = _start_printer(services)
    try:
        job_id = orchestrator.submit(request)
        await _drain(services)
    finally:
        await _stop_printer(printer)
        services.tracer.flush()
    return services.store.get_analysis(job_id)


async def _continue(cfg: AppConfig, job_id: str) -> AnalysisRecord | None:
    services = JobServices.from_config(cfg)
    orchestrator = AnalysisOrchestrator(services, plan_runs=PlanRunOrchestrator(services))
    printer = _start_printer(services)
    try:
        checkpoint = orchestrator.continue_job(job_id)
        console.print(f"Resuming [bold]{job_id}[/bold] from stage [cyan]{checkpoint.step}[/cyan]")
        await _drain(services)
    finally:
        await _stop_printer(printer)
        services.tracer.flush()
    return services.store.get_analysis(job_id)


async def _run_directory(
    cfg: AppConfig, flow_dir: Path, *, viewport: str | None, url_override: str | None
) -> TestRunSummary:
    services = JobServices.from_config(cfg)
    printer = _start_printer(services)
    try:
        return await PlanRunOrchestrator(services).run_directory(
            flow_dir, name=flow_dir.name, viewport=viewport, url_override=url_override
        )
    finally:
        await _stop_printer(printer)


async def _run_scenario(
    cfg: AppConfig,
    scenario: Any,
    start_url: str,
    viewport_name: str | None,
    provider_profile: str | None,
) -> ScenarioOutcome:
    model = ModelFactory(cfg).create_client(
        profile_name=provider_profile or cfg.agent.provider_profile, env=os.environ
    )
    viewport = resolve_viewport(viewport_name or cfg.executor.default_viewport)
    page = await PlaywrightPage.launch(viewport)
    session = BrowserSession(
        page,
        viewport,
        settings=cfg.executor,
        result_token_budget=cfg.agent.tool_result_token_budget,
    )
    retry = RetryExecutor(
        RetryPolicy(
            max_attempts=cfg.retries.max_attempts,
            backoff_seconds=cfg.retries.backoff_seconds,
            jitter_seconds=cfg.retries.jitter_seconds,
        )
    )
    try:
        executor = ScenarioExecutor(session, model, config=cfg.agent, retry=retry)

        async def _step(_scenario: Any, record: Any) -> None:
            marker = "[red]x[/red]" if record.error else "[green]>[/green]"
            console.print(f"{marker} {record.step_number}. {record.tool_name} {record.result[:120]}")

        return await executor.execute_scenario(scenario, start_url, on_step=_step)
    finally:
        await session.close()


async def _drain(services: JobServices) -> None:
    """Wait until the job and anything it launched have finished."""
    while services.supervisor.active:
        await services.supervisor.wait_all()


def _start_printer(services: JobServices) -> asyncio.Task[None]:
    subscription = services.hub.subscribe()
    return asyncio.create_task(_print_progress(subscription))


async def _stop_printer(task: asyncio.Task[None]) -> None:
    await asyncio.sleep(0)
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def _print_progress(subscription: Subscription) -> None:
    try:
        while True:
            _print_message(await subscription.get())
    finally:
        for message in subscription.drain():
            _print_message(message)
        subscription.close()


def _print_message(message: ProgressMessage) -> None:
    if message.type in _QUIET_TYPES:
        return
    data = message.data
    text = data.get("message") or data.get("line") or data.get("error") or ""
    if message.type == events.JOB_PROGRESS:
        console.print(f"[cyan]{data.get('step', '')}[/cyan] {text}")
    elif message.type in (events.JOB_FAILED, events.TEST_FAILED):
        console.print(f"[red]{message.type}[/red] {text}")
    elif text:
        console.print(text)
    else:
        console.print(f"[dim]{message.type}[/dim]")


def _render_record(record: AnalysisRecord | None) -> None:
    if record is None:
        console.print("[red]Job record not found[/red]")
        return
    color = "green" if record.status.value == "completed" else "red"
    lines = [
        f"job: [bold]{record.id}[/bold]",
        f"status: [{color}]{record.status.value}[/{color}] ({record.step})",
        f"game: {record.game_name or '-'} framework: {record.framework or '-'}",
        f"flows: {record.flow_count}",
    ]
    if record.error_message:
        lines.append(f"error: {redact_text(record.error_message)}")
    if record.checkpoint() is not None:
        lines.append(f"resumable: flowpilot continue {record.id}")
    console.print(Panel.fit("\n".join(lines), title="Analysis"))


def _render_summary(summary: TestRunSummary) -> None:
    table = Table(title=f"Test run {summary.test_id}")
    table.add_column("Flow")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Reason")
    for unit in summary.flows:
        color = "green" if unit.status == "passed" else "red"
        table.add_row(unit.name, f"[{color}]{unit.status}[/{color}]", unit.duration, unit.reason or "")
    console.print(table)
    console.print(
        f"{summary.status} in {summary.duration}; success rate {summary.success_rate:.0f}%"
    )
    if summary.error_output:
        console.print(f"[red]error:[/red] {summary.error_output}")


def _render_outcome(outcome: ScenarioOutcome) -> None:
    color = "green" if outcome.passed else "red"
    body = f"[{color}]{outcome.verdict.value}[/{color}] {outcome.reason}"
    if outcome.failed_step is not None:
        body += f"\nfailed step: {outcome.failed_step}"
    console.print(Panel.fit(body, title=outcome.scenario))


def _fail(label: str, exc: BaseException) -> NoReturn:
    console.print(f"[red]{label}:[/red] {redact_text(str(exc))}")
    raise typer.Exit(code=1) from exc
