"""CLI smoke tests."""

from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from flowpilot import __version__, app

REPO_ROOT = Path(__file__).resolve().parents[2]
SETTINGS = REPO_ROOT / "config" / "settings.yaml"

runner = CliRunner(env={"COLUMNS": "200"})


def test_package_imports() -> None:
    """The package exposes its version."""
    assert __version__


def test_cli_help_and_version() -> None:
    """Help lists the commands and version prints the package version."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "FlowPilot" in result.stdout
    assert "run-flows" in result.stdout
    version = runner.invoke(app, ["version"])
    assert version.stdout.strip() == __version__


def test_validate_config_lists_profiles() -> None:
    """The shipped settings validate and list every provider profile."""
    result = runner.invoke(app, ["validate-config", "--config", str(SETTINGS)])
    assert result.exit_code == 0
    assert "anthropic-default" in result.stdout
    assert "lm-studio-default" in result.stdout


def test_normalize_prints_repaired_flow(tmp_path: Path) -> None:
    """Normalize rewrites aliases and object-style links."""
    flow = tmp_path / "intro.yaml"
    flow.write_text('- openLink:\n    url: "https://g.test"\n- screenshot\n', encoding="utf-8")
    result = runner.invoke(app, ["normalize", str(flow)])
    assert result.exit_code == 0
    assert result.stdout == '- openLink: "https://g.test"\n- takeScreenshot\n'


def test_parse_lists_flows_and_reports_errors(tmp_path: Path) -> None:
    """Parse summarizes valid flows and fails cleanly on malformed input."""
    (tmp_path / "login.yaml").write_text(
        "url: https://g.test\n---\n- tapOn: Play\n- back\n", encoding="utf-8"
    )
    result = runner.invoke(app, ["parse", str(tmp_path)])
    assert result.exit_code == 0
    assert "login" in result.stdout

    broken = tmp_path / "broken.yaml"
    broken.write_text("- tapOn: [unclosed\n", encoding="utf-8")
    failed = runner.invoke(app, ["parse", str(broken)])
    assert failed.exit_code == 1
    assert "Parse failed" in failed.stdout


def test_validate_reports_findings_and_exit_code(tmp_path: Path) -> None:
    """Validate lists warnings, and any invalid file makes it exit 1."""
    good = tmp_path / "login.yaml"
    good.write_text("url: https://g.test\n---\n- swipe: left\n", encoding="utf-8")
    result = runner.invoke(app, ["validate", str(good)])
    assert result.exit_code == 0
    assert "unknown command 'swipe'" in result.stdout
    assert "1/1 flow file(s) valid" in result.stdout

    empty = tmp_path / "empty.yaml"
    empty.write_text("url: https://g.test\n---\n", encoding="utf-8")
    failed = runner.invoke(app, ["validate", str(tmp_path)])
    assert failed.exit_code == 1
    assert "flow has no commands" in failed.stdout
    assert "1/2 flow file(s) valid" in failed.stdout


def test_healthcheck_initializes_store(tmp_path: Path) -> None:
    """Healthcheck opens the store under the given data directory."""
    result = runner.invoke(
        app, ["healthcheck", "--config", str(SETTINGS), "--data-dir", str(tmp_path)]
    )
    assert result.exit_code == 0
    assert "OK" in result.stdout
    assert (tmp_path / "flowpilot.db").is_file()


def test_analyze_rejects_invalid_request(tmp_path: Path) -> None:
    """Request validation fails before any process is started."""
    result = runner.invoke(
        app,
        [
            "analyze",
            "https://snake.test",
            "--max-tokens",
            "64",
            "--config",
            str(SETTINGS),
            "--data-dir",
            str(tmp_path),
        ],
    )
    assert result.exit_code == 1
    assert "Invalid analysis request: profile.max_tokens" in result.stdout
