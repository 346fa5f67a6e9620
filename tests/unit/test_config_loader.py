"""Configuration loading tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from flowpilot.config.loader import DEFAULT_CONFIG_PATH, load_app_config

BASE_CONFIG = """
schema_version: "1.0.0"
default_provider_profile: "openai-default"
provider_profiles:
  openai-default:
    provider_type: "openai"
    model: "gpt-4o"
    api_key_env: "OPENAI_API_KEY"
    max_tokens: 1024
    capabilities:
      context_window: 128000
  lm-studio-default:
    provider_type: "lm_studio"
    model: "default-model"
    api_key_env: "LM_STUDIO_AUTH_TOKEN"
    base_url: "http://127.0.0.1:1234/v1"
    max_tokens: 1024
    capabilities:
      context_window: 16384
orchestrator:
  cli_path: "scout-cli"
  queue_wait_seconds: 30
""".strip()


def _write_config(tmp_path: Path, content: str = BASE_CONFIG) -> Path:
    config_path = tmp_path / "settings.yaml"
    config_path.write_text(content, encoding="utf-8")
    return config_path


def test_cli_overrides_env_and_yaml_defaults(tmp_path: Path) -> None:
    """CLI override should have highest precedence."""
    config = load_app_config(
        _write_config(tmp_path),
        env={"FLOWPILOT_DEFAULT_PROVIDER_PROFILE": "lm-studio-default"},
        cli_overrides={"default_provider_profile": "openai-default"},
    )
    assert config.default_provider_profile == "openai-default"


def test_env_overrides_yaml_for_cli_path_and_paths(tmp_path: Path) -> None:
    """Environment values beat YAML; CLI values beat environment."""
    config = load_app_config(
        _write_config(tmp_path),
        env={"FLOWPILOT_CLI_PATH": "/opt/scout", "FLOWPILOT_DATA_DIR": "/var/data"},
        cli_overrides={"db_path": str(tmp_path / "jobs.db")},
    )
    assert config.orchestrator.cli_path == "/opt/scout"
    assert config.orchestrator.queue_wait_seconds == 30
    assert config.paths.data_dir == Path("/var/data")
    assert config.paths.db_path == tmp_path / "jobs.db"


def test_section_defaults_apply(tmp_path: Path) -> None:
    """Unspecified sections take their documented defaults."""
    config = load_app_config(_write_config(tmp_path), env={})
    assert config.executor.default_viewport == "desktop-std"
    assert config.executor.default_wait_timeout_ms == 10_000
    assert config.agent.max_steps == 30
    assert config.agent.keep_screenshots == 5
    assert config.orchestrator.hint_max_chars == 500
    assert config.timeout_policy.per_step_seconds == 75


def test_invalid_profile_shape_is_rejected(tmp_path: Path) -> None:
    """LM Studio profile must define base_url."""
    config_path = _write_config(
        tmp_path,
        """
default_provider_profile: "lm-studio-default"
provider_profiles:
  lm-studio-default:
    provider_type: "lm_studio"
    model: "local"
    max_tokens: 1024
    capabilities:
      context_window: 16384
""".strip(),
    )
    with pytest.raises(ValueError):
        load_app_config(config_path, env={})


def test_unknown_section_keys_are_rejected(tmp_path: Path) -> None:
    """Strict models refuse misspelled settings."""
    config_path = _write_config(tmp_path, BASE_CONFIG + "\nagent:\n  max_stepz: 3\n")
    with pytest.raises(ValueError):
        load_app_config(config_path, env={})


def test_inverted_timeout_bounds_are_rejected(tmp_path: Path) -> None:
    """The timeout clamp range must be ordered."""
    config_path = _write_config(
        tmp_path,
        BASE_CONFIG + "\ntimeout_policy:\n  min_seconds: 3000\n  max_seconds: 600\n",
    )
    with pytest.raises(ValueError):
        load_app_config(config_path, env={})


def test_lmstudio_env_overrides_apply(tmp_path: Path) -> None:
    """LM Studio base URL and model should be overrideable via env."""
    config = load_app_config(
        _write_config(tmp_path),
        env={
            "LM_STUDIO_API_BASE": "http://192.168.1.70:1234/v1",
            "LM_STUDIO_MODEL": "qwen/qwen3-vl-30b",
        },
    )
    profile = config.provider_profiles["lm-studio-default"]
    assert profile.base_url == "http://192.168.1.70:1234/v1"
    assert profile.model == "qwen/qwen3-vl-30b"


def test_missing_config_file_raises(tmp_path: Path) -> None:
    """A missing settings file is reported clearly."""
    with pytest.raises(FileNotFoundError):
        load_app_config(tmp_path / "nope.yaml", env={})


def test_shipped_settings_are_valid() -> None:
    """The repository settings file validates."""
    repo_root = Path(__file__).resolve().parents[2]
    config = load_app_config(repo_root / DEFAULT_CONFIG_PATH, env={})
    assert config.default_provider_profile in config.provider_profiles
