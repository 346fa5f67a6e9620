"""Configuration exports."""

from flowpilot.config.loader import DEFAULT_CONFIG_PATH, load_app_config
from flowpilot.config.model_factory import ModelFactory
from flowpilot.config.models import AppConfig
from flowpilot.config.token_budget import TokenBudgeter

__all__ = [
    "AppConfig",
    "DEFAULT_CONFIG_PATH",
    "ModelFactory",
    "TokenBudgeter",
    "load_app_config",
]
