"""Runtime environment loading helpers."""

from __future__ import annotations

import os

from dotenv import find_dotenv, load_dotenv

DISABLE_DOTENV_ENV = "FLOWPILOT_DISABLE_DOTENV"
_TRUTHY = {"1", "true", "yes", "on"}


def dotenv_disabled() -> bool:
    return os.getenv(DISABLE_DOTENV_ENV, "").strip().lower() in _TRUTHY


def load_runtime_env(*, filename: str = ".env") -> bool:
    """Load ``filename`` from cwd or a parent; process env always wins."""
    if dotenv_disabled():
        return False
    dotenv_path = find_dotenv(filename=filename, usecwd=True)
    if not dotenv_path:
        return False
    return bool(load_dotenv(dotenv_path=dotenv_path, override=False))
