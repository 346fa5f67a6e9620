"""Discovery of checkpoint files left behind by a failed analysis process."""

from __future__ import annotations

import logging
from pathlib import Path

import orjson

from flowpilot.constants import CHECKPOINT_STAGES
from flowpilot.schemas.job_models import Checkpoint

LOGGER = logging.getLogger(__name__)


def checkpoint_path(directory: Path, stage: str) -> Path:
    return directory / f"checkpoint_{stage}.json"


def read_best_checkpoint(directory: Path) -> Checkpoint | None:
    """Return the most advanced checkpoint that parses, or ``None``."""
    for stage in CHECKPOINT_STAGES:
        path = checkpoint_path(directory, stage)
        if not path.is_file():
            continue
        try:
            payload = orjson.loads(path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable checkpoint %s: %s", path.name, exc)
            continue
        if not isinstance(payload, dict):
            continue
        payload.setdefault("step", stage)
        return Checkpoint.from_payload(payload)
    return None


def write_resume_data(directory: Path, checkpoint: Checkpoint) -> Path:
    """Write the checkpoint payload where the resumed process will read it."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "resume_data.json"
    path.write_text(checkpoint.to_json(), encoding="utf-8")
    return path
