"""Parsing of ``PROGRESS:<step>:<message>`` lines emitted on stderr."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import orjson

from flowpilot.constants import PROGRESS_PREFIX
from flowpilot.schemas.enums import ProgressKind

_KINDS = {kind.value: kind for kind in ProgressKind if kind != ProgressKind.STATUS}


@dataclass(frozen=True)
class ProgressEvent:
    step: str
    message: str

    @property
    def kind(self) -> ProgressKind:
        return _KINDS.get(self.step, ProgressKind.STATUS)

    def detail(self) -> dict[str, Any] | None:
        """Decode the JSON body of an ``agent_step_detail`` event."""
        try:
            payload = orjson.loads(self.message)
        except orjson.JSONDecodeError:
            return None
        return payload if isinstance(payload, dict) else None


def parse_progress_line(line: str) -> ProgressEvent | None:
    """Return the event for a tagged line, ``None`` for plain diagnostics."""
    if not line.startswith(PROGRESS_PREFIX):
        return None
    step, _, message = line[len(PROGRESS_PREFIX) :].partition(":")
    return ProgressEvent(step=step.strip(), message=message.strip())
