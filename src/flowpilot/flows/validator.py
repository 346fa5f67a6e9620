"""Static checks for flow files before they are run.

Parsing only rejects text that cannot become a ``Flow``. Validation goes
further: it reports flows without commands as errors and warns about
commands the executor does not know, missing launch targets, odd file
extensions and empty selectors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from flowpilot.errors import MalformedFlowError
from flowpilot.flows.parser import FLOW_SUFFIXES, parse_flow_file
from flowpilot.schemas.flow_models import (
    Command,
    CommandListValue,
    Flow,
    ParametrizedCommand,
    RecordValue,
    ScalarValue,
)

LOGGER = logging.getLogger(__name__)

KNOWN_COMMANDS = frozenset(
    {
        "openLink",
        "tapOn",
        "inputText",
        "scroll",
        "extendedWaitUntil",
        "assertVisible",
        "assertNotVisible",
        "takeScreenshot",
        "back",
        "pressKey",
        "eraseText",
        "evalScript",
        "hideKeyboard",
        "repeat",
        "runFlow",
        "launchApp",
        "clearState",
        "stopApp",
    }
)


@dataclass
class ValidationResult:
    """Errors make a flow invalid; warnings do not."""

    path: Path
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class FlowValidator:
    """Validate flow files against the command vocabulary the executor runs."""

    def __init__(self, known_commands: Iterable[str] = KNOWN_COMMANDS) -> None:
        self.known_commands = frozenset(known_commands)

    def validate_file(self, path: Path) -> ValidationResult:
        result = ValidationResult(path=path)
        if not path.exists():
            result.errors.append(f"file not found: {path}")
            return result
        if path.is_dir():
            result.errors.append("path is a directory, not a file")
            return result
        if path.suffix.lower() not in FLOW_SUFFIXES:
            result.warnings.append("file does not have .yaml or .yml extension")
        try:
            flow = parse_flow_file(path)
        except MalformedFlowError as exc:
            result.errors.append(f"flow structure error: {exc.reason}")
            return result
        self.validate_flow(flow, result)
        return result

    def validate_flow(self, flow: Flow, result: ValidationResult) -> None:
        if not flow.metadata.app_id and not flow.metadata.start_url:
            result.warnings.append(
                "neither 'appId' nor 'url' specified - flow may not launch correctly"
            )
        if not flow.commands:
            result.errors.append("flow has no commands")
            return
        self._check_commands(flow.commands, result, prefix="")

    def validate_paths(self, paths: Sequence[Path]) -> list[ValidationResult]:
        """Validate files; directories contribute their flow files."""
        results: list[ValidationResult] = []
        for path in paths:
            if path.is_dir():
                files = sorted(
                    child
                    for child in path.iterdir()
                    if child.is_file() and child.suffix.lower() in FLOW_SUFFIXES
                )
                if not files:
                    result = ValidationResult(path=path)
                    result.errors.append("no flow files found")
                    results.append(result)
                results.extend(self.validate_file(child) for child in files)
            else:
                results.append(self.validate_file(path))
        invalid = sum(1 for result in results if not result.valid)
        LOGGER.info("Validated %d flow file(s), %d invalid", len(results), invalid)
        return results

    def _check_commands(
        self, commands: Sequence[Command], result: ValidationResult, *, prefix: str
    ) -> None:
        for position, command in enumerate(commands, start=1):
            label = f"command {prefix}{position}"
            if command.name not in self.known_commands:
                result.warnings.append(f"{label}: unknown command '{command.name}'")
            if not isinstance(command, ParametrizedCommand):
                continue
            self._check_argument(command, label, result)
            nested = _nested_commands(command)
            if nested:
                self._check_commands(nested, result, prefix=f"{prefix}{position}.")

    def _check_argument(
        self, command: ParametrizedCommand, label: str, result: ValidationResult
    ) -> None:
        name = command.name
        value = command.value
        if name == "tapOn":
            if isinstance(value, ScalarValue) and not value.as_text().strip():
                result.warnings.append(f"{label} (tapOn): empty text selector")
            if isinstance(value, RecordValue):
                point = value.get("point")
                if isinstance(point, str) and "," not in point:
                    result.warnings.append(f"{label} (tapOn): point should be 'x,y' format")
        elif name == "inputText":
            if isinstance(value, ScalarValue) and not value.as_text():
                result.warnings.append(f"{label} (inputText): empty text")
        elif name in ("assertVisible", "assertNotVisible"):
            if isinstance(value, ScalarValue) and not value.as_text().strip():
                result.errors.append(f"{label} ({name}): empty assertion")


def _nested_commands(command: ParametrizedCommand) -> tuple[Command, ...]:
    value = command.value
    if isinstance(value, (RecordValue, CommandListValue)):
        return value.commands
    return ()


__all__ = ["FlowValidator", "KNOWN_COMMANDS", "ValidationResult"]
