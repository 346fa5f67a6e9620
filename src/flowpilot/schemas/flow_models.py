"""Parsed flow representation.

A flow is an immutable metadata header plus an ordered command list. Commands
are a closed set of variants so the interpreter can dispatch on type:

* ``SimpleCommand`` - a bare name such as ``back``.
* ``ParametrizedCommand`` - a name plus one of ``ScalarValue``,
  ``RecordValue`` or ``CommandListValue``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Union

Scalar = Union[str, int, float, bool, None]


@dataclass(frozen=True)
class ScalarValue:
    """Single scalar argument, e.g. ``openLink: "https://..."``."""

    value: Scalar

    def as_text(self) -> str:
        return "" if self.value is None else str(self.value)


@dataclass(frozen=True)
class RecordValue:
    """Structured argument; a ``commands`` entry is parsed into sub-commands."""

    fields: Mapping[str, Any]
    commands: tuple[Command, ...] = ()

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def text(self, key: str) -> str:
        value = self.fields.get(key)
        return "" if value is None else str(value)


@dataclass(frozen=True)
class CommandListValue:
    """Nested command list argument."""

    commands: tuple[Command, ...]


CommandValue = Union[ScalarValue, RecordValue, CommandListValue]


@dataclass(frozen=True)
class SimpleCommand:
    name: str


@dataclass(frozen=True)
class ParametrizedCommand:
    name: str
    value: CommandValue


Command = Union[SimpleCommand, ParametrizedCommand]


@dataclass(frozen=True)
class FlowMetadata:
    """Header fields that precede the command list."""

    start_url: str | None = None
    app_id: str | None = None
    tags: tuple[str, ...] = ()
    title: str | None = None


@dataclass(frozen=True)
class Flow:
    """Parsed flow; identity is the file-derived name."""

    name: str
    metadata: FlowMetadata
    commands: tuple[Command, ...]
    source: Path | None = field(default=None, compare=False)


def describe_command(command: Command, *, limit: int = 50) -> str:
    """Return a short human-readable label for progress output."""
    if isinstance(command, SimpleCommand):
        return command.name
    value = command.value
    if isinstance(value, ScalarValue):
        text = value.as_text()
        if len(text) > limit:
            text = text[:limit] + "..."
        return f"{command.name}: {text}"
    if isinstance(value, CommandListValue):
        return f"{command.name} ({len(value.commands)} commands)"
    keys = ", ".join(sorted(str(key) for key in value.fields))
    if value.commands:
        keys = f"{keys}, commands[{len(value.commands)}]" if keys else (
            f"commands[{len(value.commands)}]"
        )
    return f"{command.name} {{{keys}}}"
