"""Flow text parsing into the executable representation."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from flowpilot.errors import MalformedFlowError
from flowpilot.flows.normalize import normalize_flow_text, split_sections
from flowpilot.schemas.flow_models import (
    Command,
    CommandListValue,
    Flow,
    FlowMetadata,
    ParametrizedCommand,
    RecordValue,
    ScalarValue,
    SimpleCommand,
)

LOGGER = logging.getLogger(__name__)

METADATA_FIELDS = {"appId", "url", "tags", "name"}
FLOW_SUFFIXES = (".yaml", ".yml")


def parse_flow(name: str, raw_text: str) -> Flow:
    """Parse raw flow text into a ``Flow``; raise ``MalformedFlowError`` otherwise."""
    try:
        return _parse_flow(name, raw_text)
    except MalformedFlowError:
        raise
    except (ValueError, TypeError, RecursionError) as exc:
        raise MalformedFlowError(name, str(exc) or type(exc).__name__) from exc


def _parse_flow(name: str, raw_text: str) -> Flow:
    text = normalize_flow_text(raw_text)

    header, body = split_sections(text)
    metadata = FlowMetadata()
    header_commands: list[Command] = []
    if header is not None and header.strip():
        header_data = _load_yaml(name, header, section="metadata")
        if header_data is not None and not isinstance(header_data, dict):
            raise MalformedFlowError(name, "metadata section must be a mapping")
        metadata, header_commands = _split_header(name, header_data or {})

    body_data = _load_yaml(name, body, section="commands") if body.strip() else None
    if body_data is None:
        body_data = []
    if not isinstance(body_data, list):
        raise MalformedFlowError(name, "commands section must be a list")

    commands = tuple(header_commands) + tuple(
        command_from_data(name, item) for item in body_data
    )
    return Flow(name=name, metadata=metadata, commands=commands)


def parse_flow_file(path: Path) -> Flow:
    """Parse a flow file; the flow name is the file name without extension."""
    try:
        raw_text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise MalformedFlowError(path.stem, f"unreadable: {exc}") from exc
    flow = parse_flow(path.stem, raw_text)
    return Flow(
        name=flow.name,
        metadata=flow.metadata,
        commands=flow.commands,
        source=path,
    )


def parse_flow_dir(directory: Path) -> list[Flow]:
    """Parse every flow file in a directory, skipping malformed and empty ones."""
    if not directory.is_dir():
        raise FileNotFoundError(f"Flow directory not found: {directory}")
    flows: list[Flow] = []
    for path in sorted(directory.iterdir()):
        if not path.is_file() or path.suffix not in FLOW_SUFFIXES:
            continue
        try:
            flow = parse_flow_file(path)
        except MalformedFlowError as exc:
            LOGGER.warning("Skipping %s: %s", path.name, exc.reason)
            continue
        if not flow.commands:
            LOGGER.warning("Skipping %s: flow has no commands", path.name)
            continue
        flows.append(flow)
    if not flows:
        raise MalformedFlowError(directory.name, "no valid flow files found")
    return flows


def command_from_data(flow_name: str, item: Any) -> Command:
    """Convert one decoded list entry into a command variant."""
    if isinstance(item, str) and item.strip():
        return SimpleCommand(name=item.strip())
    if isinstance(item, dict) and len(item) == 1:
        key, value = next(iter(item.items()))
        if not isinstance(key, str) or not key:
            raise MalformedFlowError(flow_name, f"invalid command name: {key!r}")
        if value is None:
            return SimpleCommand(name=key)
        if isinstance(value, list):
            return ParametrizedCommand(
                name=key,
                value=CommandListValue(
                    commands=tuple(command_from_data(flow_name, sub) for sub in value)
                ),
            )
        if isinstance(value, dict):
            return ParametrizedCommand(name=key, value=_record_value(flow_name, value))
        if isinstance(value, (str, int, float, bool)):
            return ParametrizedCommand(name=key, value=ScalarValue(value=value))
        return ParametrizedCommand(name=key, value=ScalarValue(value=str(value)))
    if isinstance(item, dict):
        raise MalformedFlowError(
            flow_name, f"command entry must have exactly one key, got {sorted(map(str, item))}"
        )
    raise MalformedFlowError(flow_name, f"unsupported command entry: {item!r}")


def _record_value(flow_name: str, value: dict[Any, Any]) -> RecordValue:
    fields = {str(key): sub for key, sub in value.items() if key != "commands"}
    nested = value.get("commands")
    if nested is None:
        return RecordValue(fields=fields)
    if not isinstance(nested, list):
        raise MalformedFlowError(flow_name, "'commands' must be a list")
    return RecordValue(
        fields=fields,
        commands=tuple(command_from_data(flow_name, sub) for sub in nested),
    )


def _split_header(
    flow_name: str, header: dict[Any, Any]
) -> tuple[FlowMetadata, list[Command]]:
    tags_raw = header.get("tags") or []
    if isinstance(tags_raw, str):
        tags_raw = [tags_raw]
    if not isinstance(tags_raw, list):
        raise MalformedFlowError(flow_name, "tags must be a list")
    metadata = FlowMetadata(
        start_url=_optional_text(header.get("url")),
        app_id=_optional_text(header.get("appId")),
        tags=tuple(str(tag) for tag in tags_raw if tag is not None),
        title=_optional_text(header.get("name")),
    )
    # Command-shaped header keys run before the body, in header order.
    commands = [
        command_from_data(flow_name, {key: value})
        for key, value in header.items()
        if key not in METADATA_FIELDS
    ]
    return metadata, commands


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _load_yaml(flow_name: str, text: str, *, section: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise MalformedFlowError(flow_name, f"invalid {section} YAML: {exc}") from exc
