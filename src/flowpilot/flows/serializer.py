"""Reconstruction of flow files from structured command data."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml

from flowpilot.constants import DEFAULT_APP_ID
from flowpilot.flows.normalize import (
    fix_command_data,
    normalize_flow_text,
    split_visible_from_command,
)

LOGGER = logging.getLogger(__name__)

SETUP_FLOW_NAME = "setup"
WEB_COMMAND_MARKERS = ("openLink", "runFlow")
UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|\s]')
TEMPLATE_VARIABLE = re.compile(r"\{\{(\w+)\}\}")


def order_flows(flows: Sequence[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Stable order with a flow named ``setup`` first."""
    return sorted(
        flows,
        key=lambda flow: str(flow.get("name", "")).strip().lower() != SETUP_FLOW_NAME,
    )


def render_flow(flow: Mapping[str, Any]) -> str:
    """Serialize one structured flow deterministically into flow text."""
    commands = flow.get("commands") or []
    header: dict[str, Any] = {}
    if flow.get("appId"):
        header["appId"] = str(flow["appId"])
    if flow.get("url"):
        header["url"] = str(flow["url"])
    tags = flow.get("tags") or []
    if tags:
        header["tags"] = [str(tag) for tag in tags]

    parts: list[str] = []
    if header:
        parts.append(_dump(header))
        parts.append("---\n")
    for command in commands:
        parts.append(_render_command(command))
    return ensure_app_id(normalize_flow_text("".join(parts)))


def _render_command(command: Any) -> str:
    if isinstance(command, str):
        return _dump([command]) if command.strip() else ""
    if not isinstance(command, Mapping):
        LOGGER.debug("Dropping non-command entry %r", command)
        return ""
    rendered: list[str] = []
    comment = command.get("comment")
    if isinstance(comment, str) and comment.strip():
        rendered.append(f"# {comment.strip().replace(chr(10), ' ')}\n")
    for part in split_visible_from_command(command):
        fixed = fix_command_data(part)
        if fixed is None:
            continue
        entry: Any = fixed
        if len(fixed) == 1:
            only_key, only_value = next(iter(fixed.items()))
            if only_value == "" or only_value is None:
                entry = only_key
        rendered.append(_dump([entry]))
    return "".join(rendered)


def _dump(value: Any) -> str:
    return yaml.safe_dump(
        value,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
        width=10_000,
    )


def sanitize_filename(name: str) -> str:
    """Lowercase and replace path-unsafe characters with dashes."""
    return UNSAFE_FILENAME_CHARS.sub("-", name.strip().lower()) or "flow"


def write_generated_flows(
    flows: Sequence[Mapping[str, Any]],
    output_dir: Path,
) -> list[Path]:
    """Write structured flows as ``NN-name.yaml`` files, setup first."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for index, flow in enumerate(order_flows(flows)):
        name = str(flow.get("name") or f"flow-{index}")
        path = output_dir / f"{index:02d}-{sanitize_filename(name)}.yaml"
        path.write_text(render_flow(flow), encoding="utf-8")
        written.append(path)
    return written


def substitute_variables(content: str, variables: Mapping[str, str]) -> str:
    """Replace ``{{NAME}}`` placeholders in a single pass; unknown names stay."""
    return TEMPLATE_VARIABLE.sub(
        lambda match: variables.get(match.group(1), match.group(0)), content
    )


def ensure_app_id(content: str) -> str:
    """Add the web ``appId`` header to flows that open links or run sub-flows."""
    if "appId:" in content:
        return content
    if not any(f"{marker}:" in content for marker in WEB_COMMAND_MARKERS):
        return content
    if "\n---\n" not in content and not content.startswith("---\n"):
        return f"appId: {DEFAULT_APP_ID}\n---\n{content}"
    return f"appId: {DEFAULT_APP_ID}\n{content}"


def prepare_flow_text(content: str, variables: Mapping[str, str]) -> str:
    """Substitute variables, normalize, and inject ``appId`` for a run."""
    return ensure_app_id(normalize_flow_text(substitute_variables(content, variables)))
