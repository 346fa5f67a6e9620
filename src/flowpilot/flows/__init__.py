"""Flow parsing, normalization and reconstruction exports."""

from flowpilot.flows.normalize import (
    COMMAND_ALIASES,
    fix_command_data,
    normalize_flow_text,
    split_sections,
    split_visible_from_command,
)
from flowpilot.flows.parser import parse_flow, parse_flow_dir, parse_flow_file
from flowpilot.flows.serializer import (
    ensure_app_id,
    prepare_flow_text,
    render_flow,
    sanitize_filename,
    substitute_variables,
    write_generated_flows,
)
from flowpilot.flows.validator import FlowValidator, ValidationResult

__all__ = [
    "COMMAND_ALIASES",
    "FlowValidator",
    "ValidationResult",
    "ensure_app_id",
    "fix_command_data",
    "normalize_flow_text",
    "parse_flow",
    "parse_flow_dir",
    "parse_flow_file",
    "prepare_flow_text",
    "render_flow",
    "sanitize_filename",
    "split_sections",
    "split_visible_from_command",
    "substitute_variables",
    "write_generated_flows",
]
