"""Repairs for flow text and structured command data.

Generative authors produce a handful of recurring mistakes: object-style
``openLink`` arguments, legacy command names, ``visible``/``notVisible``
qualifiers attached to commands that do not wait, and wait commands that
carry only a timeout. The text pass fixes these in raw flow files; the data
pass fixes the same shapes in structured command lists before serialization.

Both passes are pure and idempotent.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

COMMAND_ALIASES: dict[str, str] = {
    "waitFor": "extendedWaitUntil",
    "screenshot": "takeScreenshot",
    "openBrowser": "openLink",
}
WAIT_COMMAND = "extendedWaitUntil"
VISIBILITY_KEYS = ("visible", "notVisible")
SEPARATOR = "\n---\n"
DOCUMENT_START = "---\n"

_OPEN_LINK_NAMES = "|".join(
    sorted({"openLink", *(alias for alias, name in COMMAND_ALIASES.items() if name == "openLink")})
)
# Blank lines may sit between the command and its url key.
OPEN_LINK_OBJECT = re.compile(
    rf'(?m)^([ \t]*(?:-[ \t]+)?(?:{_OPEN_LINK_NAMES})):[ \t]*\n(?:[ \t]*\n)*[ \t]+url:[ \t]*"?([^"\n]+?)"?[ \t]*$'
)
HEAD_LINE = re.compile(
    r"^(?P<indent>[ \t]*)-[ \t]+(?P<name>[A-Za-z_]\w*)[ \t]*(?:(?P<colon>:)(?P<rest>.*))?$"
)
KEY_LINE = re.compile(r"^(?P<indent>[ \t]*)(?P<key>[A-Za-z_]\w*):(?P<rest>.*)$")


def split_sections(content: str) -> tuple[str | None, str]:
    """Split flow text into ``(header, body)``; header is None without a separator."""
    text = content
    had_document_start = text.startswith(DOCUMENT_START)
    if had_document_start:
        text = text[len(DOCUMENT_START) :]
    index = text.find(SEPARATOR)
    if index >= 0:
        return text[:index], text[index + len(SEPARATOR) :]
    if text.endswith("\n---"):
        return text[: -len("\n---")], ""
    if had_document_start:
        return "", text
    return None, text


def normalize_flow_text(content: str) -> str:
    """Apply text-level repairs to a raw flow file."""
    text = content.replace("\r\n", "\n")
    text = OPEN_LINK_OBJECT.sub(r'\1: "\2"', text)
    header, body = split_sections(text)
    lines = [line.rstrip() for line in body.split("\n") if line.strip()]
    normalized_body = "\n".join(_normalize_lines(lines))
    if normalized_body:
        normalized_body += "\n"
    if header is None:
        return normalized_body
    if not header.strip():
        return DOCUMENT_START + normalized_body
    return header + SEPARATOR + normalized_body


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip(" \t"))


def _normalize_lines(lines: list[str]) -> list[str]:
    out: list[str] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        head = HEAD_LINE.match(line)
        if head is None:
            key = KEY_LINE.match(line)
            if key is None or key["key"] not in VISIBILITY_KEYS:
                out.append(line)
            index += 1
            continue

        indent = _indent(line)
        end = index + 1
        while end < len(lines) and _indent(lines[end]) > indent:
            end += 1
        out.extend(_normalize_item(head, lines[index + 1 : end]))
        index = end
    return out


def _normalize_item(head: re.Match[str], children: list[str]) -> list[str]:
    indent_text = head["indent"]
    name = COMMAND_ALIASES.get(head["name"], head["name"])
    has_colon = head["colon"] is not None
    rest = (head["rest"] or "").strip()
    field_col = head.start("name")

    if name in VISIBILITY_KEYS:
        wrapped = [f"{indent_text}- {WAIT_COMMAND}:"]
        inner = f"{indent_text}    {name}:"
        wrapped.append(f"{inner} {rest}" if rest else inner)
        wrapped.extend("  " + child for child in children)
        return wrapped

    head_line = f"{indent_text}- {name}" + (f": {rest}" if rest else ":" if has_colon else "")

    if name == WAIT_COMMAND:
        if rest or any(_key_of(child) in VISIBILITY_KEYS for child in children):
            return [head_line, *children]
        return []

    # Qualifiers at the command's own key column are siblings of the command
    # name, i.e. stray; deeper ones belong to the command's argument mapping.
    stray: list[str] = []
    kept: list[str] = []
    for child in children:
        if _indent(child) == field_col and _key_of(child) in VISIBILITY_KEYS:
            stray.append(child.strip())
        else:
            kept.append(child)

    nested = [pos for pos, child in enumerate(kept) if _indent(child) > field_col]
    if not rest and nested:
        nested_col = min(_indent(kept[pos]) for pos in nested)
        direct = [pos for pos in nested if _indent(kept[pos]) == nested_col]
        visibility = {pos for pos in direct if _key_of(kept[pos]) in VISIBILITY_KEYS}
        if visibility and len(nested) == 1:
            value = KEY_LINE.match(kept[nested[0]].strip())
            flattened = value["rest"].strip() if value else ""
            if flattened:
                head_line = f"{indent_text}- {name}: {flattened}"
        kept = [child for pos, child in enumerate(kept) if pos not in visibility]

    item = [head_line, *_normalize_lines(kept)]
    if stray:
        item.append(f"{indent_text}- {WAIT_COMMAND}:")
        item.extend(f"{indent_text}    {qualifier}" for qualifier in stray)
    return item


def _key_of(line: str) -> str | None:
    match = KEY_LINE.match(line)
    return match["key"] if match else None


def fix_command_data(
    command: Mapping[str, Any],
    aliases: Mapping[str, str] = COMMAND_ALIASES,
) -> dict[str, Any] | None:
    """Repair one structured command mapping; return None when nothing survives."""
    fixed: dict[str, Any] = {}
    for raw_key, value in command.items():
        if raw_key == "comment":
            continue
        key = aliases.get(raw_key, raw_key)
        if isinstance(value, str):
            fixed[key] = _single_line(value)
        elif isinstance(value, Mapping):
            repaired = _fix_command_argument(key, dict(value), aliases)
            if repaired is not None:
                fixed[key] = repaired
        elif isinstance(value, list):
            fixed[key] = fix_command_list(value, aliases)
        else:
            fixed[key] = value
    return fixed or None


def _fix_command_argument(
    key: str,
    argument: dict[str, Any],
    aliases: Mapping[str, str],
) -> Any:
    if key == "openLink" and "url" in argument:
        return _single_line(str(argument["url"]))
    present = [name for name in VISIBILITY_KEYS if name in argument]
    if key != WAIT_COMMAND and present:
        if len(argument) == 1:
            return _single_line(str(argument[present[0]]))
        for name in present:
            del argument[name]
    if key == WAIT_COMMAND and not present:
        return None
    cleaned: dict[str, Any] = {}
    for sub_key, sub_value in argument.items():
        if isinstance(sub_value, str):
            cleaned[sub_key] = _single_line(sub_value)
        elif isinstance(sub_value, list):
            cleaned[sub_key] = fix_command_list(sub_value, aliases)
        else:
            cleaned[sub_key] = sub_value
    return cleaned


def split_visible_from_command(command: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Move top-level visibility qualifiers into a following wait command."""
    if WAIT_COMMAND in command:
        return [dict(command)]
    qualifiers = {name: command[name] for name in VISIBILITY_KEYS if name in command}
    if not qualifiers:
        return [dict(command)]
    cleaned = {key: value for key, value in command.items() if key not in VISIBILITY_KEYS}
    return [cleaned, {WAIT_COMMAND: qualifiers}]


def fix_command_list(
    items: list[Any],
    aliases: Mapping[str, str] = COMMAND_ALIASES,
) -> list[Any]:
    """Repair a nested command list (e.g. ``repeat.commands``)."""
    result: list[Any] = []
    for item in items:
        if isinstance(item, Mapping):
            for part in split_visible_from_command(item):
                fixed = fix_command_data(part, aliases)
                if fixed is not None:
                    result.append(fixed)
        elif isinstance(item, str):
            result.append(aliases.get(item, item))
        else:
            result.append(item)
    return result


def _single_line(value: str) -> str:
    return value.replace("\n", " ")
