"""Secret redaction for persisted errors, stderr tails and traced payloads."""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

# (pattern, keeps_prefix_group)
SENSITIVE_PATTERNS: tuple[tuple[re.Pattern[str], bool], ...] = (
    (re.compile(r"\bsk-ant-[A-Za-z0-9_-]{16,}\b"), False),
    (re.compile(r"\bsk-[A-Za-z0-9:_-]{16,}\b"), False),
    (re.compile(r"\b[ps]k-lf-[A-Za-z0-9:_-]{8,}\b"), False),
    (re.compile(r"(?i)\b(authorization\s*:\s*bearer\s+)[A-Za-z0-9._:-]+\b"), True),
    (re.compile(r"(?i)\b(x-api-key\s*:\s*)[A-Za-z0-9._:-]{8,}"), True),
    (re.compile(r"(?i)\b(api[-_ ]?key\s*[=:]\s*)[\"']?[A-Za-z0-9._:-]{8,}[\"']?"), True),
    (re.compile(r"(?i)\b(token\s*[=:]\s*)[\"']?[A-Za-z0-9._:-]{8,}[\"']?"), True),
    (re.compile(r"(?i)\b(password\s*[=:]\s*)[\"']?[^\s\"']{4,}[\"']?"), True),
)


def redact_text(value: str) -> str:
    """Redact secrets from a text value."""
    redacted = value
    for pattern, keeps_prefix in SENSITIVE_PATTERNS:
        replacement = r"\1" + REDACTED if keeps_prefix else REDACTED
        redacted = pattern.sub(replacement, redacted)
    return redacted


def redact_mapping(value: Any) -> Any:
    """Recursively redact strings in nested dictionaries/lists."""
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {key: redact_mapping(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_mapping(item) for item in value]
    return value
