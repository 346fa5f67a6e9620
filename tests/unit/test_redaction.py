"""Secret redaction tests."""

from __future__ import annotations

from flowpilot.security.redaction import redact_mapping, redact_text


def test_redact_text_masks_api_tokens() -> None:
    """Provider keys and bearer tokens are masked in free text."""
    text = "Authorization: Bearer abc.def.ghi x-api-key: sk-ant-ABCDEF1234567890XYZ"
    redacted = redact_text(text)
    assert "abc.def.ghi" not in redacted
    assert "sk-ant-ABCDEF1234567890XYZ" not in redacted
    assert redacted.startswith("Authorization: Bearer [REDACTED]")


def test_redact_text_keeps_ordinary_output() -> None:
    """Plain CLI diagnostics pass through unchanged."""
    line = "CLI exited with code 1 (failed during: scouting)"
    assert redact_text(line) == line


def test_redact_mapping_masks_nested_values() -> None:
    """Redaction traverses nested dictionaries and lists."""
    payload = {
        "error": "password=hunter22 rejected",
        "nested": {
            "keys": ["safe", "api_key: 'ABCDEFGH12345'"],
            "count": 3,
        },
    }
    redacted = redact_mapping(payload)
    assert redacted["error"] == "password=[REDACTED] rejected"
    assert redacted["nested"]["keys"] == ["safe", "api_key: [REDACTED]"]
    assert redacted["nested"]["count"] == 3
