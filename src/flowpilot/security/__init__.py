"""Security helpers."""

from flowpilot.security.redaction import REDACTED, redact_mapping, redact_text

__all__ = ["REDACTED", "redact_mapping", "redact_text"]
