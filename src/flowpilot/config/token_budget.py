"""Token budgeting utilities."""

from __future__ import annotations

import tiktoken

TRUNCATION_MARKER = "... (truncated)"


class TokenBudgeter:
    """Deterministic token counting and truncation for tool results."""

    def __init__(self, model_name: str = "gpt-4o") -> None:
        self.model_name = model_name
        try:
            self._encoding = tiktoken.encoding_for_model(model_name)
        except KeyError:
            self._encoding = tiktoken.get_encoding("cl100k_base")

    def count(self, text: str) -> int:
        """Return token count for text."""
        return len(self._encoding.encode(text))

    def truncate(self, text: str, budget: int) -> str:
        """Cut text to at most ``budget`` tokens, marking the cut."""
        tokens = self._encoding.encode(text)
        if len(tokens) <= budget:
            return text
        return self._encoding.decode(tokens[:budget]) + TRUNCATION_MARKER
