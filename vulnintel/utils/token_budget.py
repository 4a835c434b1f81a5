"""
Token estimation for backends that do not report usage.

~4 characters per token, rounded up. Deterministic so estimated usage is
reproducible across runs.
"""

from __future__ import annotations


def estimate_tokens(text: str) -> int:
    """ceil(len(text) / 4)."""
    if not text:
        return 0
    return (len(text) + 3) // 4


def trim_text_to_tokens(text: str, max_tokens: int) -> str:
    """Trim text to approximately ``max_tokens`` (by characters)."""
    if max_tokens <= 0 or not text:
        return ""
    cap = max_tokens * 4
    if len(text) <= cap:
        return text
    return text[: max(0, cap - 3)] + "..."
