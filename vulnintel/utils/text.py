"""
Text sanitation for feed content.

- strip_html: drop markup (BeautifulSoup) and decode entities
- collapse_ws: collapse consecutive whitespace
- sanitize_text: both, plus optional truncation
"""

from __future__ import annotations

import re as _re

from bs4 import BeautifulSoup

__all__ = ["strip_html", "collapse_ws", "sanitize_text"]


def strip_html(text: str) -> str:
    if not text:
        return ""
    if "<" not in text and "&" not in text:
        return str(text)
    return BeautifulSoup(str(text), "html.parser").get_text(" ")


def collapse_ws(text: str) -> str:
    if not text:
        return ""
    return _re.sub(r"\s+", " ", str(text)).strip()


def sanitize_text(text: str, *, max_len: int | None = None) -> str:
    out = collapse_ws(strip_html(text))
    if max_len is not None and len(out) > max_len:
        return out[: max_len - 1].rstrip() + "…"
    return out
