"""Resolve free-text quotes to exact character offsets inside chunk text.

Every persisted evidence row goes through :func:`resolve_span`. Three passes
run in order and the first hit wins:

1. exact, case-sensitive substring search;
2. case-insensitive substring search;
3. tolerant search where each whitespace run in the quote matches any
   whitespace run in the text (survives reflowed multi-line quotes).

A quote that no pass can place returns ``None`` and must be dropped.
"""

from __future__ import annotations

import re
from typing import Optional

from .schemas import Span


def find_exact_span(text: str, quote: str) -> Optional[Span]:
    if not quote or not quote.strip():
        return None
    index = text.find(quote)
    if index < 0:
        return None
    return Span(index, index + len(quote))


def find_case_insensitive_span(text: str, quote: str) -> Optional[Span]:
    if not quote or not quote.strip():
        return None
    match = re.search(re.escape(quote), text, re.IGNORECASE)
    if not match:
        return None
    return Span(match.start(), match.end())


def find_tolerant_span(text: str, quote: str) -> Optional[Span]:
    words = quote.split()
    if not words:
        return None
    pattern = r"\s+".join(re.escape(word) for word in words)
    match = re.search(pattern, text, re.IGNORECASE)
    if not match or match.end() <= match.start():
        return None
    return Span(match.start(), match.end())


def resolve_span(text: str, quote: str) -> Optional[Span]:
    """Run the exact, case-insensitive, and tolerant passes in order."""
    return (
        find_exact_span(text, quote)
        or find_case_insensitive_span(text, quote)
        or find_tolerant_span(text, quote)
    )
