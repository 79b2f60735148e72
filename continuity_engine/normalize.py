"""Text hashing and alias normalization shared by every component."""

from __future__ import annotations

import hashlib
import re
import unicodedata


APOSTROPHE_VARIANTS = re.compile(r"[‘’‛`´]")
QUOTE_VARIANTS = re.compile(r"[“”„‟]")
WHITESPACE_RUN = re.compile(r"\s+")


def hash_text(text: str) -> str:
    """Return the sha256 hex digest of ``text``."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _is_edge_punct(ch: str) -> bool:
    category = unicodedata.category(ch)
    return category.startswith("P") or category.startswith("S")


def _strip_edge_punct(text: str) -> str:
    start = 0
    end = len(text)
    while start < end and _is_edge_punct(text[start]):
        start += 1
    while end > start and _is_edge_punct(text[end - 1]):
        end -= 1
    return text[start:end]


def normalize_alias(text: str) -> str:
    """Case, quote, whitespace, and edge-punctuation insensitive alias key."""
    collapsed = unicodedata.normalize("NFKC", text)
    collapsed = APOSTROPHE_VARIANTS.sub("'", collapsed)
    collapsed = QUOTE_VARIANTS.sub('"', collapsed)
    collapsed = WHITESPACE_RUN.sub(" ", collapsed.strip())
    stripped = _strip_edge_punct(collapsed).strip()
    return WHITESPACE_RUN.sub(" ", stripped).lower()
