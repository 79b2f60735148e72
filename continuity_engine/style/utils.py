"""Tokenizing and scene/chunk helpers shared by the style analyzers."""

from __future__ import annotations

import re
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Union

from ..schemas import ChunkRecord, SceneRecord


DEFAULT_STOPWORDS: FrozenSet[str] = frozenset(
    [
        "the", "and", "for", "with", "that", "this", "from", "you", "your",
        "was", "were", "are", "but", "not", "she", "he", "they", "them",
        "his", "her", "their", "into", "out", "over", "under", "then",
        "there", "here", "what", "when", "where", "who", "why", "how",
        "about", "again", "just", "like", "had", "has", "have", "did",
        "does", "doing", "its", "it's", "i", "we", "our", "us", "me", "my",
        "mine", "a", "an", "of", "to", "in", "on", "at", "as", "is", "be",
        "been", "if", "or", "so", "because", "than", "too", "very",
    ]
)

NON_WORD_CHARS = re.compile(r"[^A-Za-z0-9'\-\s]")
WHITESPACE_RUN = re.compile(r"\s+")
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def resolve_stopwords(value: Union[str, Iterable[str], None]) -> FrozenSet[str]:
    """``"default"``/empty -> built-in list; otherwise a normalized custom set."""
    if value is None or value == "default":
        return DEFAULT_STOPWORDS
    if isinstance(value, str):
        raise ValueError(f"Unknown stopwords setting: {value!r} (use \"default\" or a list)")
    words = frozenset(word.strip().lower() for word in value if word and word.strip())
    return words or DEFAULT_STOPWORDS


def tokenize(text: str, stopwords: FrozenSet[str] = DEFAULT_STOPWORDS) -> List[str]:
    cleaned = NON_WORD_CHARS.sub(" ", text)
    cleaned = WHITESPACE_RUN.sub(" ", cleaned).strip().lower()
    if not cleaned:
        return []
    return [token for token in cleaned.split(" ") if len(token) >= 3 and token not in stopwords]


def sentence_split(text: str) -> List[str]:
    collapsed = WHITESPACE_RUN.sub(" ", text)
    sentences = [s.strip() for s in SENTENCE_BOUNDARY.split(collapsed) if s.strip()]
    return sentences or [text.strip()]


def chunks_for_scene(scene: SceneRecord, chunks: Sequence[ChunkRecord]) -> List[ChunkRecord]:
    ordinal_by_id = {chunk.id: chunk.ordinal for chunk in chunks}
    start = ordinal_by_id.get(scene.start_chunk_id)
    end = ordinal_by_id.get(scene.end_chunk_id)
    if start is None or end is None:
        return []
    return [chunk for chunk in chunks if start <= chunk.ordinal <= end]


def scene_text(scene: SceneRecord, chunks: Sequence[ChunkRecord]) -> str:
    return "\n".join(chunk.text for chunk in chunks_for_scene(scene, chunks))


def build_scene_index(scenes: Sequence[SceneRecord], chunks: Sequence[ChunkRecord]) -> Dict[str, str]:
    """Map chunk id -> id of the scene whose ordinal range contains it."""
    index: Dict[str, str] = {}
    for scene in scenes:
        for chunk in chunks_for_scene(scene, chunks):
            index[chunk.id] = scene.id
    return index


def find_chunk(chunks: Sequence[ChunkRecord], chunk_id: str) -> Optional[ChunkRecord]:
    for chunk in chunks:
        if chunk.id == chunk_id:
            return chunk
    return None
