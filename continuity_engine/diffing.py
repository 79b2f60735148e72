"""Hash-based prefix/suffix diff between two chunk sequences."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .schemas import ChunkRecord, ChunkSpan


@dataclass
class ChunkDiff:
    """Keep/update/insert/delete plan for replacing a document's chunks.

    ``updates`` pairs an existing chunk id with the new chunk that takes its
    place; ids are preserved even when ordinal or offsets shift.
    """

    prefix: int
    suffix: int
    deletes: List[str] = field(default_factory=list)
    updates: List[Tuple[str, ChunkSpan]] = field(default_factory=list)
    inserts: List[ChunkSpan] = field(default_factory=list)
    new_length: int = 0

    @property
    def change_range(self) -> Optional[Tuple[int, int]]:
        """Inclusive ordinal range of new chunks that did not hash-match."""
        start = self.prefix
        end = self.new_length - self.suffix - 1
        if start > end:
            return None
        return start, end

    def extraction_range(self, total: Optional[int] = None) -> Optional[Tuple[int, int]]:
        return expand_range(self.change_range, self.new_length if total is None else total)


def match_lengths(existing: Sequence[str], new: Sequence[str]) -> Tuple[int, int]:
    """Longest common prefix and, over what remains, longest common suffix."""
    min_len = min(len(existing), len(new))
    prefix = 0
    while prefix < min_len and existing[prefix] == new[prefix]:
        prefix += 1

    suffix = 0
    while suffix < min_len - prefix and existing[-1 - suffix] == new[-1 - suffix]:
        suffix += 1
    return prefix, suffix


def expand_range(change: Optional[Tuple[int, int]], total: int) -> Optional[Tuple[int, int]]:
    """Widen an ordinal range by one on each side, clamped to ``[0, total-1]``."""
    if change is None or total <= 0:
        return None
    start, end = change
    return max(0, start - 1), min(total - 1, end + 1)


def diff_by_hash(existing: Sequence[ChunkRecord], new: Sequence[ChunkSpan]) -> ChunkDiff:
    prefix, suffix = match_lengths(
        [chunk.text_hash for chunk in existing],
        [chunk.text_hash for chunk in new],
    )

    deletes = [chunk.id for chunk in existing[prefix : len(existing) - suffix]]
    updates: List[Tuple[str, ChunkSpan]] = []
    for i in range(prefix):
        updates.append((existing[i].id, new[i]))
    for i in range(suffix):
        updates.append((existing[len(existing) - 1 - i].id, new[len(new) - 1 - i]))
    inserts = list(new[prefix : len(new) - suffix])

    return ChunkDiff(
        prefix=prefix,
        suffix=suffix,
        deletes=deletes,
        updates=updates,
        inserts=inserts,
        new_length=len(new),
    )
