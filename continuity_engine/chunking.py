"""Offset-preserving chunking by paragraph/heading boundaries."""

from __future__ import annotations

import re
from typing import List, Optional, Tuple

from .config import ChunkingConfig
from .normalize import hash_text
from .schemas import ChunkSpan


HEADING_RE = re.compile(r"^#{1,6}\s+")

Block = Tuple[int, int]


class TextChunker:
    """Splits normalized document text into ordered, bounded-size chunks.

    Chunk text is always an exact slice of the input so that ``start``/``end``
    stay valid offsets into the snapshot's full text.
    """

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig()

    def build_chunks(self, full_text: str) -> List[ChunkSpan]:
        blocks: List[Block] = []
        for block in self._split_blocks(full_text):
            blocks.extend(self._split_long_block(full_text, block))
        return self._pack_blocks(full_text, blocks)

    def _split_blocks(self, full_text: str) -> List[Block]:
        blocks: List[Block] = []
        buffer_start: Optional[int] = None
        buffer_end: Optional[int] = None
        offset = 0

        def flush() -> None:
            nonlocal buffer_start, buffer_end
            if buffer_start is not None and buffer_end is not None:
                blocks.append((buffer_start, buffer_end))
            buffer_start = None
            buffer_end = None

        for line in full_text.split("\n"):
            line_start = offset
            line_end = offset + len(line)
            offset = line_end + 1

            if not line.strip():
                flush()
                continue
            if HEADING_RE.match(line):
                flush()
                blocks.append((line_start, line_end))
                continue
            if buffer_start is None:
                buffer_start = line_start
            buffer_end = line_end

        flush()
        return blocks

    def _split_long_block(self, full_text: str, block: Block) -> List[Block]:
        start, end = block
        if end - start <= self.config.long_block:
            return [block]

        target = self.config.split_target
        window = self.config.split_window
        spans: List[Block] = []
        cursor = start
        while cursor < end:
            if end - cursor <= target:
                spans.append((cursor, end))
                break
            target_end = cursor + target
            window_start = max(cursor + window, target_end - window)
            window_end = min(end - 1, target_end + window)
            split_at = target_end
            last_space = full_text.rfind(" ", window_start, window_end)
            if last_space >= 0:
                split_at = last_space
            spans.append((cursor, split_at))
            cursor = split_at
        return spans

    def _pack_blocks(self, full_text: str, blocks: List[Block]) -> List[ChunkSpan]:
        chunks: List[ChunkSpan] = []
        current_start: Optional[int] = None
        current_end: Optional[int] = None

        def push() -> None:
            nonlocal current_start, current_end
            if current_start is None or current_end is None:
                return
            text = full_text[current_start:current_end]
            chunks.append(
                ChunkSpan(
                    ordinal=len(chunks),
                    start=current_start,
                    end=current_end,
                    text=text,
                    text_hash=hash_text(text),
                )
            )
            current_start = None
            current_end = None

        for block_start, block_end in blocks:
            if current_start is None or current_end is None:
                current_start, current_end = block_start, block_end
                continue

            proposed = block_end - current_start
            current = current_end - current_start
            if proposed <= self.config.max_chars or current < self.config.min_chars:
                current_end = block_end
                continue

            push()
            current_start, current_end = block_start, block_end

        push()
        return chunks


def build_chunks(full_text: str, config: Optional[ChunkingConfig] = None) -> List[ChunkSpan]:
    return TextChunker(config).build_chunks(full_text)
