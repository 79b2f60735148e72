"""N-gram repetition tallies, their merge, and the project-level report."""

from __future__ import annotations

from dataclasses import dataclass
from functools import reduce
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..config import RepetitionThreshold
from ..schemas import ChunkRecord, EvidenceSpan, SceneRecord
from ..spans import resolve_span
from .utils import DEFAULT_STOPWORDS, build_scene_index, tokenize


NGRAM_SIZES = (1, 2, 3)
MAX_METRIC_ENTRIES = 50
MAX_ISSUES = 10


@dataclass(frozen=True)
class NgramTally:
    """Occurrences of one n-gram. ``by_scene`` is a sorted tuple of ``(scene_id, count)``."""

    n: int
    count: int
    by_scene: Tuple[Tuple[str, int], ...] = ()
    example: Optional[EvidenceSpan] = None

    @property
    def scene_max(self) -> int:
        return max((count for _, count in self.by_scene), default=0)

    def combine(self, other: "NgramTally") -> "NgramTally":
        scenes: Dict[str, int] = dict(self.by_scene)
        for scene_id, count in other.by_scene:
            scenes[scene_id] = scenes.get(scene_id, 0) + count
        return NgramTally(
            n=self.n,
            count=self.count + other.count,
            by_scene=tuple(sorted(scenes.items())),
            example=_pick_example(self.example, other.example),
        )


RepetitionCounts = Mapping[str, NgramTally]

EMPTY_COUNTS: RepetitionCounts = MappingProxyType({})


@dataclass(frozen=True)
class RepetitionIssue:
    ngram: str
    count: int
    evidence: EvidenceSpan

    @property
    def title(self) -> str:
        return f'Repetition detected: "{self.ngram}"'

    @property
    def description(self) -> str:
        return f"Phrase appears {self.count} times across the project."


@dataclass
class RepetitionReport:
    metric: Dict[str, Any]
    issues: List[RepetitionIssue]


def _span_key(span: EvidenceSpan) -> Tuple[str, int, int]:
    return (span.chunk_id, span.quote_start, span.quote_end)


def _pick_example(a: Optional[EvidenceSpan], b: Optional[EvidenceSpan]) -> Optional[EvidenceSpan]:
    # Order-independent choice keeps the merge commutative.
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b, key=_span_key)


def compute_repetition_counts(
    chunks: Sequence[ChunkRecord],
    scenes: Sequence[SceneRecord],
    stopwords: FrozenSet[str] = DEFAULT_STOPWORDS,
) -> RepetitionCounts:
    """Count 1-, 2- and 3-grams per chunk, attributing each to the chunk's scene."""
    scene_index = build_scene_index(scenes, chunks)
    counts: Dict[str, int] = {}
    sizes: Dict[str, int] = {}
    by_scene: Dict[str, Dict[str, int]] = {}
    examples: Dict[str, EvidenceSpan] = {}

    for chunk in chunks:
        tokens = tokenize(chunk.text, stopwords)
        scene_id = scene_index.get(chunk.id)
        for n in NGRAM_SIZES:
            for i in range(len(tokens) - n + 1):
                ngram = " ".join(tokens[i : i + n])
                counts[ngram] = counts.get(ngram, 0) + 1
                sizes.setdefault(ngram, n)
                if scene_id is not None:
                    per_scene = by_scene.setdefault(ngram, {})
                    per_scene[scene_id] = per_scene.get(scene_id, 0) + 1
                if ngram not in examples:
                    span = resolve_span(chunk.text, ngram)
                    if span is not None:
                        examples[ngram] = EvidenceSpan(chunk.id, span.start, span.end)

    return MappingProxyType(
        {
            ngram: NgramTally(
                n=sizes[ngram],
                count=count,
                by_scene=tuple(sorted(by_scene.get(ngram, {}).items())),
                example=examples.get(ngram),
            )
            for ngram, count in counts.items()
        }
    )


def merge_counts(a: RepetitionCounts, b: RepetitionCounts) -> RepetitionCounts:
    """Additive, commutative merge of two tallies. Neither input is modified."""
    merged: Dict[str, NgramTally] = dict(a)
    for ngram, tally in b.items():
        current = merged.get(ngram)
        merged[ngram] = tally if current is None else current.combine(tally)
    return MappingProxyType(merged)


def merge_repetition_counts(counts_list: Iterable[RepetitionCounts]) -> RepetitionCounts:
    return reduce(merge_counts, counts_list, EMPTY_COUNTS)


def build_repetition_report(
    counts: RepetitionCounts, thresholds: Optional[RepetitionThreshold] = None
) -> RepetitionReport:
    """Filter by the project/scene thresholds and rank by count (ties by n-gram)."""
    thresholds = thresholds or RepetitionThreshold()
    flagged = sorted(
        (
            (ngram, tally)
            for ngram, tally in counts.items()
            if tally.count >= thresholds.project_count or tally.scene_max >= thresholds.scene_count
        ),
        key=lambda item: (-item[1].count, item[0]),
    )[:MAX_METRIC_ENTRIES]

    metric = {
        "top": [
            {
                "ngram": ngram,
                "n": tally.n,
                "count": tally.count,
                "byScene": [{"sceneId": scene_id, "count": count} for scene_id, count in tally.by_scene],
                "examples": [] if tally.example is None else [tally.example.to_dict()],
            }
            for ngram, tally in flagged
        ]
    }
    issues = [
        RepetitionIssue(ngram, tally.count, tally.example)
        for ngram, tally in flagged
        if tally.example is not None
    ][:MAX_ISSUES]
    return RepetitionReport(metric=metric, issues=issues)
