"""Dialogue line extraction, speaker attribution and per-speaker tic tallies."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..normalize import normalize_alias
from ..schemas import ChunkRecord, EvidenceSpan


SPEAKER_VERBS = (
    "said", "asked", "whispered", "replied", "muttered", "shouted", "called",
    "yelled", "cried", "answered", "murmured", "sighed", "snapped", "added",
    "remarked", "laughed", "grumbled",
)
FILLERS = ("well", "look", "listen", "like", "you know", "okay")

SPEAKER_WINDOW = 160
INHERIT_GAP = 60
MAX_EXAMPLES = 3
TOP_N = 5
TIC_THRESHOLD = 3

QUOTE = re.compile(r"\"([^\"“”]+)\"|“([^\"“”]+)”")
_NAME = r"[A-Z][A-Za-z'\-]+(?:\s+[A-Z][A-Za-z'\-]+)*"
_VERBS = "|".join(SPEAKER_VERBS)
NAME_VERB = re.compile(rf"({_NAME})\s+(?:{_VERBS})\b")
VERB_NAME = re.compile(rf"(?:{_VERBS})\s+({_NAME})\b")


@dataclass(frozen=True)
class DialogueLine:
    chunk_id: str
    text: str
    quote_start: int
    quote_end: int
    speaker: Optional[str]

    @property
    def evidence(self) -> EvidenceSpan:
        return EvidenceSpan(self.chunk_id, self.quote_start, self.quote_end)


def _candidates(text: str, pattern: "re.Pattern[str]", from_end: bool) -> List[Tuple[str, int]]:
    return [
        (match.group(1), len(text) - match.end() if from_end else match.start())
        for match in pattern.finditer(text)
    ]


def find_speaker(
    text: str, quote_start: int, quote_end: int, known: Optional[Set[str]] = None
) -> Optional[str]:
    """Nearest ``Name said`` / ``said Name`` around the quote, preferring known speakers."""
    before = text[max(0, quote_start - SPEAKER_WINDOW) : quote_start]
    after = text[quote_end : quote_end + SPEAKER_WINDOW]
    candidates = (
        _candidates(before, NAME_VERB, True)
        + _candidates(before, VERB_NAME, True)
        + _candidates(after, VERB_NAME, False)
        + _candidates(after, NAME_VERB, False)
    )
    if not candidates:
        return None
    if known:
        preferred = [c for c in candidates if normalize_alias(c[0]) in known]
        candidates = preferred or candidates
    return min(candidates, key=lambda c: c[1])[0]


def extract_dialogue_lines(
    chunks: Sequence[ChunkRecord], known_speakers: Optional[Iterable[str]] = None
) -> List[DialogueLine]:
    known = {normalize_alias(name) for name in known_speakers or [] if name} or None
    lines: List[DialogueLine] = []
    for chunk in chunks:
        last_speaker: Optional[str] = None
        last_end = 0
        for match in QUOTE.finditer(chunk.text):
            inner = (match.group(1) or match.group(2) or "").strip()
            if not inner:
                continue
            start, end = match.start(), match.end()
            speaker = find_speaker(chunk.text, start, end, known)
            if speaker is None and last_speaker and len(chunk.text[last_end:start].strip()) < INHERIT_GAP:
                speaker = last_speaker
            if speaker:
                last_speaker = speaker
            last_end = end
            lines.append(DialogueLine(chunk.id, inner, start, end, speaker))
    return lines


def _ranked(counts: Dict[str, int]) -> Tuple[Tuple[str, int], ...]:
    return tuple(sorted(counts.items(), key=lambda item: (-item[1], item[0])))


@dataclass(frozen=True)
class SpeakerTally:
    """Full counts for one speaker; ``starters``/``fillers`` are ranked ``(phrase, count)`` tuples."""

    speaker: str
    total_lines: int
    starters: Tuple[Tuple[str, int], ...] = ()
    fillers: Tuple[Tuple[str, int], ...] = ()
    ellipses_count: int = 0
    dash_count: int = 0
    examples: Tuple[EvidenceSpan, ...] = ()

    @property
    def key(self) -> str:
        return normalize_alias(self.speaker)

    def combine(self, other: "SpeakerTally") -> "SpeakerTally":
        starters = dict(self.starters)
        for phrase, count in other.starters:
            starters[phrase] = starters.get(phrase, 0) + count
        fillers = dict(self.fillers)
        for filler, count in other.fillers:
            fillers[filler] = fillers.get(filler, 0) + count
        examples = list(self.examples)
        for example in other.examples:
            if len(examples) >= MAX_EXAMPLES:
                break
            if example not in examples:
                examples.append(example)
        return SpeakerTally(
            speaker=self.speaker,
            total_lines=self.total_lines + other.total_lines,
            starters=_ranked(starters),
            fillers=_ranked(fillers),
            ellipses_count=self.ellipses_count + other.ellipses_count,
            dash_count=self.dash_count + other.dash_count,
            examples=tuple(examples),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "speaker": self.speaker,
            "totalLines": self.total_lines,
            "starters": [{"phrase": p, "count": c} for p, c in self.starters[:TOP_N]],
            "fillers": [{"filler": f, "count": c} for f, c in self.fillers[:TOP_N]],
            "ellipsesCount": self.ellipses_count,
            "dashCount": self.dash_count,
            "examples": [example.to_dict() for example in self.examples],
        }


def compute_dialogue_tics(lines: Sequence[DialogueLine]) -> Tuple[SpeakerTally, ...]:
    grouped: Dict[str, List[DialogueLine]] = {}
    names: Dict[str, str] = {}
    for line in lines:
        if not line.speaker:
            continue
        key = normalize_alias(line.speaker)
        names.setdefault(key, line.speaker)
        grouped.setdefault(key, []).append(line)

    tallies: List[SpeakerTally] = []
    for key, speaker_lines in grouped.items():
        starters: Dict[str, int] = {}
        fillers: Dict[str, int] = {}
        ellipses = dashes = 0
        for line in speaker_lines:
            starter = " ".join(line.text.split()[:3]).lower()
            if starter:
                starters[starter] = starters.get(starter, 0) + 1
            lowered = line.text.lower()
            for filler in FILLERS:
                if filler in lowered:
                    fillers[filler] = fillers.get(filler, 0) + 1
            if "..." in line.text or "…" in line.text:
                ellipses += 1
            if "—" in line.text or "--" in line.text:
                dashes += 1
        tallies.append(
            SpeakerTally(
                speaker=names[key],
                total_lines=len(speaker_lines),
                starters=_ranked(starters),
                fillers=_ranked(fillers),
                ellipses_count=ellipses,
                dash_count=dashes,
                examples=tuple(line.evidence for line in speaker_lines[:MAX_EXAMPLES]),
            )
        )
    return tuple(tallies)


def merge_dialogue_tics(tallies_list: Iterable[Sequence[SpeakerTally]]) -> Tuple[SpeakerTally, ...]:
    """Additive merge keyed by normalized speaker; the first display name seen wins."""
    merged: Dict[str, SpeakerTally] = {}
    for tallies in tallies_list:
        for tally in tallies:
            current = merged.get(tally.key)
            merged[tally.key] = tally if current is None else current.combine(tally)
    return tuple(merged.values())


@dataclass(frozen=True)
class DialogueIssue:
    speaker: str
    description: str
    evidence: Tuple[EvidenceSpan, ...]

    @property
    def title(self) -> str:
        return f"Dialogue tic: {self.speaker}"


def pick_dialogue_issues(tallies: Sequence[SpeakerTally]) -> List[DialogueIssue]:
    issues: List[DialogueIssue] = []
    for tally in tallies:
        starter = next((s for s in tally.starters if s[1] >= TIC_THRESHOLD), None)
        if starter is not None:
            description = f'Starter phrase "{starter[0]}" repeats {starter[1]} times.'
        else:
            filler = next((f for f in tally.fillers if f[1] >= TIC_THRESHOLD), None)
            if filler is None:
                continue
            description = f'Filler "{filler[0]}" repeats {filler[1]} times.'
        issues.append(DialogueIssue(tally.speaker, description, tally.examples))
    return issues
