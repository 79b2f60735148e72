"""Versioned encoding of cached style metrics.

Every stored metric is a tagged object ``{"kind", "version", ...payload}``.
Decoders raise :class:`StaleMetricCache` for anything they cannot read (bad
JSON, another kind, an older version, missing keys) so callers recompute.
"""

from __future__ import annotations

import json
from types import MappingProxyType
from typing import Any, Dict, Tuple

import numpy as np

from ..errors import StaleMetricCache
from ..schemas import EvidenceSpan
from .dialogue import SpeakerTally
from .repetition import NgramTally, RepetitionCounts
from .tone import FEATURES, ToneMetric


CACHE_VERSION = 1

NGRAM_COUNTS = "ngram_counts"
NGRAM_REPORT = "ngram_report"
TONE_VECTOR = "tone_vector"
DIALOGUE_TALLIES = "dialogue_tallies"
SPEAKER_TICS = "speaker_tics"


def _wrap(kind: str, payload: Dict[str, Any]) -> str:
    return json.dumps({"kind": kind, "version": CACHE_VERSION, **payload}, ensure_ascii=False)


def _unwrap(raw: str, kind: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise StaleMetricCache(kind, f"unparseable JSON ({exc})") from exc
    if not isinstance(data, dict):
        raise StaleMetricCache(kind, "payload is not an object")
    if data.get("kind") != kind:
        raise StaleMetricCache(kind, f"unexpected kind {data.get('kind')!r}")
    if data.get("version") != CACHE_VERSION:
        raise StaleMetricCache(kind, f"version {data.get('version')!r} != {CACHE_VERSION}")
    return data


def encode_ngram_counts(counts: RepetitionCounts) -> str:
    return _wrap(
        NGRAM_COUNTS,
        {
            "counts": {
                ngram: {
                    "n": tally.n,
                    "count": tally.count,
                    "byScene": dict(tally.by_scene),
                    "example": None if tally.example is None else tally.example.to_dict(),
                }
                for ngram, tally in counts.items()
            }
        },
    )


def decode_ngram_counts(raw: str) -> RepetitionCounts:
    data = _unwrap(raw, NGRAM_COUNTS)
    try:
        return MappingProxyType(
            {
                ngram: NgramTally(
                    n=int(entry["n"]),
                    count=int(entry["count"]),
                    by_scene=tuple(sorted((str(k), int(v)) for k, v in entry["byScene"].items())),
                    example=None if entry.get("example") is None else EvidenceSpan.from_dict(entry["example"]),
                )
                for ngram, entry in data["counts"].items()
            }
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise StaleMetricCache(NGRAM_COUNTS, f"malformed entry ({exc})") from exc


def encode_ngram_report(metric: Dict[str, Any]) -> str:
    return _wrap(NGRAM_REPORT, metric)


def encode_tone_metric(metric: ToneMetric) -> str:
    return _wrap(TONE_VECTOR, metric.to_dict())


def decode_tone_vector(raw: str) -> np.ndarray:
    data = _unwrap(raw, TONE_VECTOR)
    try:
        return np.array([float(data["vector"][feature]) for feature in FEATURES], dtype=float)
    except (KeyError, TypeError, ValueError) as exc:
        raise StaleMetricCache(TONE_VECTOR, f"malformed vector ({exc})") from exc


def _tally_payload(tally: SpeakerTally) -> Dict[str, Any]:
    return {
        "speaker": tally.speaker,
        "totalLines": tally.total_lines,
        "starters": [list(pair) for pair in tally.starters],
        "fillers": [list(pair) for pair in tally.fillers],
        "ellipsesCount": tally.ellipses_count,
        "dashCount": tally.dash_count,
        "examples": [example.to_dict() for example in tally.examples],
    }


def encode_dialogue_tallies(tallies: Tuple[SpeakerTally, ...]) -> str:
    return _wrap(DIALOGUE_TALLIES, {"speakers": [_tally_payload(tally) for tally in tallies]})


def decode_dialogue_tallies(raw: str) -> Tuple[SpeakerTally, ...]:
    data = _unwrap(raw, DIALOGUE_TALLIES)
    try:
        return tuple(
            SpeakerTally(
                speaker=str(entry["speaker"]),
                total_lines=int(entry["totalLines"]),
                starters=tuple((str(p), int(c)) for p, c in entry["starters"]),
                fillers=tuple((str(f), int(c)) for f, c in entry["fillers"]),
                ellipses_count=int(entry["ellipsesCount"]),
                dash_count=int(entry["dashCount"]),
                examples=tuple(EvidenceSpan.from_dict(e) for e in entry["examples"]),
            )
            for entry in data["speakers"]
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise StaleMetricCache(DIALOGUE_TALLIES, f"malformed speaker ({exc})") from exc


def encode_speaker_tics(tally: SpeakerTally) -> str:
    return _wrap(SPEAKER_TICS, tally.to_dict())
