"""Per-scene tone vectors and drift against a baseline window."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Sequence

import numpy as np

from ..schemas import ChunkRecord, SceneRecord
from .utils import scene_text, sentence_split


FEATURES = (
    "sentenceLengthMean",
    "sentenceLengthVar",
    "dialogueRatio",
    "punctuationDensity",
    "sentimentScore",
    "contractionRatio",
)
DRIFT_THRESHOLD = 2.5

POSITIVE = frozenset(["bright", "warm", "soft", "gentle", "smile", "hope", "calm"])
NEGATIVE = frozenset(["dark", "cold", "blood", "fear", "anger", "grim", "storm"])
CONTRACTIONS = re.compile(r"\b\w+'(?:t|re|ve|ll|d)\b")
DIALOGUE_MARKS = re.compile(r"[\"“”]")
PUNCTUATION = re.compile(r"[,:;—-]")
WHITESPACE = re.compile(r"\s+")


def compute_tone_vector(text: str) -> np.ndarray:
    """Six features in :data:`FEATURES` order."""
    lengths = np.array([len(sentence.split(" ")) for sentence in sentence_split(text)], dtype=float)
    length_mean = float(lengths.mean()) if lengths.size else 0.0
    length_var = float(lengths.var()) if lengths.size else 0.0

    dialogue_ratio = min(1.0, len(DIALOGUE_MARKS.findall(text)) / max(1, len(text)))
    punctuation_density = len(PUNCTUATION.findall(text)) / max(1, len(text.split(" ")))

    lowered = text.lower()
    tokens = WHITESPACE.split(lowered)
    sentiment = sum(1 if t in POSITIVE else -1 if t in NEGATIVE else 0 for t in tokens)
    sentiment_score = sentiment / max(1, len(tokens))
    contraction_ratio = len(CONTRACTIONS.findall(lowered)) / max(1, len(tokens))

    return np.array(
        [
            length_mean,
            length_var,
            dialogue_ratio,
            punctuation_density,
            sentiment_score,
            contraction_ratio,
        ],
        dtype=float,
    )


@dataclass(frozen=True)
class ToneBaseline:
    mean: np.ndarray
    std: np.ndarray


def compute_tone_baseline(vectors: Sequence[np.ndarray]) -> ToneBaseline:
    """Population mean/std per feature; a zero std is replaced by 1."""
    if not vectors:
        return ToneBaseline(mean=np.zeros(len(FEATURES)), std=np.ones(len(FEATURES)))
    stacked = np.vstack(vectors)
    std = stacked.std(axis=0)
    std[std == 0] = 1.0
    return ToneBaseline(mean=stacked.mean(axis=0), std=std)


@dataclass
class ToneMetric:
    scene_id: str
    vector: np.ndarray
    zscores: np.ndarray
    drift_score: float

    @property
    def drifted(self) -> bool:
        return self.drift_score >= DRIFT_THRESHOLD

    def to_dict(self) -> Dict[str, object]:
        return {
            "sceneId": self.scene_id,
            "vector": dict(zip(FEATURES, self.vector.tolist())),
            "driftScore": self.drift_score,
            "zscores": dict(zip(FEATURES, self.zscores.tolist())),
        }


def compute_tone_metric(scene_id: str, vector: np.ndarray, baseline: ToneBaseline) -> ToneMetric:
    zscores = (vector - baseline.mean) / baseline.std
    return ToneMetric(
        scene_id=scene_id,
        vector=vector,
        zscores=zscores,
        drift_score=float(np.linalg.norm(zscores)),
    )


def compute_tone_metrics(
    scenes: Sequence[SceneRecord], chunks: Sequence[ChunkRecord], baseline_count: int = 10
) -> List[ToneMetric]:
    """Score every scene against a baseline built from the first ``baseline_count`` scenes."""
    vectors = [compute_tone_vector(scene_text(scene, chunks)) for scene in scenes]
    baseline = compute_tone_baseline(vectors[: max(1, baseline_count)])
    return [compute_tone_metric(scene.id, vector, baseline) for scene, vector in zip(scenes, vectors)]
