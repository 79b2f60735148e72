"""Style stage: repetition, tone drift and dialogue tics over a project."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

import numpy as np

from ..config import StyleConfig
from ..errors import StaleMetricCache
from ..schemas import ChunkRecord, DocumentRecord, EvidenceSpan, SceneRecord, StyleMetricRecord
from ..storage import SQLiteStore
from .cache import (
    decode_dialogue_tallies,
    decode_ngram_counts,
    decode_tone_vector,
    encode_dialogue_tallies,
    encode_ngram_counts,
    encode_ngram_report,
    encode_speaker_tics,
    encode_tone_metric,
)
from .dialogue import compute_dialogue_tics, extract_dialogue_lines, merge_dialogue_tics, pick_dialogue_issues
from .repetition import build_repetition_report, compute_repetition_counts, merge_repetition_counts
from .tone import compute_tone_baseline, compute_tone_metric, compute_tone_vector
from .utils import find_chunk, resolve_stopwords, scene_text


logger = logging.getLogger(__name__)

T = TypeVar("T")

NGRAM_FREQ = "ngram_freq"
TONE_VECTOR = "tone_vector"
DIALOGUE_TICS = "dialogue_tics"
TONE_EVIDENCE_CHARS = 160


@dataclass
class StyleRunSummary:
    repetition_issues: int = 0
    tone_issues: int = 0
    dialogue_issues: int = 0
    scenes_scored: int = 0


class StyleAnalyzer:
    """Recomputes style metrics for target documents and reuses cached ones for the rest."""

    def __init__(self, store: SQLiteStore, config: Optional[StyleConfig] = None):
        self.store = store
        self.config = config or StyleConfig()
        self.stopwords = resolve_stopwords(self.config.stopwords)

    def run(self, project_id: str, document_id: Optional[str] = None) -> StyleRunSummary:
        documents = self.store.list_documents(project_id)
        targets = {document_id} if document_id else {doc.id for doc in documents}
        chunks = {doc.id: self.store.list_chunks_for_document(doc.id) for doc in documents}

        summary = StyleRunSummary()
        summary.repetition_issues = self._run_repetition(project_id, documents, chunks, targets)
        summary.scenes_scored, summary.tone_issues = self._run_tone(project_id, chunks, targets, document_id)
        summary.dialogue_issues = self._run_dialogue(project_id, documents, chunks, targets)
        logger.info(
            "Style pass for %s: %d repetition, %d tone, %d dialogue issues",
            document_id or "all documents",
            summary.repetition_issues,
            summary.tone_issues,
            summary.dialogue_issues,
        )
        return summary

    def _cached(
        self, project_id: str, scope_type: str, scope_id: str, metric_name: str, decode: Callable[[str], T]
    ) -> Optional[T]:
        rows = self.store.list_style_metrics(project_id, scope_type, scope_id, metric_name)
        if not rows:
            return None
        try:
            return decode(rows[0].metric_json)
        except StaleMetricCache as exc:
            logger.info("Recomputing %s for %s %s: %s", metric_name, scope_type, scope_id, exc.reason)
            return None

    def _store_metric(self, project_id: str, scope_type: str, scope_id: str, metric_name: str, payload: str) -> None:
        self.store.replace_style_metric(
            StyleMetricRecord(
                project_id=project_id,
                scope_type=scope_type,
                scope_id=scope_id,
                metric_name=metric_name,
                metric_json=payload,
            )
        )

    # Repetition

    def _run_repetition(
        self,
        project_id: str,
        documents: Sequence[DocumentRecord],
        chunks: Dict[str, List[ChunkRecord]],
        targets: Set[str],
    ) -> int:
        per_document = []
        for doc in documents:
            counts = None
            if doc.id not in targets:
                counts = self._cached(project_id, "document", doc.id, NGRAM_FREQ, decode_ngram_counts)
            if counts is None:
                scenes = self.store.list_scenes_for_document(doc.id)
                counts = compute_repetition_counts(chunks[doc.id], scenes, self.stopwords)
                self._store_metric(project_id, "document", doc.id, NGRAM_FREQ, encode_ngram_counts(counts))
            per_document.append(counts)

        report = build_repetition_report(
            merge_repetition_counts(per_document), self.config.repetition_threshold
        )
        self._store_metric(project_id, "project", project_id, NGRAM_FREQ, encode_ngram_report(report.metric))

        self.store.clear_issues_by_type(project_id, "repetition")
        for issue in report.issues:
            record = self.store.insert_issue(project_id, "repetition", "low", issue.title, issue.description)
            self.store.insert_issue_evidence(record.id, issue.evidence)
        return len(report.issues)

    # Tone

    def _run_tone(
        self,
        project_id: str,
        chunks: Dict[str, List[ChunkRecord]],
        targets: Set[str],
        document_id: Optional[str],
    ) -> Tuple[int, int]:
        scenes = self.store.list_scenes_for_project(project_id)
        baseline_scenes = scenes[: self.config.baseline_scene_count]
        update_all = document_id is None or any(s.document_id == document_id for s in baseline_scenes)

        vectors: Dict[str, np.ndarray] = {}
        updated: Set[str] = set()
        for scene in scenes:
            if not update_all and scene.document_id not in targets:
                cached = self._cached(project_id, "scene", scene.id, TONE_VECTOR, decode_tone_vector)
                if cached is not None:
                    vectors[scene.id] = cached
                    continue
            vectors[scene.id] = compute_tone_vector(scene_text(scene, chunks.get(scene.document_id, [])))
            updated.add(scene.id)

        baseline = compute_tone_baseline([vectors[scene.id] for scene in baseline_scenes])

        if update_all:
            self.store.delete_style_metrics_by_name(project_id, TONE_VECTOR, "scene")
            self.store.clear_issues_by_type(project_id, "tone_drift")
            to_score = list(scenes)
        else:
            for doc_id in sorted({scene.document_id for scene in scenes if scene.id in updated}):
                self.store.delete_issues_by_type_and_document(project_id, "tone_drift", doc_id)
            to_score = [scene for scene in scenes if scene.id in updated]

        raised = 0
        for scene in to_score:
            metric = compute_tone_metric(scene.id, vectors[scene.id], baseline)
            self._store_metric(project_id, "scene", scene.id, TONE_VECTOR, encode_tone_metric(metric))
            if not metric.drifted:
                continue
            record = self.store.insert_issue(
                project_id,
                "tone_drift",
                "medium",
                "Tone drift detected",
                f"Drift score {metric.drift_score:.2f} exceeds threshold.",
            )
            evidence = self._tone_evidence(scene, chunks.get(scene.document_id, []))
            if evidence is not None:
                self.store.insert_issue_evidence(record.id, evidence)
            raised += 1
        return len(to_score), raised

    @staticmethod
    def _tone_evidence(scene: SceneRecord, chunks: Sequence[ChunkRecord]) -> Optional[EvidenceSpan]:
        chunk = find_chunk(chunks, scene.start_chunk_id)
        if chunk is None or not chunk.text:
            return None
        return EvidenceSpan(chunk.id, 0, min(TONE_EVIDENCE_CHARS, len(chunk.text)))

    # Dialogue

    def _known_speakers(self, project_id: str) -> List[str]:
        names: List[str] = []
        for entity in self.store.list_entities(project_id, "character"):
            names.append(entity.display_name)
            names.extend(self.store.list_aliases(entity.id))
        return names

    def _run_dialogue(
        self,
        project_id: str,
        documents: Sequence[DocumentRecord],
        chunks: Dict[str, List[ChunkRecord]],
        targets: Set[str],
    ) -> int:
        known = self._known_speakers(project_id)
        per_document = []
        for doc in documents:
            tallies = None
            if doc.id not in targets:
                tallies = self._cached(project_id, "document", doc.id, DIALOGUE_TICS, decode_dialogue_tallies)
            if tallies is None:
                tallies = compute_dialogue_tics(extract_dialogue_lines(chunks[doc.id], known))
                self._store_metric(project_id, "document", doc.id, DIALOGUE_TICS, encode_dialogue_tallies(tallies))
            per_document.append(tallies)

        merged = merge_dialogue_tics(per_document)
        self.store.delete_style_metrics_by_name(project_id, DIALOGUE_TICS, "entity")
        for tally in merged:
            entity = self.store.get_or_create_entity_by_name(project_id, tally.speaker, "character")
            self._store_metric(project_id, "entity", entity.id, DIALOGUE_TICS, encode_speaker_tics(tally))

        self.store.clear_issues_by_type(project_id, "dialogue_tic")
        issues = pick_dialogue_issues(merged)
        for issue in issues:
            record = self.store.insert_issue(project_id, "dialogue_tic", "low", issue.title, issue.description)
            for span in issue.evidence:
                self.store.insert_issue_evidence(record.id, span)
        return len(issues)


def run_style_analysis(
    store: SQLiteStore,
    project_id: str,
    document_id: Optional[str] = None,
    config: Optional[StyleConfig] = None,
) -> StyleRunSummary:
    return StyleAnalyzer(store, config).run(project_id, document_id)
