"""Scene segmentation and scene metadata (POV, setting, cast)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import ContinuityEngineError
from .normalize import normalize_alias
from .prompts import SCENE_META_SCHEMA, SCENE_META_SYSTEM_PROMPT, build_scene_meta_user_prompt
from .providers import JsonRequest, LLMProvider
from .schemas import (
    ChunkRecord,
    EntityRecord,
    EvidenceSpan,
    SceneEntityLink,
    SceneInsert,
    SceneMetadata,
    SceneRecord,
)
from .spans import resolve_span
from .storage import SQLiteStore
from .style.utils import chunks_for_scene
from .validation import complete_json_with_retry


logger = logging.getLogger(__name__)

HEADING = re.compile(r"^#{1,6}\s+(.+?)\s*#*\s*$")
SCENE_BREAK = re.compile(r"^(?:\*\s*\*\s*\*|-{3,}|#{3,}|~{3,})\s*$")
FIRST_PERSON = re.compile(r"\b(I|me|my|mine|we|our|us)\b")
SETTING_PHRASE = re.compile(
    r"\b(in|at|inside|within|outside|on)\s+(the\s+)?([A-Za-z][A-Za-z'-]*(?:\s+[A-Za-z][A-Za-z'-]*){0,6})",
    re.IGNORECASE,
)
SENTENCE_BREAK = frozenset(".!?\n")
TRAILING_PUNCT = re.compile(r"[\s.,;:!?]+$")

FIRST_PERSON_CONFIDENCE = 0.7
LOCATION_CONFIDENCE = 0.7
SETTING_PHRASE_CONFIDENCE = 0.5
SETTING_TEXT_LIMIT = 160


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def build_scenes_from_chunks(
    project_id: str, document_id: str, chunks: Sequence[ChunkRecord]
) -> List[SceneInsert]:
    """Group consecutive chunks into scenes.

    A scene starts at the first chunk and at every chunk that opens with a
    markdown heading or a scene-break line (``***``, ``* * *``, ``---``).
    The heading text, when present, becomes the scene title.
    """
    ordered = sorted(chunks, key=lambda c: c.ordinal)
    groups: List[List[ChunkRecord]] = []
    titles: List[Optional[str]] = []
    for chunk in ordered:
        line = _first_line(chunk.text)
        heading = HEADING.match(line)
        starts_scene = bool(heading) or bool(SCENE_BREAK.match(line))
        if not groups or starts_scene:
            groups.append([])
            titles.append(heading.group(1) if heading else None)
        groups[-1].append(chunk)

    return [
        SceneInsert(
            project_id=project_id,
            document_id=document_id,
            ordinal=ordinal,
            start_chunk_id=group[0].id,
            end_chunk_id=group[-1].id,
            start_char=group[0].start_char,
            end_char=group[-1].end_char,
            title=title,
        )
        for ordinal, (group, title) in enumerate(zip(groups, titles))
    ]


def find_sentence_span(text: str, index: int) -> Optional[EvidenceSpan]:
    """Trimmed sentence around ``index``; the chunk id is filled in by the caller."""
    if index < 0 or index >= len(text):
        return None
    start = -1
    for i in range(index, -1, -1):
        if text[i] in SENTENCE_BREAK:
            start = i
            break
    end = len(text)
    for i in range(index, len(text)):
        if text[i] in SENTENCE_BREAK:
            end = i + 1
            break
    segment = text[start + 1 : end]
    stripped = segment.lstrip()
    if not stripped:
        return None
    actual_start = start + 1 + (len(segment) - len(stripped))
    actual_end = end
    while actual_end > actual_start and text[actual_end - 1].isspace():
        actual_end -= 1
    if actual_end <= actual_start:
        return None
    return EvidenceSpan("", actual_start, actual_end)


def _alias_pattern(alias: str) -> "re.Pattern[str]":
    return re.compile(rf"\b{re.escape(alias)}\b", re.IGNORECASE)


def find_first_person_evidence(chunks: Sequence[ChunkRecord]) -> Optional[EvidenceSpan]:
    for chunk in chunks:
        match = FIRST_PERSON.search(chunk.text)
        if not match:
            continue
        span = find_sentence_span(chunk.text, match.start())
        if span is None:
            continue
        return EvidenceSpan(chunk.id, span.quote_start, span.quote_end)
    return None


def find_alias_evidence(chunks: Sequence[ChunkRecord], alias: str) -> Optional[EvidenceSpan]:
    if not alias.strip():
        return None
    pattern = _alias_pattern(alias)
    for chunk in chunks:
        match = pattern.search(chunk.text)
        if match:
            return EvidenceSpan(chunk.id, match.start(), match.end())
    return None


def count_alias_occurrences(chunks: Sequence[ChunkRecord], alias: str) -> int:
    if not alias.strip():
        return 0
    pattern = _alias_pattern(alias)
    return sum(len(pattern.findall(chunk.text)) for chunk in chunks)


def _first_alias_hit(chunks: Sequence[ChunkRecord], aliases: Sequence[str]) -> Optional[Tuple[str, EvidenceSpan]]:
    for alias in aliases:
        span = find_alias_evidence(chunks, alias)
        if span is not None:
            return alias, span
    return None


def find_setting_phrase(chunks: Sequence[ChunkRecord]) -> Optional[Dict[str, Any]]:
    for chunk in chunks:
        match = SETTING_PHRASE.search(chunk.text)
        if not match:
            continue
        phrase = TRAILING_PUNCT.sub("", match.group(0).strip())
        if not phrase:
            continue
        start = match.start()
        return {"evidence": EvidenceSpan(chunk.id, start, start + len(phrase)), "phrase": phrase}
    return None


@dataclass
class SceneAnalysis:
    """Heuristic metadata for one scene, before persistence."""

    metadata: SceneMetadata = field(default_factory=SceneMetadata)
    evidence: List[EvidenceSpan] = field(default_factory=list)
    entities: List[SceneEntityLink] = field(default_factory=list)


class SceneMetadataAnalyzer:
    """Fills POV, setting and cast for the scenes of one document."""

    def __init__(self, store: SQLiteStore, provider: Optional[LLMProvider] = None, max_retries: int = 2):
        self.store = store
        self.provider = provider
        self.max_retries = max_retries

    def _with_aliases(self, entities: Sequence[EntityRecord]) -> List[Dict[str, Any]]:
        return [
            {"entity": entity, "aliases": [entity.display_name, *self.store.list_aliases(entity.id)]}
            for entity in entities
        ]

    @staticmethod
    def _alias_map(entries: Sequence[Dict[str, Any]]) -> Dict[str, str]:
        mapping: Dict[str, str] = {}
        for entry in entries:
            for alias in entry["aliases"]:
                mapping[normalize_alias(alias)] = entry["entity"].id
        return mapping

    def analyze(
        self,
        chunks: Sequence[ChunkRecord],
        characters: Sequence[Dict[str, Any]],
        locations: Sequence[Dict[str, Any]],
    ) -> SceneAnalysis:
        analysis = SceneAnalysis()
        meta = analysis.metadata

        pov = find_first_person_evidence(chunks)
        if pov is not None:
            meta.pov_mode = "first"
            meta.pov_confidence = FIRST_PERSON_CONFIDENCE
            analysis.evidence.append(pov)

        for entry in locations:
            hit = _first_alias_hit(chunks, entry["aliases"])
            if hit is not None:
                meta.setting_entity_id = entry["entity"].id
                meta.setting_text = hit[0]
                meta.setting_confidence = LOCATION_CONFIDENCE
                analysis.evidence.append(hit[1])
                break
        else:
            phrase = find_setting_phrase(chunks)
            if phrase is not None:
                meta.setting_text = phrase["phrase"][:SETTING_TEXT_LIMIT]
                meta.setting_confidence = SETTING_PHRASE_CONFIDENCE
                analysis.evidence.append(phrase["evidence"])

        seen = set()
        for entry in characters:
            count = max((count_alias_occurrences(chunks, alias) for alias in entry["aliases"]), default=0)
            if count <= 0:
                continue
            seen.add(entry["entity"].id)
            analysis.entities.append(
                SceneEntityLink(
                    entity_id=entry["entity"].id,
                    role="present" if count >= 2 else "mentioned",
                    confidence=0.6 if count >= 2 else 0.4,
                )
            )
        if meta.setting_entity_id and meta.setting_entity_id not in seen:
            analysis.entities.append(SceneEntityLink(meta.setting_entity_id, "setting", LOCATION_CONFIDENCE))
        return analysis

    def _persist(self, scene_id: str, analysis: SceneAnalysis) -> None:
        self.store.update_scene_metadata(scene_id, analysis.metadata)
        self.store.delete_scene_evidence_for_scene(scene_id)
        for span in analysis.evidence:
            self.store.insert_scene_evidence(scene_id, span)
        self.store.replace_scene_entities(scene_id, analysis.entities)

    def run(self, project_id: str, document_id: str) -> int:
        scenes = self.store.list_scenes_for_document(document_id)
        chunks = self.store.list_chunks_for_document(document_id)
        characters = self._with_aliases(self.store.list_entities(project_id, "character"))
        locations = self._with_aliases(self.store.list_entities(project_id, "location"))
        use_llm = self.provider is not None and self.provider.is_available()

        for scene in scenes:
            scoped = chunks_for_scene(scene, chunks)
            analysis = self.analyze(scoped, characters, locations)
            self._persist(scene.id, analysis)
            if use_llm and scoped:
                self._refine_with_llm(project_id, scene, scoped, characters, locations, analysis)
        return len(scenes)

    def _refine_with_llm(
        self,
        project_id: str,
        scene: SceneRecord,
        chunks: Sequence[ChunkRecord],
        characters: Sequence[Dict[str, Any]],
        locations: Sequence[Dict[str, Any]],
        analysis: SceneAnalysis,
    ) -> None:
        self.store.log_event(project_id, "info", "llm_call", {"type": "scene_meta", "sceneId": scene.id})
        request = JsonRequest(
            schema_name="scene_meta",
            system_prompt=SCENE_META_SYSTEM_PROMPT,
            user_prompt=build_scene_meta_user_prompt(
                [{"displayName": e["entity"].display_name, "aliases": e["aliases"][1:]} for e in characters],
                [{"displayName": e["entity"].display_name, "aliases": e["aliases"][1:]} for e in locations],
                [{"ordinal": index, "text": chunk.text} for index, chunk in enumerate(chunks)],
            ),
            json_schema=SCENE_META_SCHEMA,
            temperature=0.1,
            max_tokens=800,
        )
        try:
            payload = complete_json_with_retry(self.provider, request, self.max_retries).json
        except ContinuityEngineError as exc:
            logger.warning("Scene metadata LLM pass failed for scene %s: %s", scene.id, exc)
            self.store.log_event(
                project_id, "warn", "scene_meta_failed", {"sceneId": scene.id, "message": str(exc)}
            )
            return

        evidence: List[EvidenceSpan] = []
        for ref in payload.get("evidence") or []:
            index = ref["chunkOrdinal"]
            if index >= len(chunks):
                continue
            span = resolve_span(chunks[index].text, ref["quote"])
            if span is not None:
                evidence.append(EvidenceSpan(chunks[index].id, span.start, span.end))
        if not evidence:
            return

        pov_name = payload.get("povName")
        setting_name = payload.get("settingName")
        pov_id = self._alias_map(characters).get(normalize_alias(pov_name)) if pov_name else None
        setting_id = self._alias_map(locations).get(normalize_alias(setting_name)) if setting_name else None

        refined = SceneAnalysis(
            metadata=SceneMetadata(
                pov_mode=payload["povMode"],
                pov_entity_id=pov_id,
                pov_confidence=float(payload["povConfidence"]),
                setting_entity_id=setting_id,
                setting_text=setting_name if setting_id else payload.get("settingText"),
                setting_confidence=float(payload["settingConfidence"]),
                time_context_text=payload.get("timeContextText"),
            ),
            evidence=evidence,
            entities=[
                link for link in analysis.entities if link.entity_id not in (setting_id, pov_id)
            ],
        )
        if setting_id:
            refined.entities.append(SceneEntityLink(setting_id, "setting", float(payload["settingConfidence"])))
        if pov_id:
            refined.entities.append(SceneEntityLink(pov_id, "present", float(payload["povConfidence"])))
        self._persist(scene.id, refined)


def run_scene_metadata(
    store: SQLiteStore, project_id: str, document_id: str, provider: Optional[LLMProvider] = None
) -> int:
    return SceneMetadataAnalyzer(store, provider).run(project_id, document_id)
