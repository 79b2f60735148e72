"""Entity and claim extraction: deterministic patterns first, then an optional LLM pass."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .prompts import EXTRACTION_SCHEMA, EXTRACTION_SYSTEM_PROMPT, build_extraction_user_prompt
from .providers import JsonRequest, LLMProvider
from .schemas import ChunkRecord, ClaimRecord, EvidenceSpan
from .spans import resolve_span
from .storage import SQLiteStore
from .validation import complete_json_with_retry


logger = logging.getLogger(__name__)

MERGE_CONFIDENCE_THRESHOLD = 0.75
POSSESSIVE_CONFIDENCE = 0.6
PRONOUN_CONFIDENCE = 0.5

EYE_PALETTE = [
    ("green", "green"),
    ("gray", "gray"),
    ("grey", "gray"),
    ("blue", "blue"),
    ("brown", "brown"),
    ("hazel", "hazel"),
    ("amber", "amber"),
    ("black", "black"),
]

HAIR_PALETTE = [
    ("black", "black"),
    ("brown", "brown"),
    ("blonde", "blonde"),
    ("blond", "blonde"),
    ("auburn", "auburn"),
    ("red", "red"),
    ("gray", "gray"),
    ("grey", "gray"),
    ("white", "white"),
    ("silver", "silver"),
]


@dataclass(frozen=True)
class FieldPattern:
    field: str
    possessive: "re.Pattern[str]"
    pronoun: "re.Pattern[str]"
    palette: Tuple[Tuple[str, str], ...]


FIELD_PATTERNS = [
    FieldPattern(
        field="eye_color",
        possessive=re.compile(r"([A-Z][a-z]+)'s eyes were ([^.\n]+)"),
        pronoun=re.compile(r"\b(his|her) eyes were ([^.\n]+)", re.IGNORECASE),
        palette=tuple(EYE_PALETTE),
    ),
    FieldPattern(
        field="hair_color",
        possessive=re.compile(r"([A-Z][a-z]+)'s hair was ([^.\n]+)"),
        pronoun=re.compile(r"\b(his|her) hair was ([^.\n]+)", re.IGNORECASE),
        palette=tuple(HAIR_PALETTE),
    ),
]


@dataclass(frozen=True)
class HeuristicClaim:
    """One pattern hit, already bound to a character name and resolved to a span."""

    name: str
    field: str
    value: str
    confidence: float
    chunk_id: str
    quote_start: int
    quote_end: int


@dataclass
class ExtractionOutcome:
    touched_entity_ids: List[str] = field(default_factory=list)
    claims_created: int = 0


def encode_value(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def palette_value(phrase: str, palette: Sequence[Tuple[str, str]]) -> str:
    lowered = phrase.lower()
    for needle, canonical in palette:
        if needle in lowered:
            return canonical
    return phrase.strip()


def scan_chunk(chunk: ChunkRecord, last_name: Optional[str]) -> Tuple[List[HeuristicClaim], Optional[str]]:
    """Scan one chunk in text order, threading the most recently named character.

    Returns the hits plus the ``last_name`` to carry into the next chunk.
    """
    matches = []
    for pattern in FIELD_PATTERNS:
        for match in pattern.possessive.finditer(chunk.text):
            matches.append((match.start(), 0, pattern, match, True))
        for match in pattern.pronoun.finditer(chunk.text):
            matches.append((match.start(), 1, pattern, match, False))
    matches.sort(key=lambda item: (item[0], item[1]))

    hits: List[HeuristicClaim] = []
    for _, _, pattern, match, possessive in matches:
        phrase = match.group(2) or ""
        if possessive:
            name = match.group(1)
            last_name = name
            confidence = POSSESSIVE_CONFIDENCE
        else:
            if not last_name:
                continue
            name = last_name
            confidence = PRONOUN_CONFIDENCE
        if not phrase.strip():
            continue
        span = resolve_span(chunk.text, match.group(0))
        if span is None:
            continue
        hits.append(
            HeuristicClaim(
                name=name,
                field=pattern.field,
                value=palette_value(phrase, pattern.palette),
                confidence=confidence,
                chunk_id=chunk.id,
                quote_start=span.start,
                quote_end=span.end,
            )
        )
    return hits, last_name


def deterministic_claims(chunks: Sequence[ChunkRecord]) -> List[HeuristicClaim]:
    """Fold :func:`scan_chunk` over chunks in ordinal order."""
    last_name: Optional[str] = None
    out: List[HeuristicClaim] = []
    for chunk in sorted(chunks, key=lambda c: c.ordinal):
        hits, last_name = scan_chunk(chunk, last_name)
        out.extend(hits)
    return out


def sort_merges(merges: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Highest confidence first; ties broken by ``"a:b"`` ascending."""
    return sorted(merges, key=lambda m: (-float(m.get("confidence", 0.0)), f"{m.get('a')}:{m.get('b')}"))


def pick_merge_target(a: str, b: str, known_ids: Set[str]) -> Tuple[str, str]:
    """Return ``(target, source)``; pre-existing entities survive, else the smaller id."""
    a_known = a in known_ids
    b_known = b in known_ids
    if not a_known and b_known:
        return b, a
    if a_known == b_known and b < a:
        return b, a
    return a, b


class ExtractionEngine:
    """Produces entities and evidence-backed claims for a set of chunks."""

    def __init__(
        self,
        store: SQLiteStore,
        provider: Optional[LLMProvider] = None,
        project_name: str = "Untitled",
        max_retries: int = 2,
    ):
        self.store = store
        self.provider = provider
        self.project_name = project_name
        self.max_retries = max_retries

    def run(self, project_id: str, chunks: Sequence[ChunkRecord]) -> ExtractionOutcome:
        touched: Dict[str, None] = {}
        created = self._run_deterministic(project_id, chunks, touched)
        if self.provider is not None and self.provider.is_available():
            created += self._run_llm(project_id, chunks, touched)
        else:
            logger.debug("No LLM provider available; deterministic extraction only")
        return ExtractionOutcome(touched_entity_ids=list(touched), claims_created=created)

    def _run_deterministic(
        self, project_id: str, chunks: Sequence[ChunkRecord], touched: Dict[str, None]
    ) -> int:
        created = 0
        for hit in deterministic_claims(chunks):
            entity = self.store.get_or_create_entity_by_name(project_id, hit.name, "character")
            value_json = encode_value(hit.value)
            span = EvidenceSpan(hit.chunk_id, hit.quote_start, hit.quote_end)
            existing = self._matching_claim(entity.id, hit.field, value_json)
            if existing is not None:
                if self._attach_missing_evidence(existing.id, [span]):
                    touched[entity.id] = None
                continue
            claim = self.store.insert_claim(
                entity.id, hit.field, value_json, status="inferred", confidence=hit.confidence
            )
            self.store.insert_claim_evidence(claim.id, span)
            touched[entity.id] = None
            created += 1
        return created

    def _matching_claim(self, entity_id: str, field: str, value_json: str) -> Optional[ClaimRecord]:
        for row in self.store.list_claims_by_field(entity_id, field):
            if row.value_json == value_json:
                return row
        return None

    def _attach_missing_evidence(self, claim_id: str, spans: Sequence[EvidenceSpan]) -> bool:
        """Re-anchor a known claim in the current chunk set.

        Evidence rows are dropped with their chunks, so a re-extracted value
        may be the only remaining proof of an older claim.
        """
        known = set(self.store.list_evidence_for_claim(claim_id))
        attached = False
        for span in spans:
            if span not in known:
                self.store.insert_claim_evidence(claim_id, span)
                known.add(span)
                attached = True
        return attached

    def _known_entities(self, project_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "id": entity.id,
                "type": entity.type,
                "displayName": entity.display_name,
                "aliases": self.store.list_aliases(entity.id),
            }
            for entity in self.store.list_entities(project_id)
        ]

    def _run_llm(self, project_id: str, chunks: Sequence[ChunkRecord], touched: Dict[str, None]) -> int:
        self.store.log_event(
            project_id, "info", "llm_call", {"type": "extraction", "chunkCount": len(chunks)}
        )
        known_entities = self._known_entities(project_id)
        request = JsonRequest(
            schema_name="extraction",
            system_prompt=EXTRACTION_SYSTEM_PROMPT,
            user_prompt=build_extraction_user_prompt(
                self.project_name,
                known_entities,
                [{"ordinal": chunk.ordinal, "text": chunk.text} for chunk in chunks],
            ),
            json_schema=EXTRACTION_SCHEMA,
            temperature=0.1,
            max_tokens=1200,
        )
        payload = complete_json_with_retry(self.provider, request, self.max_retries).json

        known_ids = {entity["id"] for entity in known_entities}
        created_ids: Set[str] = set()
        entity_map: Dict[str, str] = {}
        redirects: Dict[str, str] = {}

        for extracted in payload.get("entities") or []:
            entity = None
            if extracted["tempId"] in known_ids:
                entity = self.store.get_entity(extracted["tempId"])
            if entity is None:
                for name in [extracted["displayName"], *(extracted.get("aliases") or [])]:
                    entity = self.store.get_entity_by_alias(project_id, name)
                    if entity is not None:
                        break
            if entity is None:
                entity = self.store.create_entity(project_id, extracted["type"], extracted["displayName"])
                created_ids.add(entity.id)
            for alias in extracted.get("aliases") or []:
                self.store.add_alias(entity.id, alias)
            entity_map[extracted["tempId"]] = entity.id
            touched[entity.id] = None

        def resolve(ref: str) -> Optional[str]:
            entity_id = entity_map.get(ref)
            if entity_id is None and (ref in known_ids or ref in created_ids or ref in redirects):
                entity_id = ref
            while entity_id in redirects:
                entity_id = redirects[entity_id]
            return entity_id

        for merge in sort_merges(payload.get("suggestedMerges") or []):
            if float(merge["confidence"]) < MERGE_CONFIDENCE_THRESHOLD:
                continue
            entity_a = resolve(merge["a"])
            entity_b = resolve(merge["b"])
            if not entity_a or not entity_b or entity_a == entity_b:
                continue
            target, source = pick_merge_target(entity_a, entity_b, known_ids)
            logger.info("Merging entity %s into %s (%.2f)", source, target, float(merge["confidence"]))

            for alias in self.store.list_aliases(source):
                self.store.add_alias(target, alias)
            for temp_id, mapped in list(entity_map.items()):
                if mapped == source:
                    entity_map[temp_id] = target
            redirects[source] = target
            if source in created_ids:
                self.store.delete_entity_if_no_claims(source)
                created_ids.discard(source)
            touched.pop(source, None)
            touched[target] = None

        chunk_by_ordinal = {chunk.ordinal: chunk for chunk in chunks}
        created = 0
        for claim in payload.get("claims") or []:
            entity_id = resolve(claim["entityTempId"])
            if not entity_id:
                continue
            value_json = encode_value(claim["value"])
            evidence: List[EvidenceSpan] = []
            for ref in claim.get("evidence") or []:
                chunk = chunk_by_ordinal.get(ref["chunkOrdinal"])
                if chunk is None:
                    continue
                span = resolve_span(chunk.text, ref["quote"])
                if span is None:
                    continue
                evidence.append(EvidenceSpan(chunk.id, span.start, span.end))
            if not evidence:
                logger.debug("Dropping %s claim for %s: no resolvable evidence", claim["field"], entity_id)
                continue

            existing = self._matching_claim(entity_id, claim["field"], value_json)
            if existing is not None:
                if self._attach_missing_evidence(existing.id, evidence):
                    touched[entity_id] = None
                continue

            confidence = min(1.0, max(0.0, float(claim["confidence"])))
            record = self.store.insert_claim(
                entity_id, claim["field"], value_json, status="inferred", confidence=confidence
            )
            for span in evidence:
                self.store.insert_claim_evidence(record.id, span)
            touched[entity_id] = None
            created += 1
        return created


def run_extraction(
    store: SQLiteStore,
    project_id: str,
    chunks: Sequence[ChunkRecord],
    provider: Optional[LLMProvider] = None,
    project_name: str = "Untitled",
) -> ExtractionOutcome:
    return ExtractionEngine(store, provider, project_name).run(project_id, chunks)
