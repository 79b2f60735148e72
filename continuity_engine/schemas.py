"""Core data structures shared across modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


DOCUMENT_KINDS = ["md", "txt", "docx"]
ENTITY_TYPES = ["character", "location", "org", "artifact", "term", "rule"]
CLAIM_STATUSES = ["inferred", "confirmed", "rejected", "superseded"]
LIVE_CLAIM_STATUSES = ("inferred", "confirmed")
ISSUE_TYPES = ["continuity", "tone_drift", "repetition", "dialogue_tic", "pov_ambiguous"]
ISSUE_SEVERITIES = ["low", "medium", "high"]
ISSUE_STATUSES = ["open", "dismissed", "resolved"]
POV_MODES = ["first", "third_limited", "omniscient", "epistolary", "unknown"]
STYLE_SCOPES = ["project", "document", "scene", "entity"]
STYLE_METRICS = ["ngram_freq", "tone_vector", "dialogue_tics"]
PROCESSING_STATUSES = ["pending", "ok", "failed"]
STAGES = ["ingest", "scenes", "style", "extraction", "continuity"]


@dataclass(frozen=True)
class Span:
    """Character offsets ``[start, end)`` into some text."""

    start: int
    end: int


@dataclass(frozen=True)
class EvidenceSpan:
    """Offsets into a chunk's text that ground a claim, issue, or scene fact."""

    chunk_id: str
    quote_start: int
    quote_end: int

    def to_dict(self) -> Dict[str, Any]:
        return {"chunkId": self.chunk_id, "quoteStart": self.quote_start, "quoteEnd": self.quote_end}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvidenceSpan":
        return cls(str(data["chunkId"]), int(data["quoteStart"]), int(data["quoteEnd"]))


@dataclass(frozen=True)
class ChunkSpan:
    """A chunk computed from a snapshot's full text, before persistence."""

    ordinal: int
    start: int
    end: int
    text: str
    text_hash: str


@dataclass
class ChunkRecord:
    """Chunk row persisted in SQLite."""

    id: str
    document_id: str
    ordinal: int
    text: str
    text_hash: str
    start_char: int
    end_char: int


@dataclass
class ProjectRecord:
    id: str
    root_path: str
    name: str


@dataclass
class DocumentRecord:
    id: str
    project_id: str
    path: str
    kind: str


@dataclass
class SnapshotRecord:
    """Immutable full-text capture of a document."""

    id: str
    document_id: str
    version: int
    full_text: str
    full_text_hash: str


@dataclass
class EntityRecord:
    id: str
    project_id: str
    type: str
    display_name: str
    canonical_name: Optional[str] = None


@dataclass
class ClaimRecord:
    """Evidence-backed fact about one entity field."""

    id: str
    entity_id: str
    field: str
    value_json: str
    status: str = "inferred"
    confidence: float = 0.5
    supersedes_claim_id: Optional[str] = None


@dataclass
class IssueRecord:
    id: str
    project_id: str
    type: str
    severity: str
    title: str
    description: str
    status: str = "open"
    evidence: List[EvidenceSpan] = field(default_factory=list)


@dataclass
class SceneInsert:
    """Scene boundaries produced by the scene builder."""

    project_id: str
    document_id: str
    ordinal: int
    start_chunk_id: str
    end_chunk_id: str
    start_char: int
    end_char: int
    title: Optional[str] = None


@dataclass
class SceneRecord:
    """Scene row joined with its derived metadata."""

    id: str
    project_id: str
    document_id: str
    ordinal: int
    start_chunk_id: str
    end_chunk_id: str
    start_char: int
    end_char: int
    title: Optional[str] = None
    pov_mode: str = "unknown"
    pov_entity_id: Optional[str] = None
    pov_confidence: float = 0.0
    setting_entity_id: Optional[str] = None
    setting_text: Optional[str] = None
    setting_confidence: float = 0.0
    time_context_text: Optional[str] = None


@dataclass
class SceneMetadata:
    pov_mode: str = "unknown"
    pov_entity_id: Optional[str] = None
    pov_confidence: float = 0.0
    setting_entity_id: Optional[str] = None
    setting_text: Optional[str] = None
    setting_confidence: float = 0.0
    time_context_text: Optional[str] = None


@dataclass
class SceneEntityLink:
    entity_id: str
    role: str
    confidence: float


@dataclass
class StyleMetricRecord:
    project_id: str
    scope_type: str
    scope_id: str
    metric_name: str
    metric_json: str


@dataclass
class ProcessingStateRecord:
    """Resumability ledger row, one per (document, stage)."""

    document_id: str
    snapshot_id: str
    stage: str
    status: str
    error: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class EventRecord:
    id: str
    project_id: str
    ts: str
    level: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestResult:
    document_id: str
    snapshot_id: str
    snapshot_created: bool
    chunks_created: int = 0
    chunks_updated: int = 0
    chunks_deleted: int = 0
    change_start: Optional[int] = None
    change_end: Optional[int] = None


@dataclass
class StageResult:
    ok: bool = True
    skipped: bool = False
    touched_entity_ids: List[str] = field(default_factory=list)
