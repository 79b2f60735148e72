"""Snapshot-keyed stage execution and the per-stage entry points."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .config import AppConfig
from .continuity import ContinuityChecker
from .diffing import expand_range
from .errors import StageFailure
from .extraction import ExtractionEngine
from .providers import LLMProvider
from .scenes import SceneMetadataAnalyzer, build_scenes_from_chunks
from .schemas import StageResult
from .storage import SQLiteStore
from .style.runner import StyleAnalyzer


logger = logging.getLogger(__name__)

StageBody = Callable[[], Optional[List[str]]]


@dataclass
class PipelineContext:
    """Everything a stage needs: collaborators plus the snapshot being processed."""

    store: SQLiteStore
    project_id: str
    document_id: str
    snapshot_id: str
    root_path: str
    config: AppConfig = field(default_factory=AppConfig)
    provider: Optional[LLMProvider] = None
    change_start: Optional[int] = None
    change_end: Optional[int] = None
    entity_ids: List[str] = field(default_factory=list)

    @property
    def change_range(self) -> Optional[Tuple[int, int]]:
        if self.change_start is None or self.change_end is None:
            return None
        return (self.change_start, self.change_end)


class StageRunner:
    """Runs a stage body at most once per snapshot and records the outcome.

    A call is skipped when the document has moved on to a newer snapshot, or
    when the stage already finished ``ok`` for this snapshot. Otherwise the
    state goes ``pending`` -> ``ok``, or ``failed`` with the error, in which
    case a ``stage_failed`` event is logged and :class:`StageFailure` raised.
    """

    def __init__(self, store: SQLiteStore):
        self.store = store

    def run(self, stage: str, ctx: PipelineContext, body: StageBody) -> StageResult:
        latest = self.store.get_latest_snapshot(ctx.document_id)
        if latest is None or latest.id != ctx.snapshot_id:
            logger.debug("Skipping %s for %s: snapshot superseded", stage, ctx.document_id)
            return StageResult(ok=True, skipped=True)

        state = self.store.get_processing_state(ctx.document_id, stage)
        if state is not None and state.snapshot_id == ctx.snapshot_id and state.status == "ok":
            logger.debug("Skipping %s for %s: already ok", stage, ctx.document_id)
            return StageResult(ok=True, skipped=True)

        self.store.upsert_processing_state(ctx.document_id, ctx.snapshot_id, stage, "pending")
        try:
            touched = body() or []
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            self.store.upsert_processing_state(ctx.document_id, ctx.snapshot_id, stage, "failed", message)
            self.store.log_event(
                ctx.project_id,
                "error",
                "stage_failed",
                {"stage": stage, "documentId": ctx.document_id, "message": message},
            )
            logger.error("Stage %s failed for document %s: %s", stage, ctx.document_id, message)
            raise StageFailure(stage, message) from exc

        self.store.upsert_processing_state(ctx.document_id, ctx.snapshot_id, stage, "ok")
        return StageResult(ok=True, touched_entity_ids=list(touched))


def run_scene_stage(ctx: PipelineContext) -> StageResult:
    def body() -> None:
        chunks = ctx.store.list_chunks_for_document(ctx.document_id)
        scenes = build_scenes_from_chunks(ctx.project_id, ctx.document_id, chunks)
        ctx.store.replace_scenes_for_document(ctx.document_id, scenes)
        SceneMetadataAnalyzer(ctx.store, ctx.provider, ctx.config.llm.max_retries).run(
            ctx.project_id, ctx.document_id
        )

    return StageRunner(ctx.store).run("scenes", ctx, body)


def run_style_stage(ctx: PipelineContext) -> StageResult:
    def body() -> None:
        StyleAnalyzer(ctx.store, ctx.config.style).run(ctx.project_id, ctx.document_id)

    return StageRunner(ctx.store).run("style", ctx, body)


def _extraction_scope(ctx: PipelineContext, total: int) -> Optional[Tuple[int, int]]:
    """Chunk ordinals to extract from.

    The diff range is only known to the run that applied it. When a later run
    resumes a snapshot whose ingest already finished, extraction has never
    completed for it (otherwise the runner skips), so the whole document is
    scanned. Claims already stored are not duplicated.
    """
    if ctx.change_range is not None:
        return expand_range(ctx.change_range, total)
    if total == 0:
        return None
    previous = ctx.store.get_processing_state(ctx.document_id, "extraction")
    if previous is not None and previous.snapshot_id == ctx.snapshot_id and previous.status == "ok":
        return None
    return (0, total - 1)


def run_extraction_stage(ctx: PipelineContext) -> StageResult:
    chunks = ctx.store.list_chunks_for_document(ctx.document_id)
    scope = _extraction_scope(ctx, len(chunks))

    def body() -> List[str]:
        if scope is None:
            return []
        start, end = scope
        in_scope = [chunk for chunk in chunks if start <= chunk.ordinal <= end]
        engine = ExtractionEngine(
            ctx.store,
            ctx.provider,
            project_name=ctx.config.project_name,
            max_retries=ctx.config.llm.max_retries,
        )
        return engine.run(ctx.project_id, in_scope).touched_entity_ids

    return StageRunner(ctx.store).run("extraction", ctx, body)


def run_continuity_stage(ctx: PipelineContext) -> StageResult:
    def body() -> List[str]:
        ContinuityChecker(ctx.store).run(ctx.project_id, ctx.entity_ids or None)
        return list(ctx.entity_ids)

    return StageRunner(ctx.store).run("continuity", ctx, body)
