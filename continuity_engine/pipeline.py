"""Orchestration layer: ingest a document, then run every downstream stage."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import AppConfig
from .ingest import DocumentIngestor
from .providers import LLMProvider, NullProvider
from .schemas import IssueRecord
from .stages import (
    PipelineContext,
    run_continuity_stage,
    run_extraction_stage,
    run_scene_stage,
    run_style_stage,
)
from .storage import SQLiteStore


logger = logging.getLogger(__name__)


class ContinuityPipeline:
    """High-level pipeline composed of small snapshot-keyed stages."""

    def __init__(
        self,
        config: AppConfig,
        provider: Optional[LLMProvider] = None,
        store: Optional[SQLiteStore] = None,
    ):
        self.config = config
        if store is None:
            Path(config.paths.sqlite_path).parent.mkdir(parents=True, exist_ok=True)
            store = SQLiteStore(config.paths.sqlite_path)
        self.store = store
        self.provider = provider or NullProvider()
        self.ingestor = DocumentIngestor(self.store, config.chunking)

    def process_document(self, root_path: str, file_path: str) -> Dict[str, Any]:
        """Run ingest -> scenes -> style -> extraction -> continuity.

        The first failing stage raises :class:`~continuity_engine.errors.StageFailure`
        and later stages are not attempted.
        """
        project = self.store.get_or_create_project(root_path, self.config.project_name)
        ingest = self.ingestor.ingest(project.id, root_path, file_path)

        ctx = PipelineContext(
            store=self.store,
            project_id=project.id,
            document_id=ingest.document_id,
            snapshot_id=ingest.snapshot_id,
            root_path=root_path,
            config=self.config,
            provider=self.provider,
            change_start=ingest.change_start,
            change_end=ingest.change_end,
        )
        scenes = run_scene_stage(ctx)
        style = run_style_stage(ctx)
        extraction = run_extraction_stage(ctx)
        ctx.entity_ids = list(extraction.touched_entity_ids)
        continuity = run_continuity_stage(ctx)

        skipped = [
            name
            for name, result in (
                ("scenes", scenes),
                ("style", style),
                ("extraction", extraction),
                ("continuity", continuity),
            )
            if result.skipped
        ]
        logger.info(
            "Processed %s (snapshot %s): %d chunks created, %d updated, %d deleted",
            file_path,
            ingest.snapshot_id,
            ingest.chunks_created,
            ingest.chunks_updated,
            ingest.chunks_deleted,
        )
        return {
            "project_id": project.id,
            "document_id": ingest.document_id,
            "snapshot_id": ingest.snapshot_id,
            "snapshot_created": ingest.snapshot_created,
            "chunks_created": ingest.chunks_created,
            "chunks_updated": ingest.chunks_updated,
            "chunks_deleted": ingest.chunks_deleted,
            "entities_touched": len(ctx.entity_ids),
            "stages_skipped": skipped,
            "open_issues": len(self.list_issues(project.id)),
        }

    def list_issues(self, project_id: str, issue_type: Optional[str] = None) -> List[IssueRecord]:
        return [
            issue
            for issue in self.store.list_issues_with_evidence(project_id, issue_type)
            if issue.status == "open"
        ]

    def close(self) -> None:
        self.store.close()
