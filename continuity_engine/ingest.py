"""Document loading, snapshotting, and incremental chunk replacement."""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path
from typing import Optional

import docx
from docx.opc.exceptions import PackageNotFoundError

from .chunking import TextChunker
from .config import ChunkingConfig
from .diffing import diff_by_hash
from .errors import DocumentExtractionFailure, DocumentNotFound, UnsupportedDocumentKind
from .normalize import hash_text, normalize_line_endings
from .schemas import DocumentRecord, IngestResult, SnapshotRecord
from .storage import SQLiteStore


logger = logging.getLogger(__name__)

STAGE = "ingest"

SUPPORTED_EXTENSIONS = {".md": "md", ".txt": "txt", ".docx": "docx"}


def detect_document_kind(file_path: str) -> str:
    suffix = Path(file_path).suffix.lower()
    kind = SUPPORTED_EXTENSIONS.get(suffix)
    if kind is None:
        raise UnsupportedDocumentKind(suffix)
    return kind


def _read_docx(path: Path) -> str:
    try:
        document = docx.Document(str(path))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
        raise DocumentExtractionFailure(str(path), str(exc)) from exc
    return "\n".join(paragraph.text for paragraph in document.paragraphs)


def extract_text(file_path: str, kind: str) -> str:
    """Return the raw text of a supported document."""
    path = Path(file_path)
    if kind == "docx":
        return _read_docx(path)
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise DocumentExtractionFailure(str(path), f"not valid UTF-8 ({exc.reason})") from exc


class DocumentIngestor:
    """Turns a file on disk into a snapshot plus a hash-diffed chunk set."""

    def __init__(self, store: SQLiteStore, chunking: Optional[ChunkingConfig] = None):
        self.store = store
        self.chunker = TextChunker(chunking)

    def ingest(self, project_id: str, root_path: str, file_path: str) -> IngestResult:
        path = Path(file_path)
        if not path.is_file():
            raise DocumentNotFound(str(path))

        kind = detect_document_kind(str(path))
        full_text = normalize_line_endings(extract_text(str(path), kind))
        full_text_hash = hash_text(full_text)

        stored_path = str(path.resolve())
        document = self.store.get_document_by_path(project_id, stored_path)
        if document is None:
            document = self.store.create_document(project_id, stored_path, kind)

        latest = self.store.get_latest_snapshot(document.id)
        if latest is not None and latest.full_text_hash == full_text_hash:
            state = self.store.get_processing_state(document.id, STAGE)
            if state is not None and state.snapshot_id == latest.id and state.status == "ok":
                logger.info("Unchanged document %s; snapshot v%d reused", stored_path, latest.version)
                return IngestResult(
                    document_id=document.id,
                    snapshot_id=latest.id,
                    snapshot_created=False,
                )
            logger.info("Resuming unfinished ingest of %s at snapshot v%d", stored_path, latest.version)
            return self._apply_chunks(project_id, document, latest, created=False)

        snapshot = self.store.insert_snapshot(document.id, full_text, full_text_hash)
        logger.info("Snapshot v%d created for %s", snapshot.version, stored_path)
        return self._apply_chunks(project_id, document, snapshot, created=True)

    def _apply_chunks(
        self,
        project_id: str,
        document: DocumentRecord,
        snapshot: SnapshotRecord,
        created: bool,
    ) -> IngestResult:
        self.store.upsert_processing_state(document.id, snapshot.id, STAGE, "pending")
        try:
            new_chunks = self.chunker.build_chunks(snapshot.full_text)
            existing = self.store.list_chunks_for_document(document.id)
            diff = diff_by_hash(existing, new_chunks)

            with self.store.transaction():
                self.store.delete_chunks_by_ids(diff.deletes)
                for chunk_id, chunk in diff.updates:
                    self.store.update_chunk(chunk_id, chunk)
                self.store.insert_chunks(document.id, diff.inserts)
                self.store.touch_document(document.id)

            if diff.prefix == 0 and diff.suffix == 0 and existing:
                logger.warning("No shared prefix or suffix for %s; all chunks replaced", document.path)
                self.store.log_event(
                    project_id,
                    "warn",
                    "ingest_full_reprocess",
                    {"documentId": document.id, "reason": "no_shared_prefix_or_suffix"},
                )

            self.store.upsert_processing_state(document.id, snapshot.id, STAGE, "ok")
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            self.store.upsert_processing_state(document.id, snapshot.id, STAGE, "failed", error=message)
            self.store.log_event(
                project_id,
                "error",
                "stage_failed",
                {"stage": STAGE, "documentId": document.id, "message": message},
            )
            logger.error("Ingest failed for %s: %s", document.path, message)
            raise

        change = diff.change_range
        logger.info(
            "Ingested %s: %d created, %d updated, %d deleted",
            document.path,
            len(diff.inserts),
            len(diff.updates),
            len(diff.deletes),
        )
        return IngestResult(
            document_id=document.id,
            snapshot_id=snapshot.id,
            snapshot_created=created,
            chunks_created=len(diff.inserts),
            chunks_updated=len(diff.updates),
            chunks_deleted=len(diff.deletes),
            change_start=change[0] if change else None,
            change_end=change[1] if change else None,
        )


def ingest_document(
    store: SQLiteStore,
    project_id: str,
    root_path: str,
    file_path: str,
    chunking: Optional[ChunkingConfig] = None,
) -> IngestResult:
    return DocumentIngestor(store, chunking).ingest(project_id, root_path, file_path)
