"""SQLite persistence for projects, chunks, entities, claims, issues, and style metrics."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .normalize import normalize_alias
from .schemas import (
    ChunkRecord,
    ChunkSpan,
    ClaimRecord,
    DocumentRecord,
    EntityRecord,
    EventRecord,
    EvidenceSpan,
    IssueRecord,
    ProcessingStateRecord,
    ProjectRecord,
    SceneEntityLink,
    SceneInsert,
    SceneMetadata,
    SceneRecord,
    SnapshotRecord,
    StyleMetricRecord,
)


logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS project (
        id TEXT PRIMARY KEY,
        root_path TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS document (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES project(id) ON DELETE CASCADE,
        path TEXT NOT NULL,
        kind TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT NOT NULL DEFAULT (datetime('now')),
        UNIQUE(project_id, path)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS document_snapshot (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL REFERENCES document(id) ON DELETE CASCADE,
        version INTEGER NOT NULL,
        full_text TEXT NOT NULL,
        full_text_hash TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        UNIQUE(document_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chunk (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL REFERENCES document(id) ON DELETE CASCADE,
        ordinal INTEGER NOT NULL,
        text TEXT NOT NULL,
        text_hash TEXT NOT NULL,
        start_char INTEGER NOT NULL,
        end_char INTEGER NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entity (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES project(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        display_name TEXT NOT NULL,
        canonical_name TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entity_alias (
        id TEXT PRIMARY KEY,
        entity_id TEXT NOT NULL REFERENCES entity(id) ON DELETE CASCADE,
        alias TEXT NOT NULL,
        alias_norm TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        UNIQUE(entity_id, alias_norm)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS claim (
        id TEXT PRIMARY KEY,
        entity_id TEXT NOT NULL REFERENCES entity(id) ON DELETE CASCADE,
        field TEXT NOT NULL,
        value_json TEXT NOT NULL,
        status TEXT NOT NULL,
        confidence REAL NOT NULL,
        supersedes_claim_id TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS claim_evidence (
        id TEXT PRIMARY KEY,
        claim_id TEXT NOT NULL REFERENCES claim(id) ON DELETE CASCADE,
        chunk_id TEXT NOT NULL REFERENCES chunk(id) ON DELETE CASCADE,
        quote_start INTEGER NOT NULL,
        quote_end INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS issue (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES project(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        severity TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'open',
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS issue_evidence (
        id TEXT PRIMARY KEY,
        issue_id TEXT NOT NULL REFERENCES issue(id) ON DELETE CASCADE,
        chunk_id TEXT NOT NULL REFERENCES chunk(id) ON DELETE CASCADE,
        quote_start INTEGER NOT NULL,
        quote_end INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scene (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES project(id) ON DELETE CASCADE,
        document_id TEXT NOT NULL REFERENCES document(id) ON DELETE CASCADE,
        ordinal INTEGER NOT NULL,
        start_chunk_id TEXT NOT NULL,
        end_chunk_id TEXT NOT NULL,
        start_char INTEGER NOT NULL,
        end_char INTEGER NOT NULL,
        title TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scene_metadata (
        scene_id TEXT PRIMARY KEY REFERENCES scene(id) ON DELETE CASCADE,
        pov_mode TEXT NOT NULL DEFAULT 'unknown',
        pov_entity_id TEXT,
        pov_confidence REAL NOT NULL DEFAULT 0,
        setting_entity_id TEXT,
        setting_text TEXT,
        setting_confidence REAL NOT NULL DEFAULT 0,
        time_context_text TEXT,
        updated_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scene_entity (
        id TEXT PRIMARY KEY,
        scene_id TEXT NOT NULL REFERENCES scene(id) ON DELETE CASCADE,
        entity_id TEXT NOT NULL REFERENCES entity(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        confidence REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scene_evidence (
        id TEXT PRIMARY KEY,
        scene_id TEXT NOT NULL REFERENCES scene(id) ON DELETE CASCADE,
        chunk_id TEXT NOT NULL REFERENCES chunk(id) ON DELETE CASCADE,
        quote_start INTEGER NOT NULL,
        quote_end INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS style_metric (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES project(id) ON DELETE CASCADE,
        scope_type TEXT NOT NULL,
        scope_id TEXT NOT NULL,
        metric_name TEXT NOT NULL,
        metric_json TEXT NOT NULL,
        updated_at TEXT NOT NULL DEFAULT (datetime('now')),
        UNIQUE(project_id, scope_type, scope_id, metric_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS document_processing_state (
        document_id TEXT NOT NULL REFERENCES document(id) ON DELETE CASCADE,
        snapshot_id TEXT NOT NULL,
        stage TEXT NOT NULL,
        status TEXT NOT NULL,
        error TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY(document_id, stage)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS event_log (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        ts TEXT NOT NULL,
        level TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_chunk_document ON chunk(document_id, ordinal)",
    "CREATE INDEX IF NOT EXISTS idx_entity_project ON entity(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_alias_norm ON entity_alias(alias_norm)",
    "CREATE INDEX IF NOT EXISTS idx_claim_entity_field ON claim(entity_id, field)",
    "CREATE INDEX IF NOT EXISTS idx_claim_evidence_claim ON claim_evidence(claim_id)",
    "CREATE INDEX IF NOT EXISTS idx_claim_evidence_chunk ON claim_evidence(chunk_id)",
    "CREATE INDEX IF NOT EXISTS idx_issue_project_type ON issue(project_id, type)",
    "CREATE INDEX IF NOT EXISTS idx_issue_evidence_chunk ON issue_evidence(chunk_id)",
    "CREATE INDEX IF NOT EXISTS idx_scene_document ON scene(document_id, ordinal)",
    "CREATE INDEX IF NOT EXISTS idx_event_project ON event_log(project_id)",
]

SCENE_COLUMNS = (
    "s.id, s.project_id, s.document_id, s.ordinal, s.start_chunk_id, s.end_chunk_id, "
    "s.start_char, s.end_char, s.title, m.pov_mode, m.pov_entity_id, m.pov_confidence, "
    "m.setting_entity_id, m.setting_text, m.setting_confidence, m.time_context_text"
)


def _new_id() -> str:
    return str(uuid.uuid4())


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


def _chunk_from_row(row: sqlite3.Row) -> ChunkRecord:
    return ChunkRecord(
        id=row["id"],
        document_id=row["document_id"],
        ordinal=int(row["ordinal"]),
        text=row["text"],
        text_hash=row["text_hash"],
        start_char=int(row["start_char"]),
        end_char=int(row["end_char"]),
    )


def _entity_from_row(row: sqlite3.Row) -> EntityRecord:
    return EntityRecord(
        id=row["id"],
        project_id=row["project_id"],
        type=row["type"],
        display_name=row["display_name"],
        canonical_name=row["canonical_name"],
    )


def _claim_from_row(row: sqlite3.Row) -> ClaimRecord:
    return ClaimRecord(
        id=row["id"],
        entity_id=row["entity_id"],
        field=row["field"],
        value_json=row["value_json"],
        status=row["status"],
        confidence=float(row["confidence"]),
        supersedes_claim_id=row["supersedes_claim_id"],
    )


def _scene_from_row(row: sqlite3.Row) -> SceneRecord:
    return SceneRecord(
        id=row["id"],
        project_id=row["project_id"],
        document_id=row["document_id"],
        ordinal=int(row["ordinal"]),
        start_chunk_id=row["start_chunk_id"],
        end_chunk_id=row["end_chunk_id"],
        start_char=int(row["start_char"]),
        end_char=int(row["end_char"]),
        title=row["title"],
        pov_mode=row["pov_mode"] or "unknown",
        pov_entity_id=row["pov_entity_id"],
        pov_confidence=float(row["pov_confidence"] or 0.0),
        setting_entity_id=row["setting_entity_id"],
        setting_text=row["setting_text"],
        setting_confidence=float(row["setting_confidence"] or 0.0),
        time_context_text=row["time_context_text"],
    )


class SQLiteStore:
    """Persists the incremental pipeline's state.

    Every write commits immediately unless it runs inside
    :meth:`transaction`, which commits once on exit or rolls back on error.
    """

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._tx_depth = 0
        self._init_schema()

    def _init_schema(self) -> None:
        for statement in SCHEMA:
            self.conn.execute(statement)
        for statement in INDEXES:
            self.conn.execute(statement)
        self.conn.commit()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator["SQLiteStore"]:
        """Group several writes into one atomic commit. Nested use joins the outer one."""
        self._tx_depth += 1
        try:
            yield self
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.conn.rollback()
            raise
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self.conn.commit()

    # Projects and documents

    def get_or_create_project(self, root_path: str, name: str) -> ProjectRecord:
        row = self.conn.execute(
            "SELECT id, root_path, name FROM project WHERE root_path = ?",
            (root_path,),
        ).fetchone()
        if row:
            return ProjectRecord(id=row["id"], root_path=row["root_path"], name=row["name"])
        project = ProjectRecord(id=_new_id(), root_path=root_path, name=name)
        self.conn.execute(
            "INSERT INTO project (id, root_path, name) VALUES (?, ?, ?)",
            (project.id, project.root_path, project.name),
        )
        self._commit()
        return project

    def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        row = self.conn.execute(
            "SELECT id, root_path, name FROM project WHERE id = ?",
            (project_id,),
        ).fetchone()
        if not row:
            return None
        return ProjectRecord(id=row["id"], root_path=row["root_path"], name=row["name"])

    def get_document_by_path(self, project_id: str, path: str) -> Optional[DocumentRecord]:
        row = self.conn.execute(
            "SELECT id, project_id, path, kind FROM document WHERE project_id = ? AND path = ?",
            (project_id, path),
        ).fetchone()
        if not row:
            return None
        return DocumentRecord(id=row["id"], project_id=row["project_id"], path=row["path"], kind=row["kind"])

    def create_document(self, project_id: str, path: str, kind: str) -> DocumentRecord:
        document = DocumentRecord(id=_new_id(), project_id=project_id, path=path, kind=kind)
        self.conn.execute(
            "INSERT INTO document (id, project_id, path, kind) VALUES (?, ?, ?, ?)",
            (document.id, project_id, path, kind),
        )
        self._commit()
        return document

    def touch_document(self, document_id: str) -> None:
        self.conn.execute(
            "UPDATE document SET updated_at = datetime('now') WHERE id = ?",
            (document_id,),
        )
        self._commit()

    def list_documents(self, project_id: str) -> List[DocumentRecord]:
        rows = self.conn.execute(
            "SELECT id, project_id, path, kind FROM document WHERE project_id = ? ORDER BY rowid",
            (project_id,),
        ).fetchall()
        return [
            DocumentRecord(id=row["id"], project_id=row["project_id"], path=row["path"], kind=row["kind"])
            for row in rows
        ]

    # Snapshots

    def get_latest_snapshot(self, document_id: str) -> Optional[SnapshotRecord]:
        row = self.conn.execute(
            """
            SELECT id, document_id, version, full_text, full_text_hash
            FROM document_snapshot
            WHERE document_id = ?
            ORDER BY version DESC
            LIMIT 1
            """,
            (document_id,),
        ).fetchone()
        if not row:
            return None
        return SnapshotRecord(
            id=row["id"],
            document_id=row["document_id"],
            version=int(row["version"]),
            full_text=row["full_text"],
            full_text_hash=row["full_text_hash"],
        )

    def insert_snapshot(self, document_id: str, full_text: str, full_text_hash: str) -> SnapshotRecord:
        row = self.conn.execute(
            "SELECT MAX(version) AS max_version FROM document_snapshot WHERE document_id = ?",
            (document_id,),
        ).fetchone()
        version = int(row["max_version"] or 0) + 1
        snapshot = SnapshotRecord(
            id=_new_id(),
            document_id=document_id,
            version=version,
            full_text=full_text,
            full_text_hash=full_text_hash,
        )
        self.conn.execute(
            """
            INSERT INTO document_snapshot (id, document_id, version, full_text, full_text_hash)
            VALUES (?, ?, ?, ?, ?)
            """,
            (snapshot.id, document_id, version, full_text, full_text_hash),
        )
        self._commit()
        return snapshot

    # Chunks

    def list_chunks_for_document(self, document_id: str) -> List[ChunkRecord]:
        rows = self.conn.execute(
            """
            SELECT id, document_id, ordinal, text, text_hash, start_char, end_char
            FROM chunk WHERE document_id = ? ORDER BY ordinal
            """,
            (document_id,),
        ).fetchall()
        return [_chunk_from_row(row) for row in rows]

    def list_chunks_for_project(self, project_id: str) -> List[ChunkRecord]:
        rows = self.conn.execute(
            """
            SELECT c.id, c.document_id, c.ordinal, c.text, c.text_hash, c.start_char, c.end_char
            FROM chunk c
            JOIN document d ON d.id = c.document_id
            WHERE d.project_id = ?
            ORDER BY d.rowid, c.ordinal
            """,
            (project_id,),
        ).fetchall()
        return [_chunk_from_row(row) for row in rows]

    def get_chunks_by_ids(self, ids: Sequence[str]) -> Dict[str, ChunkRecord]:
        if not ids:
            return {}
        rows = self.conn.execute(
            f"""
            SELECT id, document_id, ordinal, text, text_hash, start_char, end_char
            FROM chunk WHERE id IN ({_placeholders(ids)})
            """,
            list(ids),
        ).fetchall()
        return {row["id"]: _chunk_from_row(row) for row in rows}

    def insert_chunks(self, document_id: str, chunks: Sequence[ChunkSpan]) -> List[ChunkRecord]:
        records = [
            ChunkRecord(
                id=_new_id(),
                document_id=document_id,
                ordinal=chunk.ordinal,
                text=chunk.text,
                text_hash=chunk.text_hash,
                start_char=chunk.start,
                end_char=chunk.end,
            )
            for chunk in chunks
        ]
        if not records:
            return records
        self.conn.executemany(
            """
            INSERT INTO chunk (id, document_id, ordinal, text, text_hash, start_char, end_char)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (r.id, r.document_id, r.ordinal, r.text, r.text_hash, r.start_char, r.end_char)
                for r in records
            ],
        )
        self._commit()
        return records

    def update_chunk(self, chunk_id: str, chunk: ChunkSpan) -> None:
        self.conn.execute(
            """
            UPDATE chunk
            SET ordinal = ?, text = ?, text_hash = ?, start_char = ?, end_char = ?,
                updated_at = datetime('now')
            WHERE id = ?
            """,
            (chunk.ordinal, chunk.text, chunk.text_hash, chunk.start, chunk.end, chunk_id),
        )
        self._commit()

    def delete_chunks_by_ids(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        self.conn.execute(f"DELETE FROM chunk WHERE id IN ({_placeholders(ids)})", list(ids))
        self._commit()

    # Entities and aliases

    def list_entities(self, project_id: str, entity_type: Optional[str] = None) -> List[EntityRecord]:
        if entity_type:
            rows = self.conn.execute(
                """
                SELECT id, project_id, type, display_name, canonical_name
                FROM entity WHERE project_id = ? AND type = ? ORDER BY display_name
                """,
                (project_id, entity_type),
            ).fetchall()
        else:
            rows = self.conn.execute(
                """
                SELECT id, project_id, type, display_name, canonical_name
                FROM entity WHERE project_id = ? ORDER BY display_name
                """,
                (project_id,),
            ).fetchall()
        return [_entity_from_row(row) for row in rows]

    def get_entity(self, entity_id: str) -> Optional[EntityRecord]:
        row = self.conn.execute(
            "SELECT id, project_id, type, display_name, canonical_name FROM entity WHERE id = ?",
            (entity_id,),
        ).fetchone()
        return _entity_from_row(row) if row else None

    def get_entity_by_alias(self, project_id: str, alias: str) -> Optional[EntityRecord]:
        alias_norm = normalize_alias(alias)
        if not alias_norm:
            return None
        row = self.conn.execute(
            """
            SELECT e.id, e.project_id, e.type, e.display_name, e.canonical_name
            FROM entity_alias a
            JOIN entity e ON e.id = a.entity_id
            WHERE e.project_id = ? AND a.alias_norm = ?
            ORDER BY e.rowid
            LIMIT 1
            """,
            (project_id, alias_norm),
        ).fetchone()
        return _entity_from_row(row) if row else None

    def create_entity(
        self,
        project_id: str,
        entity_type: str,
        display_name: str,
        canonical_name: Optional[str] = None,
    ) -> EntityRecord:
        entity = EntityRecord(
            id=_new_id(),
            project_id=project_id,
            type=entity_type,
            display_name=display_name,
            canonical_name=canonical_name,
        )
        self.conn.execute(
            """
            INSERT INTO entity (id, project_id, type, display_name, canonical_name)
            VALUES (?, ?, ?, ?, ?)
            """,
            (entity.id, project_id, entity_type, display_name, canonical_name),
        )
        self.add_alias(entity.id, display_name)
        self._commit()
        return entity

    def get_or_create_entity_by_name(
        self, project_id: str, name: str, entity_type: str = "character"
    ) -> EntityRecord:
        existing = self.get_entity_by_alias(project_id, name)
        if existing:
            return existing
        return self.create_entity(project_id, entity_type, name)

    def add_alias(self, entity_id: str, alias: str) -> None:
        alias_norm = normalize_alias(alias)
        if not alias_norm:
            return
        self.conn.execute(
            """
            INSERT OR IGNORE INTO entity_alias (id, entity_id, alias, alias_norm)
            VALUES (?, ?, ?, ?)
            """,
            (_new_id(), entity_id, alias, alias_norm),
        )
        self._commit()

    def list_aliases(self, entity_id: str) -> List[str]:
        rows = self.conn.execute(
            "SELECT alias FROM entity_alias WHERE entity_id = ? ORDER BY alias",
            (entity_id,),
        ).fetchall()
        return [row["alias"] for row in rows]

    def delete_entity_if_no_claims(self, entity_id: str) -> bool:
        row = self.conn.execute(
            "SELECT COUNT(*) AS n FROM claim WHERE entity_id = ?",
            (entity_id,),
        ).fetchone()
        if row and int(row["n"]) > 0:
            return False
        self.conn.execute("DELETE FROM entity_alias WHERE entity_id = ?", (entity_id,))
        cursor = self.conn.execute("DELETE FROM entity WHERE id = ?", (entity_id,))
        self._commit()
        return cursor.rowcount > 0

    # Claims

    def insert_claim(
        self,
        entity_id: str,
        field: str,
        value_json: str,
        status: str = "inferred",
        confidence: float = 0.5,
        supersedes_claim_id: Optional[str] = None,
    ) -> ClaimRecord:
        claim = ClaimRecord(
            id=_new_id(),
            entity_id=entity_id,
            field=field,
            value_json=value_json,
            status=status,
            confidence=float(confidence),
            supersedes_claim_id=supersedes_claim_id,
        )
        self.conn.execute(
            """
            INSERT INTO claim (id, entity_id, field, value_json, status, confidence, supersedes_claim_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (claim.id, entity_id, field, value_json, status, claim.confidence, supersedes_claim_id),
        )
        self._commit()
        return claim

    def insert_claim_evidence(self, claim_id: str, evidence: EvidenceSpan) -> None:
        self.conn.execute(
            """
            INSERT INTO claim_evidence (id, claim_id, chunk_id, quote_start, quote_end)
            VALUES (?, ?, ?, ?, ?)
            """,
            (_new_id(), claim_id, evidence.chunk_id, evidence.quote_start, evidence.quote_end),
        )
        self._commit()

    def list_claims_by_field(self, entity_id: str, field: str) -> List[ClaimRecord]:
        rows = self.conn.execute(
            """
            SELECT id, entity_id, field, value_json, status, confidence, supersedes_claim_id
            FROM claim WHERE entity_id = ? AND field = ? ORDER BY rowid
            """,
            (entity_id, field),
        ).fetchall()
        return [_claim_from_row(row) for row in rows]

    def list_claims_for_entity(self, entity_id: str) -> List[ClaimRecord]:
        rows = self.conn.execute(
            """
            SELECT id, entity_id, field, value_json, status, confidence, supersedes_claim_id
            FROM claim WHERE entity_id = ? ORDER BY rowid
            """,
            (entity_id,),
        ).fetchall()
        return [_claim_from_row(row) for row in rows]

    def update_claim_status(self, claim_id: str, status: str) -> None:
        self.conn.execute("UPDATE claim SET status = ? WHERE id = ?", (status, claim_id))
        self._commit()

    def list_evidence_for_claim(self, claim_id: str) -> List[EvidenceSpan]:
        rows = self.conn.execute(
            """
            SELECT chunk_id, quote_start, quote_end
            FROM claim_evidence WHERE claim_id = ? ORDER BY rowid
            """,
            (claim_id,),
        ).fetchall()
        return [
            EvidenceSpan(chunk_id=row["chunk_id"], quote_start=int(row["quote_start"]), quote_end=int(row["quote_end"]))
            for row in rows
        ]

    def list_evidence_chunk_ids_for_entities(self, entity_ids: Sequence[str]) -> List[str]:
        if not entity_ids:
            return []
        rows = self.conn.execute(
            f"""
            SELECT DISTINCT ce.chunk_id
            FROM claim c
            JOIN claim_evidence ce ON ce.claim_id = c.id
            WHERE c.entity_id IN ({_placeholders(entity_ids)})
            """,
            list(entity_ids),
        ).fetchall()
        return [row["chunk_id"] for row in rows]

    # Issues

    def insert_issue(
        self,
        project_id: str,
        issue_type: str,
        severity: str,
        title: str,
        description: str,
        status: str = "open",
    ) -> IssueRecord:
        issue = IssueRecord(
            id=_new_id(),
            project_id=project_id,
            type=issue_type,
            severity=severity,
            title=title,
            description=description,
            status=status,
        )
        self.conn.execute(
            """
            INSERT INTO issue (id, project_id, type, severity, title, description, status)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (issue.id, project_id, issue_type, severity, title, description, status),
        )
        self._commit()
        return issue

    def insert_issue_evidence(self, issue_id: str, evidence: EvidenceSpan) -> None:
        self.conn.execute(
            """
            INSERT INTO issue_evidence (id, issue_id, chunk_id, quote_start, quote_end)
            VALUES (?, ?, ?, ?, ?)
            """,
            (_new_id(), issue_id, evidence.chunk_id, evidence.quote_start, evidence.quote_end),
        )
        self._commit()

    def list_issues_with_evidence(
        self, project_id: str, issue_type: Optional[str] = None
    ) -> List[IssueRecord]:
        where = "WHERE project_id = ?"
        params: List[Any] = [project_id]
        if issue_type:
            where += " AND type = ?"
            params.append(issue_type)
        rows = self.conn.execute(
            f"""
            SELECT id, project_id, type, severity, title, description, status
            FROM issue {where} ORDER BY rowid
            """,
            params,
        ).fetchall()
        issues = [
            IssueRecord(
                id=row["id"],
                project_id=row["project_id"],
                type=row["type"],
                severity=row["severity"],
                title=row["title"],
                description=row["description"],
                status=row["status"],
            )
            for row in rows
        ]
        if not issues:
            return issues

        by_id = {issue.id: issue for issue in issues}
        ids = list(by_id)
        evidence_rows = self.conn.execute(
            f"""
            SELECT issue_id, chunk_id, quote_start, quote_end
            FROM issue_evidence WHERE issue_id IN ({_placeholders(ids)}) ORDER BY rowid
            """,
            ids,
        ).fetchall()
        for row in evidence_rows:
            by_id[row["issue_id"]].evidence.append(
                EvidenceSpan(
                    chunk_id=row["chunk_id"],
                    quote_start=int(row["quote_start"]),
                    quote_end=int(row["quote_end"]),
                )
            )
        return issues

    def _delete_issues_by_ids(self, issue_ids: Sequence[str]) -> None:
        if not issue_ids:
            return
        marks = _placeholders(issue_ids)
        self.conn.execute(f"DELETE FROM issue_evidence WHERE issue_id IN ({marks})", list(issue_ids))
        self.conn.execute(f"DELETE FROM issue WHERE id IN ({marks})", list(issue_ids))
        self._commit()

    def clear_issues_by_type(self, project_id: str, issue_type: str) -> None:
        rows = self.conn.execute(
            "SELECT id FROM issue WHERE project_id = ? AND type = ?",
            (project_id, issue_type),
        ).fetchall()
        self._delete_issues_by_ids([row["id"] for row in rows])

    def delete_issues_by_type_and_chunk_ids(
        self, project_id: str, issue_type: str, chunk_ids: Sequence[str]
    ) -> None:
        if not chunk_ids:
            return
        rows = self.conn.execute(
            f"""
            SELECT DISTINCT i.id
            FROM issue i
            JOIN issue_evidence e ON e.issue_id = i.id
            WHERE i.project_id = ? AND i.type = ? AND e.chunk_id IN ({_placeholders(chunk_ids)})
            """,
            [project_id, issue_type, *chunk_ids],
        ).fetchall()
        self._delete_issues_by_ids([row["id"] for row in rows])

    def delete_issues_by_type_and_document(
        self, project_id: str, issue_type: str, document_id: str
    ) -> None:
        rows = self.conn.execute(
            """
            SELECT DISTINCT i.id
            FROM issue i
            JOIN issue_evidence e ON e.issue_id = i.id
            JOIN chunk c ON c.id = e.chunk_id
            WHERE i.project_id = ? AND i.type = ? AND c.document_id = ?
            """,
            (project_id, issue_type, document_id),
        ).fetchall()
        self._delete_issues_by_ids([row["id"] for row in rows])

    # Scenes

    def replace_scenes_for_document(
        self, document_id: str, scenes: Sequence[SceneInsert]
    ) -> List[SceneRecord]:
        rows = self.conn.execute("SELECT id FROM scene WHERE document_id = ?", (document_id,)).fetchall()
        old_ids = [row["id"] for row in rows]
        if old_ids:
            marks = _placeholders(old_ids)
            self.conn.execute(f"DELETE FROM scene_entity WHERE scene_id IN ({marks})", old_ids)
            self.conn.execute(f"DELETE FROM scene_metadata WHERE scene_id IN ({marks})", old_ids)
            self.conn.execute(f"DELETE FROM scene_evidence WHERE scene_id IN ({marks})", old_ids)
            self.conn.execute(f"DELETE FROM scene WHERE id IN ({marks})", old_ids)
            self.conn.execute(
                f"DELETE FROM style_metric WHERE scope_type = 'scene' AND scope_id IN ({marks})", old_ids
            )

        records: List[SceneRecord] = []
        for scene in scenes:
            record = SceneRecord(
                id=_new_id(),
                project_id=scene.project_id,
                document_id=scene.document_id,
                ordinal=scene.ordinal,
                start_chunk_id=scene.start_chunk_id,
                end_chunk_id=scene.end_chunk_id,
                start_char=scene.start_char,
                end_char=scene.end_char,
                title=scene.title,
            )
            self.conn.execute(
                """
                INSERT INTO scene (
                    id, project_id, document_id, ordinal, start_chunk_id, end_chunk_id,
                    start_char, end_char, title
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.project_id,
                    record.document_id,
                    record.ordinal,
                    record.start_chunk_id,
                    record.end_chunk_id,
                    record.start_char,
                    record.end_char,
                    record.title,
                ),
            )
            self.conn.execute("INSERT INTO scene_metadata (scene_id) VALUES (?)", (record.id,))
            records.append(record)
        self._commit()
        return records

    def list_scenes_for_document(self, document_id: str) -> List[SceneRecord]:
        rows = self.conn.execute(
            f"""
            SELECT {SCENE_COLUMNS}
            FROM scene s LEFT JOIN scene_metadata m ON m.scene_id = s.id
            WHERE s.document_id = ? ORDER BY s.ordinal
            """,
            (document_id,),
        ).fetchall()
        return [_scene_from_row(row) for row in rows]

    def list_scenes_for_project(self, project_id: str) -> List[SceneRecord]:
        rows = self.conn.execute(
            f"""
            SELECT {SCENE_COLUMNS}
            FROM scene s
            JOIN document d ON d.id = s.document_id
            LEFT JOIN scene_metadata m ON m.scene_id = s.id
            WHERE s.project_id = ?
            ORDER BY d.rowid, s.ordinal
            """,
            (project_id,),
        ).fetchall()
        return [_scene_from_row(row) for row in rows]

    def update_scene_metadata(self, scene_id: str, metadata: SceneMetadata) -> None:
        self.conn.execute(
            """
            UPDATE scene_metadata
            SET pov_mode = ?, pov_entity_id = ?, pov_confidence = ?, setting_entity_id = ?,
                setting_text = ?, setting_confidence = ?, time_context_text = ?,
                updated_at = datetime('now')
            WHERE scene_id = ?
            """,
            (
                metadata.pov_mode,
                metadata.pov_entity_id,
                metadata.pov_confidence,
                metadata.setting_entity_id,
                metadata.setting_text,
                metadata.setting_confidence,
                metadata.time_context_text,
                scene_id,
            ),
        )
        self._commit()

    def replace_scene_entities(self, scene_id: str, links: Sequence[SceneEntityLink]) -> None:
        self.conn.execute("DELETE FROM scene_entity WHERE scene_id = ?", (scene_id,))
        self.conn.executemany(
            "INSERT INTO scene_entity (id, scene_id, entity_id, role, confidence) VALUES (?, ?, ?, ?, ?)",
            [(_new_id(), scene_id, link.entity_id, link.role, link.confidence) for link in links],
        )
        self._commit()

    def list_scene_entities(self, scene_id: str) -> List[SceneEntityLink]:
        rows = self.conn.execute(
            "SELECT entity_id, role, confidence FROM scene_entity WHERE scene_id = ? ORDER BY rowid",
            (scene_id,),
        ).fetchall()
        return [
            SceneEntityLink(entity_id=row["entity_id"], role=row["role"], confidence=float(row["confidence"]))
            for row in rows
        ]

    def insert_scene_evidence(self, scene_id: str, evidence: EvidenceSpan) -> None:
        self.conn.execute(
            """
            INSERT INTO scene_evidence (id, scene_id, chunk_id, quote_start, quote_end)
            VALUES (?, ?, ?, ?, ?)
            """,
            (_new_id(), scene_id, evidence.chunk_id, evidence.quote_start, evidence.quote_end),
        )
        self._commit()

    def list_scene_evidence(self, scene_id: str) -> List[EvidenceSpan]:
        rows = self.conn.execute(
            "SELECT chunk_id, quote_start, quote_end FROM scene_evidence WHERE scene_id = ? ORDER BY rowid",
            (scene_id,),
        ).fetchall()
        return [
            EvidenceSpan(chunk_id=row["chunk_id"], quote_start=int(row["quote_start"]), quote_end=int(row["quote_end"]))
            for row in rows
        ]

    def delete_scene_evidence_for_scene(self, scene_id: str) -> None:
        self.conn.execute("DELETE FROM scene_evidence WHERE scene_id = ?", (scene_id,))
        self._commit()

    # Style metrics

    def replace_style_metric(self, metric: StyleMetricRecord) -> None:
        self.conn.execute(
            """
            DELETE FROM style_metric
            WHERE project_id = ? AND scope_type = ? AND scope_id = ? AND metric_name = ?
            """,
            (metric.project_id, metric.scope_type, metric.scope_id, metric.metric_name),
        )
        self.conn.execute(
            """
            INSERT INTO style_metric (id, project_id, scope_type, scope_id, metric_name, metric_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                _new_id(),
                metric.project_id,
                metric.scope_type,
                metric.scope_id,
                metric.metric_name,
                metric.metric_json,
            ),
        )
        self._commit()

    def list_style_metrics(
        self,
        project_id: str,
        scope_type: Optional[str] = None,
        scope_id: Optional[str] = None,
        metric_name: Optional[str] = None,
    ) -> List[StyleMetricRecord]:
        where = ["project_id = ?"]
        params: List[Any] = [project_id]
        for column, value in (("scope_type", scope_type), ("scope_id", scope_id), ("metric_name", metric_name)):
            if value:
                where.append(f"{column} = ?")
                params.append(value)
        rows = self.conn.execute(
            f"""
            SELECT project_id, scope_type, scope_id, metric_name, metric_json
            FROM style_metric WHERE {' AND '.join(where)} ORDER BY rowid
            """,
            params,
        ).fetchall()
        return [
            StyleMetricRecord(
                project_id=row["project_id"],
                scope_type=row["scope_type"],
                scope_id=row["scope_id"],
                metric_name=row["metric_name"],
                metric_json=row["metric_json"],
            )
            for row in rows
        ]

    def delete_style_metrics_by_name(
        self, project_id: str, metric_name: str, scope_type: Optional[str] = None
    ) -> None:
        if scope_type:
            self.conn.execute(
                "DELETE FROM style_metric WHERE project_id = ? AND scope_type = ? AND metric_name = ?",
                (project_id, scope_type, metric_name),
            )
        else:
            self.conn.execute(
                "DELETE FROM style_metric WHERE project_id = ? AND metric_name = ?",
                (project_id, metric_name),
            )
        self._commit()

    # Processing state

    def get_processing_state(self, document_id: str, stage: str) -> Optional[ProcessingStateRecord]:
        row = self.conn.execute(
            """
            SELECT document_id, snapshot_id, stage, status, error, updated_at
            FROM document_processing_state WHERE document_id = ? AND stage = ?
            """,
            (document_id, stage),
        ).fetchone()
        if not row:
            return None
        return ProcessingStateRecord(
            document_id=row["document_id"],
            snapshot_id=row["snapshot_id"],
            stage=row["stage"],
            status=row["status"],
            error=row["error"],
            updated_at=row["updated_at"],
        )

    def upsert_processing_state(
        self,
        document_id: str,
        snapshot_id: str,
        stage: str,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO document_processing_state (document_id, snapshot_id, stage, status, error, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(document_id, stage) DO UPDATE SET
                snapshot_id=excluded.snapshot_id,
                status=excluded.status,
                error=excluded.error,
                updated_at=excluded.updated_at
            """,
            (document_id, snapshot_id, stage, status, error, _now_iso()),
        )
        self._commit()

    # Event log

    def log_event(
        self,
        project_id: str,
        level: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO event_log (id, project_id, ts, level, event_type, payload_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (_new_id(), project_id, _now_iso(), level, event_type, json.dumps(payload or {})),
        )
        self._commit()

    def list_events(
        self, project_id: str, event_type: Optional[str] = None, limit: int = 100
    ) -> List[EventRecord]:
        where = "WHERE project_id = ?"
        params: List[Any] = [project_id]
        if event_type:
            where += " AND event_type = ?"
            params.append(event_type)
        params.append(max(1, limit))
        rows = self.conn.execute(
            f"""
            SELECT id, project_id, ts, level, event_type, payload_json
            FROM event_log {where} ORDER BY rowid DESC LIMIT ?
            """,
            params,
        ).fetchall()
        return [
            EventRecord(
                id=row["id"],
                project_id=row["project_id"],
                ts=row["ts"],
                level=row["level"],
                event_type=row["event_type"],
                payload=json.loads(row["payload_json"]),
            )
            for row in rows
        ]

    def count(self, table: str) -> int:
        if table not in _COUNTABLE_TABLES:
            raise ValueError(f"Unknown table: {table}")
        row = self.conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
        return int(row["n"]) if row else 0

    def close(self) -> None:
        self.conn.close()


_COUNTABLE_TABLES: Tuple[str, ...] = (
    "project",
    "document",
    "document_snapshot",
    "chunk",
    "entity",
    "entity_alias",
    "claim",
    "claim_evidence",
    "issue",
    "issue_evidence",
    "scene",
    "scene_entity",
    "scene_evidence",
    "style_metric",
    "event_log",
)
