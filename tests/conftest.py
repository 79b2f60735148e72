"""Shared fixtures for the continuity engine test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, List, Sequence

import pytest

from continuity_engine.normalize import hash_text
from continuity_engine.providers import JsonCompletion, JsonRequest, LLMProvider
from continuity_engine.schemas import ChunkRecord, ChunkSpan, DocumentRecord, ProjectRecord
from continuity_engine.storage import SQLiteStore


class FakeProvider(LLMProvider):
    """Replays queued payloads; an ``Exception`` in the queue is raised instead."""

    name = "fake"

    def __init__(self, responses: Sequence[Any] = ()):
        self.responses: List[Any] = list(responses)
        self.requests: List[JsonRequest] = []

    def is_available(self) -> bool:
        return True

    def complete_json(self, request: JsonRequest) -> JsonCompletion:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"unexpected {request.schema_name} call")
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return JsonCompletion(json=item, raw_text=str(item))


def chunk_spans(texts: Sequence[str]) -> List[ChunkSpan]:
    """Lay ``texts`` end to end (two-char gap) as ordered chunk spans."""
    spans: List[ChunkSpan] = []
    offset = 0
    for ordinal, text in enumerate(texts):
        spans.append(ChunkSpan(ordinal, offset, offset + len(text), text, hash_text(text)))
        offset += len(text) + 2
    return spans


@pytest.fixture
def store(tmp_path: Path):
    """A fresh SQLite store in a temporary directory."""
    db = SQLiteStore(str(tmp_path / "engine.db"))
    yield db
    db.close()


@pytest.fixture
def project(store: SQLiteStore, tmp_path: Path) -> ProjectRecord:
    return store.get_or_create_project(str(tmp_path), "Test Manuscript")


@pytest.fixture
def document(store: SQLiteStore, project: ProjectRecord, tmp_path: Path) -> DocumentRecord:
    return store.create_document(project.id, str(tmp_path / "chapter-01.md"), "md")


@pytest.fixture
def make_chunks(store: SQLiteStore, document: DocumentRecord) -> Callable[..., List[ChunkRecord]]:
    """Insert chunk rows for ``document`` (or another document id) and return them."""

    def _make(texts: Sequence[str], document_id: str = "") -> List[ChunkRecord]:
        return store.insert_chunks(document_id or document.id, chunk_spans(texts))

    return _make


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write UTF-8 text under the temp dir and return the path."""

    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def fake_provider() -> Callable[..., FakeProvider]:
    def _make(*responses: Any) -> FakeProvider:
        return FakeProvider(responses)

    return _make
