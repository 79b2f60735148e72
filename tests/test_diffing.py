"""Prefix/suffix hash diffing."""

from typing import List, Sequence

from continuity_engine.diffing import diff_by_hash, expand_range, match_lengths
from continuity_engine.schemas import ChunkRecord, ChunkSpan


def _records(hashes: Sequence[str]) -> List[ChunkRecord]:
    return [
        ChunkRecord(id=f"c{i}", document_id="doc", ordinal=i, text=h, text_hash=h, start_char=0, end_char=0)
        for i, h in enumerate(hashes)
    ]


def _spans(hashes: Sequence[str]) -> List[ChunkSpan]:
    return [ChunkSpan(ordinal=i, start=0, end=0, text=h, text_hash=h) for i, h in enumerate(hashes)]


class TestDiffByHash:
    def test_middle_edit(self):
        diff = diff_by_hash(_records(["h1", "h2", "h3", "h4"]), _spans(["h1", "hx", "h3", "h4"]))

        assert (diff.prefix, diff.suffix) == (1, 2)
        assert diff.deletes == ["c1"]
        assert [chunk.text_hash for chunk in diff.inserts] == ["hx"]
        assert sorted(chunk_id for chunk_id, _ in diff.updates) == ["c0", "c2", "c3"]
        assert diff.change_range == (1, 1)
        assert diff.extraction_range() == (0, 2)

    def test_insert_keeps_existing_ids(self):
        diff = diff_by_hash(_records(["h1", "h2", "h4"]), _spans(["h1", "h2", "h3", "h4"]))

        assert (diff.prefix, diff.suffix) == (2, 1)
        assert diff.deletes == []
        assert [chunk.text_hash for chunk in diff.inserts] == ["h3"]
        updated = dict(diff.updates)
        assert updated["c2"].ordinal == 3
        assert diff.change_range == (2, 2)

    def test_identical_has_no_change(self):
        diff = diff_by_hash(_records(["a", "b"]), _spans(["a", "b"]))

        assert diff.change_range is None
        assert diff.extraction_range() is None
        assert diff.inserts == [] and diff.deletes == []

    def test_nothing_shared(self):
        diff = diff_by_hash(_records(["a", "b"]), _spans(["x", "y", "z"]))

        assert (diff.prefix, diff.suffix) == (0, 0)
        assert diff.deletes == ["c0", "c1"]
        assert diff.change_range == (0, 2)

    def test_deleting_everything(self):
        diff = diff_by_hash(_records(["a", "b"]), [])

        assert diff.deletes == ["c0", "c1"]
        assert diff.change_range is None


def test_match_lengths_do_not_overlap():
    prefix, suffix = match_lengths(["a", "a"], ["a", "a", "a"])
    assert prefix == 2
    assert suffix == 0


def test_expand_range_clamps():
    assert expand_range((0, 4), 5) == (0, 4)
    assert expand_range((2, 2), 5) == (1, 3)
    assert expand_range(None, 5) is None
    assert expand_range((0, 0), 0) is None
