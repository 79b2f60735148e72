"""Snapshot-keyed stage execution."""

import pytest

from continuity_engine.errors import StageFailure
from continuity_engine.ingest import DocumentIngestor
from continuity_engine.stages import (
    PipelineContext,
    StageRunner,
    run_continuity_stage,
    run_extraction_stage,
    run_scene_stage,
    run_style_stage,
)

MANUSCRIPT = "# Chapter One\n\nMara's eyes were green.\n\nLater, Mara's eyes were blue.\n"


@pytest.fixture
def ingested(store, project, write_file, tmp_path):
    path = write_file("ch1.md", MANUSCRIPT)
    return DocumentIngestor(store).ingest(project.id, str(tmp_path), str(path))


@pytest.fixture
def make_ctx(store, project, ingested, tmp_path):
    def _make(**overrides):
        values = dict(
            store=store,
            project_id=project.id,
            document_id=ingested.document_id,
            snapshot_id=ingested.snapshot_id,
            root_path=str(tmp_path),
            change_start=ingested.change_start,
            change_end=ingested.change_end,
        )
        values.update(overrides)
        return PipelineContext(**values)

    return _make


class TestStageRunner:
    """Skip rules and failure recording."""

    def test_runs_once_per_snapshot(self, store, make_ctx):
        ctx = make_ctx()
        calls = []

        def body():
            calls.append(1)
            return ["entity-1"]

        first = StageRunner(store).run("style", ctx, body)
        second = StageRunner(store).run("style", ctx, body)

        assert (first.ok, first.skipped, first.touched_entity_ids) == (True, False, ["entity-1"])
        assert (second.ok, second.skipped) == (True, True)
        assert len(calls) == 1
        assert store.get_processing_state(ctx.document_id, "style").status == "ok"

    def test_failure_is_recorded_and_chained(self, store, project, make_ctx):
        ctx = make_ctx()

        def body():
            raise ValueError("boom")

        with pytest.raises(StageFailure) as excinfo:
            StageRunner(store).run("style", ctx, body)

        assert excinfo.value.stage == "style"
        assert isinstance(excinfo.value.__cause__, ValueError)
        state = store.get_processing_state(ctx.document_id, "style")
        assert (state.status, state.error) == ("failed", "boom")
        events = store.list_events(project.id, "stage_failed")
        assert events[0].payload == {"stage": "style", "documentId": ctx.document_id, "message": "boom"}

        retried = StageRunner(store).run("style", ctx, lambda: None)
        assert retried.skipped is False
        assert store.get_processing_state(ctx.document_id, "style").status == "ok"

    def test_superseded_snapshot_is_skipped(self, store, make_ctx):
        ctx = make_ctx(snapshot_id="an-older-snapshot")

        def body():
            raise AssertionError("must not run")

        result = StageRunner(store).run("scenes", ctx, body)

        assert result.skipped is True
        assert store.get_processing_state(ctx.document_id, "scenes") is None


class TestStages:
    def test_scene_stage_is_idempotent(self, store, make_ctx):
        ctx = make_ctx()

        assert run_scene_stage(ctx).skipped is False
        assert run_scene_stage(ctx).skipped is True
        scenes = store.list_scenes_for_document(ctx.document_id)
        assert [scene.title for scene in scenes] == ["Chapter One"]

    def test_style_stage_records_metrics(self, store, project, make_ctx):
        ctx = make_ctx()
        run_scene_stage(ctx)

        run_style_stage(ctx)

        assert store.list_style_metrics(project.id, "document", ctx.document_id, "ngram_freq")
        assert store.list_style_metrics(project.id, "project", project.id, "ngram_freq")

    def test_extraction_then_continuity(self, store, project, make_ctx):
        ctx = make_ctx()

        extraction = run_extraction_stage(ctx)
        ctx.entity_ids = list(extraction.touched_entity_ids)
        continuity = run_continuity_stage(ctx)

        mara = store.get_entity_by_alias(project.id, "Mara")
        assert extraction.touched_entity_ids == [mara.id]
        assert continuity.touched_entity_ids == [mara.id]
        issues = store.list_issues_with_evidence(project.id, "continuity")
        assert [issue.severity for issue in issues] == ["medium"]
        assert issues[0].title == "Did Mara's eye_color change from green to blue?"

    def test_extraction_without_change_range_scans_whole_document(self, store, project, make_ctx):
        ctx = make_ctx(change_start=None, change_end=None)

        result = run_extraction_stage(ctx)

        mara = store.get_entity_by_alias(project.id, "Mara")
        assert result.skipped is False
        assert result.touched_entity_ids == [mara.id]
        assert store.count("claim") == 2

    def test_extraction_ok_for_older_snapshot_scans_whole_document(self, store, make_ctx):
        ctx = make_ctx(change_start=None, change_end=None)
        store.upsert_processing_state(ctx.document_id, "an-older-snapshot", "extraction", "ok")

        result = run_extraction_stage(ctx)

        assert len(result.touched_entity_ids) == 1
        assert store.count("claim") == 2
        assert store.get_processing_state(ctx.document_id, "extraction").snapshot_id == ctx.snapshot_id

    def test_unfinished_extraction_retries_whole_document(self, store, project, make_ctx):
        ctx = make_ctx(change_start=None, change_end=None)
        store.upsert_processing_state(ctx.document_id, "an-older-snapshot", "extraction", "failed", "timeout")

        result = run_extraction_stage(ctx)

        assert len(result.touched_entity_ids) == 1
        assert store.count("claim") == 2
