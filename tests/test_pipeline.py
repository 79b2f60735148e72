"""End-to-end runs through ContinuityPipeline with no language model."""

import pytest

from continuity_engine import AppConfig, ContinuityPipeline
from continuity_engine.errors import StageFailure, UnsupportedDocumentKind

MANUSCRIPT = """# Chapter One

Mara's eyes were green. She watched the harbour.

"Well, I suppose so," said Mara. "Well, I suppose not," said Mara. "Well, I suppose maybe," said Mara.

Later, Mara's eyes were blue.
"""

ALL_STAGES = ["scenes", "style", "extraction", "continuity"]


@pytest.fixture
def pipeline(tmp_path):
    config = AppConfig.from_dict(
        {"project_name": "Harbour", "paths": {"sqlite_path": "state/engine.db"}}, base_dir=tmp_path
    )
    engine = ContinuityPipeline(config)
    yield engine
    engine.close()


class TestContinuityPipeline:
    """Full ingest-to-issues runs and reruns."""

    def test_first_run_reports_issues(self, pipeline, write_file, tmp_path):
        path = write_file("ch1.md", MANUSCRIPT)

        stats = pipeline.process_document(str(tmp_path), str(path))

        assert (tmp_path / "state" / "engine.db").is_file()
        assert stats["snapshot_created"] is True
        assert stats["chunks_created"] == 1
        assert stats["stages_skipped"] == []
        assert stats["entities_touched"] == 1
        project_id = stats["project_id"]
        continuity = pipeline.list_issues(project_id, "continuity")
        assert [issue.title for issue in continuity] == ["Did Mara's eye_color change from green to blue?"]
        assert [issue.title for issue in pipeline.list_issues(project_id, "dialogue_tic")] == ["Dialogue tic: Mara"]
        assert stats["open_issues"] == len(pipeline.list_issues(project_id))

    def test_rerun_skips_every_stage(self, pipeline, write_file, tmp_path):
        path = write_file("ch1.md", MANUSCRIPT)
        first = pipeline.process_document(str(tmp_path), str(path))

        second = pipeline.process_document(str(tmp_path), str(path))

        assert second["snapshot_created"] is False
        assert second["snapshot_id"] == first["snapshot_id"]
        assert second["stages_skipped"] == ALL_STAGES
        assert second["open_issues"] == first["open_issues"]

    def test_edit_reruns_stages(self, pipeline, write_file, tmp_path):
        path = write_file("ch1.md", MANUSCRIPT)
        first = pipeline.process_document(str(tmp_path), str(path))

        write_file("ch1.md", MANUSCRIPT.replace("harbour", "lighthouse"))
        second = pipeline.process_document(str(tmp_path), str(path))

        assert second["snapshot_created"] is True
        assert second["snapshot_id"] != first["snapshot_id"]
        assert second["stages_skipped"] == []
        assert pipeline.store.count("document_snapshot") == 2

    def test_stage_failure_stops_the_run(self, pipeline, write_file, tmp_path, monkeypatch):
        path = write_file("ch1.md", MANUSCRIPT)

        def explode(*args, **kwargs):
            raise RuntimeError("style exploded")

        monkeypatch.setattr("continuity_engine.style.runner.StyleAnalyzer.run", explode)

        with pytest.raises(StageFailure) as excinfo:
            pipeline.process_document(str(tmp_path), str(path))

        assert excinfo.value.stage == "style"
        document = pipeline.store.list_documents(pipeline.store.get_or_create_project(str(tmp_path), "Harbour").id)[0]
        assert pipeline.store.get_processing_state(document.id, "scenes").status == "ok"
        assert pipeline.store.get_processing_state(document.id, "style").status == "failed"
        assert pipeline.store.get_processing_state(document.id, "extraction") is None

    def test_unsupported_file(self, pipeline, write_file, tmp_path):
        path = write_file("notes.rtf", "{\\rtf1 hello}")

        with pytest.raises(UnsupportedDocumentKind):
            pipeline.process_document(str(tmp_path), str(path))


class TestResumeAfterIngestOnly:
    """Ingest finished but no downstream stage ran for the snapshot."""

    EYES = "Mara's eyes were green.\n\nLater, Mara's eyes were blue.\n"

    def _ingest_only(self, pipeline, root, path):
        project = pipeline.store.get_or_create_project(root, "Harbour")
        return pipeline.ingestor.ingest(project.id, root, str(path))

    def _assert_conflict(self, pipeline, stats):
        assert pipeline.store.count("claim") == 2
        titles = [issue.title for issue in pipeline.list_issues(stats["project_id"], "continuity")]
        assert titles == ["Did Mara's eye_color change from green to blue?"]

    def test_first_ingest(self, pipeline, write_file, tmp_path):
        path = write_file("ch1.md", self.EYES)
        self._ingest_only(pipeline, str(tmp_path), path)

        stats = pipeline.process_document(str(tmp_path), str(path))

        assert stats["snapshot_created"] is False
        assert stats["stages_skipped"] == []
        self._assert_conflict(pipeline, stats)

    def test_after_edit(self, pipeline, write_file, tmp_path):
        path = write_file("ch1.md", "Mara's eyes were green.\n")
        pipeline.process_document(str(tmp_path), str(path))
        write_file("ch1.md", self.EYES)
        self._ingest_only(pipeline, str(tmp_path), path)

        stats = pipeline.process_document(str(tmp_path), str(path))

        assert stats["stages_skipped"] == []
        self._assert_conflict(pipeline, stats)

    def test_edit_without_interruption(self, pipeline, write_file, tmp_path):
        path = write_file("ch1.md", "Mara's eyes were green.\n")
        pipeline.process_document(str(tmp_path), str(path))
        write_file("ch1.md", self.EYES)

        stats = pipeline.process_document(str(tmp_path), str(path))

        self._assert_conflict(pipeline, stats)
