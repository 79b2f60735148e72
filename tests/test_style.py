"""Repetition, tone drift, dialogue tics and the style metric cache."""

import json

import numpy as np
import pytest

from conftest import chunk_spans
from continuity_engine.config import RepetitionThreshold, StyleConfig
from continuity_engine.errors import StaleMetricCache
from continuity_engine.scenes import build_scenes_from_chunks
from continuity_engine.schemas import ChunkRecord, SceneRecord, StyleMetricRecord
from continuity_engine.style import StyleAnalyzer
from continuity_engine.style.cache import (
    decode_dialogue_tallies,
    decode_ngram_counts,
    decode_tone_vector,
    encode_dialogue_tallies,
    encode_ngram_counts,
    encode_tone_metric,
)
from continuity_engine.style.dialogue import (
    SpeakerTally,
    compute_dialogue_tics,
    extract_dialogue_lines,
    find_speaker,
    merge_dialogue_tics,
    pick_dialogue_issues,
)
from continuity_engine.style.repetition import (
    build_repetition_report,
    compute_repetition_counts,
    merge_counts,
    merge_repetition_counts,
)
from continuity_engine.style.tone import (
    compute_tone_baseline,
    compute_tone_metric,
    compute_tone_vector,
)
from continuity_engine.style.utils import DEFAULT_STOPWORDS, resolve_stopwords, tokenize


def _chunk(chunk_id: str, text: str, ordinal: int = 0) -> ChunkRecord:
    return ChunkRecord(
        id=chunk_id,
        document_id="doc",
        ordinal=ordinal,
        text=text,
        text_hash=chunk_id,
        start_char=0,
        end_char=len(text),
    )


def _scene(scene_id: str, chunk: ChunkRecord) -> SceneRecord:
    return SceneRecord(
        id=scene_id,
        project_id="project",
        document_id=chunk.document_id,
        ordinal=0,
        start_chunk_id=chunk.id,
        end_chunk_id=chunk.id,
        start_char=chunk.start_char,
        end_char=chunk.end_char,
    )


class TestTokenize:
    def test_strips_punctuation_and_stopwords(self):
        assert tokenize("The Stormblade's edge—bright!") == ["stormblade's", "edge", "bright"]

    def test_custom_stopwords(self):
        assert resolve_stopwords(["Foo", " "]) == frozenset(["foo"])
        assert resolve_stopwords([]) is DEFAULT_STOPWORDS
        assert resolve_stopwords("default") is DEFAULT_STOPWORDS

    def test_unknown_stopwords_setting(self):
        with pytest.raises(ValueError):
            resolve_stopwords("english")


class TestRepetition:
    """Counting, thresholds and the commutative merge."""

    def test_project_threshold_is_inclusive(self):
        thresholds = RepetitionThreshold(project_count=12, scene_count=3)
        twelve = compute_repetition_counts([_chunk("c0", "lantern " * 12)], [])
        eleven = compute_repetition_counts([_chunk("c0", "lantern " * 11)], [])

        report = build_repetition_report(twelve, thresholds)

        assert [entry["ngram"] for entry in report.metric["top"]] == ["lantern"]
        assert report.issues[0].count == 12
        assert report.issues[0].title == 'Repetition detected: "lantern"'
        assert (report.issues[0].evidence.quote_start, report.issues[0].evidence.quote_end) == (0, 7)
        assert build_repetition_report(eleven, thresholds).metric["top"] == []

    def test_scene_threshold(self):
        chunk = _chunk("c0", "ember ember ember")
        counts = compute_repetition_counts([chunk], [_scene("s1", chunk)])

        report = build_repetition_report(counts, RepetitionThreshold(project_count=12, scene_count=3))

        assert report.metric["top"] == [
            {
                "ngram": "ember",
                "n": 1,
                "count": 3,
                "byScene": [{"sceneId": "s1", "count": 3}],
                "examples": [{"chunkId": "c0", "quoteStart": 0, "quoteEnd": 5}],
            }
        ]

    def test_merge_is_commutative_and_pure(self):
        a = compute_repetition_counts([_chunk("c0", "storm lantern")], [])
        b = compute_repetition_counts([_chunk("c1", "lantern glow")], [])
        a_before, b_before = dict(a), dict(b)

        ab = merge_counts(a, b)
        ba = merge_counts(b, a)

        assert dict(ab) == dict(ba)
        assert ab["lantern"].count == 2
        assert ab["lantern"].example.chunk_id == "c0"
        assert dict(a) == a_before and dict(b) == b_before
        assert dict(merge_repetition_counts([a, b])) == dict(ab)

    def test_stopwords_are_ignored(self):
        counts = compute_repetition_counts([_chunk("c0", "the the the lantern")], [])
        assert "the" not in counts


class TestTone:
    def test_vector_features(self):
        vector = compute_tone_vector('"Hi," she said.')

        assert vector.shape == (6,)
        assert vector[2] == pytest.approx(2 / 15)

    def test_empty_text_is_finite(self):
        assert np.all(np.isfinite(compute_tone_vector("")))

    def test_zero_std_becomes_one(self):
        baseline = compute_tone_baseline([np.zeros(6), np.zeros(6)])

        assert np.array_equal(baseline.std, np.ones(6))
        metric = compute_tone_metric("s1", np.array([3.0, 0, 0, 0, 0, 0]), baseline)
        assert metric.drift_score == pytest.approx(3.0)
        assert metric.drifted

    def test_baseline_scene_does_not_drift(self):
        vector = compute_tone_vector("Calm water. Soft light over the hills.")
        metric = compute_tone_metric("s1", vector, compute_tone_baseline([vector]))

        assert metric.drift_score == 0.0
        assert not metric.drifted

    def test_empty_baseline(self):
        baseline = compute_tone_baseline([])
        assert np.array_equal(baseline.mean, np.zeros(6))
        assert np.array_equal(baseline.std, np.ones(6))


class TestDialogue:
    """Speaker attribution and tic detection."""

    TICS = '"Well, I suppose so," said Mara. "Well, I suppose not," said Mara. "Well, I suppose maybe," said Mara.'

    def test_starter_tic(self):
        lines = extract_dialogue_lines([_chunk("c0", self.TICS)])
        tallies = compute_dialogue_tics(lines)

        assert [line.speaker for line in lines] == ["Mara", "Mara", "Mara"]
        assert tallies[0].starters[0] == ("well, i suppose", 3)
        issues = pick_dialogue_issues(tallies)
        assert len(issues) == 1
        assert issues[0].title == "Dialogue tic: Mara"
        assert issues[0].description == 'Starter phrase "well, i suppose" repeats 3 times.'
        assert len(issues[0].evidence) == 3

    def test_curly_quotes(self):
        lines = extract_dialogue_lines([_chunk("c0", "“Look here,” said Tomas.")])

        assert [(line.text, line.speaker) for line in lines] == [("Look here,", "Tomas")]

    def test_unattributed_line(self):
        lines = extract_dialogue_lines([_chunk("c0", '"Who goes there?"')])
        assert lines[0].speaker is None
        assert compute_dialogue_tics(lines) == ()

    def test_speaker_is_inherited_across_a_short_gap(self):
        text = 'Mara said, "' + "on and " * 30 + '" "Go."'
        lines = extract_dialogue_lines([_chunk("c0", text)])

        assert [line.speaker for line in lines] == ["Mara", "Mara"]

    def test_known_speakers_are_preferred(self):
        text = 'Tomas said nothing. "Run," said Mara.'
        start = text.index('"Run,"')
        end = start + len('"Run,"')

        assert find_speaker(text, start, end) == "Mara"
        assert find_speaker(text, start, end, {"tomas"}) == "Tomas"

    def test_merge_by_normalized_speaker(self):
        first = SpeakerTally("Mara", 2, starters=(("well i", 2),))
        second = SpeakerTally("MARA", 1, starters=(("oh no", 1), ("well i", 1)))

        merged = merge_dialogue_tics([(first,), (second,)])

        assert len(merged) == 1
        assert merged[0].speaker == "Mara"
        assert merged[0].total_lines == 3
        assert merged[0].starters == (("well i", 3), ("oh no", 1))

    def test_filler_tic_below_starter_threshold(self):
        tally = SpeakerTally("Kael", 3, starters=(("look", 2),), fillers=(("look", 3),))
        issues = pick_dialogue_issues([tally])

        assert issues[0].description == 'Filler "look" repeats 3 times.'
        assert pick_dialogue_issues([SpeakerTally("Kael", 2, fillers=(("look", 2),))]) == []


class TestMetricCache:
    def test_unreadable_payloads_are_stale(self):
        with pytest.raises(StaleMetricCache):
            decode_ngram_counts("not json")
        with pytest.raises(StaleMetricCache):
            decode_ngram_counts(json.dumps({"kind": "ngram_counts", "version": 0, "counts": {}}))
        with pytest.raises(StaleMetricCache):
            decode_ngram_counts(json.dumps({"kind": "tone_vector", "version": 1}))
        with pytest.raises(StaleMetricCache):
            decode_dialogue_tallies(json.dumps({"kind": "dialogue_tallies", "version": 1, "speakers": [{}]}))

    def test_decoded_values_match(self):
        counts = compute_repetition_counts([_chunk("c0", "storm lantern storm")], [])
        assert dict(decode_ngram_counts(encode_ngram_counts(counts))) == dict(counts)

        vector = compute_tone_vector("Dark storm. Cold fear.")
        metric = compute_tone_metric("s1", vector, compute_tone_baseline([vector]))
        assert np.allclose(decode_tone_vector(encode_tone_metric(metric)), vector)

        tallies = compute_dialogue_tics(extract_dialogue_lines([_chunk("c0", TestDialogue.TICS)]))
        assert decode_dialogue_tallies(encode_dialogue_tallies(tallies)) == tallies


def _add_document(store, project, tmp_path, name, texts):
    document = store.create_document(project.id, str(tmp_path / name), "md")
    chunks = store.insert_chunks(document.id, chunk_spans(texts))
    store.replace_scenes_for_document(document.id, build_scenes_from_chunks(project.id, document.id, chunks))
    return document


class TestStyleAnalyzer:
    """Store-backed runs across documents."""

    def test_rerun_does_not_duplicate(self, store, project, tmp_path):
        _add_document(store, project, tmp_path, "a.md", ["# One\nlantern lantern lantern glow"])
        _add_document(store, project, tmp_path, "b.md", [TestDialogue.TICS])
        analyzer = StyleAnalyzer(store)

        first = analyzer.run(project.id)
        issues_after_first = store.count("issue")
        metrics_after_first = store.count("style_metric")
        analyzer.run(project.id)

        assert first.repetition_issues >= 1
        assert first.dialogue_issues == 1
        assert store.count("issue") == issues_after_first
        assert store.count("style_metric") == metrics_after_first

    def test_dialogue_speakers_become_entities(self, store, project, tmp_path):
        _add_document(store, project, tmp_path, "a.md", [TestDialogue.TICS])

        StyleAnalyzer(store).run(project.id)

        mara = store.get_entity_by_alias(project.id, "Mara")
        assert mara is not None and mara.type == "character"
        metrics = store.list_style_metrics(project.id, "entity", mara.id, "dialogue_tics")
        assert json.loads(metrics[0].metric_json)["totalLines"] == 3

    def test_stale_cache_is_recomputed(self, store, project, tmp_path):
        doc_a = _add_document(store, project, tmp_path, "a.md", ["Quiet morning."])
        doc_b = _add_document(store, project, tmp_path, "b.md", ["lantern " * 12])
        analyzer = StyleAnalyzer(store, StyleConfig())
        analyzer.run(project.id)
        store.replace_style_metric(
            StyleMetricRecord(
                project_id=project.id,
                scope_type="document",
                scope_id=doc_b.id,
                metric_name="ngram_freq",
                metric_json='{"kind": "ngram_counts", "version": 0}',
            )
        )

        summary = analyzer.run(project.id, doc_a.id)

        rows = store.list_style_metrics(project.id, "document", doc_b.id, "ngram_freq")
        assert decode_ngram_counts(rows[0].metric_json)["lantern"].count == 12
        assert summary.repetition_issues >= 1

    def test_document_run_reuses_cached_scene_vectors(self, store, project, tmp_path):
        doc_a = _add_document(store, project, tmp_path, "a.md", ["Calm water and soft light."])
        doc_b = _add_document(store, project, tmp_path, "b.md", ["Dark storm, cold fear; grim blood."])
        analyzer = StyleAnalyzer(store, StyleConfig(tone_baseline_scenes=1))
        analyzer.run(project.id)
        scene_a = store.list_scenes_for_document(doc_a.id)[0]
        cached_a = store.list_style_metrics(project.id, "scene", scene_a.id, "tone_vector")[0].metric_json

        summary = analyzer.run(project.id, doc_b.id)

        assert summary.scenes_scored == 1
        assert store.list_style_metrics(project.id, "scene", scene_a.id, "tone_vector")[0].metric_json == cached_a
