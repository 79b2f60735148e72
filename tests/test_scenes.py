"""Scene segmentation and scene metadata."""

from continuity_engine.errors import LLMRequestFailure
from continuity_engine.scenes import (
    SceneMetadataAnalyzer,
    build_scenes_from_chunks,
    find_sentence_span,
)


def _scene_meta(**overrides):
    payload = {
        "schemaVersion": "1.0",
        "povMode": "third_limited",
        "povName": "Mara",
        "povConfidence": 0.9,
        "settingName": None,
        "settingText": "the mill at dawn",
        "settingConfidence": 0.6,
        "timeContextText": "dawn",
        "evidence": [{"chunkOrdinal": 0, "quote": "Mara"}],
    }
    payload.update(overrides)
    return payload


def _single_scene(store, project, document, make_chunks, texts):
    chunks = make_chunks(texts)
    store.replace_scenes_for_document(document.id, build_scenes_from_chunks(project.id, document.id, chunks))
    return chunks, store.list_scenes_for_document(document.id)


class TestBuildScenes:
    def test_headings_and_breaks_start_scenes(self, make_chunks, project, document):
        chunks = make_chunks(["# Chapter One\nIt began.", "More of it.", "***\nLater that night.", "## Two"])

        scenes = build_scenes_from_chunks(project.id, document.id, chunks)

        assert [(s.start_chunk_id, s.end_chunk_id) for s in scenes] == [
            (chunks[0].id, chunks[1].id),
            (chunks[2].id, chunks[2].id),
            (chunks[3].id, chunks[3].id),
        ]
        assert [s.title for s in scenes] == ["Chapter One", None, "Two"]
        assert [s.ordinal for s in scenes] == [0, 1, 2]
        assert scenes[0].end_char == chunks[1].end_char

    def test_no_chunks_no_scenes(self, project, document):
        assert build_scenes_from_chunks(project.id, document.id, []) == []


def test_find_sentence_span_trims():
    text = "It rained.  I waited by the door.\nThen silence."
    span = find_sentence_span(text, text.index("I waited"))

    assert text[span.quote_start : span.quote_end] == "I waited by the door."


class TestSceneMetadataAnalyzer:
    """Heuristic POV/setting/cast and the optional LLM refinement."""

    def test_first_person_and_setting_phrase(self, store, project, document, make_chunks):
        chunks, _ = _single_scene(store, project, document, make_chunks, ["I stood in the old mill."])

        SceneMetadataAnalyzer(store).run(project.id, document.id)

        scene = store.list_scenes_for_document(document.id)[0]
        assert scene.pov_mode == "first"
        assert scene.pov_confidence == 0.7
        assert scene.setting_text == "in the old mill"
        assert scene.setting_confidence == 0.5
        spans = [chunks[0].text[e.quote_start : e.quote_end] for e in store.list_scene_evidence(scene.id)]
        assert spans == ["I stood in the old mill.", "in the old mill"]

    def test_known_location_and_cast(self, store, project, document, make_chunks):
        mill = store.create_entity(project.id, "location", "Old Mill")
        mara = store.create_entity(project.id, "character", "Mara")
        kael = store.create_entity(project.id, "character", "Kael")
        _single_scene(
            store, project, document, make_chunks, ["Mara reached the old mill. Mara waited for Kael."]
        )

        SceneMetadataAnalyzer(store).run(project.id, document.id)

        scene = store.list_scenes_for_document(document.id)[0]
        assert scene.pov_mode == "unknown"
        assert scene.setting_entity_id == mill.id
        assert scene.setting_text == "Old Mill"
        links = {link.entity_id: (link.role, link.confidence) for link in store.list_scene_entities(scene.id)}
        assert links == {
            mara.id: ("present", 0.6),
            kael.id: ("mentioned", 0.4),
            mill.id: ("setting", 0.7),
        }

    def test_llm_refinement_replaces_heuristics(self, store, project, document, make_chunks, fake_provider):
        mara = store.create_entity(project.id, "character", "Mara")
        _single_scene(store, project, document, make_chunks, ["Mara walked to the mill at dawn."])
        provider = fake_provider(_scene_meta())

        SceneMetadataAnalyzer(store, provider).run(project.id, document.id)

        scene = store.list_scenes_for_document(document.id)[0]
        assert scene.pov_mode == "third_limited"
        assert scene.pov_entity_id == mara.id
        assert scene.setting_text == "the mill at dawn"
        assert scene.time_context_text == "dawn"
        assert [(link.entity_id, link.role) for link in store.list_scene_entities(scene.id)] == [(mara.id, "present")]
        assert provider.requests[0].schema_name == "scene_meta"

    def test_llm_output_without_evidence_is_ignored(self, store, project, document, make_chunks, fake_provider):
        _single_scene(store, project, document, make_chunks, ["I walked alone."])
        provider = fake_provider(_scene_meta(evidence=[{"chunkOrdinal": 0, "quote": "not in the text"}]))

        SceneMetadataAnalyzer(store, provider).run(project.id, document.id)

        assert store.list_scenes_for_document(document.id)[0].pov_mode == "first"

    def test_llm_failure_keeps_heuristics(self, store, project, document, make_chunks, fake_provider):
        _single_scene(store, project, document, make_chunks, ["I walked alone."])
        provider = fake_provider(LLMRequestFailure(503, "unavailable"))

        SceneMetadataAnalyzer(store, provider).run(project.id, document.id)

        assert store.list_scenes_for_document(document.id)[0].pov_mode == "first"
        events = store.list_events(project.id, "scene_meta_failed")
        assert len(events) == 1 and events[0].level == "warn"
