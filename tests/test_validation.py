"""Schema validation and the validate-and-retry loop."""

import pytest

from conftest import FakeProvider
from continuity_engine.errors import LLMValidationFailure
from continuity_engine.prompts import EXTRACTION_SCHEMA, SCENE_META_SCHEMA
from continuity_engine.providers import JsonRequest
from continuity_engine.validation import collect_schema_errors, complete_json_with_retry, validate_json

VALID = {"schemaVersion": "1.0", "entities": [], "claims": [], "suggestedMerges": []}


def _request():
    return JsonRequest(
        schema_name="extraction",
        system_prompt="system",
        user_prompt="user",
        json_schema=EXTRACTION_SCHEMA,
    )


def test_errors_carry_instance_paths():
    data = dict(VALID, entities=[{"tempId": "a", "type": "character", "displayName": "Mara"}])

    errors = collect_schema_errors(EXTRACTION_SCHEMA, data)

    assert [error.field_path for error in errors] == ["/entities/0"]
    assert "aliases" in errors[0].message


def test_unknown_keys_and_wrong_version_are_rejected():
    errors = validate_json(EXTRACTION_SCHEMA, dict(VALID, schemaVersion="2.0", extra=True))
    assert len(errors) == 2


def test_scene_meta_enum():
    payload = {
        "schemaVersion": "1.0",
        "povMode": "second",
        "povName": None,
        "povConfidence": 0.5,
        "settingName": None,
        "settingText": None,
        "settingConfidence": 0.0,
        "timeContextText": None,
        "evidence": [],
    }
    assert [e.field_path for e in collect_schema_errors(SCENE_META_SCHEMA, payload)] == ["/povMode"]


class TestCompleteJsonWithRetry:
    def test_retries_until_valid(self):
        provider = FakeProvider([{"schemaVersion": "1.0"}, VALID])

        completion = complete_json_with_retry(provider, _request(), max_retries=2)

        assert completion.json == VALID
        assert len(provider.requests) == 2

    def test_aggregates_last_errors(self):
        provider = FakeProvider([{"schemaVersion": "1.0"}])

        with pytest.raises(LLMValidationFailure) as excinfo:
            complete_json_with_retry(provider, _request(), max_retries=2)

        assert excinfo.value.attempts == 3
        assert len(provider.requests) == 3
        assert any("entities" in message for message in excinfo.value.last_errors)

    def test_zero_retries_means_one_attempt(self):
        provider = FakeProvider([{}])

        with pytest.raises(LLMValidationFailure) as excinfo:
            complete_json_with_retry(provider, _request(), max_retries=0)

        assert excinfo.value.attempts == 1
