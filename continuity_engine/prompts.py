"""Prompt pack and JSON schemas for structured LLM calls."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from .schemas import ENTITY_TYPES, POV_MODES


SCHEMA_VERSION = "1.0"

_EVIDENCE_REF = {
    "type": "object",
    "additionalProperties": False,
    "required": ["chunkOrdinal", "quote"],
    "properties": {
        "chunkOrdinal": {"type": "integer", "minimum": 0},
        "quote": {"type": "string", "minLength": 1},
    },
}

EXTRACTION_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "extraction",
    "type": "object",
    "additionalProperties": False,
    "required": ["schemaVersion", "entities", "claims", "suggestedMerges"],
    "properties": {
        "schemaVersion": {"const": SCHEMA_VERSION},
        "entities": {"type": "array", "items": {"$ref": "#/$defs/extractedEntity"}},
        "claims": {"type": "array", "items": {"$ref": "#/$defs/extractedClaim"}},
        "suggestedMerges": {"type": "array", "items": {"$ref": "#/$defs/suggestedMerge"}},
        "warnings": {"type": "array", "items": {"type": "string"}},
    },
    "$defs": {
        "extractedEntity": {
            "type": "object",
            "additionalProperties": False,
            "required": ["tempId", "type", "displayName", "aliases"],
            "properties": {
                "tempId": {"type": "string", "minLength": 1},
                "type": {"enum": list(ENTITY_TYPES)},
                "displayName": {"type": "string", "minLength": 1},
                "aliases": {"type": "array", "items": {"type": "string"}},
            },
        },
        "extractedClaim": {
            "type": "object",
            "additionalProperties": False,
            "required": ["entityTempId", "field", "value", "confidence", "evidence"],
            "properties": {
                "entityTempId": {"type": "string", "minLength": 1},
                "field": {"type": "string", "minLength": 1},
                "value": {},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "evidence": {"type": "array", "minItems": 1, "items": {"$ref": "#/$defs/evidenceRef"}},
            },
        },
        "evidenceRef": _EVIDENCE_REF,
        "suggestedMerge": {
            "type": "object",
            "additionalProperties": False,
            "required": ["a", "b", "reason", "confidence"],
            "properties": {
                "a": {"type": "string", "minLength": 1},
                "b": {"type": "string", "minLength": 1},
                "reason": {"type": "string"},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            },
        },
    },
}

SCENE_META_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "scene_meta",
    "type": "object",
    "additionalProperties": False,
    "required": [
        "schemaVersion",
        "povMode",
        "povName",
        "povConfidence",
        "settingName",
        "settingText",
        "settingConfidence",
        "timeContextText",
        "evidence",
    ],
    "properties": {
        "schemaVersion": {"const": SCHEMA_VERSION},
        "povMode": {"enum": list(POV_MODES)},
        "povName": {"type": ["string", "null"]},
        "povConfidence": {"type": "number", "minimum": 0, "maximum": 1},
        "settingName": {"type": ["string", "null"]},
        "settingText": {"type": ["string", "null"]},
        "settingConfidence": {"type": "number", "minimum": 0, "maximum": 1},
        "timeContextText": {"type": ["string", "null"]},
        "evidence": {"type": "array", "items": _EVIDENCE_REF},
    },
}

_SHARED_RULES = """
SCOPE LIMITS:
- You are an analysis tool for an author's own manuscript. Never write, rewrite, or continue prose.
- Never suggest plot changes or stylistic edits.

GROUNDING REQUIREMENTS:
- Use only the text supplied in this request. Never invent names, facts, or events.
- If something is uncertain, leave it out or use the schema's "unknown"/null values.

EVIDENCE REQUIREMENTS:
- Every fact must cite at least one verbatim quote copied exactly from the chunk it came from.
- Cite the chunk by its chunkOrdinal. Quotes must be short and literal.

OUTPUT FORMAT:
- You MUST output ONLY valid JSON. No markdown, no commentary.
- Do NOT include any keys not defined by the schema.
""".strip()

EXTRACTION_SYSTEM_PROMPT = f"""
You are a conservative canon extractor for long-form fiction.
Identify story entities (characters, locations, organizations, artifacts, terms, rules)
and evidence-backed claims about them.

{_SHARED_RULES}

EXTRACTION RULES:
1) Give every entity a tempId. Reuse a known entity's id as its tempId when the text refers to it.
2) Claims reference entities through entityTempId and carry a confidence between 0 and 1.
3) Propose suggestedMerges only when two references clearly denote the same entity.
""".strip()

SCENE_META_SYSTEM_PROMPT = f"""
You are a scene metadata classifier for long-form fiction.
Determine the point of view, the setting, and any explicit time context of one scene.

{_SHARED_RULES}

SCENE RULES:
1) povMode is one of: {", ".join(POV_MODES)}.
2) povName and settingName must be names that appear in the scene text, or null.
3) Confidence values are between 0 and 1.
""".strip()


def _format_chunks(chunks: Sequence[Dict[str, Any]]) -> str:
    return "\n\n".join(f"[chunkOrdinal {chunk['ordinal']}]\n{chunk['text']}" for chunk in chunks)


def build_extraction_user_prompt(
    project_name: str,
    known_entities: Sequence[Dict[str, Any]],
    chunks: Sequence[Dict[str, Any]],
    instructions: Optional[str] = None,
) -> str:
    lines: List[str] = [
        f"Project: {project_name}",
        "",
        "Known entities (id, type, displayName, aliases):",
        json.dumps(list(known_entities), ensure_ascii=False),
        "",
        "Chunks:",
        _format_chunks(chunks),
        "",
    ]
    if instructions:
        lines.extend([f"Instructions: {instructions}", ""])
    lines.extend(
        [
            "Return entities, claims (with evidence quote + chunkOrdinal), and suggestedMerges.",
            f'Output must match the extraction schema with schemaVersion "{SCHEMA_VERSION}".',
        ]
    )
    return "\n".join(lines)


def build_scene_meta_user_prompt(
    known_characters: Sequence[Dict[str, Any]],
    known_locations: Sequence[Dict[str, Any]],
    scene_chunks: Sequence[Dict[str, Any]],
) -> str:
    return "\n".join(
        [
            "Known characters (displayName, aliases):",
            json.dumps(list(known_characters), ensure_ascii=False),
            "",
            "Known locations (displayName, aliases):",
            json.dumps(list(known_locations), ensure_ascii=False),
            "",
            "Scene chunks:",
            _format_chunks(scene_chunks),
            "",
            "Return povMode, povName, settingName, settingText, timeContextText, confidences, and evidence.",
            f'Output must match the scene_meta schema with schemaVersion "{SCHEMA_VERSION}".',
        ]
    )
