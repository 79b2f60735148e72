"""JSON-schema validation and the validate-and-retry wrapper around providers."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from jsonschema import Draft202012Validator

from .errors import LLMValidationFailure, SchemaValidationError
from .providers import JsonCompletion, JsonRequest, LLMProvider


logger = logging.getLogger(__name__)


def _instance_path(error) -> str:
    parts = [str(part) for part in error.absolute_path]
    return "/" + "/".join(parts) if parts else ""


def collect_schema_errors(schema: Dict[str, Any], data: Any) -> List[SchemaValidationError]:
    validator = Draft202012Validator(schema)
    return [
        SchemaValidationError(_instance_path(error), error.message)
        for error in sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    ]


def validate_json(schema: Dict[str, Any], data: Any) -> List[str]:
    """Return ``"<path> <message>"`` strings; an empty list means valid."""
    return [str(error) for error in collect_schema_errors(schema, data)]


def complete_json_with_retry(
    provider: LLMProvider,
    request: JsonRequest,
    max_retries: int = 2,
) -> JsonCompletion:
    """Call the provider until its output validates, at most ``max_retries + 1`` times."""
    attempts = max(0, max_retries) + 1
    last_errors: List[str] = []
    for attempt in range(1, attempts + 1):
        completion = provider.complete_json(request)
        errors = validate_json(request.json_schema, completion.json)
        if not errors:
            return completion
        last_errors = errors
        logger.warning(
            "%s output failed validation (attempt %d/%d): %s",
            request.schema_name,
            attempt,
            attempts,
            "; ".join(errors),
        )
    raise LLMValidationFailure(attempts, last_errors)
