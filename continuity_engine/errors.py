"""Exception taxonomy for ingest, stages, and LLM calls."""

from __future__ import annotations

from typing import List, Optional, Sequence


class ContinuityEngineError(Exception):
    """Base class for all engine errors."""


class DocumentNotFound(ContinuityEngineError):
    """The source file does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Document not found: {path}")
        self.path = path


class UnsupportedDocumentKind(ContinuityEngineError):
    """The file extension is not one of the supported document kinds."""

    def __init__(self, extension: str):
        super().__init__(f"Unsupported document type: {extension or '<none>'}")
        self.extension = extension


class DocumentExtractionFailure(ContinuityEngineError):
    """The file exists but its text could not be extracted."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Could not extract text from {path}: {reason}")
        self.path = path
        self.reason = reason


class StageFailure(ContinuityEngineError):
    """A pipeline stage body raised; the original error is chained."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage
        self.message = message


class LLMRequestFailure(ContinuityEngineError):
    """Transport-level failure talking to the language-model provider."""

    def __init__(self, status: Optional[int], detail: str = ""):
        label = status if status is not None else "no-status"
        suffix = f": {detail}" if detail else ""
        super().__init__(f"LLM request failed: {label}{suffix}")
        self.status = status
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500


class SchemaValidationError(ContinuityEngineError):
    """A single JSON-schema violation."""

    def __init__(self, field_path: str, message: str):
        super().__init__(f"{field_path} {message}".strip())
        self.field_path = field_path
        self.message = message


class LLMValidationFailure(ContinuityEngineError):
    """The provider never produced schema-valid output within the attempt budget."""

    def __init__(self, attempts: int, last_errors: Sequence[str]):
        joined = "; ".join(last_errors)
        super().__init__(f"LLM output invalid after {attempts} attempts: {joined}")
        self.attempts = attempts
        self.last_errors: List[str] = list(last_errors)


class StaleMetricCache(ContinuityEngineError):
    """A cached style metric could not be decoded and must be recomputed."""

    def __init__(self, metric: str, reason: str):
        super().__init__(f"Cached metric '{metric}' is stale: {reason}")
        self.metric = metric
        self.reason = reason
