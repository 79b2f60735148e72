"""Language-model providers that return schema-shaped JSON."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .config import LLMConfig
from .errors import LLMRequestFailure


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


@dataclass
class JsonRequest:
    """One structured-output call."""

    schema_name: str
    system_prompt: str
    user_prompt: str
    json_schema: Dict[str, Any]
    temperature: float = 0.1
    max_tokens: int = 1200


@dataclass
class JsonCompletion:
    json: Any
    raw_text: str
    token_usage: Optional[Dict[str, Any]] = field(default=None)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, LLMRequestFailure) and exc.retryable


def _extract_json_object(raw: str) -> Optional[Any]:
    raw = raw.strip()
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    match = re.search(r"\{[\s\S]*\}", raw)
    if not match:
        return None
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError:
        return None


class LLMProvider:
    """Interface every provider implements."""

    name = "base"

    def is_available(self) -> bool:
        raise NotImplementedError

    def complete_json(self, request: JsonRequest) -> JsonCompletion:
        raise NotImplementedError


class NullProvider(LLMProvider):
    """Stand-in used when no model is configured; never available."""

    name = "null"

    def is_available(self) -> bool:
        return False

    def complete_json(self, request: JsonRequest) -> JsonCompletion:
        raise LLMRequestFailure(None, "NullProvider is not available")


class GeminiProvider(LLMProvider):
    """Structured JSON completions through the google-genai client."""

    name = "gemini"

    def __init__(self, api_key: Optional[str], model: str, timeout_seconds: float = 30.0):
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        if api_key:
            self.client = genai.Client(
                api_key=api_key,
                http_options=genai_types.HttpOptions(timeout=int(timeout_seconds * 1000)),
            )
        else:
            self.client = None

    def is_available(self) -> bool:
        return bool(self.client and self.model)

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5),
        reraise=True,
    )
    def complete_json(self, request: JsonRequest) -> JsonCompletion:
        if not self.client:
            raise LLMRequestFailure(None, "Gemini client is not configured")
        try:
            resp = self.client.models.generate_content(
                model=self.model,
                contents=request.user_prompt,
                config=genai_types.GenerateContentConfig(
                    system_instruction=request.system_prompt,
                    temperature=request.temperature,
                    max_output_tokens=request.max_tokens,
                    response_mime_type="application/json",
                ),
            )
        except genai_errors.APIError as exc:
            raise LLMRequestFailure(exc.code, str(exc.message or "")) from exc

        raw = resp.text or ""
        parsed = _extract_json_object(raw)
        if parsed is None:
            raise LLMRequestFailure(None, "LLM response was not valid JSON")

        usage = None
        if resp.usage_metadata is not None:
            usage = {
                "prompt_tokens": resp.usage_metadata.prompt_token_count,
                "output_tokens": resp.usage_metadata.candidates_token_count,
            }
        return JsonCompletion(json=parsed, raw_text=raw, token_usage=usage)


class HttpJsonProvider(LLMProvider):
    """POSTs to an OpenAI ``/v1/responses`` endpoint or a generic JSON endpoint."""

    name = "http"

    def __init__(self, base_url: Optional[str], api_key: Optional[str], model: str, timeout_seconds: float = 30.0):
        self.base_url = (base_url or "").strip()
        self.api_key = api_key or ""
        self.model = model
        self.timeout_seconds = timeout_seconds

    def is_available(self) -> bool:
        return bool(self.base_url and self.api_key and self.model)

    def is_responses_endpoint(self) -> bool:
        path = urlparse(self.base_url).path or self.base_url
        return path.rstrip("/").endswith("/v1/responses")

    def _build_body(self, request: JsonRequest) -> Dict[str, Any]:
        if self.is_responses_endpoint():
            return {
                "model": self.model,
                "input": [
                    {"role": "system", "content": request.system_prompt},
                    {"role": "user", "content": request.user_prompt},
                ],
                "text": {
                    "format": {
                        "type": "json_schema",
                        "name": request.schema_name,
                        "schema": request.json_schema,
                        "strict": True,
                    }
                },
                "temperature": request.temperature,
                "max_output_tokens": request.max_tokens,
            }
        return {
            "model": self.model,
            "schemaName": request.schema_name,
            "systemPrompt": request.system_prompt,
            "userPrompt": request.user_prompt,
            "jsonSchema": request.json_schema,
            "temperature": request.temperature,
            "maxTokens": request.max_tokens,
        }

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=0.5),
        reraise=True,
    )
    def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = requests.post(
                self.base_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.warning("LLM transport error: %s", exc)
            raise LLMRequestFailure(None, str(exc)) from exc
        if not resp.ok:
            raise LLMRequestFailure(resp.status_code, resp.text[:500])
        try:
            return resp.json()
        except ValueError as exc:
            raise LLMRequestFailure(None, "LLM response was not valid JSON") from exc

    def complete_json(self, request: JsonRequest) -> JsonCompletion:
        data = self._post(self._build_body(request))
        if self.is_responses_endpoint():
            return self._parse_responses(data)
        return self._parse_generic(data)

    @staticmethod
    def _responses_text(data: Dict[str, Any]) -> Optional[str]:
        text = data.get("output_text")
        if isinstance(text, str) and text.strip():
            return text
        for item in data.get("output") or []:
            for part in item.get("content") or []:
                for key in ("text", "output_text"):
                    value = part.get(key)
                    if isinstance(value, str) and value.strip():
                        return value
        return None

    def _parse_responses(self, data: Dict[str, Any]) -> JsonCompletion:
        usage = data.get("usage")
        if data.get("output_parsed") is not None:
            parsed = data["output_parsed"]
            return JsonCompletion(json=parsed, raw_text=json.dumps(parsed), token_usage=usage)
        raw = self._responses_text(data)
        if not raw:
            raise LLMRequestFailure(None, "LLM response missing output text")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise LLMRequestFailure(None, "LLM response was not valid JSON") from exc
        return JsonCompletion(json=parsed, raw_text=raw, token_usage=usage)

    @staticmethod
    def _parse_generic(data: Dict[str, Any]) -> JsonCompletion:
        if isinstance(data, dict) and "json" in data:
            parsed = data["json"]
            return JsonCompletion(
                json=parsed,
                raw_text=data.get("rawText") or json.dumps(parsed),
                token_usage=data.get("tokenUsage"),
            )
        return JsonCompletion(json=data, raw_text=json.dumps(data))


def build_provider(config: LLMConfig, api_key: Optional[str] = None) -> LLMProvider:
    """Construct the configured provider. Callers supply the API key explicitly."""
    if not config.enabled or config.provider == "null":
        return NullProvider()
    if config.provider == "gemini":
        return GeminiProvider(api_key, config.model, timeout_seconds=config.timeout_seconds)
    if config.provider == "http":
        return HttpJsonProvider(config.base_url, api_key, config.model, timeout_seconds=config.timeout_seconds)
    raise ValueError(f"Unknown LLM provider: {config.provider}")
