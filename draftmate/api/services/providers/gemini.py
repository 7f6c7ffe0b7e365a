"""Google Gemini generateContent API."""

from __future__ import annotations

import json
from typing import Any, Iterable, Iterator

import requests

from draftmate.api.services.errors import (
    AIProviderError,
    ContentBlockedError,
    InvalidAPIKeyError,
    InvalidResponseError,
)
from draftmate.api.services.providers.base import (
    HTTP_BAD_REQUEST,
    HTTPCall,
    ProviderAdapter,
    common_status_error,
    encode_image,
    error_message,
    image_media_type,
)
from draftmate.api.services.providers.streaming import (
    SSE_DONE,
    JsonFragmentBuffer,
    sse_data,
    strip_code_fences,
)
from draftmate.api.services.secrets import SecretStore
from draftmate.model.ai import (
    AIModel,
    AIRequest,
    AIResponse,
    FinishReason,
    ProviderType,
    TokenUsage,
)

BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
# Gemini は retry-after を返さないことが多い
DEFAULT_RETRY_AFTER_SEC = 60.0

_BLOCKED_REASONS = frozenset(
    {"SAFETY", "RECITATION", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"},
)


def _finish_reason(value: str | None) -> FinishReason:
    if value == "MAX_TOKENS":
        return FinishReason.MAX_TOKENS
    if value in _BLOCKED_REASONS:
        return FinishReason.CONTENT_FILTER
    return FinishReason.COMPLETE


def _candidate_text(candidate: dict[str, Any]) -> str | None:
    """Return the first text part that is not a thought summary."""
    content = candidate.get("content")
    if not isinstance(content, dict):
        return None
    parts = content.get("parts")
    if not isinstance(parts, list):
        return None
    for part in parts:
        if not isinstance(part, dict) or part.get("thought"):
            continue
        text = part.get("text")
        if isinstance(text, str):
            return text
    return None


def _check_prompt_feedback(payload: dict[str, Any]) -> None:
    feedback = payload.get("promptFeedback")
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        msg = f"Prompt blocked: {feedback['blockReason']}"
        raise ContentBlockedError(msg)


class GeminiWireFormat:
    provider = ProviderType.GEMINI
    validation_model = AIModel.GEMINI_FLASH
    # 思考トークンを消費するため少し多めに取る
    validation_max_tokens = 100

    def build_call(
        self,
        request: AIRequest,
        model: AIModel,
        api_key: str,
        *,
        stream: bool,
    ) -> HTTPCall:
        parts: list[dict[str, Any]] = [
            {
                "inline_data": {
                    "mime_type": image_media_type(image),
                    "data": encode_image(image),
                },
            }
            for image in request.images
        ]
        parts.append({"text": request.prompt})

        generation_config: dict[str, Any] = {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_tokens,
        }
        if request.wants_json:
            generation_config["responseMimeType"] = "application/json"

        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        if request.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}

        params = {"key": api_key}
        headers = {"Content-Type": "application/json"}
        if stream:
            url = f"{BASE_URL}/{model.value}:streamGenerateContent"
            params["alt"] = "sse"
            headers["Accept"] = "text/event-stream"
        else:
            url = f"{BASE_URL}/{model.value}:generateContent"
        return HTTPCall(url=url, body=body, headers=headers, params=params)

    def parse_response(
        self,
        payload: dict[str, Any],
        request: AIRequest,
        model: AIModel,
    ) -> AIResponse:
        message = error_message(payload)
        if message:
            raise InvalidResponseError(message)
        _check_prompt_feedback(payload)

        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            snippet = json.dumps(payload)[:300]
            msg = f"No candidates in response: {snippet}"
            raise InvalidResponseError(msg)
        candidate = candidates[0] if isinstance(candidates[0], dict) else {}
        finish_value = candidate.get("finishReason")

        text = _candidate_text(candidate)
        if text is None:
            if finish_value == "MAX_TOKENS":
                msg = "Model ran out of tokens - try increasing maxTokens"
                raise InvalidResponseError(msg)
            if finish_value in _BLOCKED_REASONS:
                raise ContentBlockedError
            msg = "No text found in response parts"
            raise InvalidResponseError(msg)
        if request.wants_json:
            text = strip_code_fences(text)

        usage = None
        metadata = payload.get("usageMetadata")
        if isinstance(metadata, dict):
            prompt_tokens = metadata.get("promptTokenCount")
            candidate_tokens = metadata.get("candidatesTokenCount")
            if isinstance(prompt_tokens, int) and isinstance(candidate_tokens, int):
                usage = TokenUsage(prompt_tokens, candidate_tokens)

        return AIResponse(
            content=text,
            model=model,
            usage=usage,
            finish_reason=_finish_reason(finish_value),
        )

    def error_for_status(
        self,
        status_code: int,
        headers: Any,
        payload: dict[str, Any] | None,
        model: AIModel,
    ) -> AIProviderError:
        message = error_message(payload)
        if status_code == HTTP_BAD_REQUEST and message and "API_KEY" in message:
            return InvalidAPIKeyError()
        if status_code == HTTP_BAD_REQUEST and "API_KEY" in json.dumps(payload or {}):
            # details[].reason == "API_KEY_INVALID" のみのケース
            return InvalidAPIKeyError()
        return common_status_error(
            status_code,
            headers,
            message,
            model,
            default_retry_after=DEFAULT_RETRY_AFTER_SEC,
        )

    def stream_text(self, lines: Iterable[str], model: AIModel) -> Iterator[str]:  # noqa: ARG002
        buffer = JsonFragmentBuffer()
        for line in lines:
            payload = sse_data(line)
            if payload is None:
                chunks = buffer.feed(line)
            else:
                payload = payload.strip()
                if payload == SSE_DONE:
                    return
                chunks = _decode_sse_payload(payload)
            for chunk in chunks:
                yield from _chunk_text(chunk)


def _decode_sse_payload(payload: str) -> list[dict[str, Any]]:
    if not payload:
        return []
    try:
        value = json.loads(payload)
    except json.JSONDecodeError:
        return []
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return [value] if isinstance(value, dict) else []


def _chunk_text(chunk: dict[str, Any]) -> Iterator[str]:
    message = error_message(chunk)
    if message:
        raise InvalidResponseError(message)
    _check_prompt_feedback(chunk)
    candidates = chunk.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return
    candidate = candidates[0]
    if not isinstance(candidate, dict):
        return
    text = _candidate_text(candidate)
    if text:
        yield text


def create_gemini_provider(
    secret_store: SecretStore,
    session: requests.Session | None = None,
    **options: Any,
) -> ProviderAdapter:
    return ProviderAdapter(GeminiWireFormat(), secret_store, session, **options)
