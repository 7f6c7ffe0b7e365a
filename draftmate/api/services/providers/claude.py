"""Anthropic Messages API."""

from __future__ import annotations

from typing import Any, Iterable, Iterator

import requests

from draftmate.api.services.errors import (
    AIProviderError,
    InvalidAPIKeyError,
    InvalidResponseError,
    ModelUnavailableError,
    QuotaExceededError,
    RateLimitedError,
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
from draftmate.api.services.providers.streaming import iter_sse_events, strip_code_fences
from draftmate.api.services.secrets import SecretStore
from draftmate.model.ai import (
    AIModel,
    AIRequest,
    AIResponse,
    FinishReason,
    ProviderType,
    TokenUsage,
)

MESSAGES_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"

_STOP_REASONS = {
    "end_turn": FinishReason.COMPLETE,
    "stop_sequence": FinishReason.COMPLETE,
    "max_tokens": FinishReason.MAX_TOKENS,
    "refusal": FinishReason.CONTENT_FILTER,
    "content_filter": FinishReason.CONTENT_FILTER,
}


class ClaudeWireFormat:
    provider = ProviderType.CLAUDE
    validation_model = AIModel.CLAUDE_SONNET
    validation_max_tokens = 10

    def build_call(
        self,
        request: AIRequest,
        model: AIModel,
        api_key: str,
        *,
        stream: bool,
    ) -> HTTPCall:
        content: list[dict[str, Any]] = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": image_media_type(image),
                    "data": encode_image(image),
                },
            }
            for image in request.images
        ]
        content.append({"type": "text", "text": request.prompt})

        body: dict[str, Any] = {
            "model": model.value,
            "max_tokens": request.max_tokens,
            "messages": [{"role": "user", "content": content}],
            "temperature": request.temperature,
        }
        if request.system_prompt:
            body["system"] = request.system_prompt
        headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": API_VERSION,
        }
        if stream:
            body["stream"] = True
            headers["Accept"] = "text/event-stream"
        return HTTPCall(url=MESSAGES_URL, body=body, headers=headers)

    def parse_response(
        self,
        payload: dict[str, Any],
        request: AIRequest,
        model: AIModel,
    ) -> AIResponse:
        blocks = payload.get("content")
        if not isinstance(blocks, list):
            msg = "Could not extract text from response"
            raise InvalidResponseError(msg)
        # thinking / tool_use ブロックは飛ばして最初のテキストを使う
        text = next(
            (
                block["text"]
                for block in blocks
                if isinstance(block, dict)
                and block.get("type", "text") == "text"
                and isinstance(block.get("text"), str)
            ),
            None,
        )
        if text is None:
            msg = "Could not extract text from response"
            raise InvalidResponseError(msg)
        if request.wants_json:
            text = strip_code_fences(text)

        usage = None
        usage_json = payload.get("usage")
        if isinstance(usage_json, dict):
            input_tokens = usage_json.get("input_tokens")
            output_tokens = usage_json.get("output_tokens")
            if isinstance(input_tokens, int) and isinstance(output_tokens, int):
                usage = TokenUsage(input_tokens, output_tokens)

        finish = _STOP_REASONS.get(payload.get("stop_reason") or "", FinishReason.COMPLETE)
        return AIResponse(content=text, model=model, usage=usage, finish_reason=finish)

    def error_for_status(
        self,
        status_code: int,
        headers: Any,
        payload: dict[str, Any] | None,
        model: AIModel,
    ) -> AIProviderError:
        message = error_message(payload)
        if (
            status_code == HTTP_BAD_REQUEST
            and message
            and "credit balance" in message.lower()
        ):
            return QuotaExceededError(message)
        return common_status_error(status_code, headers, message, model)

    def stream_text(self, lines: Iterable[str], model: AIModel) -> Iterator[str]:
        for event in iter_sse_events(lines):
            kind = event.get("type")
            if kind == "message_stop":
                return
            if kind == "error":
                raise _stream_error(event, model)
            delta = event.get("delta")
            if not isinstance(delta, dict):
                continue
            # thinking_delta / input_json_delta は本文ではない
            if delta.get("type", "text_delta") != "text_delta":
                continue
            text = delta.get("text")
            if isinstance(text, str) and text:
                yield text


def _stream_error(event: dict[str, Any], model: AIModel) -> AIProviderError:
    error = event.get("error") if isinstance(event.get("error"), dict) else {}
    kind = error.get("type")
    message = error.get("message") or "stream error"
    if kind in ("overloaded_error", "api_error"):
        return ModelUnavailableError(model)
    if kind == "rate_limit_error":
        return RateLimitedError()
    if kind in ("authentication_error", "permission_error"):
        return InvalidAPIKeyError()
    return InvalidResponseError(message)


def create_claude_provider(
    secret_store: SecretStore,
    session: requests.Session | None = None,
    **options: Any,
) -> ProviderAdapter:
    return ProviderAdapter(ClaudeWireFormat(), secret_store, session, **options)
