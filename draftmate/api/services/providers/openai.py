"""OpenAI Chat Completions API."""

from __future__ import annotations

from typing import Any, Iterable, Iterator

import requests

from draftmate.api.services.errors import (
    AIProviderError,
    ContentBlockedError,
    InvalidResponseError,
    QuotaExceededError,
)
from draftmate.api.services.providers.base import (
    HTTP_BAD_REQUEST,
    HTTP_TOO_MANY_REQUESTS,
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

CHAT_URL = "https://api.openai.com/v1/chat/completions"

_FINISH_REASONS = {
    "stop": FinishReason.COMPLETE,
    "length": FinishReason.MAX_TOKENS,
    "content_filter": FinishReason.CONTENT_FILTER,
}
_BLOCKED_CODES = frozenset({"content_policy_violation", "content_filter"})


def _error_code(payload: dict[str, Any] | None) -> str | None:
    if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
        return None
    error = payload["error"]
    code = error.get("code") or error.get("type")
    return code if isinstance(code, str) else None


class OpenAIWireFormat:
    provider = ProviderType.OPENAI
    validation_model = AIModel.GPT
    validation_max_tokens = 10

    def build_call(
        self,
        request: AIRequest,
        model: AIModel,
        api_key: str,
        *,
        stream: bool,
    ) -> HTTPCall:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})

        user_content: str | list[dict[str, Any]]
        if request.images:
            user_content = [
                {
                    "type": "image_url",
                    "image_url": {
                        "url": f"data:{image_media_type(image)};base64,"
                        f"{encode_image(image)}",
                    },
                }
                for image in request.images
            ]
            user_content.append({"type": "text", "text": request.prompt})
        else:
            user_content = request.prompt
        messages.append({"role": "user", "content": user_content})

        body: dict[str, Any] = {
            "model": model.value,
            "messages": messages,
            "temperature": request.temperature,
            "max_completion_tokens": request.max_tokens,
        }
        if request.wants_json:
            body["response_format"] = {"type": "json_object"}
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        if stream:
            body["stream"] = True
            headers["Accept"] = "text/event-stream"
        return HTTPCall(url=CHAT_URL, body=body, headers=headers)

    def parse_response(
        self,
        payload: dict[str, Any],
        request: AIRequest,
        model: AIModel,
    ) -> AIResponse:
        choices = payload.get("choices")
        choice = choices[0] if isinstance(choices, list) and choices else None
        message = choice.get("message") if isinstance(choice, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            if isinstance(message, dict) and message.get("refusal"):
                raise ContentBlockedError(str(message["refusal"]))
            msg = "Could not extract content from response"
            raise InvalidResponseError(msg)
        if request.wants_json:
            content = strip_code_fences(content)

        usage = None
        usage_json = payload.get("usage")
        if isinstance(usage_json, dict):
            prompt_tokens = usage_json.get("prompt_tokens")
            completion_tokens = usage_json.get("completion_tokens")
            if isinstance(prompt_tokens, int) and isinstance(completion_tokens, int):
                usage = TokenUsage(prompt_tokens, completion_tokens)

        finish = _FINISH_REASONS.get(choice.get("finish_reason") or "", FinishReason.COMPLETE)
        return AIResponse(content=content, model=model, usage=usage, finish_reason=finish)

    def error_for_status(
        self,
        status_code: int,
        headers: Any,
        payload: dict[str, Any] | None,
        model: AIModel,
    ) -> AIProviderError:
        code = _error_code(payload)
        message = error_message(payload)
        if status_code == HTTP_TOO_MANY_REQUESTS and code == "insufficient_quota":
            return QuotaExceededError(message) if message else QuotaExceededError()
        if status_code == HTTP_BAD_REQUEST and code in _BLOCKED_CODES:
            return ContentBlockedError(message) if message else ContentBlockedError()
        return common_status_error(status_code, headers, message, model)

    def stream_text(self, lines: Iterable[str], model: AIModel) -> Iterator[str]:  # noqa: ARG002
        for event in iter_sse_events(lines):
            message = error_message(event)
            if message:
                raise InvalidResponseError(message)
            choices = event.get("choices")
            if not isinstance(choices, list) or not choices:
                continue
            delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
            if not isinstance(delta, dict):
                continue
            text = delta.get("content")
            if isinstance(text, str) and text:
                yield text


def create_openai_provider(
    secret_store: SecretStore,
    session: requests.Session | None = None,
    **options: Any,
) -> ProviderAdapter:
    return ProviderAdapter(OpenAIWireFormat(), secret_store, session, **options)
