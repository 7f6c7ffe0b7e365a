"""Provider contract and the HTTP adapter shared by every vendor.

Each vendor only supplies a *wire format* (request shaping, response parsing,
error mapping, stream decoding). :class:`ProviderAdapter` composes one of
those with an HTTP session and a secret store, so vendor quirks stay in their
own module and there is no adapter inheritance.
"""

from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Protocol, runtime_checkable

import requests
from urllib3.exceptions import ReadTimeoutError

from draftmate.api.services.errors import (
    AIProviderError,
    InvalidAPIKeyError,
    InvalidResponseError,
    ModelUnavailableError,
    NetworkError,
    NotConfiguredError,
    RateLimitedError,
    RequestTimeoutError,
    parse_retry_after,
)
from draftmate.api.services.providers.streaming import FenceFilter
from draftmate.api.services.secrets import SecretStore
from draftmate.model.ai import AIModel, AIRequest, AIResponse, ProviderType
from draftmate.watchers.logger import logger

log = logger.getChild("providers")

HTTP_OK = 200
CONNECT_TIMEOUT_SEC = 10.0
REQUEST_TIMEOUT_SEC = 120.0
RESOURCE_TIMEOUT_SEC = 300.0
VALIDATION_PROMPT = "Say 'ok'"
BODY_CHUNK_SIZE = 16 * 1024


@runtime_checkable
class AIProvider(Protocol):
    """Uniform text-generation contract."""

    @property
    def provider_type(self) -> ProviderType: ...

    @property
    def is_configured(self) -> bool: ...

    @property
    def available_models(self) -> list[AIModel]: ...

    def load_api_key(self) -> None: ...

    def configure(self, api_key: str) -> None: ...

    def generate(self, request: AIRequest, model: AIModel) -> AIResponse: ...

    def validate_api_key(self, key: str) -> bool: ...


@runtime_checkable
class StreamingAIProvider(AIProvider, Protocol):
    def generate_stream(self, request: AIRequest, model: AIModel) -> Iterator[str]: ...


@dataclass(frozen=True)
class HTTPCall:
    """A fully shaped vendor request."""

    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)


class WireFormat(Protocol):
    """Vendor-specific translation between the uniform types and the wire."""

    provider: ProviderType
    validation_model: AIModel
    validation_max_tokens: int

    def build_call(
        self,
        request: AIRequest,
        model: AIModel,
        api_key: str,
        *,
        stream: bool,
    ) -> HTTPCall: ...

    def parse_response(
        self,
        payload: dict[str, Any],
        request: AIRequest,
        model: AIModel,
    ) -> AIResponse: ...

    def error_for_status(
        self,
        status_code: int,
        headers: Any,
        payload: dict[str, Any] | None,
        model: AIModel,
    ) -> AIProviderError: ...

    def stream_text(self, lines: Iterable[str], model: AIModel) -> Iterator[str]: ...


def error_message(payload: dict[str, Any] | None) -> str | None:
    """``{"error": {"message": ...}}`` 形式のエラーメッセージを取り出す."""
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        return message if isinstance(message, str) else None
    if isinstance(error, str):
        return error
    return None


def is_timeout(exc: requests.RequestException) -> bool:
    """接続後の読み取りタイムアウトも含めてタイムアウトかどうか.

    ``iter_lines`` / ``iter_content`` は読み取り中の urllib3 ``ReadTimeoutError``
    を ``requests.ConnectionError`` に包んで投げる。
    """
    if isinstance(exc, requests.Timeout):
        return True
    if not isinstance(exc, requests.ConnectionError):
        return False
    causes = (*exc.args, exc.__cause__, exc.__context__)
    return any(isinstance(cause, ReadTimeoutError) for cause in causes)


class ProviderAdapter:
    """One remote API behind the uniform provider contract.

    The adapter owns exactly one ``requests.Session``. Calls never retry; a
    failure surfaces immediately as an :class:`AIProviderError`.
    """

    def __init__(
        self,
        wire: WireFormat,
        secret_store: SecretStore,
        session: requests.Session | None = None,
        *,
        connect_timeout: float = CONNECT_TIMEOUT_SEC,
        request_timeout: float = REQUEST_TIMEOUT_SEC,
        resource_timeout: float = RESOURCE_TIMEOUT_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.wire = wire
        self.secret_store = secret_store
        self.session = session or requests.Session()
        self.timeout = (connect_timeout, request_timeout)
        self.resource_timeout = resource_timeout
        self._clock = clock
        self._api_key: str | None = None

    # ------------------------------------------------------------------
    # Configuration
    @property
    def provider_type(self) -> ProviderType:
        return self.wire.provider

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    @property
    def available_models(self) -> list[AIModel]:
        return self.provider_type.models

    def load_api_key(self) -> None:
        """シークレットストアからAPIキーを読み込む（起動時に1回）."""
        self._api_key = self.secret_store.retrieve(self.provider_type) or None
        log.info(
            "%s key loaded | configured=%s",
            self.provider_type.value,
            self.is_configured,
        )

    def configure(self, api_key: str) -> None:
        if not api_key:
            msg = "api_key must not be empty"
            raise ValueError(msg)
        self.secret_store.save(api_key, self.provider_type)
        self._api_key = api_key

    def validate_api_key(self, key: str) -> bool:
        """Try ``key`` with a tiny request; only a rejected key means invalid.

        The candidate goes straight into the request; the configured key is
        left untouched.
        """
        check = AIRequest(
            prompt=VALIDATION_PROMPT,
            max_tokens=self.wire.validation_max_tokens,
        )
        try:
            self._generate(check, self.wire.validation_model, key)
        except InvalidAPIKeyError:
            return False
        return True

    # ------------------------------------------------------------------
    # Generation
    def generate(self, request: AIRequest, model: AIModel) -> AIResponse:
        return self._generate(request, model, self._checked_key(model))

    def generate_stream(self, request: AIRequest, model: AIModel) -> Iterator[str]:
        """Text fragments in arrival order.

        Key and model are checked before the generator is returned. Closing
        the generator closes the HTTP connection.
        """
        api_key = self._checked_key(model)
        call = self.wire.build_call(request, model, api_key, stream=True)
        return self._stream(call, request, model)

    # ------------------------------------------------------------------
    # Internals
    def _checked_key(self, model: AIModel) -> str:
        api_key = self._api_key
        if not api_key:
            raise NotConfiguredError
        if model.provider is not self.provider_type:
            raise ModelUnavailableError(model)
        return api_key

    def _post(self, call: HTTPCall, model: AIModel) -> requests.Response:
        try:
            return self.session.post(
                call.url,
                params=call.params or None,
                headers=call.headers,
                json=call.body,
                timeout=self.timeout,
                stream=True,
            )
        except requests.RequestException as exc:
            raise self._transport_error(exc, model) from exc

    def _generate(self, request: AIRequest, model: AIModel, api_key: str) -> AIResponse:
        if model.provider is not self.provider_type:
            raise ModelUnavailableError(model)
        deadline = self._clock() + self.resource_timeout
        call = self.wire.build_call(request, model, api_key, stream=False)
        log.info("generate | provider=%s model=%s", self.provider_type.value, model.value)
        response = self._post(call, model)
        try:
            if response.status_code != HTTP_OK:
                raise self._status_error(response, model)
            try:
                body = self._read_body(response, deadline)
            except requests.RequestException as exc:
                raise self._transport_error(exc, model) from exc
        finally:
            response.close()

        try:
            payload = json.loads(body)
        except ValueError as exc:
            msg = "Could not parse JSON"
            raise InvalidResponseError(msg) from exc
        if not isinstance(payload, dict):
            msg = "Unexpected JSON payload"
            raise InvalidResponseError(msg)
        return self.wire.parse_response(payload, request, model)

    def _read_body(self, response: requests.Response, deadline: float) -> bytes:
        chunks = []
        for chunk in response.iter_content(chunk_size=BODY_CHUNK_SIZE):
            if self._clock() > deadline:
                msg = "Response exceeded the resource timeout."
                raise RequestTimeoutError(msg)
            chunks.append(chunk)
        return b"".join(chunks)

    def _transport_error(self, exc: requests.RequestException, model: AIModel) -> AIProviderError:
        if is_timeout(exc):
            log.warning("request timed out | model=%s", model.value)
            return RequestTimeoutError()
        log.warning("request failed | model=%s error=%s", model.value, exc)
        return NetworkError(exc)

    def _status_error(self, response: requests.Response, model: AIModel) -> AIProviderError:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        error = self.wire.error_for_status(
            response.status_code,
            response.headers,
            payload if isinstance(payload, dict) else None,
            model,
        )
        log.warning(
            "provider error | provider=%s status=%s kind=%s",
            self.provider_type.value,
            response.status_code,
            error.kind,
        )
        return error

    def _stream(self, call: HTTPCall, request: AIRequest, model: AIModel) -> Iterator[str]:
        deadline = self._clock() + self.resource_timeout
        log.info("stream | provider=%s model=%s", self.provider_type.value, model.value)
        response = self._post(call, model)
        try:
            if response.status_code != HTTP_OK:
                raise self._status_error(response, model)
            response.encoding = "utf-8"
            fence = FenceFilter() if request.wants_json else None
            lines = self._lines_until(response, deadline)
            try:
                for text in self.wire.stream_text(lines, model):
                    if fence is not None:
                        text = fence.feed(text)  # noqa: PLW2901
                    if text:
                        yield text
            except requests.RequestException as exc:
                raise self._transport_error(exc, model) from exc
            if fence is not None:
                tail = fence.flush()
                if tail:
                    yield tail
        finally:
            response.close()

    def _lines_until(self, response: requests.Response, deadline: float) -> Iterator[str]:
        for line in response.iter_lines(decode_unicode=True):
            if self._clock() > deadline:
                msg = "Stream exceeded the resource timeout."
                raise RequestTimeoutError(msg)
            if isinstance(line, bytes):
                yield line.decode("utf-8", errors="replace")
            else:
                yield line


SERVER_ERROR_CODES = frozenset({500, 502, 503, 504, 529})
AUTH_ERROR_CODES = frozenset({401, 403})
HTTP_BAD_REQUEST = 400
HTTP_TOO_MANY_REQUESTS = 429


def common_status_error(
    status_code: int,
    headers: Any,
    message: str | None,
    model: AIModel,
    *,
    default_retry_after: float | None = None,
) -> AIProviderError:
    """Status-code mapping shared by every vendor; vendors handle their quirks first."""
    if status_code in AUTH_ERROR_CODES:
        return InvalidAPIKeyError()
    if status_code == HTTP_TOO_MANY_REQUESTS:
        retry_after = parse_retry_after(headers.get("retry-after") if headers else None)
        return RateLimitedError(
            retry_after if retry_after is not None else default_retry_after
        )
    if status_code in SERVER_ERROR_CODES:
        return ModelUnavailableError(model)
    if status_code == HTTP_BAD_REQUEST:
        return InvalidResponseError(message or "Bad request")
    return InvalidResponseError(message or f"HTTP {status_code}")


def image_media_type(data: bytes) -> str:
    """先頭のマジックバイトから画像のMIMEタイプを推定する（不明ならJPEG）."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def encode_image(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
