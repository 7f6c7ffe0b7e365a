"""Task-aware routing over the configured AI providers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Iterator

import requests

from draftmate.api.services.errors import (
    AIProviderError,
    ModelUnavailableError,
    NotConfiguredError,
)
from draftmate.api.services.providers.base import AIProvider, StreamingAIProvider
from draftmate.api.services.providers.claude import create_claude_provider
from draftmate.api.services.providers.gemini import create_gemini_provider
from draftmate.api.services.providers.openai import create_openai_provider
from draftmate.api.services.secrets import DotenvSecretStore, SecretStore
from draftmate.model.ai import (
    AIModel,
    AIRequest,
    AIResponse,
    AITaskCategory,
    ProviderType,
    ResponseFormat,
)
from draftmate.watchers.logger import logger

if TYPE_CHECKING:
    from draftmate.config import Settings

log = logger.getChild("routing")

# 非ストリーミングのプロバイダを擬似ストリーミングする際の断片長
EMULATED_CHUNK_SIZE = 10


def chunk_text(text: str, size: int = EMULATED_CHUNK_SIZE) -> list[str]:
    """Split ``text`` into fragments of at most ``size`` characters."""
    return [text[i : i + size] for i in range(0, len(text), size)]


class RoutingService:
    """Picks a provider+model for each task category and delegates to it.

    Adapter errors pass through unchanged. The only error this layer adds is
    :class:`NotConfiguredError` when no configured model qualifies.
    """

    def __init__(
        self,
        providers: Iterable[AIProvider],
        default_model: AIModel = AIModel.CLAUDE_OPUS,
    ) -> None:
        self.providers: dict[ProviderType, AIProvider] = {
            provider.provider_type: provider for provider in providers
        }
        self._default_model = default_model
        self._overrides: dict[AITaskCategory, AIModel] = {}

    def initialize(self) -> None:
        """Load every adapter's API key from its secret store."""
        for provider in self.providers.values():
            provider.load_api_key()
        log.info(
            "routing initialized | configured=%s default=%s",
            sorted(p.value for p in self.configured_providers),
            self._default_model.value,
        )

    # ------------------------------------------------------------------
    # Configuration state
    @property
    def configured_providers(self) -> set[ProviderType]:
        return {kind for kind, provider in self.providers.items() if provider.is_configured}

    @property
    def has_any_provider(self) -> bool:
        return bool(self.configured_providers)

    @property
    def available_models(self) -> list[AIModel]:
        configured = self.configured_providers
        return [model for model in AIModel if model.provider in configured]

    @property
    def default_model(self) -> AIModel:
        return self._default_model

    def set_default_model(self, model: AIModel) -> None:
        self._default_model = model
        log.info("default model set | model=%s", model.value)

    def set_model_override(self, task: AITaskCategory, model: AIModel | None) -> None:
        """タスク別のモデル指定。None で解除."""
        if model is None:
            self._overrides.pop(task, None)
        else:
            self._overrides[task] = model

    def model_override(self, task: AITaskCategory) -> AIModel | None:
        return self._overrides.get(task)

    def configure_provider(self, provider: ProviderType, api_key: str) -> None:
        self._provider(provider).configure(api_key)
        log.info("provider configured | provider=%s", provider.value)

    def validate_api_key(self, key: str, provider: ProviderType) -> bool:
        return self._provider(provider).validate_api_key(key)

    def supports_streaming(self, model: AIModel) -> bool:
        provider = self.providers.get(model.provider)
        return isinstance(provider, StreamingAIProvider)

    # ------------------------------------------------------------------
    # Model selection
    def is_model_available(self, model: AIModel) -> bool:
        provider = self.providers.get(model.provider)
        return provider is not None and provider.is_configured

    @staticmethod
    def model_satisfies_task(model: AIModel, task: AITaskCategory) -> bool:
        if task.requires_vision and not model.supports_vision:
            return False
        return model.quality_tier >= task.recommended_tier

    def qualifying_models(self, task: AITaskCategory) -> list[AIModel]:
        """Configured models that can serve ``task``, in preference order.

        The default model's provider comes first, then the remaining
        providers; within each provider premium models come first.
        """
        preferred = self._default_model.provider
        ordered = sorted(
            (m for m in AIModel if self.model_satisfies_task(m, task)),
            key=lambda m: (m.provider is not preferred, -m.quality_tier),
        )
        return [m for m in ordered if self.is_model_available(m)]

    def select_model(self, task: AITaskCategory) -> AIModel:
        override = self._overrides.get(task)
        if override is not None and self.is_model_available(override):
            return override
        if self.model_satisfies_task(self._default_model, task) and self.is_model_available(
            self._default_model
        ):
            return self._default_model
        candidates = self.qualifying_models(task)
        if not candidates:
            log.warning("no qualifying model | task=%s", task.value)
            msg = f"No configured provider can handle {task.value}."
            raise NotConfiguredError(msg)
        return candidates[0]

    # ------------------------------------------------------------------
    # Generation
    def generate(
        self,
        task: AITaskCategory,
        prompt: str,
        *,
        system_prompt: str | None = None,
        images: Iterable[bytes] = (),
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: ResponseFormat | None = None,
    ) -> AIResponse:
        model = self.select_model(task)
        request = self._build_request(
            task, prompt, system_prompt, images, temperature, max_tokens, response_format
        )
        return self._configured(model).generate(request, model)

    def generate_with_model(
        self,
        model: AIModel,
        request: AIRequest,
    ) -> AIResponse:
        """指定モデルで生成する（タスク選択を経由しない）."""
        return self._configured(model).generate(request, model)

    def generate_with_fallback(
        self,
        task: AITaskCategory,
        prompt: str,
        *,
        system_prompt: str | None = None,
        images: Iterable[bytes] = (),
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: ResponseFormat | None = None,
    ) -> AIResponse:
        """Try the selected model, then every other qualifying model.

        When every attempt fails the primary model's error is raised.
        """
        primary = self.select_model(task)
        request = self._build_request(
            task, prompt, system_prompt, images, temperature, max_tokens, response_format
        )
        try:
            return self._configured(primary).generate(request, primary)
        except AIProviderError as primary_error:
            for fallback in self.qualifying_models(task):
                if fallback is primary:
                    continue
                log.warning(
                    "falling back | from=%s to=%s reason=%s",
                    primary.value,
                    fallback.value,
                    primary_error.kind,
                )
                try:
                    return self._configured(fallback).generate(request, fallback)
                except AIProviderError as fallback_error:
                    log.warning(
                        "fallback failed | model=%s reason=%s",
                        fallback.value,
                        fallback_error.kind,
                    )
            raise

    def generate_stream(
        self,
        task: AITaskCategory,
        prompt: str,
        *,
        system_prompt: str | None = None,
        images: Iterable[bytes] = (),
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: ResponseFormat | None = None,
    ) -> Iterator[str]:
        """Text fragments for ``task``.

        Selection and key checks happen before the iterator is returned.
        """
        model = self.select_model(task)
        request = self._build_request(
            task, prompt, system_prompt, images, temperature, max_tokens, response_format
        )
        return self.stream_with_model(model, request)

    def stream_with_model(self, model: AIModel, request: AIRequest) -> Iterator[str]:
        provider = self._configured(model)
        if isinstance(provider, StreamingAIProvider):
            return provider.generate_stream(request, model)
        return self._emulated_stream(provider, request, model)

    # ------------------------------------------------------------------
    # Internals
    @staticmethod
    def _emulated_stream(
        provider: AIProvider,
        request: AIRequest,
        model: AIModel,
    ) -> Iterator[str]:
        response = provider.generate(request, model)
        yield from chunk_text(response.content)

    @staticmethod
    def _build_request(  # noqa: PLR0913
        task: AITaskCategory,
        prompt: str,
        system_prompt: str | None,
        images: Iterable[bytes],
        temperature: float | None,
        max_tokens: int | None,
        response_format: ResponseFormat | None,
    ) -> AIRequest:
        return AIRequest(
            prompt=prompt,
            system_prompt=system_prompt,
            images=tuple(images),
            temperature=task.default_temperature if temperature is None else temperature,
            max_tokens=task.default_max_tokens if max_tokens is None else max_tokens,
            response_format=response_format,
        )

    def _provider(self, provider: ProviderType) -> AIProvider:
        adapter = self.providers.get(provider)
        if adapter is None:
            msg = f"no adapter registered for {provider.value}"
            raise KeyError(msg)
        return adapter

    def _configured(self, model: AIModel) -> AIProvider:
        provider = self.providers.get(model.provider)
        if provider is None:
            raise ModelUnavailableError(model)
        if not provider.is_configured:
            raise NotConfiguredError
        return provider


# 便利関数
def create_routing_service(
    settings: Settings | None = None,
    secret_store: SecretStore | None = None,
    session: requests.Session | None = None,
) -> RoutingService:
    """ルーティングサービスのファクトリ関数.

    各アダプタは独立した ``requests.Session`` を持つ（``session`` 指定時は共有）。
    APIキーの読み込みは :meth:`RoutingService.initialize` で行う.
    """
    if settings is None:
        from draftmate.config import Settings  # noqa: PLC0415

        settings = Settings.from_env()
    store = secret_store or DotenvSecretStore(settings.secrets_path)
    options = {
        "connect_timeout": settings.connect_timeout,
        "request_timeout": settings.request_timeout,
        "resource_timeout": settings.resource_timeout,
    }
    factories = (create_claude_provider, create_gemini_provider, create_openai_provider)
    providers = [factory(store, session, **options) for factory in factories]
    return RoutingService(providers, default_model=settings.default_model)
