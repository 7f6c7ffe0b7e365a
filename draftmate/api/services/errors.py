"""Unified error taxonomy raised by every provider adapter and the router."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from draftmate.model.ai import AIModel


class AIProviderError(Exception):
    """Base class. Nothing vendor-specific escapes an adapter except as one of these."""

    kind = "provider_error"
    #: 呼び出し側で再試行してよいか
    is_transient = False
    #: APIキーの再入力を促すべきか
    needs_credentials = False

    @property
    def user_message(self) -> str:
        return str(self)


class NotConfiguredError(AIProviderError):
    kind = "not_configured"
    needs_credentials = True

    def __init__(
        self,
        message: str = "AI provider not configured. Please add your API key.",
    ) -> None:
        super().__init__(message)


class InvalidAPIKeyError(AIProviderError):
    kind = "invalid_api_key"
    needs_credentials = True

    def __init__(self, message: str = "Invalid API key. Please check your API key.") -> None:
        super().__init__(message)


class RateLimitedError(AIProviderError):
    kind = "rate_limited"
    is_transient = True

    def __init__(self, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        if retry_after is not None:
            message = f"Rate limited. Please try again in {int(retry_after)} seconds."
        else:
            message = "Rate limited. Please try again later."
        super().__init__(message)


class NetworkError(AIProviderError):
    kind = "network_error"
    is_transient = True

    def __init__(self, underlying: BaseException) -> None:
        self.underlying = underlying
        super().__init__(f"Network error: {underlying}")


class InvalidResponseError(AIProviderError):
    kind = "invalid_response"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Invalid response from AI: {detail}")


class ContentBlockedError(AIProviderError):
    kind = "content_blocked"

    def __init__(self, message: str = "Content was blocked by safety filters.") -> None:
        super().__init__(message)


class ModelUnavailableError(AIProviderError):
    kind = "model_unavailable"

    def __init__(self, model: AIModel) -> None:
        self.model = model
        super().__init__(f"{model.display_name} is currently unavailable.")


class QuotaExceededError(AIProviderError):
    kind = "quota_exceeded"

    def __init__(self, message: str = "API quota exceeded. Please check your billing.") -> None:
        super().__init__(message)


class RequestTimeoutError(AIProviderError):
    kind = "timeout"
    is_transient = True

    def __init__(self, message: str = "Request timed out. Please try again.") -> None:
        super().__init__(message)


def parse_retry_after(value: str | None) -> float | None:
    """retry-after ヘッダ（秒数）を解釈する。HTTP日付形式は無視する."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(0.0, seconds)
