"""Provider, model catalog and request/response types shared by every adapter."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


class ProviderType(Enum):
    """Remote text-generation backends."""

    CLAUDE = "Claude"
    GEMINI = "Gemini"
    OPENAI = "OpenAI"

    @property
    def display_name(self) -> str:
        return self.value

    @property
    def models(self) -> list[AIModel]:
        return [m for m in AIModel if m.provider is self]

    @classmethod
    def parse(cls, value: str) -> ProviderType:
        """大文字小文字を無視してプロバイダ名を解決する."""
        for provider in cls:
            if value.lower() in (provider.value.lower(), provider.name.lower()):
                return provider
        msg = f"unknown provider: {value}"
        raise ValueError(msg)


class QualityTier(IntEnum):
    STANDARD = 1
    PREMIUM = 2


class AIModel(Enum):
    """Static model catalog. Values are the wire-level model ids."""

    CLAUDE_SONNET = "claude-sonnet-4-20250514"
    CLAUDE_OPUS = "claude-opus-4-20250514"
    GEMINI_PRO = "gemini-2.5-pro"
    GEMINI_FLASH = "gemini-2.5-flash"
    GPT = "gpt-5.2"
    GPT_PRO = "gpt-5.2-pro"

    @property
    def provider(self) -> ProviderType:
        return _MODEL_SPECS[self][0]

    @property
    def display_name(self) -> str:
        return _MODEL_SPECS[self][1]

    @property
    def quality_tier(self) -> QualityTier:
        return _MODEL_SPECS[self][2]

    @property
    def supports_vision(self) -> bool:
        return _MODEL_SPECS[self][3]


_MODEL_SPECS: dict[AIModel, tuple[ProviderType, str, QualityTier, bool]] = {
    AIModel.CLAUDE_SONNET: (
        ProviderType.CLAUDE,
        "Claude 4 Sonnet",
        QualityTier.STANDARD,
        True,
    ),
    AIModel.CLAUDE_OPUS: (
        ProviderType.CLAUDE,
        "Claude 4 Opus",
        QualityTier.PREMIUM,
        True,
    ),
    AIModel.GEMINI_PRO: (
        ProviderType.GEMINI,
        "Gemini 2.5 Pro",
        QualityTier.PREMIUM,
        True,
    ),
    AIModel.GEMINI_FLASH: (
        ProviderType.GEMINI,
        "Gemini 2.5 Flash",
        QualityTier.STANDARD,
        True,
    ),
    AIModel.GPT: (ProviderType.OPENAI, "GPT-5.2", QualityTier.STANDARD, False),
    AIModel.GPT_PRO: (ProviderType.OPENAI, "GPT-5.2 Pro", QualityTier.PREMIUM, True),
}


class ResponseFormat(Enum):
    TEXT = "text"
    JSON = "json"


@dataclass(frozen=True)
class AIRequest:
    """One generation call, independent of the provider."""

    prompt: str
    system_prompt: str | None = None
    images: tuple[bytes, ...] = ()
    temperature: float = 0.7
    max_tokens: int = 2000
    response_format: ResponseFormat | None = None

    @property
    def wants_json(self) -> bool:
        return self.response_format is ResponseFormat.JSON


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class FinishReason(Enum):
    COMPLETE = "complete"
    MAX_TOKENS = "max_tokens"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


@dataclass(frozen=True)
class AIResponse:
    """Normalized generation result."""

    content: str
    model: AIModel
    usage: TokenUsage | None = None
    finish_reason: FinishReason = FinishReason.COMPLETE
    # FinishReason.ERROR の場合のみ理由が入る
    finish_detail: str | None = None


@dataclass(frozen=True)
class TaskProfile:
    recommended_tier: QualityTier
    requires_vision: bool
    default_temperature: float
    default_max_tokens: int


class AITaskCategory(Enum):
    """Why a generation call is being made."""

    DRAFT_SUGGESTION = "draft_suggestion"
    ARGUMENT_REFINEMENT = "argument_refinement"
    CONTEXT_ANALYSIS = "context_analysis"
    STUCK_ASSISTANCE = "stuck_assistance"
    QUICK_EDIT = "quick_edit"
    DOCUMENT_CLASSIFICATION = "document_classification"

    @property
    def profile(self) -> TaskProfile:
        return _TASK_PROFILES[self]

    @property
    def recommended_tier(self) -> QualityTier:
        return self.profile.recommended_tier

    @property
    def requires_vision(self) -> bool:
        return self.profile.requires_vision

    @property
    def default_temperature(self) -> float:
        return self.profile.default_temperature

    @property
    def default_max_tokens(self) -> int:
        return self.profile.default_max_tokens


_TASK_PROFILES: dict[AITaskCategory, TaskProfile] = {
    AITaskCategory.DRAFT_SUGGESTION: TaskProfile(QualityTier.PREMIUM, False, 0.8, 1000),
    AITaskCategory.ARGUMENT_REFINEMENT: TaskProfile(
        QualityTier.PREMIUM, False, 0.7, 2000
    ),
    AITaskCategory.CONTEXT_ANALYSIS: TaskProfile(QualityTier.PREMIUM, True, 0.3, 500),
    AITaskCategory.STUCK_ASSISTANCE: TaskProfile(QualityTier.PREMIUM, False, 0.7, 1500),
    AITaskCategory.QUICK_EDIT: TaskProfile(QualityTier.STANDARD, False, 0.4, 500),
    AITaskCategory.DOCUMENT_CLASSIFICATION: TaskProfile(
        QualityTier.STANDARD, False, 0.3, 200
    ),
}
