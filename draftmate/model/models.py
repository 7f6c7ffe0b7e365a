"""Stuck engine value types and the payload shapes exposed over HTTP."""

__all__ = [
    "AssistanceLevel",
    "FlowState",
    "StatusModel",
    "StuckConfiguration",
    "StuckSignals",
    "StuckType",
    "TriggerDecision",
    "TriggerModel",
    "clamp_unit",
]


from dataclasses import asdict, dataclass
from enum import Enum
from typing_extensions import TypedDict

PAUSE_WEIGHT = 0.35
DISTRACTION_WEIGHT = 0.30
REWRITING_WEIGHT = 0.25
NAVIGATION_WEIGHT = 0.10


def clamp_unit(value: float) -> float:
    """値を [0, 1] に収める."""
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class StuckSignals:
    """Four independent struggle signals, each in [0, 1]."""

    pause: float = 0.0
    distraction: float = 0.0
    rewriting: float = 0.0
    navigation: float = 0.0

    def __post_init__(self) -> None:
        for name in ("pause", "distraction", "rewriting", "navigation"):
            object.__setattr__(self, name, clamp_unit(getattr(self, name)))

    @property
    def weighted(self) -> float:
        """重み付き合成スコア（重みの合計は1.0）."""
        score = (
            self.pause * PAUSE_WEIGHT
            + self.distraction * DISTRACTION_WEIGHT
            + self.rewriting * REWRITING_WEIGHT
            + self.navigation * NAVIGATION_WEIGHT
        )
        return clamp_unit(score)

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


class FlowState(Enum):
    """Categorical summary of current writing behaviour."""

    FLOWING = "flowing"
    PAUSED = "paused"
    STUCK = "stuck"
    DISTRACTED = "distracted"
    UNKNOWN = "unknown"

    @property
    def should_interrupt(self) -> bool:
        return self is not FlowState.FLOWING


class StuckType(Enum):
    """どの種類の行き詰まりかを表す."""

    PAUSE = "pause"
    DISTRACTION = "distraction"
    REWRITING = "rewriting"
    SEARCHING = "searching"

    @property
    def display_name(self) -> str:
        return _STUCK_TYPE_LABELS[self][0]

    @property
    def help_prompt(self) -> str:
        return _STUCK_TYPE_LABELS[self][1]


_STUCK_TYPE_LABELS: dict[StuckType, tuple[str, str]] = {
    StuckType.PAUSE: (
        "Taking a moment",
        "Looks like you've paused. Would you like help continuing?",
    ),
    StuckType.DISTRACTION: (
        "Distracted",
        "Ready to get back to your draft?",
    ),
    StuckType.REWRITING: (
        "Struggling with phrasing",
        "Having trouble with this section? Let me suggest alternatives.",
    ),
    StuckType.SEARCHING: (
        "Searching for something",
        "Looking for something? I can help you find the right phrasing or precedent.",
    ),
}


class AssistanceLevel(Enum):
    """スコア帯ごとの支援レベル."""

    NONE = "none"
    SUBTLE = "subtle"
    MODERATE = "moderate"
    PROACTIVE = "proactive"

    @classmethod
    def for_score(cls, score: float) -> "AssistanceLevel":
        if score < 0.3:  # noqa: PLR2004
            return cls.NONE
        if score < 0.5:  # noqa: PLR2004
            return cls.SUBTLE
        if score < 0.7:  # noqa: PLR2004
            return cls.MODERATE
        return cls.PROACTIVE

    @property
    def description(self) -> str:
        return _ASSISTANCE_LABELS[self][0]

    @property
    def interpretation(self) -> str:
        """このスコア帯が何を意味するか."""
        return _ASSISTANCE_LABELS[self][1]


_ASSISTANCE_LABELS: dict[AssistanceLevel, tuple[str, str]] = {
    AssistanceLevel.NONE: ("No assistance", "Normal flow - no intervention needed"),
    AssistanceLevel.SUBTLE: ("Help available", "Possible pause - preparing suggestion"),
    AssistanceLevel.MODERATE: ("Showing suggestions", "Likely stuck - subtle indicator shown"),
    AssistanceLevel.PROACTIVE: ("Proactive help", "Definitely stuck - proactive suggestion"),
}


@dataclass(frozen=True)
class TriggerDecision:
    """Whether to interrupt the user now, and why."""

    should_trigger: bool
    stuck_type: StuckType | None = None


NO_TRIGGER = TriggerDecision(should_trigger=False)


@dataclass(frozen=True)
class StuckConfiguration:
    """Stuck engine thresholds. Durations are in seconds.

    Args:
    pause_threshold: これより短い無入力は通常の間として扱う
    long_pause_threshold: ここで pause 信号が 0.7 に到達する
    stuck_threshold: 合成スコアがこれ以上なら「行き詰まり」
    flow_threshold: これ未満ならフロー状態とみなせる
    rewrite_window: 削除イベントを数える窓
    navigation_window: スクロールを数える窓
    cooldown_period: 連続した割り込みの最小間隔

    """

    pause_threshold: float = 30.0
    long_pause_threshold: float = 60.0
    stuck_threshold: float = 0.5
    flow_threshold: float = 0.3
    rewrite_window: float = 30.0
    navigation_window: float = 15.0
    cooldown_period: float = 120.0

    def __post_init__(self) -> None:
        if self.long_pause_threshold <= self.pause_threshold:
            msg = "long_pause_threshold must be greater than pause_threshold"
            raise ValueError(msg)


class TriggerModel(TypedDict):
    should_trigger: bool
    stuck_type: str | None
    display_name: str | None
    help_prompt: str | None


class StatusModel(TypedDict):
    """/status のレスポンス構造."""

    score: float
    is_likely_stuck: bool
    flow_state: str
    signals: dict[str, float]
    assistance_level: str
    assistance: str
    interpretation: str
    configured_providers: list[str]
    default_model: str
