"""Multi-signal "stuck" detection.

Four signals (pause, distraction, rewriting, navigation) are recomputed on a
fixed cadence by :meth:`StuckEngine.tick` and combined into a weighted score.
The interruption policy itself lives in :func:`decide_trigger` so it can be
tested without timers.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from typing import Any, Callable

from draftmate.model.models import (
    NO_TRIGGER,
    AssistanceLevel,
    FlowState,
    StuckConfiguration,
    StuckSignals,
    StuckType,
    TriggerDecision,
    clamp_unit,
)
from draftmate.watchers.logger import logger

log = logger.getChild("stuck")

TEXT_HISTORY_LIMIT = 10
SIMILARITY_SAMPLE = 5
SIMILARITY_MIN_HISTORY = 3
SIMILARITY_MIN_LENGTH = 10
SIMILARITY_PREFIX_RATIO = 0.8
DELETION_SATURATION = 10.0
NAVIGATION_SATURATION = 5.0
DISTRACTION_SATURATION_SEC = 300.0
DECAY_STEP = 0.1
DECAY_MAX_STEPS = 10
LONG_PAUSE_BASE = 0.7
LONG_PAUSE_RAMP_SEC = 120.0
RECENT_TYPING_SEC = 5.0


def pause_signal(idle_seconds: float | None, config: StuckConfiguration) -> float:
    """無入力時間から pause 信号を計算する.

    閾値までは0、長い閾値まで0→0.7の線形、その後は120秒かけて1.0へ.
    """
    if idle_seconds is None or idle_seconds < config.pause_threshold:
        return 0.0
    if idle_seconds < config.long_pause_threshold:
        span = config.long_pause_threshold - config.pause_threshold
        progress = (idle_seconds - config.pause_threshold) / span
        return progress * LONG_PAUSE_BASE
    extra = (idle_seconds - config.long_pause_threshold) / LONG_PAUSE_RAMP_SEC
    return min(1.0, LONG_PAUSE_BASE + extra)


def texts_similar(first: str, second: str) -> bool:
    """Same leading 80% (of the shorter text) means the same passage is being edited."""
    min_length = min(len(first), len(second))
    if min_length <= SIMILARITY_MIN_LENGTH:
        return False
    prefix_length = int(min_length * SIMILARITY_PREFIX_RATIO)
    return first[:prefix_length] == second[:prefix_length]


def text_similarity(history: list[str]) -> float:
    """直近5件のスナップショットで、連続ペアが似ている割合."""
    if len(history) < SIMILARITY_MIN_HISTORY:
        return 0.0
    recent = history[-SIMILARITY_SAMPLE:]
    pairs = len(recent) - 1
    similar = sum(
        1 for first, second in zip(recent, recent[1:]) if texts_similar(first, second)
    )
    return similar / pairs


def dominant_stuck_type(signals: StuckSignals) -> StuckType:
    """Strongest signal wins; ties go to the earlier entry."""
    candidates = [
        (StuckType.PAUSE, signals.pause),
        (StuckType.DISTRACTION, signals.distraction),
        (StuckType.REWRITING, signals.rewriting),
        (StuckType.SEARCHING, signals.navigation),
    ]
    best_type, best_value = candidates[0]
    for stuck_type, value in candidates[1:]:
        if value > best_value:
            best_type, best_value = stuck_type, value
    return best_type


def decide_trigger(
    signals: StuckSignals,
    flow_state: FlowState,
    *,
    is_likely_stuck: bool,
    seconds_since_last_trigger: float | None,
    cooldown_period: float,
) -> TriggerDecision:
    """割り込むべきかを判定する純粋関数.

    Args:
        signals: 現在の信号
        flow_state: 現在のフロー状態
        is_likely_stuck: スコアが stuck 閾値以上か
        seconds_since_last_trigger: 前回の割り込みからの経過秒（未発火ならNone）
        cooldown_period: 割り込み間の最小間隔（秒）

    Returns:
        TriggerDecision: 判定結果

    """
    if (
        seconds_since_last_trigger is not None
        and seconds_since_last_trigger < cooldown_period
    ):
        return NO_TRIGGER
    if not flow_state.should_interrupt:
        return NO_TRIGGER
    if not is_likely_stuck:
        return NO_TRIGGER
    return TriggerDecision(should_trigger=True, stuck_type=dominant_stuck_type(signals))


class StuckEngine:
    """Scores the user's writing state and decides when to offer help.

    Not thread-safe: drive it from one context (the API's event loop).
    """

    def __init__(
        self,
        config: StuckConfiguration | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or StuckConfiguration()
        self._clock = clock
        self.reset()

    # ------------------------------------------------------------------
    # Recording
    def record_typing(self, current_length: int) -> None:
        """入力を記録する。文字数が減っていれば削除イベントとして扱う."""
        now = self._clock()
        if current_length < self._last_text_length:
            self._deletion_count += self._last_text_length - current_length
            self._deletion_times.append(now)
        self._last_typing_time = now
        self._last_text_length = current_length
        self._flow_state = FlowState.FLOWING

    def record_text_content(self, text: str) -> None:
        self._text_history.append(text)

    def record_navigation(self) -> None:
        now = self._clock()
        self._scroll_times.append(now)
        self._prune(self._scroll_times, now - self.config.navigation_window)

    def record_distraction(self, duration: float) -> None:
        """Distraction saturates after five minutes away."""
        self._distraction = clamp_unit(max(0.0, duration) / DISTRACTION_SATURATION_SEC)
        self._flow_state = FlowState.DISTRACTED
        self._in_distraction = True
        # A fresh distraction supersedes any decay still in progress.
        self._distraction_generation += 1
        self._decay = None
        log.debug("distraction recorded | duration=%.1fs", duration)

    def record_return_from_distraction(self) -> None:
        """復帰を記録する。信号は tick ごとに 0.1/秒 ずつ減衰させる."""
        self._in_distraction = False
        if self._distraction <= 0.0:
            self._decay = None
            return
        self._decay = (self._distraction_generation, self._clock(), self._distraction)

    def set_distraction_context(self, active: bool) -> None:  # noqa: FBT001
        self._in_distraction = active

    def record_app_focus(self, *, is_distraction: bool, duration: float = 0.0) -> None:
        """Hand-off point for app-focus transitions from the observation layer."""
        if is_distraction:
            self._in_distraction = True
            if duration > 0:
                self.record_distraction(duration)
        elif self._in_distraction or self._distraction > 0.0:
            self.record_return_from_distraction()

    def record_help_triggered(self) -> None:
        self._last_trigger_time = self._clock()

    # ------------------------------------------------------------------
    # Scoring
    def tick(self) -> StuckSignals:
        """Recompute every signal, the score and the flow state."""
        now = self._clock()
        self._prune(self._deletion_times, now - self.config.rewrite_window)
        self._prune(self._scroll_times, now - self.config.navigation_window)
        self._advance_decay(now)

        idle = None if self._last_typing_time is None else now - self._last_typing_time
        deletion_density = min(len(self._deletion_times) / DELETION_SATURATION, 1.0)
        rewriting = max(deletion_density, text_similarity(list(self._text_history)))
        navigation = min(len(self._scroll_times) / NAVIGATION_SATURATION, 1.0)

        self._signals = StuckSignals(
            pause=pause_signal(idle, self.config),
            distraction=self._distraction,
            rewriting=rewriting,
            navigation=navigation,
        )
        self._score = self._signals.weighted
        self._is_likely_stuck = self._score >= self.config.stuck_threshold
        self._flow_state = self._resolve_flow_state(idle)
        return self._signals

    def should_trigger_help(self) -> TriggerDecision:
        since = None
        if self._last_trigger_time is not None:
            since = self._clock() - self._last_trigger_time
        decision = decide_trigger(
            self._signals,
            self._flow_state,
            is_likely_stuck=self._is_likely_stuck,
            seconds_since_last_trigger=since,
            cooldown_period=self.config.cooldown_period,
        )
        if decision.should_trigger:
            log.info(
                "help trigger | type=%s score=%.2f",
                decision.stuck_type.value if decision.stuck_type else None,
                self._score,
            )
        return decision

    def reset(self) -> None:
        """セッション開始時に全ての状態を初期化する."""
        self._signals = StuckSignals()
        self._score = 0.0
        self._is_likely_stuck = False
        self._flow_state = FlowState.UNKNOWN
        self._distraction = 0.0
        self._in_distraction = False
        self._distraction_generation = 0
        # (generation, started_at, value_at_start)
        self._decay: tuple[int, float, float] | None = None
        self._last_typing_time: float | None = None
        self._last_text_length = 0
        self._deletion_count = 0
        self._deletion_times: deque[float] = deque()
        self._scroll_times: deque[float] = deque()
        self._text_history: deque[str] = deque(maxlen=TEXT_HISTORY_LIMIT)
        self._last_trigger_time: float | None = None

    # ------------------------------------------------------------------
    # Read-only views
    @property
    def score(self) -> float:
        return self._score

    @property
    def is_likely_stuck(self) -> bool:
        return self._is_likely_stuck

    @property
    def flow_state(self) -> FlowState:
        return self._flow_state

    @property
    def signals(self) -> StuckSignals:
        return self._signals

    @property
    def distraction_signal(self) -> float:
        """直近で記録された distraction 値（tick を待たない）."""
        return self._distraction

    @property
    def in_distraction_context(self) -> bool:
        return self._in_distraction

    @property
    def deletion_count(self) -> int:
        return self._deletion_count

    @property
    def assistance_level(self) -> AssistanceLevel:
        return AssistanceLevel.for_score(self._score)

    @property
    def score_interpretation(self) -> str:
        return self.assistance_level.interpretation

    def snapshot(self) -> dict[str, Any]:
        return {
            "score": round(self._score, 4),
            "is_likely_stuck": self._is_likely_stuck,
            "flow_state": self._flow_state.value,
            "signals": self._signals.as_dict(),
            "assistance_level": self.assistance_level.value,
            "assistance": self.assistance_level.description,
            "interpretation": self.score_interpretation,
        }

    # ------------------------------------------------------------------
    # Internals
    def _resolve_flow_state(self, idle: float | None) -> FlowState:
        if self._score >= self.config.stuck_threshold:
            return FlowState.STUCK
        if self._score >= self.config.flow_threshold:
            return FlowState.PAUSED
        if self._in_distraction:
            return FlowState.DISTRACTED
        if idle is not None and idle < RECENT_TYPING_SEC:
            return FlowState.FLOWING
        return FlowState.UNKNOWN

    def _advance_decay(self, now: float) -> None:
        if self._decay is None:
            return
        generation, started_at, start_value = self._decay
        if generation != self._distraction_generation:
            self._decay = None
            return
        steps = min(int(math.floor(max(0.0, now - started_at))), DECAY_MAX_STEPS)
        # 丸めないと 0.3 - 3*0.1 のような誤差が残る
        self._distraction = max(0.0, round(start_value - steps * DECAY_STEP, 6))
        if steps >= DECAY_MAX_STEPS or self._distraction <= 0.0:
            self._decay = None

    @staticmethod
    def _prune(times: deque[float], cutoff: float) -> None:
        while times and times[0] < cutoff:
            times.popleft()


class StuckTicker:
    """Calls :meth:`StuckEngine.tick` on a fixed cadence inside the event loop."""

    def __init__(self, engine: StuckEngine, interval: float = 1.0) -> None:
        self.engine = engine
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        log.info("stuck ticker started | interval=%.1fs", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("stuck ticker stopped")

    async def _run(self) -> None:
        while True:
            self.engine.tick()
            await asyncio.sleep(self.interval)
