import asyncio
import random
from unittest.mock import Mock

import pytest

from draftmate.model.models import (
    AssistanceLevel,
    FlowState,
    StuckConfiguration,
    StuckSignals,
    StuckType,
)
from draftmate.watchers.stuck import (
    StuckEngine,
    StuckTicker,
    decide_trigger,
    dominant_stuck_type,
    pause_signal,
    text_similarity,
    texts_similar,
)


@pytest.fixture
def engine(clock):
    """手動の時計で駆動するエンジン"""
    return StuckEngine(clock=clock)


def _make_stuck(engine, clock):
    """pause と distraction がともに 1.0 になる状態を作る"""
    engine.record_typing(100)
    clock.advance(180)
    engine.record_distraction(300)
    engine.tick()


class TestPauseSignal:
    """pause信号の計算"""

    def test_below_threshold_is_zero(self):
        config = StuckConfiguration()
        assert pause_signal(None, config) == 0.0
        assert pause_signal(0, config) == 0.0
        assert pause_signal(29.9, config) == 0.0

    def test_linear_between_thresholds(self):
        config = StuckConfiguration()
        assert pause_signal(45, config) == pytest.approx(0.35)

    def test_reaches_base_at_long_pause(self):
        assert pause_signal(60, StuckConfiguration()) == pytest.approx(0.7)

    def test_saturates_after_ramp(self):
        config = StuckConfiguration()
        assert pause_signal(180, config) == pytest.approx(1.0)
        assert pause_signal(10_000, config) == 1.0

    def test_monotonic_non_decreasing(self):
        config = StuckConfiguration()
        values = [pause_signal(t / 2, config) for t in range(0, 500)]
        assert all(a <= b for a, b in zip(values, values[1:]))
        assert max(values) <= 1.0


class TestTextSimilarity:
    """テキスト類似度"""

    def test_short_texts_never_similar(self):
        assert texts_similar("short text", "short text") is False

    def test_same_prefix_is_similar(self):
        assert texts_similar(
            "The quick brown fox jumps",
            "The quick brown fox leaps",
        )

    def test_different_prefix_is_not_similar(self):
        assert not texts_similar(
            "The quick brown fox jumps",
            "A completely different line",
        )

    def test_needs_three_snapshots(self):
        text = "The same paragraph over and over"
        assert text_similarity([text, text]) == 0.0
        assert text_similarity([text, text, text]) == 1.0

    def test_only_recent_five_are_considered(self):
        same = "The same paragraph over and over"
        history = ["Unrelated opening paragraph"] * 5 + [same] * 5
        assert text_similarity(history) == 1.0

    def test_partial_similarity(self):
        a = "The quick brown fox jumps"
        b = "Something else entirely here"
        assert text_similarity([a, a, b]) == pytest.approx(0.5)


class TestDecisionPolicy:
    """割り込み判定の純粋関数"""

    def test_dominant_type_strongest_signal(self):
        assert dominant_stuck_type(StuckSignals(rewriting=0.9)) is StuckType.REWRITING
        assert dominant_stuck_type(StuckSignals(navigation=0.2)) is StuckType.SEARCHING

    def test_dominant_type_tie_goes_to_first(self):
        signals = StuckSignals(pause=0.5, distraction=0.5, rewriting=0.5)
        assert dominant_stuck_type(signals) is StuckType.PAUSE

    def test_triggers_when_stuck(self):
        decision = decide_trigger(
            StuckSignals(distraction=1.0),
            FlowState.STUCK,
            is_likely_stuck=True,
            seconds_since_last_trigger=None,
            cooldown_period=120,
        )
        assert decision.should_trigger
        assert decision.stuck_type is StuckType.DISTRACTION

    def test_flowing_blocks_trigger(self):
        decision = decide_trigger(
            StuckSignals(pause=1.0),
            FlowState.FLOWING,
            is_likely_stuck=True,
            seconds_since_last_trigger=None,
            cooldown_period=120,
        )
        assert not decision.should_trigger
        assert decision.stuck_type is None

    def test_cooldown_blocks_trigger(self):
        decision = decide_trigger(
            StuckSignals(pause=1.0),
            FlowState.STUCK,
            is_likely_stuck=True,
            seconds_since_last_trigger=119.0,
            cooldown_period=120,
        )
        assert not decision.should_trigger

    def test_not_stuck_no_trigger(self):
        decision = decide_trigger(
            StuckSignals(),
            FlowState.UNKNOWN,
            is_likely_stuck=False,
            seconds_since_last_trigger=None,
            cooldown_period=120,
        )
        assert not decision.should_trigger


class TestStuckEngine:
    """エンジン全体の振る舞い"""

    def test_no_events_no_trigger(self, engine):
        assert engine.flow_state is FlowState.UNKNOWN
        assert engine.score == 0.0
        assert not engine.should_trigger_help().should_trigger
        engine.tick()
        assert not engine.should_trigger_help().should_trigger

    def test_score_always_in_unit_range(self, engine, clock):
        rng = random.Random(42)
        for _ in range(300):
            engine.record_typing(rng.randint(0, 500))
            clock.advance(rng.uniform(0, 40))
            if rng.random() < 0.2:
                engine.record_navigation()
            if rng.random() < 0.05:
                engine.record_distraction(rng.uniform(0, 900))
            engine.tick()
            assert 0.0 <= engine.score <= 1.0

    def test_distraction_signal_scales_with_duration(self, engine):
        engine.record_distraction(300)
        assert engine.distraction_signal == 1.0
        engine.record_distraction(150)
        assert engine.distraction_signal == 0.5
        engine.record_distraction(900)
        assert engine.distraction_signal == 1.0
        assert engine.flow_state is FlowState.DISTRACTED

    def test_ten_deletions_saturate_rewriting(self, engine, clock):
        engine.record_typing(100)
        for length in range(99, 89, -1):
            clock.advance(1)
            engine.record_typing(length)
        signals = engine.tick()
        assert signals.rewriting == 1.0
        assert engine.deletion_count == 10

    def test_deletions_expire_after_window(self, engine, clock):
        engine.record_typing(100)
        for length in range(99, 89, -1):
            engine.record_typing(length)
        clock.advance(31)
        assert engine.tick().rewriting == 0.0
        # 累積カウントは窓に関係なく残る
        assert engine.deletion_count == 10

    def test_similar_snapshots_raise_rewriting(self, engine):
        for suffix in ("a", "b", "c", "d"):
            engine.record_text_content(f"This paragraph keeps changing {suffix}")
        assert engine.tick().rewriting == 1.0

    def test_navigation_signal(self, engine, clock):
        for _ in range(5):
            engine.record_navigation()
        assert engine.tick().navigation == 1.0
        clock.advance(16)
        assert engine.tick().navigation == 0.0

    def test_trigger_then_cooldown(self, engine, clock):
        _make_stuck(engine, clock)
        assert engine.is_likely_stuck
        assert engine.flow_state is FlowState.STUCK

        decision = engine.should_trigger_help()
        assert decision.should_trigger
        # pause と distraction が同値なので先に並ぶ pause が選ばれる
        assert decision.stuck_type is StuckType.PAUSE

        engine.record_help_triggered()
        clock.advance(60)
        engine.tick()
        assert engine.is_likely_stuck
        assert not engine.should_trigger_help().should_trigger

        clock.advance(61)
        engine.tick()
        assert engine.should_trigger_help().should_trigger

    def test_typing_recently_is_flowing(self, engine, clock):
        engine.record_typing(10)
        clock.advance(1)
        engine.tick()
        assert engine.flow_state is FlowState.FLOWING
        assert not engine.should_trigger_help().should_trigger

    def test_paused_band(self, engine, clock):
        engine.record_typing(10)
        clock.advance(60)
        engine.tick()
        # 0.7 * 0.35 = 0.245 は flow 閾値未満
        assert engine.flow_state is FlowState.UNKNOWN
        clock.advance(120)
        engine.tick()
        # 1.0 * 0.35 = 0.35
        assert engine.flow_state is FlowState.PAUSED
        assert engine.assistance_level is AssistanceLevel.SUBTLE

    def test_assistance_level_bands(self):
        assert AssistanceLevel.for_score(0.0) is AssistanceLevel.NONE
        assert AssistanceLevel.for_score(0.3) is AssistanceLevel.SUBTLE
        assert AssistanceLevel.for_score(0.5) is AssistanceLevel.MODERATE
        assert AssistanceLevel.for_score(0.7) is AssistanceLevel.PROACTIVE

    def test_assistance_labels(self):
        assert AssistanceLevel.NONE.description == "No assistance"
        assert AssistanceLevel.PROACTIVE.description == "Proactive help"
        assert AssistanceLevel.MODERATE.interpretation == "Likely stuck - subtle indicator shown"

    def test_searching_prompt(self):
        assert StuckType.SEARCHING.help_prompt.endswith("the right phrasing or precedent.")

    def test_reset_clears_everything(self, engine, clock):
        _make_stuck(engine, clock)
        engine.record_help_triggered()
        engine.reset()
        assert engine.score == 0.0
        assert engine.flow_state is FlowState.UNKNOWN
        assert engine.distraction_signal == 0.0
        assert engine.deletion_count == 0
        assert not engine.should_trigger_help().should_trigger

    def test_snapshot_shape(self, engine):
        snapshot = engine.snapshot()
        assert set(snapshot) == {
            "score",
            "is_likely_stuck",
            "flow_state",
            "signals",
            "assistance_level",
            "assistance",
            "interpretation",
        }
        assert snapshot["signals"] == {
            "pause": 0.0,
            "distraction": 0.0,
            "rewriting": 0.0,
            "navigation": 0.0,
        }


class TestDistractionDecay:
    """distraction信号の減衰"""

    def test_decays_one_tenth_per_second(self, engine, clock):
        engine.record_distraction(150)
        engine.record_return_from_distraction()
        assert not engine.in_distraction_context

        clock.advance(1)
        engine.tick()
        assert engine.distraction_signal == pytest.approx(0.4)
        clock.advance(2)
        engine.tick()
        assert engine.distraction_signal == pytest.approx(0.2)
        clock.advance(10)
        engine.tick()
        assert engine.distraction_signal == 0.0

    def test_fresh_distraction_cancels_decay(self, engine, clock):
        engine.record_distraction(300)
        engine.record_return_from_distraction()
        clock.advance(2)
        engine.tick()
        assert engine.distraction_signal == pytest.approx(0.8)

        engine.record_distraction(150)
        clock.advance(3)
        engine.tick()
        assert engine.distraction_signal == 0.5

    def test_app_focus_handoff(self, engine, clock):
        engine.record_app_focus(is_distraction=True, duration=300)
        assert engine.in_distraction_context
        assert engine.distraction_signal == 1.0

        engine.record_app_focus(is_distraction=False)
        assert not engine.in_distraction_context
        clock.advance(5)
        engine.tick()
        assert engine.distraction_signal == pytest.approx(0.5)


class TestConfiguration:
    def test_defaults(self):
        config = StuckConfiguration()
        assert config.pause_threshold == 30.0
        assert config.long_pause_threshold == 60.0
        assert config.stuck_threshold == 0.5
        assert config.cooldown_period == 120.0

    def test_long_pause_must_exceed_pause(self):
        with pytest.raises(ValueError, match="long_pause_threshold"):
            StuckConfiguration(pause_threshold=30, long_pause_threshold=30)

    def test_signals_are_clamped(self):
        signals = StuckSignals(pause=1.5, distraction=-0.2)
        assert signals.pause == 1.0
        assert signals.distraction == 0.0
        assert StuckSignals(1, 1, 1, 1).weighted == pytest.approx(1.0)


class TestStuckTicker:
    """一定間隔で tick を呼ぶ"""

    def test_start_and_stop(self):
        engine = Mock()
        ticker = StuckTicker(engine, interval=0.01)

        async def scenario():
            ticker.start()
            assert ticker.running
            await asyncio.sleep(0.05)
            await ticker.stop()

        asyncio.run(scenario())
        assert not ticker.running
        assert engine.tick.call_count >= 1
