# tests/adaptation/test_history_patterns.py
"""HistoryStore / PatternDetector / RuleRegistry / ActionExecutor の単体テスト

実行方法:
    pytest tests/adaptation/test_history_patterns.py -v
"""

import asyncio
import threading
import time
from datetime import datetime, timedelta

import pytest

from src.adaptation.conditions import ConstantCondition
from src.adaptation.executor import ActionExecutor
from src.adaptation.history import HistoryStore
from src.adaptation.patterns import (
    EVENT_FREQUENCY_PATTERN,
    METRIC_TREND_PATTERN,
    PatternDetector,
)
from src.adaptation.registry import RuleRegistry
from src.config.experimentation_config import ExperimentationConfig
from src.models.adaptation import AdaptationRule, RulePriority
from src.models.errors import ConfigurationError


NOW = datetime(2026, 3, 1, 12, 0)


def _rule(name, priority=RulePriority.MEDIUM, enabled=True, rule_id=None):
    return AdaptationRule(
        id=rule_id or f"id-{name}",
        name=name,
        condition=ConstantCondition(True),
        priority=priority,
        enabled=enabled,
    )


# ============================================================================
# HistoryStore
# ============================================================================


class TestHistoryStore:
    """HistoryStore のテスト"""

    def test_keeps_newest_window_points(self):
        history = HistoryStore(window_size=3)
        for i in range(5):
            history.append_metric("latency", i, NOW + timedelta(seconds=i))

        series = history.metric_series("latency")

        assert [value for _, value in series] == [2.0, 3.0, 4.0]

    def test_event_and_pattern_bounds(self):
        history = HistoryStore(event_history_size=2, pattern_history_size=1)
        for i in range(3):
            history.append_event({"id": i})
        assert [e["id"] for e in history.events()] == [1, 2]

    def test_snapshot_is_a_copy(self):
        history = HistoryStore()
        history.append_metric("x", 1.0, NOW)
        metrics, events, patterns = history.snapshot()
        history.append_metric("x", 2.0, NOW)
        assert len(metrics["x"]) == 1
        assert events == [] and patterns == []

    def test_config_sizes(self):
        history = HistoryStore(config=ExperimentationConfig(history_window_size=7))
        assert history.window_size == 7

    @pytest.mark.parametrize("kwargs", [
        {"window_size": 0},
        {"event_history_size": -1},
        {"pattern_history_size": 0},
    ])
    def test_non_positive_sizes_raise(self, kwargs):
        with pytest.raises(ConfigurationError):
            HistoryStore(**kwargs)

    def test_clear(self):
        history = HistoryStore()
        history.append_metric("x", 1.0)
        history.append_event({"type": "a"})
        history.clear()
        assert history.metric_history() == {} and history.events() == []

    def test_concurrent_appends(self):
        history = HistoryStore(window_size=10_000)
        threads = [
            threading.Thread(
                target=lambda: [history.append_metric("x", 1.0) for _ in range(500)]
            )
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(history.metric_series("x")) == 4000


# ============================================================================
# PatternDetector
# ============================================================================


class TestPatternDetector:
    """PatternDetector のテスト"""

    @pytest.fixture
    def history(self):
        return HistoryStore()

    @pytest.fixture
    def detector(self, history):
        return PatternDetector(history, clock=lambda: NOW)

    def test_empty_input(self, detector, history):
        assert detector.detect([]) == []
        assert history.patterns() == []

    def test_confidence_formula(self, detector):
        assert detector.confidence(5, 2) == pytest.approx((0.5 + 0.4) / 2)
        assert detector.confidence(40, 20) == 1.0
        assert detector.confidence(0, 0) == 0.0

    def test_groups_by_type(self, detector):
        events = [
            {"id": "e1", "type": "search_failed", "session_id": "s1", "status": "open"},
            {"id": "e2", "type": "search_failed", "session_id": "s2", "status": "closed"},
            {"id": "e3", "type": "timeout", "test_id": "t1", "metadata": {"suite": "api"}},
        ]

        patterns = {p.features["event_type"]: p for p in detector.detect(events)}

        failed = patterns["search_failed"]
        assert failed.pattern_type == EVENT_FREQUENCY_PATTERN
        assert failed.event_id == "e1"
        assert failed.features["count"] == 2
        assert failed.features["distinct_subjects"] == 2
        assert failed.features["status"] == "closed"
        assert failed.confidence == pytest.approx((0.2 + 0.4) / 2)

        timeout = patterns["timeout"]
        assert timeout.metadata == {"suite": "api"}
        assert timeout.confidence == pytest.approx((0.1 + 0.2) / 2)

    def test_patterns_are_published_to_history(self, detector, history):
        detector.detect([{"id": "e1", "type": "a", "subject_id": "u1"}])
        assert [p.id for p in history.patterns()] == ["pattern-e1"]

    def test_min_confidence_filters(self, history):
        detector = PatternDetector(
            history, ExperimentationConfig(min_pattern_confidence=0.5)
        )
        assert detector.detect([{"id": "e1", "type": "rare"}]) == []

    def test_invalid_scale_raises(self):
        with pytest.raises(ConfigurationError):
            PatternDetector(config=ExperimentationConfig(pattern_frequency_scale=0))

    def test_metric_trend(self, detector, history):
        series = [(NOW + timedelta(minutes=i), 100.0 + 10 * i) for i in range(6)]
        flat = [(NOW + timedelta(minutes=i), 5.0) for i in range(6)]
        short = [(NOW, 1.0), (NOW + timedelta(minutes=1), 2.0)]

        patterns = detector.detect_metric_trends(
            {"latency": series, "flat": flat, "short": short}
        )

        assert len(patterns) == 1
        trend = patterns[0]
        assert trend.pattern_type == METRIC_TREND_PATTERN
        assert trend.features["direction"] == "up"
        assert trend.confidence == pytest.approx(1.0)
        assert history.patterns()[-1] is trend


# ============================================================================
# RuleRegistry
# ============================================================================


class TestRuleRegistry:
    """RuleRegistry のテスト"""

    def test_priority_then_registration_order(self):
        registry = RuleRegistry()
        registry.register(_rule("low", RulePriority.LOW))
        registry.register(_rule("medium-1"))
        registry.register(_rule("critical", RulePriority.CRITICAL))
        registry.register(_rule("medium-2"))

        assert [r.name for r in registry.rules()] == ["critical", "medium-1", "medium-2", "low"]

    def test_reregistration_replaces_and_moves_to_end(self):
        registry = RuleRegistry()
        registry.register(_rule("a"))
        registry.register(_rule("b"))
        registry.register(_rule("a", rule_id="id-a-v2"))

        assert len(registry) == 2
        assert [r.name for r in registry.rules()] == ["b", "a"]
        assert registry.get("a").id == "id-a-v2"
        assert registry.get_by_id("id-a") is None

    def test_unregister_absent_is_noop(self):
        registry = RuleRegistry()
        registry.unregister("missing")
        registry.register(_rule("a"))
        registry.unregister("a")
        assert len(registry) == 0
        assert registry.get("a") is None

    def test_enabled_rules(self):
        registry = RuleRegistry()
        registry.register(_rule("on"))
        registry.register(_rule("off", enabled=False))
        assert [r.name for r in registry.enabled_rules()] == ["on"]


# ============================================================================
# ActionExecutor
# ============================================================================


class TestActionExecutor:
    """ActionExecutor のテスト"""

    def test_invalid_workers(self):
        with pytest.raises(ConfigurationError):
            ActionExecutor(max_workers=0)

    @pytest.mark.asyncio
    async def test_returns_result(self):
        executor = ActionExecutor()
        assert await executor.run(lambda a, b: a + b, 2, 3) == 5

    @pytest.mark.asyncio
    async def test_propagates_exceptions(self):
        def fail():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await ActionExecutor().run(fail)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        executor = ActionExecutor(max_workers=2)

        await asyncio.gather(*[executor.run(time.sleep, 0.02) for _ in range(8)])

        assert executor.peak_in_flight == 2
        assert executor.in_flight == 0
