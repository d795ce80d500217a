"""Tests for model routing, escalation and cost tracking."""

from datetime import date, datetime, timedelta, timezone

import pytest

from grading.config.app_config import AppConfig
from grading.core.classifier import ComplexityAnalysis
from grading.core.cost_tracking import (
    CostMetrics,
    CostTracker,
    RoutingItem,
    estimate_tokens,
    get_cost_tracker,
    load_cost_tracker,
    reroute,
    route_questions,
    should_escalate,
)
from grading.core.results import QuestionGrade
from grading.db.results_repository import insert_cost_entry


def analysis(score: float, model: str, decision: float = 80.0) -> ComplexityAnalysis:
    return ComplexityAnalysis(
        complexity_score=score,
        recommended_model=model,
        reasoning=[f"score {score}"],
        confidence_in_decision=decision,
    )


def cloud_grade(confidence: float, method: str = "cloud_batch") -> QuestionGrade:
    return QuestionGrade(
        question_number=1,
        is_correct=True,
        points_earned=1,
        points_possible=1,
        confidence=confidence,
        grading_method=method,
    )


@pytest.fixture
def routed():
    items = [
        RoutingItem(1, "", analysis(10, "gpt-4o-mini", decision=95)),
        RoutingItem(2, "", analysis(70, "gpt-4.1")),
    ]
    return route_questions(items, AppConfig())


class TestEstimateTokens:
    @pytest.mark.parametrize("text, expected", [("", 170), ("x" * 40, 170), ("x" * 400, 260)])
    def test_estimate(self, text, expected):
        assert estimate_tokens(text) == expected


class TestRouteQuestions:
    """Per-question model choice and spend summary."""

    def test_models_follow_analysis(self, routed):
        assert routed.questions_for("gpt-4o-mini") == [1]
        assert routed.questions_for("gpt-4.1") == [2]
        assert routed.decisions[0].fallback_available is True
        assert routed.decisions[1].fallback_available is False

    def test_distribution(self, routed):
        assert routed.distribution["gpt-4o-mini"] == 1
        assert routed.distribution["gpt-4.1"] == 1
        assert routed.distribution["total_questions"] == 2
        assert routed.distribution["estimated_cost"] == pytest.approx(0.000536, abs=1e-6)
        assert routed.distribution["estimated_cost_savings"] == pytest.approx(47.5)

    def test_quality_metrics(self, routed):
        assert routed.quality_metrics["average_confidence"] == 87.5
        assert routed.quality_metrics["borderline_cases"] == 0
        assert routed.quality_metrics["high_confidence_cases"] == 1

    def test_reroute_prices_the_forced_model(self, routed):
        decision = reroute(routed.decisions[0], "gpt-4.1", AppConfig())

        assert decision.selected_model == "gpt-4.1"
        assert decision.estimated_tokens == 170
        assert decision.estimated_cost == pytest.approx(0.00051)
        assert decision.fallback_available is False
        assert routed.decisions[0].selected_model == "gpt-4o-mini"

    def test_empty(self):
        result = route_questions([], AppConfig())

        assert result.decisions == []
        assert result.distribution["estimated_cost_savings"] == 0.0
        assert result.quality_metrics["average_confidence"] == 0.0


class TestShouldEscalate:
    """When a cheap-model grade is redone with the strong model."""

    def test_missing_result(self):
        assert should_escalate(None, analysis(10, "gpt-4o-mini"), AppConfig()) is True

    def test_fallback_grade(self):
        grade = cloud_grade(0.9, method="cloud_fallback")

        assert should_escalate(grade, analysis(10, "gpt-4o-mini"), AppConfig()) is True

    @pytest.mark.parametrize(
        "confidence, score, expected",
        [(0.5, 40, True), (0.5, 20, False), (0.9, 40, False), (0.7, 40, False)],
    )
    def test_confidence_and_complexity(self, confidence, score, expected):
        grade = cloud_grade(confidence)

        assert should_escalate(grade, analysis(score, "gpt-4o-mini"), AppConfig()) is expected


class TestCostTracker:
    """History and summaries."""

    def test_track_exam_costs(self, routed):
        tracker = CostTracker()

        entry = tracker.track_exam_costs("e1", routed.decisions, fallback_count=1, local_questions=3, config=AppConfig())

        assert entry.simple_questions == 1
        assert entry.complex_questions == 1
        assert entry.fallback_count == 1
        assert entry.local_questions == 3
        assert entry.estimated_cost == pytest.approx(0.0005355)
        assert entry.all_complex_cost == pytest.approx(0.00102)
        assert entry.savings == pytest.approx(0.0004845)
        assert len(tracker.history) == 1

    def test_escalations_add_cost(self, routed):
        tracker = CostTracker()
        config = AppConfig()

        entry = tracker.track_exam_costs(
            "e1",
            routed.decisions,
            config=config,
            escalated=[reroute(routed.decisions[0], "gpt-4.1", config)],
        )

        assert entry.escalations == 1
        assert entry.simple_questions == 1
        assert entry.estimated_cost == pytest.approx(0.0010455)
        assert entry.savings == 0.0
        assert tracker.report()["all_time"]["escalations"] == 1

    def test_history_is_bounded(self, routed):
        tracker = CostTracker(limit=2)
        for exam in ("a", "b", "c"):
            tracker.track_exam_costs(exam, routed.decisions, config=AppConfig())

        assert [e.exam_id for e in tracker.history] == ["b", "c"]

    def test_daily_and_weekly_summaries(self, routed):
        tracker = CostTracker()
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        tracker.track_exam_costs("today", routed.decisions, config=AppConfig(), timestamp=now)
        tracker.track_exam_costs(
            "last-week", routed.decisions, config=AppConfig(), timestamp=now - timedelta(days=3)
        )
        tracker.track_exam_costs(
            "old", routed.decisions, config=AppConfig(), timestamp=now - timedelta(days=30)
        )

        assert tracker.daily_summary(date(2026, 3, 10)).runs == 1
        assert tracker.weekly_summary(now).runs == 2
        assert tracker.total_savings() == pytest.approx(3 * 0.0004845)

    def test_report_shape(self, routed):
        tracker = CostTracker()
        tracker.track_exam_costs("e1", routed.decisions, config=AppConfig())

        report = tracker.report()

        assert set(report) == {"today", "last_7_days", "all_time", "recent"}
        assert report["today"]["runs"] == 1
        assert report["all_time"]["simple_questions"] == 1
        assert report["recent"][0]["exam_id"] == "e1"

    def test_clear(self, routed):
        tracker = CostTracker()
        tracker.track_exam_costs("e1", routed.decisions, config=AppConfig())

        tracker.clear()

        assert tracker.report()["all_time"]["runs"] == 0

    def test_global_tracker_is_shared(self):
        assert get_cost_tracker() is get_cost_tracker()


class TestPersistedCosts:
    def test_load_cost_tracker(self, routed):
        entry = CostTracker().track_exam_costs("e1", routed.decisions, config=AppConfig())
        insert_cost_entry(entry.exam_id, entry.timestamp, entry.to_dict())

        tracker = load_cost_tracker()

        assert len(tracker.history) == 1
        restored = tracker.history[0]
        assert restored.exam_id == "e1"
        assert restored.simple_questions == 1
        assert restored.estimated_cost == pytest.approx(0.0005355, abs=1e-6)

    def test_metrics_round_trip_ignores_savings(self):
        data = CostMetrics("e1", "2026-01-01T00:00:00+00:00", 2, 1, 0, 0.1, 0.3).to_dict()

        assert CostMetrics.from_dict(data).savings == pytest.approx(0.2)
