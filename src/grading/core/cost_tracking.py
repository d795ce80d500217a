"""Cloud model routing and cost tracking.

Routes each cloud-bound question to the cheap or the strong model by
complexity, decides when a cheap-model grade must be escalated, and keeps
a bounded history of per-exam costs for daily/weekly reporting.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any

import structlog

from grading.config.app_config import AppConfig, load_app_config
from grading.core.classifier import ComplexityAnalysis
from grading.core.results import QuestionGrade
from grading.db.results_repository import list_cost_entries

logger = structlog.get_logger(__name__)

BASE_PROMPT_TOKENS = 150
MIN_QUESTION_TOKENS = 10
ANSWER_TOKENS = 10

BORDERLINE_LOW = 20
BORDERLINE_HIGH = 40
HIGH_DECISION_CONFIDENCE = 85

# =============================================================================
# ROUTING
# =============================================================================


@dataclass
class RoutingItem:
    question_number: int
    question_text: str
    analysis: ComplexityAnalysis


@dataclass
class ModelRoutingDecision:
    question_number: int
    selected_model: str
    complexity_score: float
    estimated_tokens: int
    estimated_cost: float
    fallback_available: bool
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "question_number": self.question_number,
            "selected_model": self.selected_model,
            "complexity_score": self.complexity_score,
            "estimated_tokens": self.estimated_tokens,
            "estimated_cost": self.estimated_cost,
            "fallback_available": self.fallback_available,
            "reasoning": self.reasoning,
        }


@dataclass
class BatchRoutingResult:
    decisions: list[ModelRoutingDecision]
    distribution: dict[str, Any]
    quality_metrics: dict[str, Any]

    def questions_for(self, model: str) -> list[int]:
        return [d.question_number for d in self.decisions if d.selected_model == model]


def estimate_tokens(question_text: str) -> int:
    return round(BASE_PROMPT_TOKENS + max(MIN_QUESTION_TOKENS, len(question_text) / 4) + ANSWER_TOKENS)


def _rate(model: str, config: AppConfig) -> float:
    rates = config.costs.rates_per_1k
    if model in rates:
        return rates[model]
    return max(rates.values()) if rates else 0.0


def reroute(decision: ModelRoutingDecision, model: str, config: AppConfig | None = None) -> ModelRoutingDecision:
    """The same decision priced for the model that actually graded it."""
    if config is None:
        config = load_app_config()
    return replace(
        decision,
        selected_model=model,
        estimated_cost=decision.estimated_tokens / 1000 * _rate(model, config),
        fallback_available=model == config.grading.cloud_model_simple,
    )


def route_questions(items: list[RoutingItem], config: AppConfig | None = None) -> BatchRoutingResult:
    """Pick a cloud model per question and summarise the expected spend."""
    if config is None:
        config = load_app_config()
    simple_model = config.grading.cloud_model_simple
    complex_model = config.grading.cloud_model_complex

    decisions = []
    for item in items:
        model = item.analysis.recommended_model
        tokens = estimate_tokens(item.question_text)
        decisions.append(
            ModelRoutingDecision(
                question_number=item.question_number,
                selected_model=model,
                complexity_score=item.analysis.complexity_score,
                estimated_tokens=tokens,
                estimated_cost=tokens / 1000 * _rate(model, config),
                fallback_available=model == simple_model,
                reasoning="; ".join(item.analysis.reasoning),
            )
        )

    total = len(decisions)
    simple_count = sum(1 for d in decisions if d.selected_model == simple_model)
    complex_count = total - simple_count

    all_complex_cost = sum(d.estimated_tokens / 1000 * _rate(complex_model, config) for d in decisions)
    actual_cost = sum(d.estimated_cost for d in decisions)
    savings = (all_complex_cost - actual_cost) / all_complex_cost * 100 if all_complex_cost > 0 else 0.0

    analyses = [item.analysis for item in items]
    quality_metrics = {
        "average_confidence": (
            round(sum(a.confidence_in_decision for a in analyses) / total, 2) if total else 0.0
        ),
        "borderline_cases": sum(
            1 for a in analyses if BORDERLINE_LOW <= a.complexity_score <= BORDERLINE_HIGH
        ),
        "high_confidence_cases": sum(
            1 for a in analyses if a.confidence_in_decision >= HIGH_DECISION_CONFIDENCE
        ),
    }

    distribution = {
        simple_model: simple_count,
        complex_model: complex_count,
        "total_questions": total,
        "estimated_cost": round(actual_cost, 6),
        "estimated_cost_savings": round(max(0.0, savings), 1),
    }

    if total:
        logger.info(
            "questions_routed",
            simple=simple_count,
            complex=complex_count,
            savings_pct=distribution["estimated_cost_savings"],
        )

    return BatchRoutingResult(decisions=decisions, distribution=distribution, quality_metrics=quality_metrics)


def should_escalate(
    result: QuestionGrade | None,
    analysis: ComplexityAnalysis,
    config: AppConfig | None = None,
) -> bool:
    """True if a cheap-model grade should be redone with the strong model."""
    if config is None:
        config = load_app_config()
    if result is None:
        return True
    if result.grading_method == "cloud_fallback":
        return True
    return (
        result.confidence < config.grading.escalation_confidence
        and analysis.complexity_score > config.grading.escalation_complexity
    )


# =============================================================================
# COST TRACKING
# =============================================================================


@dataclass
class CostMetrics:
    """Spend recorded for one grading run."""

    exam_id: str
    timestamp: str
    simple_questions: int
    complex_questions: int
    fallback_count: int
    estimated_cost: float
    all_complex_cost: float
    local_questions: int = 0
    escalations: int = 0

    @property
    def savings(self) -> float:
        return max(0.0, self.all_complex_cost - self.estimated_cost)

    def to_dict(self) -> dict[str, Any]:
        return {
            "exam_id": self.exam_id,
            "timestamp": self.timestamp,
            "simple_questions": self.simple_questions,
            "complex_questions": self.complex_questions,
            "fallback_count": self.fallback_count,
            "local_questions": self.local_questions,
            "escalations": self.escalations,
            "estimated_cost": round(self.estimated_cost, 6),
            "all_complex_cost": round(self.all_complex_cost, 6),
            "savings": round(self.savings, 6),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CostMetrics:
        return cls(
            exam_id=data["exam_id"],
            timestamp=data["timestamp"],
            simple_questions=int(data.get("simple_questions", 0)),
            complex_questions=int(data.get("complex_questions", 0)),
            fallback_count=int(data.get("fallback_count", 0)),
            estimated_cost=float(data.get("estimated_cost", 0.0)),
            all_complex_cost=float(data.get("all_complex_cost", 0.0)),
            local_questions=int(data.get("local_questions", 0)),
            escalations=int(data.get("escalations", 0)),
        )


@dataclass
class CostSummary:
    runs: int = 0
    total_cost: float = 0.0
    total_savings: float = 0.0
    simple_questions: int = 0
    complex_questions: int = 0
    fallbacks: int = 0
    local_questions: int = 0
    escalations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "runs": self.runs,
            "total_cost": round(self.total_cost, 6),
            "total_savings": round(self.total_savings, 6),
            "simple_questions": self.simple_questions,
            "complex_questions": self.complex_questions,
            "fallbacks": self.fallbacks,
            "local_questions": self.local_questions,
            "escalations": self.escalations,
        }


def _summarize(entries: list[CostMetrics]) -> CostSummary:
    summary = CostSummary()
    for e in entries:
        summary.runs += 1
        summary.total_cost += e.estimated_cost
        summary.total_savings += e.savings
        summary.simple_questions += e.simple_questions
        summary.complex_questions += e.complex_questions
        summary.fallbacks += e.fallback_count
        summary.local_questions += e.local_questions
        summary.escalations += e.escalations
    return summary


@dataclass
class CostTracker:
    """Bounded in-memory history of grading spend."""

    limit: int = 1000
    history: deque[CostMetrics] = field(default_factory=deque)

    def __post_init__(self) -> None:
        self.history = deque(self.history, maxlen=self.limit)

    def track_exam_costs(
        self,
        exam_id: str,
        decisions: list[ModelRoutingDecision],
        fallback_count: int = 0,
        local_questions: int = 0,
        config: AppConfig | None = None,
        timestamp: datetime | None = None,
        escalated: list[ModelRoutingDecision] | None = None,
    ) -> CostMetrics:
        """Record the spend of one grading run.

        Args:
            decisions: One per cloud question, priced for the model that graded it
            escalated: Extra strong-model regrades of cheap-model grades
        """
        if config is None:
            config = load_app_config()
        complex_model = config.grading.cloud_model_complex
        simple_model = config.grading.cloud_model_simple

        escalated = escalated or []
        entry = CostMetrics(
            exam_id=exam_id,
            timestamp=(timestamp or datetime.now(timezone.utc)).isoformat(),
            simple_questions=sum(1 for d in decisions if d.selected_model == simple_model),
            complex_questions=sum(1 for d in decisions if d.selected_model != simple_model),
            fallback_count=fallback_count,
            estimated_cost=sum(d.estimated_cost for d in [*decisions, *escalated]),
            all_complex_cost=sum(
                d.estimated_tokens / 1000 * _rate(complex_model, config) for d in decisions
            ),
            local_questions=local_questions,
            escalations=len(escalated),
        )
        self.history.append(entry)
        logger.debug("exam_costs_tracked", exam_id=exam_id, cost=round(entry.estimated_cost, 6))
        return entry

    def _entries_between(self, start: datetime, end: datetime) -> list[CostMetrics]:
        return [
            e for e in self.history if start <= datetime.fromisoformat(e.timestamp) < end
        ]

    def daily_summary(self, day: date | None = None) -> CostSummary:
        day = day or datetime.now(timezone.utc).date()
        start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        return _summarize(self._entries_between(start, start + timedelta(days=1)))

    def weekly_summary(self, now: datetime | None = None) -> CostSummary:
        now = now or datetime.now(timezone.utc)
        return _summarize(self._entries_between(now - timedelta(days=7), now + timedelta(seconds=1)))

    def total_savings(self) -> float:
        return sum(e.savings for e in self.history)

    def report(self) -> dict[str, Any]:
        total = _summarize(list(self.history))
        return {
            "today": self.daily_summary().to_dict(),
            "last_7_days": self.weekly_summary().to_dict(),
            "all_time": total.to_dict(),
            "recent": [e.to_dict() for e in list(self.history)[-10:]],
        }

    def clear(self) -> None:
        self.history.clear()


# Process-wide tracker shared by the CLI and the web app
_tracker: CostTracker | None = None


def get_cost_tracker() -> CostTracker:
    global _tracker
    if _tracker is None:
        _tracker = CostTracker(limit=load_app_config().costs.history_limit)
    return _tracker


def load_cost_tracker() -> CostTracker:
    """Tracker rebuilt from the persisted cost history."""
    limit = load_app_config().costs.history_limit
    entries = [CostMetrics.from_dict(e) for e in list_cost_entries(limit)]
    return CostTracker(limit=limit, history=deque(entries))
