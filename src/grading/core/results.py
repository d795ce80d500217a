"""Grade result types shared by the local, cloud, cache and merge stages."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from grading.core.exam_repository import SkillMapping

LOCAL_METHODS = {
    "local_confident",
    "local_enhanced",
    "local_question_based",
    "local_semantic",
    "pattern_match",
}


def is_local_method(method: str) -> bool:
    """True for grades produced without a cloud call (cached or not)."""
    base = method[: -len("_cached")] if method.endswith("_cached") else method
    return base in LOCAL_METHODS


@dataclass
class QuestionGrade:
    """Grade for a single question."""

    question_number: int
    is_correct: bool
    points_earned: float
    points_possible: float
    confidence: float
    grading_method: str
    reasoning: str = ""
    student_answer: str = ""
    correct_answer: str = ""
    question_type: str = ""
    skill_mappings: list[SkillMapping] = field(default_factory=list)
    quality_flags: dict[str, Any] = field(default_factory=dict)
    cache_hit: bool = False
    original_grading_method: str | None = None
    model: str | None = None
    needs_review: bool = False
    complexity_score: int | None = None
    reasoning_depth: str | None = None

    def __post_init__(self) -> None:
        self.points_possible = max(0.0, float(self.points_possible))
        self.points_earned = max(0.0, min(float(self.points_earned), self.points_possible))
        self.confidence = max(0.0, min(1.0, float(self.confidence)))

    @property
    def is_local(self) -> bool:
        return is_local_method(self.grading_method)

    def with_skills(self, skills: list[SkillMapping]) -> QuestionGrade:
        return replace(self, skill_mappings=list(skills))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "question_number": self.question_number,
            "is_correct": self.is_correct,
            "points_earned": self.points_earned,
            "points_possible": self.points_possible,
            "confidence": round(self.confidence, 4),
            "grading_method": self.grading_method,
            "reasoning": self.reasoning,
            "student_answer": self.student_answer,
            "correct_answer": self.correct_answer,
            "question_type": self.question_type,
            "skill_mappings": [s.to_dict() for s in self.skill_mappings],
            "quality_flags": self.quality_flags,
            "cache_hit": self.cache_hit,
            "needs_review": self.needs_review,
        }
        if self.original_grading_method is not None:
            result["original_grading_method"] = self.original_grading_method
        if self.model is not None:
            result["model"] = self.model
        if self.complexity_score is not None:
            result["complexity_score"] = self.complexity_score
        if self.reasoning_depth is not None:
            result["reasoning_depth"] = self.reasoning_depth
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuestionGrade:
        return cls(
            question_number=int(data["question_number"]),
            is_correct=bool(data.get("is_correct", False)),
            points_earned=float(data.get("points_earned", 0)),
            points_possible=float(data.get("points_possible", 0)),
            confidence=float(data.get("confidence", 0)),
            grading_method=data.get("grading_method", "unknown"),
            reasoning=data.get("reasoning", ""),
            student_answer=data.get("student_answer", ""),
            correct_answer=data.get("correct_answer", ""),
            question_type=data.get("question_type", ""),
            skill_mappings=[SkillMapping.from_dict(s) for s in data.get("skill_mappings", [])],
            quality_flags=data.get("quality_flags", {}),
            cache_hit=bool(data.get("cache_hit", False)),
            original_grading_method=data.get("original_grading_method"),
            model=data.get("model"),
            needs_review=bool(data.get("needs_review", False)),
            complexity_score=data.get("complexity_score"),
            reasoning_depth=data.get("reasoning_depth"),
        )


@dataclass
class SkillScore:
    """Aggregated performance on one skill."""

    skill_name: str
    skill_type: str
    points_earned: float
    points_possible: float
    score: float
    questions_attempted: int
    questions_correct: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "skill_name": self.skill_name,
            "skill_type": self.skill_type,
            "points_earned": self.points_earned,
            "points_possible": self.points_possible,
            "score": self.score,
            "questions_attempted": self.questions_attempted,
            "questions_correct": self.questions_correct,
        }


@dataclass
class TotalScore:
    points_earned: float
    points_possible: float
    percentage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "points_earned": self.points_earned,
            "points_possible": self.points_possible,
            "percentage": self.percentage,
        }


@dataclass
class CostAnalysis:
    local_questions: int
    cloud_questions: int
    estimated_cost: float
    estimated_savings: float
    cost_breakdown: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_questions": self.local_questions,
            "cloud_questions": self.cloud_questions,
            "estimated_cost": self.estimated_cost,
            "estimated_savings": self.estimated_savings,
            "cost_breakdown": self.cost_breakdown,
        }


@dataclass
class GradingSummary:
    total_questions: int
    local_grading_ratio: float
    combined_confidence: float
    cache_hits: int = 0
    needs_review: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_questions": self.total_questions,
            "local_grading_ratio": self.local_grading_ratio,
            "combined_confidence": self.combined_confidence,
            "cache_hits": self.cache_hits,
            "needs_review": self.needs_review,
        }


@dataclass
class HybridGradingResults:
    """Local and cloud grades merged into one exam result."""

    local_results: list[QuestionGrade]
    cloud_results: list[QuestionGrade]
    merged_results: list[QuestionGrade]
    total_score: TotalScore
    skill_scores: dict[str, SkillScore]
    cost_analysis: CostAnalysis
    summary: GradingSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "merged_results": [r.to_dict() for r in self.merged_results],
            "local_question_numbers": [r.question_number for r in self.local_results],
            "cloud_question_numbers": [r.question_number for r in self.cloud_results],
            "total_score": self.total_score.to_dict(),
            "skill_scores": {k: v.to_dict() for k, v in self.skill_scores.items()},
            "cost_analysis": self.cost_analysis.to_dict(),
            "summary": self.summary.to_dict(),
        }
