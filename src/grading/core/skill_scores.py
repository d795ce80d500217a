"""Skill score aggregation and result merging.

Responsibilities:
- Aggregate weighted per-skill scores (content and subject skills)
- Merge local and cloud grades into one ordered exam result
- Summarise cost, confidence and local-grading ratio
- Produce teacher-facing feedback and an answer-sheet quality report
"""

from __future__ import annotations

from collections import Counter
from typing import Any

import structlog

from grading.config.app_config import AppConfig, load_app_config
from grading.core.results import (
    CostAnalysis,
    GradingSummary,
    HybridGradingResults,
    QuestionGrade,
    SkillScore,
    TotalScore,
)

logger = structlog.get_logger(__name__)

MIN_SKILL_WEIGHT = 0.0
MAX_SKILL_WEIGHT = 2.0

POOR_BUBBLES = ("light", "empty", "overfilled")


def skill_key(skill_type: str, skill_name: str) -> str:
    return f"{skill_type}:{skill_name}"


def calculate_skill_scores(results: list[QuestionGrade]) -> dict[str, SkillScore]:
    """Aggregate weighted points per skill.

    Weights outside [0, 2] are clamped, never rejected. Questions without
    skill mappings do not contribute.
    """
    totals: dict[str, dict[str, Any]] = {}

    for grade in results:
        for mapping in grade.skill_mappings:
            weight = max(MIN_SKILL_WEIGHT, min(MAX_SKILL_WEIGHT, mapping.skill_weight))
            key = skill_key(mapping.skill_type, mapping.skill_name)
            entry = totals.setdefault(
                key,
                {
                    "skill_name": mapping.skill_name,
                    "skill_type": mapping.skill_type,
                    "earned": 0.0,
                    "possible": 0.0,
                    "attempted": 0,
                    "correct": 0,
                },
            )
            entry["earned"] += grade.points_earned * weight
            entry["possible"] += grade.points_possible * weight
            entry["attempted"] += 1
            if grade.is_correct:
                entry["correct"] += 1

    scores = {}
    for key, entry in totals.items():
        possible = entry["possible"]
        scores[key] = SkillScore(
            skill_name=entry["skill_name"],
            skill_type=entry["skill_type"],
            points_earned=round(entry["earned"], 2),
            points_possible=round(possible, 2),
            score=round(entry["earned"] / possible * 100, 2) if possible > 0 else 0.0,
            questions_attempted=entry["attempted"],
            questions_correct=entry["correct"],
        )
    return scores


def merge_results(
    local_results: list[QuestionGrade],
    cloud_results: list[QuestionGrade],
    cache_hits: int = 0,
    config: AppConfig | None = None,
) -> HybridGradingResults:
    """Combine local and cloud grades into one result.

    Each question appears once; a cloud grade wins over a local grade for
    the same question number.
    """
    if config is None:
        config = load_app_config()

    by_number: dict[int, QuestionGrade] = {}
    for grade in local_results:
        by_number[grade.question_number] = grade
    for grade in cloud_results:
        by_number[grade.question_number] = grade

    merged = [by_number[n] for n in sorted(by_number)]
    local = [g for g in merged if g.is_local]
    cloud = [g for g in merged if not g.is_local]

    earned = sum(g.points_earned for g in merged)
    possible = sum(g.points_possible for g in merged)
    total = len(merged)

    per_question = config.costs.cost_per_cloud_question
    cloud_cost = sum(
        per_question for g in cloud if not g.cache_hit and g.grading_method != "cloud_fallback"
    )
    # Cloud grades served from a cache saved a model call too
    savings = (total - len(cloud)) * per_question + sum(per_question for g in cloud if g.cache_hit)
    savings_pct = (len(local) / total * 100) if total else 0.0

    cost_analysis = CostAnalysis(
        local_questions=len(local),
        cloud_questions=len(cloud),
        estimated_cost=round(cloud_cost, 4),
        estimated_savings=round(savings, 4),
        cost_breakdown=(
            f"{len(local)} local (free) + {len(cloud)} cloud (${cloud_cost:.3f}) | "
            f"{savings_pct:.1f}% cost savings"
        ),
    )

    summary = GradingSummary(
        total_questions=total,
        local_grading_ratio=round(len(local) / total, 4) if total else 0.0,
        combined_confidence=round(sum(g.confidence for g in merged) / total, 2) if total else 0.0,
        cache_hits=cache_hits,
        needs_review=sum(1 for g in merged if g.needs_review),
    )

    return HybridGradingResults(
        local_results=local,
        cloud_results=cloud,
        merged_results=merged,
        total_score=TotalScore(
            points_earned=round(earned, 2),
            points_possible=round(possible, 2),
            percentage=round(earned / possible * 100, 2) if possible > 0 else 0.0,
        ),
        skill_scores=calculate_skill_scores(merged),
        cost_analysis=cost_analysis,
        summary=summary,
    )


def generate_feedback(results: HybridGradingResults) -> str:
    """Multi-line summary for the teacher."""
    total = results.total_score
    summary = results.summary
    lines = [
        f"Score: {total.points_earned:g}/{total.points_possible:g} ({total.percentage:.1f}%)",
        f"Questions graded: {summary.total_questions} "
        f"({results.cost_analysis.local_questions} locally, "
        f"{results.cost_analysis.cloud_questions} by cloud model)",
        f"Average confidence: {summary.combined_confidence:.0%}",
        f"Cost: {results.cost_analysis.cost_breakdown}",
    ]

    if summary.cache_hits:
        lines.append(f"Reused {summary.cache_hits} cached grade(s)")

    review = [g.question_number for g in results.merged_results if g.needs_review]
    if review:
        lines.append("Needs manual review: questions " + ", ".join(str(n) for n in review))

    if results.skill_scores:
        ranked = sorted(results.skill_scores.values(), key=lambda s: s.score, reverse=True)
        lines.append("Strongest skill: " + f"{ranked[0].skill_name} ({ranked[0].score:.0f}%)")
        if len(ranked) > 1:
            lines.append("Weakest skill: " + f"{ranked[-1].skill_name} ({ranked[-1].score:.0f}%)")

    return "\n".join(lines)


def generate_quality_report(results: HybridGradingResults) -> dict[str, Any]:
    """Assess answer-sheet quality from the OCR flags on each grade."""
    graded = results.merged_results
    total = len(graded)

    distribution = Counter(g.quality_flags.get("bubble_quality", "unknown") for g in graded)
    multiple_marks = sum(1 for g in graded if g.quality_flags.get("multiple_marks"))
    poor = sum(distribution[q] for q in POOR_BUBBLES)

    mm_rate = multiple_marks / total if total else 0.0
    poor_rate = poor / total if total else 0.0

    if mm_rate > 0.10 or poor_rate > 0.30:
        overall = "needs_improvement"
    elif poor_rate > 0.15:
        overall = "good"
    else:
        overall = "excellent"

    recommendations = []
    if mm_rate > 0.10:
        recommendations.append("Remind students to erase stray marks completely")
    if total and distribution["light"] / total > 0.15:
        recommendations.append("Ask students to fill bubbles darker")
    if distribution["overfilled"]:
        recommendations.append("Ask students to stay inside the bubble")
    if distribution["empty"]:
        recommendations.append("Check unanswered questions on the original sheet")

    with_skills = sum(1 for g in graded if g.skill_mappings)
    coverage = with_skills / total if total else 0.0
    if total and coverage < 0.5:
        recommendations.append("Map more questions to skills for meaningful skill scores")

    return {
        "overall_quality": overall,
        "bubble_quality_distribution": dict(distribution),
        "multiple_marks_rate": round(mm_rate, 4),
        "poor_bubble_rate": round(poor_rate, 4),
        "skill_coverage": round(coverage, 4),
        "recommendations": recommendations,
    }
