"""Hybrid grading pipeline.

Responsibilities:
- Grade a submission question by question: cache, then local rules, then
  local semantic similarity, then the cloud model
- Route cloud questions to the cheap or strong model and escalate weak grades
- Merge everything into one result with skill scores and cost analysis
- Persist the result (SQLite rows + JSON report)

Output structure (JSON):
- data/reports/{result_id}.json
"""

from __future__ import annotations

import json
import sqlite3
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from grading.config.app_config import AppConfig, get_data_dir, load_app_config
from grading.core.classifier import ComplexityAnalysis, analyze_complexity
from grading.core.cloud_grader import CloudGrader, CloudGradingRequest, GradingError, fallback_grade
from grading.core.cost_tracking import (
    CostTracker,
    RoutingItem,
    get_cost_tracker,
    reroute,
    route_questions,
    should_escalate,
)
from grading.core.exam_repository import AnswerKey, Exam, StudentQuestion, Submission, load_exam
from grading.core.local_grader import (
    REQUIRES_AI,
    SemanticGrader,
    grade_question_locally,
    is_semantic_candidate,
)
from grading.core.question_cache import QuestionCache, SkillAwareCache, SkillCacheParams
from grading.core.results import HybridGradingResults, QuestionGrade
from grading.core.skill_scores import generate_feedback, generate_quality_report, merge_results
from grading.db.results_repository import (
    insert_cost_entry,
    insert_skill_scores,
    insert_test_result,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class GradingRunResult:
    """Result of grading one submission."""

    success: bool
    result_id: str | None
    results: HybridGradingResults | None
    report_path: Path | None
    message: str
    warnings: list[str] = field(default_factory=list)
    feedback: str = ""
    quality_report: dict[str, Any] = field(default_factory=dict)
    grading_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "result_id": self.result_id,
            "results": self.results.to_dict() if self.results else None,
            "report_path": str(self.report_path) if self.report_path else None,
            "message": self.message,
            "warnings": self.warnings,
            "feedback": self.feedback,
            "quality_report": self.quality_report,
            "grading_time_ms": self.grading_time_ms,
        }


@dataclass
class _CloudItem:
    question: StudentQuestion
    key: AnswerKey
    analysis: ComplexityAnalysis

    @property
    def request(self) -> CloudGradingRequest:
        return CloudGradingRequest(
            question_number=self.key.question_number,
            question_text=self.key.question_text or f"Question {self.key.question_number}",
            student_answer=self.question.answer,
            correct_answer=self.key.correct_answer,
            points_possible=self.key.points,
            question_type=self.key.question_type,
            skills=[s.skill_name for s in self.key.skills],
        )

    def skill_params(self, exam_id: str) -> SkillCacheParams:
        return SkillCacheParams(
            exam_id=exam_id,
            question_number=self.key.question_number,
            student_answer=self.question.answer,
            correct_answer=self.key.correct_answer,
            skill_tags=[s.skill_name for s in self.key.skills],
        )


# =============================================================================
# HELPERS
# =============================================================================


def new_result_id(exam_id: str, student_id: str) -> str:
    return f"{exam_id}-{student_id}-{uuid.uuid4().hex[:8]}"


def _no_answer_grade(question: StudentQuestion, key: AnswerKey) -> QuestionGrade:
    return QuestionGrade(
        question_number=question.question_number,
        is_correct=False,
        points_earned=0.0,
        points_possible=key.points,
        confidence=1.0,
        grading_method="local_confident",
        reasoning="No answer provided",
        student_answer=question.answer,
        correct_answer=key.correct_answer,
        question_type=key.question_type,
    )


def _finalize(grade: QuestionGrade, question: StudentQuestion, key: AnswerKey) -> QuestionGrade:
    """Attach skills and this sheet's OCR quality flags.

    A cached grade carries the flags of the sheet that filled the cache, so
    the current detection is applied last.
    """
    detected = question.detected_answer
    flags = dict(grade.quality_flags)
    flags.update(
        {
            "bubble_quality": detected.bubble_quality,
            "ocr_confidence": detected.confidence,
            "multiple_marks": detected.multiple_marks_detected,
            "review_flag": detected.review_flag,
            "cross_validated": detected.cross_validated,
        }
    )
    return replace(grade, skill_mappings=list(key.skills), quality_flags=flags)


def _grade_local(
    question: StudentQuestion,
    key: AnswerKey,
    semantic: SemanticGrader | None,
    config: AppConfig,
) -> QuestionGrade | None:
    """Local grade, or None if the question needs the cloud."""
    if not question.detected_answer.has_answer:
        return _no_answer_grade(question, key)

    grade = grade_question_locally(question, key, config.grading)
    if grade.grading_method != REQUIRES_AI:
        return grade

    # Simple questions that failed a quality gate go to the cloud as they are
    if grade.question_type != "complex":
        return None

    if semantic is None or not is_semantic_candidate(
        question.answer,
        key.correct_answer,
        key.question_text,
        config.grading.max_local_answer_length,
    ):
        return None

    semantic_grade = semantic.grade(
        question_number=question.question_number,
        student_answer=question.answer,
        correct_answer=key.correct_answer,
        points_possible=key.points,
        question_type=grade.question_type,
    )
    if semantic_grade.confidence >= config.grading.semantic_accept_confidence:
        return semantic_grade

    logger.debug(
        "semantic_grade_rejected",
        question_number=question.question_number,
        confidence=semantic_grade.confidence,
    )
    return None


def _grade_cloud(
    exam_id: str,
    items: list[_CloudItem],
    cloud: CloudGrader,
    skill_cache: SkillAwareCache,
    tracker: CostTracker,
    config: AppConfig,
    local_count: int,
    model_override: str | None = None,
) -> tuple[list[QuestionGrade], int]:
    """Grade the cloud queue. Returns (grades, skill cache hits)."""
    grades: dict[int, QuestionGrade] = {}
    pending: list[_CloudItem] = []
    hits = 0

    for item in items:
        cached = skill_cache.get(item.skill_params(exam_id)) if item.key.skills else None
        if cached is not None:
            grades[item.key.question_number] = cached
            hits += 1
        else:
            pending.append(item)

    if not pending:
        return [grades[n] for n in sorted(grades)], hits

    routing = route_questions(
        [RoutingItem(i.key.question_number, i.key.question_text, i.analysis) for i in pending],
        config,
    )
    by_number = {i.key.question_number: i for i in pending}
    complex_model = config.grading.cloud_model_complex

    decisions = routing.decisions
    if model_override:
        decisions = [reroute(d, model_override, config) for d in decisions]

    groups: dict[str, list[int]] = {}
    for decision in decisions:
        groups.setdefault(decision.selected_model, []).append(decision.question_number)

    for model, numbers in groups.items():
        group = [by_number[n] for n in numbers]
        for item, grade in zip(group, cloud.grade_batch([i.request for i in group], model=model)):
            grades[item.key.question_number] = grade

    # Escalate weak cheap-model grades to the strong model
    escalated = []
    if not model_override:
        for decision in decisions:
            item = by_number[decision.question_number]
            current = grades.get(decision.question_number)
            if decision.selected_model == complex_model or not should_escalate(current, item.analysis, config):
                continue

            logger.info(
                "cloud_grade_escalated",
                question_number=decision.question_number,
                confidence=current.confidence if current else None,
            )
            grades[decision.question_number] = _grade_single(item, cloud, complex_model)
            escalated.append(reroute(decision, complex_model, config))

    fallbacks = 0
    for item in pending:
        grade = grades[item.key.question_number]
        if grade.needs_review:
            fallbacks += 1
        elif item.key.skills:
            skill_cache.set(item.skill_params(exam_id), grade)

    entry = tracker.track_exam_costs(
        exam_id,
        decisions,
        fallback_count=fallbacks,
        local_questions=local_count,
        config=config,
        escalated=escalated,
    )
    try:
        insert_cost_entry(exam_id, entry.timestamp, entry.to_dict())
    except sqlite3.Error as e:
        logger.warning("cost_history_write_failed", exam_id=exam_id, error=str(e))

    return [grades[n] for n in sorted(grades)], hits


def _grade_single(item: _CloudItem, cloud: CloudGrader, model: str) -> QuestionGrade:
    request = item.request
    try:
        return cloud.grade_question(request, model=model)
    except GradingError as e:
        return fallback_grade(request, str(e), model)


def _write_report(result_id: str, payload: dict[str, Any], data_dir: Path, config: AppConfig) -> Path:
    reports_dir = data_dir / config.paths.get("reports_dir", "reports")
    reports_dir.mkdir(parents=True, exist_ok=True)
    report_path = reports_dir / f"{result_id}.json"
    with open(report_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
    return report_path


# =============================================================================
# MAIN FUNCTION
# =============================================================================


def grade_submission(
    submission: Submission,
    data_dir: Path | None = None,
    cloud_grader: CloudGrader | None = None,
    semantic_grader: SemanticGrader | None = None,
    cache: QuestionCache | None = None,
    skill_cache: SkillAwareCache | None = None,
    cost_tracker: CostTracker | None = None,
    persist: bool = True,
    model: str | None = None,
    exam: Exam | None = None,
) -> GradingRunResult:
    """Grade a student's submission with the hybrid pipeline.

    Args:
        submission: Parsed answer sheet
        data_dir: Base data directory
        cloud_grader: Optional pre-configured cloud grader (for testing)
        semantic_grader: Optional semantic grader (for testing)
        cache: Question cache; a new one is created if omitted
        skill_cache: Skill-aware cache for cloud grades
        cost_tracker: Cost history; defaults to the process-wide tracker
        persist: Write the result to SQLite and a JSON report
        model: Force every cloud question onto this model
        exam: Exam definition, if already loaded

    Returns:
        GradingRunResult with merged results
    """
    if data_dir is None:
        data_dir = get_data_dir()

    start_time = time.time()
    config = load_app_config()
    warnings: list[str] = []

    if exam is None:
        exam = load_exam(submission.exam_id, data_dir)
    if exam is None:
        return GradingRunResult(
            success=False,
            result_id=None,
            results=None,
            report_path=None,
            message=f"Exam not found: {submission.exam_id}",
        )

    cache = cache or QuestionCache()
    skill_cache = skill_cache or SkillAwareCache()
    tracker = cost_tracker or get_cost_tracker()
    if semantic_grader is None and config.grading.enable_semantic_grading:
        semantic_grader = SemanticGrader()
    if not config.grading.enable_semantic_grading:
        semantic_grader = None

    local_results: list[QuestionGrade] = []
    cloud_results: list[QuestionGrade] = []
    cloud_queue: list[_CloudItem] = []
    cache_hits = 0

    for question in submission.questions:
        key = exam.key_for(question.question_number)
        if key is None:
            warnings.append(f"No answer key for question {question.question_number}; skipped")
            continue

        cached = cache.get(exam.exam_id, question.question_number, question.answer, key.correct_answer)
        if cached is not None:
            cache_hits += 1
            graded = _finalize(cached, question, key)
            (local_results if graded.is_local else cloud_results).append(graded)
            continue

        grade = _grade_local(question, key, semantic_grader, config)
        if grade is None:
            cloud_queue.append(
                _CloudItem(question=question, key=key, analysis=analyze_complexity(question, key, config.grading))
            )
            continue

        grade = _finalize(grade, question, key)
        cache.set(exam.exam_id, grade, question.answer, key.correct_answer)
        local_results.append(grade)

    if cloud_queue:
        cloud = cloud_grader or CloudGrader(config=config)
        graded, skill_hits = _grade_cloud(
            exam.exam_id,
            cloud_queue,
            cloud,
            skill_cache,
            tracker,
            config,
            local_count=len(local_results),
            model_override=model,
        )
        cache_hits += skill_hits

        by_number = {item.key.question_number: item for item in cloud_queue}
        for grade in graded:
            item = by_number[grade.question_number]
            grade = _finalize(grade, item.question, item.key)
            if not grade.cache_hit:
                cache.set(exam.exam_id, grade, item.question.answer, item.key.correct_answer)
            cloud_results.append(grade)

    results = merge_results(local_results, cloud_results, cache_hits=cache_hits, config=config)
    feedback = generate_feedback(results)
    quality_report = generate_quality_report(results)
    grading_time_ms = int((time.time() - start_time) * 1000)

    result_id = new_result_id(exam.exam_id, submission.student_id)
    report_path = None

    if persist:
        report = {
            "$schema": "grade_report_v1",
            "result_id": result_id,
            "exam_id": exam.exam_id,
            "student_id": submission.student_id,
            "student_name": submission.student_name,
            "class_id": submission.class_id or exam.class_id,
            "graded_at": datetime.now(timezone.utc).isoformat(),
            "grading_time_ms": grading_time_ms,
            "feedback": feedback,
            "quality_report": quality_report,
            "warnings": warnings,
            **results.to_dict(),
        }
        try:
            report_path = _write_report(result_id, report, data_dir, config)
            insert_test_result(
                result_id=result_id,
                exam_id=exam.exam_id,
                student_id=submission.student_id,
                student_name=submission.student_name,
                class_id=submission.class_id or exam.class_id,
                points_earned=results.total_score.points_earned,
                points_possible=results.total_score.points_possible,
                percentage=results.total_score.percentage,
                local_questions=results.cost_analysis.local_questions,
                cloud_questions=results.cost_analysis.cloud_questions,
                combined_confidence=results.summary.combined_confidence,
                report_path=str(report_path),
                results=results.to_dict(),
            )
            insert_skill_scores(result_id, submission.student_id, results.skill_scores)
        except (sqlite3.Error, OSError) as e:
            logger.error("grading_persist_failed", result_id=result_id, error=str(e))
            warnings.append(f"Could not save result: {e}")

    logger.info(
        "submission_graded",
        exam_id=exam.exam_id,
        student_id=submission.student_id,
        percentage=results.total_score.percentage,
        local=results.cost_analysis.local_questions,
        cloud=results.cost_analysis.cloud_questions,
        cache_hits=cache_hits,
        time_ms=grading_time_ms,
    )

    total = results.total_score
    return GradingRunResult(
        success=True,
        result_id=result_id,
        results=results,
        report_path=report_path,
        message=f"Score: {total.points_earned:g}/{total.points_possible:g} ({total.percentage:.1f}%)",
        warnings=warnings,
        feedback=feedback,
        quality_report=quality_report,
        grading_time_ms=grading_time_ms,
    )
