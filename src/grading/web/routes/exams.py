"""Exam endpoints: register, fetch and grade submissions."""

from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, status

from grading.core.cloud_grader import CloudGrader
from grading.core.cost_tracking import CostTracker
from grading.core.exam_repository import (
    Exam,
    ExamNotFoundError,
    SubmissionValidationError,
    list_exam_ids,
    parse_submission,
    require_exam,
    save_exam,
    validate_answer_keys,
)
from grading.core.hybrid_grader import grade_submission
from grading.core.local_grader import SemanticGrader
from grading.core.question_cache import QuestionCache, SkillAwareCache
from grading.web import dependencies as deps
from grading.web.schemas import ExamCreate, ExamResponse, GradeResponse, SubmissionRequest

router = APIRouter(prefix="/api/exams", tags=["exams"])


def _exam_response(exam: Exam) -> ExamResponse:
    return ExamResponse(
        exam_id=exam.exam_id,
        title=exam.title,
        class_id=exam.class_id,
        question_count=len(exam.answer_keys),
        total_points=exam.total_points,
        answer_keys=[k.to_dict() for k in exam.answer_keys],
        warnings=validate_answer_keys(exam),
    )


def _load_or_404(exam_id: str, data_dir: Path) -> Exam:
    try:
        return require_exam(exam_id, data_dir)
    except ExamNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e


@router.get("", response_model=list[str])
async def list_exams(data_dir: Path = Depends(deps.data_dir)) -> list[str]:
    """List registered exam ids."""
    return list_exam_ids(data_dir)


@router.post("", response_model=ExamResponse, status_code=status.HTTP_201_CREATED)
async def register_exam(
    exam_data: ExamCreate,
    data_dir: Path = Depends(deps.data_dir),
) -> ExamResponse:
    """Register a new exam definition."""
    if exam_data.exam_id in list_exam_ids(data_dir):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Exam '{exam_data.exam_id}' already exists",
        )

    exam = Exam.from_dict(exam_data.model_dump())
    save_exam(exam, data_dir, overwrite=False)
    return _exam_response(exam)


@router.get("/{exam_id}", response_model=ExamResponse)
async def get_exam(exam_id: str, data_dir: Path = Depends(deps.data_dir)) -> ExamResponse:
    """Get an exam definition."""
    return _exam_response(_load_or_404(exam_id, data_dir))


# Sync handler: grading blocks on the LLM, so FastAPI runs it in the threadpool
@router.post("/{exam_id}/grade", response_model=GradeResponse)
def grade_exam(
    exam_id: str,
    submission_data: SubmissionRequest,
    data_dir: Path = Depends(deps.data_dir),
    cloud: CloudGrader = Depends(deps.cloud_grader),
    semantic: SemanticGrader | None = Depends(deps.semantic_grader),
    cache: QuestionCache = Depends(deps.question_cache),
    skill_cache: SkillAwareCache = Depends(deps.skill_cache),
    tracker: CostTracker = Depends(deps.cost_tracker),
) -> GradeResponse:
    """Grade a student's submission for this exam."""
    exam = _load_or_404(exam_id, data_dir)

    if submission_data.exam_id and submission_data.exam_id != exam_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Submission exam_id '{submission_data.exam_id}' does not match '{exam_id}'",
        )

    payload = submission_data.model_dump()
    payload["exam_id"] = exam_id
    try:
        submission = parse_submission(payload)
    except SubmissionValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=str(e),
        ) from e

    result = grade_submission(
        submission,
        data_dir=data_dir,
        cloud_grader=cloud,
        semantic_grader=semantic,
        cache=cache,
        skill_cache=skill_cache,
        cost_tracker=tracker,
        exam=exam,
    )

    if not result.success or result.results is None:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=result.message,
        )

    results = result.results.to_dict()
    return GradeResponse(
        result_id=result.result_id or "",
        exam_id=exam_id,
        student_id=submission.student_id,
        message=result.message,
        total_score=results["total_score"],
        summary=results["summary"],
        cost_analysis=results["cost_analysis"],
        skill_scores=results["skill_scores"],
        merged_results=results["merged_results"],
        feedback=result.feedback,
        quality_report=result.quality_report,
        warnings=result.warnings,
        report_path=str(result.report_path) if result.report_path else None,
    )
