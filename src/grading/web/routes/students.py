"""Student endpoints: result history and skill profile."""

from fastapi import APIRouter

from grading.db.results_repository import get_student_skill_summary, list_results_for_student
from grading.web.schemas import (
    ResultSummaryResponse,
    SkillSummaryResponse,
    StudentResultsResponse,
    StudentSkillsResponse,
)

router = APIRouter(prefix="/api/students", tags=["students"])


@router.get("/{student_id}/results", response_model=StudentResultsResponse)
async def list_student_results(student_id: str) -> StudentResultsResponse:
    """List a student's graded tests, newest first."""
    results = [ResultSummaryResponse(**r.to_dict()) for r in list_results_for_student(student_id)]
    return StudentResultsResponse(student_id=student_id, results=results, count=len(results))


@router.get("/{student_id}/skills", response_model=StudentSkillsResponse)
async def get_student_skills(student_id: str) -> StudentSkillsResponse:
    """Average score per skill across all of a student's tests."""
    skills = [SkillSummaryResponse(**s) for s in get_student_skill_summary(student_id)]
    return StudentSkillsResponse(student_id=student_id, skills=skills, count=len(skills))
