"""Stored grading results."""

from fastapi import APIRouter, HTTPException, status

from grading.db.results_repository import get_skill_scores_for_result, get_test_result
from grading.web.schemas import ResultResponse

router = APIRouter(prefix="/api/results", tags=["results"])


@router.get("/{result_id}", response_model=ResultResponse)
async def get_result(result_id: str) -> ResultResponse:
    """Get a stored result with per-question grades and skill scores."""
    record = get_test_result(result_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Result '{result_id}' not found",
        )

    return ResultResponse(
        **record.to_dict(),
        results=record.results,
        skill_scores=get_skill_scores_for_result(result_id),
    )
