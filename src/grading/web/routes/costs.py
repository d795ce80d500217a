"""Cloud spend report."""

from fastapi import APIRouter

from grading.core.cost_tracking import load_cost_tracker
from grading.web.schemas import CostReportResponse

router = APIRouter(prefix="/api/costs", tags=["costs"])


@router.get("", response_model=CostReportResponse)
async def cost_report() -> CostReportResponse:
    """Today, last 7 days and all-time cloud spend with savings."""
    return CostReportResponse(**load_cost_tracker().report())
