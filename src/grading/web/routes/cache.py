"""Grade cache endpoints."""

from fastapi import APIRouter, Depends

from grading.core.question_cache import QuestionCache, SkillAwareCache
from grading.web import dependencies as deps
from grading.web.schemas import CacheCleanupResponse, CacheStatsResponse

router = APIRouter(prefix="/api/cache", tags=["cache"])


@router.get("/stats", response_model=CacheStatsResponse)
async def cache_stats(
    cache: QuestionCache = Depends(deps.question_cache),
    skill_cache: SkillAwareCache = Depends(deps.skill_cache),
) -> CacheStatsResponse:
    """Entry counts, hit rates and estimated savings for both caches."""
    return CacheStatsResponse(question_cache=cache.stats(), skill_cache=skill_cache.stats())


@router.post("/cleanup", response_model=CacheCleanupResponse)
async def cache_cleanup(
    cache: QuestionCache = Depends(deps.question_cache),
    skill_cache: SkillAwareCache = Depends(deps.skill_cache),
) -> CacheCleanupResponse:
    """Delete expired cache entries."""
    return CacheCleanupResponse(
        question_entries_deleted=cache.cleanup_expired(),
        skill_entries_deleted=skill_cache.cleanup_expired(),
    )
