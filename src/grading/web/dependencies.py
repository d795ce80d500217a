"""Shared FastAPI dependencies.

Graders and caches live on ``app.state`` so one app instance reuses the
in-memory cache tier across requests. Tests override these with
``app.dependency_overrides``.
"""

from __future__ import annotations

from pathlib import Path

from fastapi import Request

from grading.config.app_config import get_data_dir, load_app_config
from grading.core.cloud_grader import CloudGrader
from grading.core.cost_tracking import CostTracker, get_cost_tracker
from grading.core.local_grader import SemanticGrader
from grading.core.question_cache import QuestionCache, SkillAwareCache


def data_dir() -> Path:
    return get_data_dir()


def question_cache(request: Request) -> QuestionCache:
    state = request.app.state
    if getattr(state, "question_cache", None) is None:
        state.question_cache = QuestionCache()
    return state.question_cache


def skill_cache(request: Request) -> SkillAwareCache:
    state = request.app.state
    if getattr(state, "skill_cache", None) is None:
        state.skill_cache = SkillAwareCache()
    return state.skill_cache


def cloud_grader(request: Request) -> CloudGrader:
    state = request.app.state
    if getattr(state, "cloud_grader", None) is None:
        state.cloud_grader = CloudGrader()
    return state.cloud_grader


def semantic_grader(request: Request) -> SemanticGrader | None:
    if not load_app_config().grading.enable_semantic_grading:
        return None
    state = request.app.state
    if getattr(state, "semantic_grader", None) is None:
        state.semantic_grader = SemanticGrader()
    return state.semantic_grader


def cost_tracker() -> CostTracker:
    return get_cost_tracker()
