"""Route handlers for the Web API."""

from grading.web.routes.health import router as health_router
from grading.web.routes.exams import router as exams_router
from grading.web.routes.results import router as results_router
from grading.web.routes.students import router as students_router
from grading.web.routes.cache import router as cache_router
from grading.web.routes.costs import router as costs_router

__all__ = [
    "health_router",
    "exams_router",
    "results_router",
    "students_router",
    "cache_router",
    "costs_router",
]
