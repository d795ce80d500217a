"""FastAPI application factory.

Main entry point for the Hybrid Grader Web API.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from grading.config.app_config import get_data_dir, get_db_path
from grading.core.exam_repository import list_exam_ids
from grading.db.database import init_db
from grading.web.routes import (
    cache_router,
    costs_router,
    exams_router,
    health_router,
    results_router,
    students_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan context manager for startup/shutdown events."""
    data_dir = get_data_dir()
    init_db(get_db_path(data_dir))
    exams = list_exam_ids(data_dir)
    logger.info(
        "api_startup",
        exams_found=len(exams),
        exams_dir=str((data_dir / "exams").absolute()),
    )
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="Hybrid Grader API",
        description="Exam grading with local models and cloud LLM fallback",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS middleware for web clients
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(exams_router)
    app.include_router(results_router)
    app.include_router(students_router)
    app.include_router(cache_router)
    app.include_router(costs_router)

    return app


# Default app instance for uvicorn
app = create_app()
