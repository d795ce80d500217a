"""Pydantic schemas for the Web API.

Serialization models for exams, submissions, grading results, skills,
caches and costs.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


# =============================================================================
# HEALTH
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: str


# =============================================================================
# EXAM SCHEMAS
# =============================================================================


class SkillMappingIn(BaseModel):
    skill_id: str = ""
    skill_name: str = Field(..., min_length=1, max_length=200)
    skill_type: Literal["content", "subject"] = "content"
    # Weights outside [0, 2] are clamped when scoring
    skill_weight: float = 1.0
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class AnswerKeyIn(BaseModel):
    question_number: int = Field(..., ge=1)
    correct_answer: str
    question_text: str = ""
    question_type: str = ""
    points: float = 1.0
    options: list[str] | None = None
    skills: list[SkillMappingIn] = Field(default_factory=list)


class ExamCreate(BaseModel):
    """Request body for registering an exam."""

    exam_id: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    title: str = ""
    class_id: str | None = None
    answer_keys: list[AnswerKeyIn] = Field(..., min_length=1)


class ExamResponse(BaseModel):
    """Response for an exam definition."""

    exam_id: str
    title: str
    class_id: str | None
    question_count: int
    total_points: float
    answer_keys: list[dict[str, Any]]
    warnings: list[str] = Field(default_factory=list)


# =============================================================================
# SUBMISSION / GRADING SCHEMAS
# =============================================================================


class DetectedAnswerIn(BaseModel):
    selected_option: str | None = "no_answer"
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    multiple_marks_detected: bool = False
    review_flag: bool = False
    bubble_quality: str = "unknown"
    detection_method: str = "api"
    cross_validated: bool = False
    processing_notes: list[str] = Field(default_factory=list)


class StudentQuestionIn(BaseModel):
    question_number: int = Field(..., ge=1)
    detected_answer: DetectedAnswerIn


class SubmissionRequest(BaseModel):
    """Request body for grading a submission."""

    exam_id: str | None = None
    student_id: str = Field(..., min_length=1, max_length=100)
    student_name: str = ""
    class_id: str | None = None
    questions: list[StudentQuestionIn]


class GradeResponse(BaseModel):
    """Response after grading a submission."""

    result_id: str
    exam_id: str
    student_id: str
    message: str
    total_score: dict[str, Any]
    summary: dict[str, Any]
    cost_analysis: dict[str, Any]
    skill_scores: dict[str, Any]
    merged_results: list[dict[str, Any]]
    feedback: str
    warnings: list[str]
    quality_report: dict[str, Any] = {}
    report_path: str | None = None


# =============================================================================
# RESULT SCHEMAS
# =============================================================================


class ResultSummaryResponse(BaseModel):
    result_id: str
    exam_id: str
    student_id: str
    student_name: str
    class_id: str | None
    points_earned: float
    points_possible: float
    percentage: float
    local_questions: int
    cloud_questions: int
    combined_confidence: float
    report_path: str | None
    graded_at: str


class ResultResponse(ResultSummaryResponse):
    """Full stored result with per-question grades."""

    results: dict[str, Any]
    skill_scores: list[dict[str, Any]]


class StudentResultsResponse(BaseModel):
    student_id: str
    results: list[ResultSummaryResponse]
    count: int


class SkillSummaryResponse(BaseModel):
    skill_name: str
    skill_type: str
    average_score: float
    results_count: int
    questions_attempted: int
    questions_correct: int


class StudentSkillsResponse(BaseModel):
    student_id: str
    skills: list[SkillSummaryResponse]
    count: int


# =============================================================================
# CACHE / COST SCHEMAS
# =============================================================================


class CacheStatsResponse(BaseModel):
    question_cache: dict[str, Any]
    skill_cache: dict[str, Any]


class CacheCleanupResponse(BaseModel):
    question_entries_deleted: int
    skill_entries_deleted: int


class CostReportResponse(BaseModel):
    today: dict[str, Any]
    last_7_days: dict[str, Any]
    all_time: dict[str, Any]
    recent: list[dict[str, Any]]
