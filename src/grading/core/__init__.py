"""Core grading logic.

Modules:
- exam_repository: Exam definitions and submission parsing
- classifier: Question type detection and complexity analysis
- local_grader: Pattern and semantic-similarity grading
- cloud_grader: LLM grading (single and batched)
- cost_tracking: Model routing and spend history
- question_cache: Question and skill-aware grade caches
- skill_scores: Skill aggregation, merging and reports
- hybrid_grader: End-to-end grading pipeline
- resilience: Circuit breaker and retry policy
"""

__all__ = [
    "exam_repository",
    "classifier",
    "local_grader",
    "cloud_grader",
    "cost_tracking",
    "question_cache",
    "skill_scores",
    "hybrid_grader",
    "resilience",
]
