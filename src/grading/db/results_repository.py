"""Repository functions for test results, skill scores and cost history."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import Any

import structlog

from grading.core.results import SkillScore
from grading.db.database import get_db

logger = structlog.get_logger(__name__)

SKILL_TABLES = {
    "content": "content_skill_scores",
    "subject": "subject_skill_scores",
}


@dataclass
class TestResultRecord:
    """Test result record from database."""

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
    results: dict[str, Any]
    graded_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "result_id": self.result_id,
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "class_id": self.class_id,
            "points_earned": self.points_earned,
            "points_possible": self.points_possible,
            "percentage": self.percentage,
            "local_questions": self.local_questions,
            "cloud_questions": self.cloud_questions,
            "combined_confidence": self.combined_confidence,
            "report_path": self.report_path,
            "graded_at": self.graded_at,
        }


def insert_test_result(
    result_id: str,
    exam_id: str,
    student_id: str,
    points_earned: float,
    points_possible: float,
    percentage: float,
    results: dict[str, Any],
    student_name: str = "",
    class_id: str | None = None,
    local_questions: int = 0,
    cloud_questions: int = 0,
    combined_confidence: float = 0.0,
    report_path: str | None = None,
    graded_at: str | None = None,
) -> None:
    """Insert a graded test.

    Raises:
        sqlite3.IntegrityError: If result_id already exists
    """
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO test_results (
                result_id, exam_id, student_id, student_name, class_id,
                points_earned, points_possible, percentage,
                local_questions, cloud_questions, combined_confidence,
                report_path, results_json, graded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, COALESCE(?, datetime('now')))
            """,
            (
                result_id,
                exam_id,
                student_id,
                student_name,
                class_id,
                points_earned,
                points_possible,
                percentage,
                local_questions,
                cloud_questions,
                combined_confidence,
                report_path,
                json.dumps(results),
                graded_at,
            ),
        )

    logger.debug("test_results.inserted", result_id=result_id, student_id=student_id)


def insert_skill_scores(result_id: str, student_id: str, skill_scores: dict[str, SkillScore]) -> int:
    """Store content and subject skill scores for a result. Returns rows written."""
    written = 0
    with get_db() as conn:
        for score in skill_scores.values():
            table = SKILL_TABLES.get(score.skill_type)
            if table is None:
                continue
            conn.execute(
                f"""
                INSERT INTO {table} (
                    result_id, student_id, skill_name, score,
                    points_earned, points_possible,
                    questions_attempted, questions_correct
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result_id,
                    student_id,
                    score.skill_name,
                    score.score,
                    score.points_earned,
                    score.points_possible,
                    score.questions_attempted,
                    score.questions_correct,
                ),
            )
            written += 1

    logger.debug("skill_scores.inserted", result_id=result_id, rows=written)
    return written


def get_test_result(result_id: str) -> TestResultRecord | None:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM test_results WHERE result_id = ?", (result_id,)
        ).fetchone()

    if row is None:
        return None
    return _row_to_record(row)


def list_results_for_student(student_id: str) -> list[TestResultRecord]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM test_results WHERE student_id = ? ORDER BY graded_at DESC, result_id",
            (student_id,),
        ).fetchall()
    return [_row_to_record(r) for r in rows]


def list_results_for_exam(exam_id: str) -> list[TestResultRecord]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM test_results WHERE exam_id = ? ORDER BY graded_at DESC, result_id",
            (exam_id,),
        ).fetchall()
    return [_row_to_record(r) for r in rows]


def get_skill_scores_for_result(result_id: str) -> list[dict[str, Any]]:
    scores = []
    with get_db() as conn:
        for skill_type, table in SKILL_TABLES.items():
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE result_id = ? ORDER BY skill_name", (result_id,)
            ).fetchall()
            scores.extend({**dict(r), "skill_type": skill_type} for r in rows)
    return scores


def get_student_skill_summary(student_id: str) -> list[dict[str, Any]]:
    """Average score per skill across all of a student's results."""
    summary = []
    with get_db() as conn:
        for skill_type, table in SKILL_TABLES.items():
            rows = conn.execute(
                f"""
                SELECT skill_name,
                       AVG(score) AS average_score,
                       COUNT(*) AS results_count,
                       SUM(questions_attempted) AS questions_attempted,
                       SUM(questions_correct) AS questions_correct
                FROM {table}
                WHERE student_id = ?
                GROUP BY skill_name
                ORDER BY skill_name
                """,
                (student_id,),
            ).fetchall()
            for r in rows:
                summary.append(
                    {
                        "skill_name": r["skill_name"],
                        "skill_type": skill_type,
                        "average_score": round(r["average_score"], 2),
                        "results_count": r["results_count"],
                        "questions_attempted": r["questions_attempted"],
                        "questions_correct": r["questions_correct"],
                    }
                )
    return summary


def insert_cost_entry(exam_id: str, timestamp: str, metrics: dict[str, Any]) -> None:
    with get_db() as conn:
        conn.execute(
            "INSERT INTO cost_history (exam_id, timestamp, metrics_json) VALUES (?, ?, ?)",
            (exam_id, timestamp, json.dumps(metrics)),
        )


def list_cost_entries(limit: int = 1000) -> list[dict[str, Any]]:
    """Most recent cost entries, oldest first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT metrics_json FROM cost_history ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
    return [json.loads(r["metrics_json"]) for r in reversed(rows)]


def _row_to_record(row: sqlite3.Row) -> TestResultRecord:
    """Convert database row to TestResultRecord."""
    return TestResultRecord(
        result_id=row["result_id"],
        exam_id=row["exam_id"],
        student_id=row["student_id"],
        student_name=row["student_name"],
        class_id=row["class_id"],
        points_earned=row["points_earned"],
        points_possible=row["points_possible"],
        percentage=row["percentage"],
        local_questions=row["local_questions"],
        cloud_questions=row["cloud_questions"],
        combined_confidence=row["combined_confidence"],
        report_path=row["report_path"],
        results=json.loads(row["results_json"]),
        graded_at=row["graded_at"],
    )
