"""SQLite database connection and schema management.

Provides connection management and schema initialization for the grader:
grading caches, test results, skill scores and cost history.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import structlog

logger = structlog.get_logger(__name__)

# Default database location
DEFAULT_DB_PATH = Path("data/grader.db")

# Current connection target (module-level for simplicity in CLI context)
_db_path: Path | None = None


def init_db(db_path: Path | None = None) -> None:
    """Initialize database with schema.

    Creates the database file and all required tables if they don't exist.

    Args:
        db_path: Path to database file. Defaults to data/grader.db
    """
    global _db_path
    _db_path = db_path or DEFAULT_DB_PATH

    _db_path.parent.mkdir(parents=True, exist_ok=True)

    with get_db() as conn:
        _create_schema(conn)

    logger.info("database.initialized", path=str(_db_path))


def current_db_path() -> Path:
    return _db_path or DEFAULT_DB_PATH


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get database connection as context manager.

    Yields:
        SQLite connection with row factory set to sqlite3.Row

    Example:
        with get_db() as conn:
            rows = conn.execute("SELECT * FROM test_results").fetchall()
    """
    db_path = current_db_path()

    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")

    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _create_schema(conn: sqlite3.Connection) -> None:
    """Create database schema.

    Uses IF NOT EXISTS for idempotency.
    """
    conn.executescript(
        """
        -- Per-question grade memoization (exam, question, answer hashes)
        CREATE TABLE IF NOT EXISTS question_cache (
            cache_key TEXT PRIMARY KEY,
            exam_id TEXT NOT NULL,
            question_number INTEGER NOT NULL,
            answer_hash TEXT NOT NULL,
            correct_hash TEXT NOT NULL,
            grading_method TEXT NOT NULL,
            original_method TEXT NOT NULL,
            result_json TEXT NOT NULL,
            version TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            access_count INTEGER NOT NULL DEFAULT 0,
            last_accessed TEXT
        );

        -- Skill-aware memoization (keyed by the sorted skill tags too)
        CREATE TABLE IF NOT EXISTS skill_cache (
            cache_key TEXT PRIMARY KEY,
            exam_id TEXT NOT NULL,
            question_number INTEGER NOT NULL,
            response_type TEXT NOT NULL,
            skill_tags TEXT NOT NULL DEFAULT '[]',
            original_method TEXT NOT NULL,
            result_json TEXT NOT NULL,
            version TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            access_count INTEGER NOT NULL DEFAULT 0,
            last_accessed TEXT
        );

        CREATE TABLE IF NOT EXISTS test_results (
            result_id TEXT PRIMARY KEY,
            exam_id TEXT NOT NULL,
            student_id TEXT NOT NULL,
            student_name TEXT NOT NULL DEFAULT '',
            class_id TEXT,
            points_earned REAL NOT NULL,
            points_possible REAL NOT NULL,
            percentage REAL NOT NULL,
            local_questions INTEGER NOT NULL DEFAULT 0,
            cloud_questions INTEGER NOT NULL DEFAULT 0,
            combined_confidence REAL NOT NULL DEFAULT 0,
            report_path TEXT,
            results_json TEXT NOT NULL DEFAULT '{}',
            graded_at TEXT NOT NULL DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS content_skill_scores (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            result_id TEXT NOT NULL REFERENCES test_results(result_id) ON DELETE CASCADE,
            student_id TEXT NOT NULL,
            skill_name TEXT NOT NULL,
            score REAL NOT NULL,
            points_earned REAL NOT NULL,
            points_possible REAL NOT NULL,
            questions_attempted INTEGER NOT NULL,
            questions_correct INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS subject_skill_scores (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            result_id TEXT NOT NULL REFERENCES test_results(result_id) ON DELETE CASCADE,
            student_id TEXT NOT NULL,
            skill_name TEXT NOT NULL,
            score REAL NOT NULL,
            points_earned REAL NOT NULL,
            points_possible REAL NOT NULL,
            questions_attempted INTEGER NOT NULL,
            questions_correct INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT (datetime('now'))
        );

        CREATE TABLE IF NOT EXISTS cost_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            exam_id TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            metrics_json TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_question_cache_exam ON question_cache(exam_id);
        CREATE INDEX IF NOT EXISTS idx_question_cache_expires ON question_cache(expires_at);
        CREATE INDEX IF NOT EXISTS idx_skill_cache_expires ON skill_cache(expires_at);
        CREATE INDEX IF NOT EXISTS idx_test_results_student ON test_results(student_id);
        CREATE INDEX IF NOT EXISTS idx_test_results_exam ON test_results(exam_id);
        CREATE INDEX IF NOT EXISTS idx_content_scores_student ON content_skill_scores(student_id);
        CREATE INDEX IF NOT EXISTS idx_subject_scores_student ON subject_skill_scores(student_id);
        """
    )
