"""Repository functions for the grading cache tables.

Provides CRUD operations for question_cache and skill_cache. Timestamps
are stored as fixed-width UTC strings so they compare correctly as text.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from grading.db.database import get_db

logger = structlog.get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_ts(moment: datetime) -> str:
    """Fixed-width UTC timestamp."""
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def now_ts() -> str:
    return format_ts(datetime.now(timezone.utc))


@dataclass
class CacheRecord:
    """Row from question_cache or skill_cache."""

    cache_key: str
    exam_id: str
    question_number: int
    grading_method: str
    original_method: str
    result: dict[str, Any]
    version: str
    created_at: str
    expires_at: str
    access_count: int = 0
    last_accessed: str | None = None
    # question_cache only
    answer_hash: str = ""
    correct_hash: str = ""
    # skill_cache only
    response_type: str = ""
    skill_tags: list[str] | None = None


# =============================================================================
# QUESTION CACHE
# =============================================================================


def upsert_question_cache(record: CacheRecord) -> None:
    """Insert or replace a question cache row (access count restarts at 0)."""
    with get_db() as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO question_cache (
                cache_key, exam_id, question_number, answer_hash, correct_hash,
                grading_method, original_method, result_json, version,
                created_at, expires_at, access_count, last_accessed
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.cache_key,
                record.exam_id,
                record.question_number,
                record.answer_hash,
                record.correct_hash,
                record.grading_method,
                record.original_method,
                json.dumps(record.result),
                record.version,
                record.created_at,
                record.expires_at,
                record.access_count,
                record.last_accessed,
            ),
        )

    logger.debug("question_cache.stored", cache_key=record.cache_key)


def get_question_cache(cache_key: str, now: str | None = None) -> CacheRecord | None:
    """Get a non-expired question cache row."""
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM question_cache WHERE cache_key = ? AND expires_at > ?",
            (cache_key, now or now_ts()),
        ).fetchone()

    if row is None:
        return None
    return _row_to_record(row)


def touch_question_cache(cache_key: str, now: str | None = None) -> None:
    """Count a cache hit."""
    with get_db() as conn:
        conn.execute(
            """
            UPDATE question_cache
            SET access_count = access_count + 1, last_accessed = ?
            WHERE cache_key = ?
            """,
            (now or now_ts(), cache_key),
        )


def delete_expired_question_cache(now: str | None = None) -> int:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM question_cache WHERE expires_at <= ?", (now or now_ts(),)
        )
        deleted = cursor.rowcount

    logger.info("question_cache.cleaned", deleted=deleted)
    return deleted


def question_cache_rows(now: str | None = None) -> list[CacheRecord]:
    """All non-expired question cache rows."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM question_cache WHERE expires_at > ?", (now or now_ts(),)
        ).fetchall()
    return [_row_to_record(r) for r in rows]


def clear_question_cache(exam_id: str | None = None) -> int:
    with get_db() as conn:
        if exam_id is None:
            cursor = conn.execute("DELETE FROM question_cache")
        else:
            cursor = conn.execute("DELETE FROM question_cache WHERE exam_id = ?", (exam_id,))
        return cursor.rowcount


# =============================================================================
# SKILL CACHE
# =============================================================================


def upsert_skill_cache(record: CacheRecord) -> None:
    with get_db() as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO skill_cache (
                cache_key, exam_id, question_number, response_type, skill_tags,
                original_method, result_json, version,
                created_at, expires_at, access_count, last_accessed
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.cache_key,
                record.exam_id,
                record.question_number,
                record.response_type,
                json.dumps(record.skill_tags or []),
                record.original_method,
                json.dumps(record.result),
                record.version,
                record.created_at,
                record.expires_at,
                record.access_count,
                record.last_accessed,
            ),
        )

    logger.debug("skill_cache.stored", cache_key=record.cache_key)


def get_skill_cache(cache_key: str, now: str | None = None) -> CacheRecord | None:
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM skill_cache WHERE cache_key = ? AND expires_at > ?",
            (cache_key, now or now_ts()),
        ).fetchone()

    if row is None:
        return None
    return _row_to_record(row)


def touch_skill_cache(cache_key: str, now: str | None = None) -> None:
    with get_db() as conn:
        conn.execute(
            """
            UPDATE skill_cache
            SET access_count = access_count + 1, last_accessed = ?
            WHERE cache_key = ?
            """,
            (now or now_ts(), cache_key),
        )


def delete_expired_skill_cache(now: str | None = None) -> int:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM skill_cache WHERE expires_at <= ?", (now or now_ts(),))
        deleted = cursor.rowcount

    logger.info("skill_cache.cleaned", deleted=deleted)
    return deleted


def skill_cache_rows(now: str | None = None) -> list[CacheRecord]:
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM skill_cache WHERE expires_at > ?", (now or now_ts(),)
        ).fetchall()
    return [_row_to_record(r) for r in rows]


# =============================================================================
# HELPERS
# =============================================================================


def _row_to_record(row: sqlite3.Row) -> CacheRecord:
    """Convert a cache row to CacheRecord."""
    keys = row.keys()
    return CacheRecord(
        cache_key=row["cache_key"],
        exam_id=row["exam_id"],
        question_number=row["question_number"],
        grading_method=row["grading_method"] if "grading_method" in keys else row["original_method"],
        original_method=row["original_method"],
        result=json.loads(row["result_json"]),
        version=row["version"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        access_count=row["access_count"],
        last_accessed=row["last_accessed"],
        answer_hash=row["answer_hash"] if "answer_hash" in keys else "",
        correct_hash=row["correct_hash"] if "correct_hash" in keys else "",
        response_type=row["response_type"] if "response_type" in keys else "",
        skill_tags=json.loads(row["skill_tags"]) if "skill_tags" in keys else None,
    )
