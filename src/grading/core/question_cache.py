"""Grade caching module.

Two caches memoize grades so a repeated answer is never graded twice:

- QuestionCache: keyed by exam, question and hashes of the student and
  correct answers. Two tiers: an in-process dict in front of SQLite.
- SkillAwareCache: cloud grades keyed additionally by the question's sorted
  skill tags, with per-skill hit and savings metrics.

Cache failures are logged and treated as misses; they never fail grading.
"""

from __future__ import annotations

import hashlib
import re
import sqlite3
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from grading.config.app_config import load_app_config
from grading.core.exam_repository import DetectedAnswer, Exam, StudentQuestion
from grading.core.local_grader import REQUIRES_AI, grade_question_locally
from grading.core.results import QuestionGrade, is_local_method
from grading.db.cache_repository import (
    CacheRecord,
    delete_expired_question_cache,
    delete_expired_skill_cache,
    format_ts,
    get_question_cache,
    get_skill_cache,
    question_cache_rows,
    skill_cache_rows,
    touch_question_cache,
    touch_skill_cache,
    upsert_question_cache,
    upsert_skill_cache,
)

logger = structlog.get_logger(__name__)

SKILL_CACHE_VERSION = "v1.1_skill_aware"
DEFAULT_SKILL_HIT_SAVINGS = 0.002
CACHED_SUFFIX = "_cached"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def answer_hash(answer: str) -> str:
    """First 16 hex chars of SHA-256 over the normalised answer."""
    normalized = re.sub(r"\s+", " ", answer.strip().lower())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


def _base_method(method: str) -> str:
    return method[: -len(CACHED_SUFFIX)] if method.endswith(CACHED_SUFFIX) else method


def _cacheable(grade: QuestionGrade) -> bool:
    return grade.grading_method != REQUIRES_AI and not grade.needs_review


# =============================================================================
# QUESTION CACHE
# =============================================================================


class QuestionCache:
    """Two-tier (memory, SQLite) cache of question grades."""

    def __init__(
        self,
        ttl_days: int | None = None,
        version: str | None = None,
        clock: Clock = _utcnow,
    ):
        config = load_app_config()
        self.ttl = timedelta(days=ttl_days if ttl_days is not None else config.cache.question_ttl_days)
        self.version = version or config.cache.version
        self.cost_per_cloud_question = config.costs.cost_per_cloud_question
        self._clock = clock
        self._memory: dict[str, tuple[dict[str, Any], datetime]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(exam_id: str, question_number: int, student_answer: str, correct_answer: str) -> str:
        return (
            f"q_{exam_id}_{question_number}_"
            f"{answer_hash(student_answer)}_{answer_hash(correct_answer)}"
        )

    def _hit(self, payload: dict[str, Any]) -> QuestionGrade:
        self.hits += 1
        grade = QuestionGrade.from_dict(payload)
        return replace(grade, cache_hit=True)

    def get(
        self,
        exam_id: str,
        question_number: int,
        student_answer: str,
        correct_answer: str,
    ) -> QuestionGrade | None:
        """Return a cached grade (marked cache_hit) or None."""
        key = self.make_key(exam_id, question_number, student_answer, correct_answer)
        now = self._clock()

        entry = self._memory.get(key)
        if entry is not None:
            payload, expires_at = entry
            if expires_at > now:
                self._touch(key, now)
                logger.debug("question_cache.hit", tier="memory", cache_key=key)
                return self._hit(payload)
            del self._memory[key]

        try:
            record = get_question_cache(key, format_ts(now))
        except sqlite3.Error as e:
            logger.warning("question_cache.read_failed", cache_key=key, error=str(e))
            self.misses += 1
            return None

        if record is None:
            self.misses += 1
            return None

        payload = dict(record.result)
        payload["grading_method"] = record.grading_method
        payload["original_grading_method"] = record.original_method
        self._memory[key] = (
            payload,
            datetime.strptime(record.expires_at, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc),
        )
        self._touch(key, now)
        logger.debug("question_cache.hit", tier="db", cache_key=key)
        return self._hit(payload)

    def _touch(self, key: str, now: datetime) -> None:
        try:
            touch_question_cache(key, format_ts(now))
        except sqlite3.Error as e:
            logger.warning("question_cache.touch_failed", cache_key=key, error=str(e))

    def set(
        self,
        exam_id: str,
        grade: QuestionGrade,
        student_answer: str | None = None,
        correct_answer: str | None = None,
    ) -> bool:
        """Store a grade. Returns False for grades that must not be reused."""
        if not _cacheable(grade):
            return False

        student_answer = grade.student_answer if student_answer is None else student_answer
        correct_answer = grade.correct_answer if correct_answer is None else correct_answer
        key = self.make_key(exam_id, grade.question_number, student_answer, correct_answer)

        original = grade.original_grading_method or _base_method(grade.grading_method)
        payload = grade.to_dict()
        payload["grading_method"] = f"{original}{CACHED_SUFFIX}"
        payload["original_grading_method"] = original
        payload["cache_hit"] = False

        now = self._clock()
        expires_at = now + self.ttl
        self._memory[key] = (payload, expires_at)

        try:
            upsert_question_cache(
                CacheRecord(
                    cache_key=key,
                    exam_id=exam_id,
                    question_number=grade.question_number,
                    grading_method=payload["grading_method"],
                    original_method=original,
                    result=payload,
                    version=self.version,
                    created_at=format_ts(now),
                    expires_at=format_ts(expires_at),
                    answer_hash=answer_hash(student_answer),
                    correct_hash=answer_hash(correct_answer),
                )
            )
        except sqlite3.Error as e:
            logger.warning("question_cache.write_failed", cache_key=key, error=str(e))
        return True

    def stats(self) -> dict[str, Any]:
        """Summary of live cache entries."""
        try:
            rows = question_cache_rows(format_ts(self._clock()))
        except sqlite3.Error as e:
            logger.warning("question_cache.stats_failed", error=str(e))
            rows = []

        total = len(rows)
        accesses = sum(r.access_count for r in rows)
        local_entries = sum(1 for r in rows if is_local_method(r.original_method))
        cloud_entries = total - local_entries
        exams = Counter(r.exam_id for r in rows)

        return {
            "total_entries": total,
            "total_accesses": accesses,
            "hit_rate": round(accesses / total, 4) if total else 0.0,
            "local_entries": local_entries,
            "cloud_entries": cloud_entries,
            "estimated_savings": round(cloud_entries * self.cost_per_cloud_question, 4),
            "session_hits": self.hits,
            "session_misses": self.misses,
            "memory_entries": len(self._memory),
            "top_exams": [{"exam_id": e, "entries": n} for e, n in exams.most_common(10)],
        }

    def cleanup_expired(self) -> int:
        """Drop expired entries from both tiers. Returns rows deleted from SQLite."""
        now = self._clock()
        for key in [k for k, (_, exp) in self._memory.items() if exp <= now]:
            del self._memory[key]
        try:
            return delete_expired_question_cache(format_ts(now))
        except sqlite3.Error as e:
            logger.warning("question_cache.cleanup_failed", error=str(e))
            return 0

    def clear_memory(self) -> None:
        self._memory.clear()


# =============================================================================
# SKILL-AWARE CACHE
# =============================================================================


@dataclass
class SkillCacheParams:
    """Everything that identifies a skill-aware cache entry."""

    exam_id: str
    question_number: int
    student_answer: str
    correct_answer: str
    skill_tags: list[str] = field(default_factory=list)
    response_type: str = "grade"

    @property
    def sorted_skills(self) -> list[str]:
        return sorted(set(self.skill_tags))


@dataclass
class SkillMetrics:
    queries: int = 0
    hits: int = 0
    cost_savings: float = 0.0

    @property
    def hit_rate(self) -> float:
        return self.hits / self.queries if self.queries else 0.0


class SkillAwareCache:
    """Cache for cloud grades keyed by the skills a question assesses."""

    def __init__(
        self,
        ttl_days: int | None = None,
        cost_per_hit: float = DEFAULT_SKILL_HIT_SAVINGS,
        clock: Clock = _utcnow,
    ):
        config = load_app_config()
        self.ttl = timedelta(days=ttl_days if ttl_days is not None else config.cache.skill_ttl_days)
        self.version = SKILL_CACHE_VERSION
        self.cost_per_hit = cost_per_hit
        self._clock = clock
        self.metrics: dict[str, SkillMetrics] = {}

    @staticmethod
    def make_key(params: SkillCacheParams) -> str:
        skills = "|".join(params.sorted_skills) or "none"
        return (
            f"skill_{params.exam_id}_{params.question_number}_{params.response_type}_{skills}_"
            f"{answer_hash(params.student_answer)}_{answer_hash(params.correct_answer)}"
        )

    def _record_query(self, params: SkillCacheParams, hit: bool) -> None:
        for skill in params.sorted_skills or ["General"]:
            m = self.metrics.setdefault(skill, SkillMetrics())
            m.queries += 1
            if hit:
                m.hits += 1
                m.cost_savings += self.cost_per_hit

    def get(self, params: SkillCacheParams) -> QuestionGrade | None:
        key = self.make_key(params)
        now = format_ts(self._clock())
        try:
            record = get_skill_cache(key, now)
            if record is not None:
                touch_skill_cache(key, now)
        except sqlite3.Error as e:
            logger.warning("skill_cache.read_failed", cache_key=key, error=str(e))
            record = None

        self._record_query(params, record is not None)
        if record is None:
            return None

        payload = dict(record.result)
        payload["original_grading_method"] = record.original_method
        payload["grading_method"] = f"{record.original_method}{CACHED_SUFFIX}"
        logger.debug("skill_cache.hit", cache_key=key)
        return replace(QuestionGrade.from_dict(payload), cache_hit=True)

    def set(self, params: SkillCacheParams, grade: QuestionGrade, original_method: str | None = None) -> bool:
        if not _cacheable(grade):
            return False

        key = self.make_key(params)
        now = self._clock()
        original = original_method or _base_method(grade.grading_method)
        payload = grade.to_dict()
        payload["cache_hit"] = False

        try:
            upsert_skill_cache(
                CacheRecord(
                    cache_key=key,
                    exam_id=params.exam_id,
                    question_number=params.question_number,
                    grading_method=original,
                    original_method=original,
                    result=payload,
                    version=self.version,
                    created_at=format_ts(now),
                    expires_at=format_ts(now + self.ttl),
                    response_type=params.response_type,
                    skill_tags=params.sorted_skills,
                )
            )
        except sqlite3.Error as e:
            logger.warning("skill_cache.write_failed", cache_key=key, error=str(e))
            return False
        return True

    def fetch_or_generate(
        self,
        params: SkillCacheParams,
        generate: Callable[[], QuestionGrade],
        original_method: str | None = None,
    ) -> tuple[QuestionGrade, bool]:
        """Return (grade, was_cached), calling generate() on a miss."""
        cached = self.get(params)
        if cached is not None:
            return cached, True

        grade = generate()
        self.set(params, grade, original_method)
        return grade, False

    def stats(self) -> dict[str, Any]:
        try:
            rows = skill_cache_rows(format_ts(self._clock()))
        except sqlite3.Error as e:
            logger.warning("skill_cache.stats_failed", error=str(e))
            rows = []

        by_skill: Counter[str] = Counter()
        combos: Counter[str] = Counter()
        for r in rows:
            tags = r.skill_tags or []
            by_skill.update(tags)
            combos["|".join(tags) or "none"] += 1

        return {
            "total_entries": len(rows),
            "version": self.version,
            "entries_by_skill": dict(by_skill),
            "hit_rate_by_skill": {k: round(m.hit_rate, 4) for k, m in self.metrics.items()},
            "cost_savings_by_skill": {k: round(m.cost_savings, 4) for k, m in self.metrics.items()},
            "top_skill_combinations": [
                {"skills": c, "entries": n} for c, n in combos.most_common(10)
            ],
        }

    def cleanup_expired(self) -> int:
        try:
            return delete_expired_skill_cache(format_ts(self._clock()))
        except sqlite3.Error as e:
            logger.warning("skill_cache.cleanup_failed", error=str(e))
            return 0


# =============================================================================
# CACHE WARMING
# =============================================================================


def preprocess_common_answers(
    exam: Exam,
    common_answers: dict[int, list[str]],
    cache: QuestionCache,
) -> int:
    """Pre-grade frequent answers locally so later submissions hit the cache.

    Args:
        exam: Exam whose answer key is used
        common_answers: question_number -> answers students often give
        cache: Cache to warm

    Returns:
        Number of grades stored
    """
    stored = 0
    for question_number, answers in common_answers.items():
        key = exam.key_for(question_number)
        if key is None:
            continue
        for answer in answers:
            question = StudentQuestion(
                question_number=question_number,
                detected_answer=DetectedAnswer(
                    selected_option=answer,
                    confidence=1.0,
                    bubble_quality="heavy",
                    detection_method="preprocessed",
                    cross_validated=True,
                ),
            )
            grade = grade_question_locally(question, key)
            if grade.grading_method != REQUIRES_AI and cache.set(exam.exam_id, grade.with_skills(key.skills)):
                stored += 1

    logger.info("cache_warmed", exam_id=exam.exam_id, stored=stored)
    return stored
