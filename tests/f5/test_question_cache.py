"""Tests for the question cache and the skill-aware cache."""

from datetime import datetime, timedelta, timezone

import pytest

from grading.core.question_cache import (
    QuestionCache,
    SkillAwareCache,
    SkillCacheParams,
    answer_hash,
    preprocess_common_answers,
)
from grading.core.results import QuestionGrade


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


def grade(number: int = 1, method: str = "local_confident", **kwargs) -> QuestionGrade:
    defaults = {
        "is_correct": True,
        "points_earned": 1,
        "points_possible": 1,
        "confidence": 0.95,
        "student_answer": "B",
        "correct_answer": "B",
    }
    defaults.update(kwargs)
    return QuestionGrade(question_number=number, grading_method=method, **defaults)


class TestAnswerHash:
    def test_normalized(self):
        assert answer_hash("  Cell   Membrane ") == answer_hash("cell membrane")
        assert len(answer_hash("x")) == 16

    def test_different_answers(self):
        assert answer_hash("A") != answer_hash("B")


class TestQuestionCache:
    """Memory and SQLite tiers."""

    def test_miss(self, clock):
        cache = QuestionCache(clock=clock)

        assert cache.get("e1", 1, "B", "B") is None
        assert cache.misses == 1

    def test_memory_hit(self, clock):
        cache = QuestionCache(clock=clock)
        assert cache.set("e1", grade()) is True

        hit = cache.get("e1", 1, " b ", "B")

        assert hit is not None
        assert hit.cache_hit is True
        assert hit.grading_method == "local_confident_cached"
        assert hit.original_grading_method == "local_confident"
        assert hit.is_local is True
        assert cache.hits == 1

    def test_database_hit_after_restart(self, clock):
        QuestionCache(clock=clock).set("e1", grade(method="cloud_batch", points_earned=0, is_correct=False))

        fresh = QuestionCache(clock=clock)
        hit = fresh.get("e1", 1, "B", "B")

        assert hit is not None
        assert hit.grading_method == "cloud_batch_cached"
        assert hit.is_correct is False
        assert hit.is_local is False
        assert fresh.stats()["memory_entries"] == 1

    def test_different_answer_misses(self, clock):
        cache = QuestionCache(clock=clock)
        cache.set("e1", grade())

        assert cache.get("e1", 1, "C", "B") is None
        assert cache.get("e2", 1, "B", "B") is None

    def test_cached_grade_keeps_original_method(self, clock):
        cache = QuestionCache(clock=clock)
        cache.set("e1", grade())
        hit = cache.get("e1", 1, "B", "B")

        cache.set("e1", hit)

        assert cache.get("e1", 1, "B", "B").original_grading_method == "local_confident"

    @pytest.mark.parametrize(
        "uncacheable",
        [grade(method="requires_ai"), grade(method="cloud_fallback", needs_review=True)],
    )
    def test_uncacheable_grades(self, clock, uncacheable):
        cache = QuestionCache(clock=clock)

        assert cache.set("e1", uncacheable) is False
        assert cache.get("e1", 1, "B", "B") is None

    def test_expiry_and_cleanup(self, clock):
        cache = QuestionCache(ttl_days=7, clock=clock)
        cache.set("e1", grade())

        clock.advance(days=8)

        assert cache.get("e1", 1, "B", "B") is None
        assert cache.cleanup_expired() == 1
        assert cache.stats()["total_entries"] == 0

    def test_stats(self, clock):
        cache = QuestionCache(clock=clock)
        cache.set("e1", grade(1))
        cache.set("e1", grade(2, method="cloud_single"))
        cache.set("e2", grade(1, method="cloud_batch"))
        cache.clear_memory()
        cache.get("e1", 2, "B", "B")

        stats = cache.stats()

        assert stats["total_entries"] == 3
        assert stats["local_entries"] == 1
        assert stats["cloud_entries"] == 2
        assert stats["total_accesses"] == 1
        assert stats["estimated_savings"] == pytest.approx(0.02)
        assert stats["top_exams"][0] == {"exam_id": "e1", "entries": 2}


class TestSkillAwareCache:
    """Cloud grades keyed by skill tags."""

    @pytest.fixture
    def params(self):
        return SkillCacheParams(
            exam_id="e1",
            question_number=3,
            student_answer="Plants make sugar",
            correct_answer="Photosynthesis stores light as chemical energy",
            skill_tags=["Energy", "Biology", "Energy"],
        )

    def test_key_uses_sorted_unique_skills(self, params):
        key = SkillAwareCache.make_key(params)

        assert "_grade_Biology|Energy_" in key
        assert key.startswith("skill_e1_3_")

    def test_set_and_get(self, clock, params):
        cache = SkillAwareCache(clock=clock)
        assert cache.set(params, grade(3, method="cloud_batch", points_possible=4, points_earned=2)) is True

        hit = cache.get(params)

        assert hit.cache_hit is True
        assert hit.grading_method == "cloud_batch_cached"
        assert hit.points_earned == 2
        assert cache.metrics["Energy"].hits == 1

    def test_skills_change_the_key(self, clock, params):
        cache = SkillAwareCache(clock=clock)
        cache.set(params, grade(3, method="cloud_batch"))
        params.skill_tags = ["Energy"]

        assert cache.get(params) is None
        assert cache.metrics["Energy"].hit_rate == 0.0

    def test_fetch_or_generate(self, clock, params):
        cache = SkillAwareCache(clock=clock)
        calls = []

        def generate():
            calls.append(1)
            return grade(3, method="cloud_single")

        first, first_cached = cache.fetch_or_generate(params, generate)
        second, second_cached = cache.fetch_or_generate(params, generate)

        assert (first_cached, second_cached) == (False, True)
        assert len(calls) == 1
        assert second.original_grading_method == "cloud_single"

    def test_review_grades_not_cached(self, clock, params):
        cache = SkillAwareCache(clock=clock)

        assert cache.set(params, grade(3, method="cloud_fallback", needs_review=True)) is False

    def test_stats_and_savings(self, clock, params):
        cache = SkillAwareCache(clock=clock, cost_per_hit=0.005)
        cache.set(params, grade(3, method="cloud_batch"))
        cache.get(params)
        cache.get(params)

        stats = cache.stats()

        assert stats["total_entries"] == 1
        assert stats["entries_by_skill"] == {"Biology": 1, "Energy": 1}
        assert stats["cost_savings_by_skill"]["Energy"] == pytest.approx(0.01)
        assert stats["top_skill_combinations"] == [{"skills": "Biology|Energy", "entries": 1}]

    def test_expiry(self, clock, params):
        cache = SkillAwareCache(ttl_days=14, clock=clock)
        cache.set(params, grade(3, method="cloud_batch"))

        clock.advance(days=15)

        assert cache.get(params) is None
        assert cache.cleanup_expired() == 1


class TestPreprocessCommonAnswers:
    def test_warms_cache_for_simple_questions(self, clock, sample_exam):
        cache = QuestionCache(clock=clock)

        stored = preprocess_common_answers(
            sample_exam,
            {1: ["B", "C"], 3: ["Plants make food from sunlight"], 99: ["A"]},
            cache,
        )

        assert stored == 2
        wrong = cache.get("bio-101-midterm", 1, "C", "B")
        assert wrong.is_correct is False
        assert wrong.skill_mappings[0].skill_name == "Cell biology"
        essay_key = sample_exam.key_for(3).correct_answer
        assert cache.get("bio-101-midterm", 3, "Plants make food from sunlight", essay_key) is None
