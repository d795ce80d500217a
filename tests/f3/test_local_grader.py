"""Tests for pattern-based and semantic local grading."""

import numpy as np
import pytest

from grading.config.app_config import GradingConfig
from grading.core.exam_repository import NO_ANSWER, AnswerKey, DetectedAnswer, StudentQuestion
from grading.core.local_grader import (
    REQUIRES_AI,
    SemanticGrader,
    cosine_similarity,
    grade_question_locally,
    is_semantic_candidate,
    normalize_answer,
    similarity_confidence,
)


def question(number: int, answer: str, confidence: float = 0.95, **kwargs) -> StudentQuestion:
    return StudentQuestion(
        question_number=number,
        detected_answer=DetectedAnswer(
            selected_option=answer,
            confidence=confidence,
            bubble_quality=kwargs.pop("bubble_quality", "heavy"),
            detection_method="omr",
            cross_validated=kwargs.pop("cross_validated", True),
            **kwargs,
        ),
    )


@pytest.fixture
def config() -> GradingConfig:
    return GradingConfig()


class TestGradeQuestionLocally:
    """Deterministic grading of simple questions."""

    def test_correct_mcq(self, config):
        key = AnswerKey(question_number=1, correct_answer="B", points=2)

        grade = grade_question_locally(question(1, "b"), key, config)

        assert grade.is_correct is True
        assert grade.points_earned == 2
        assert grade.grading_method == "local_confident"
        assert grade.reasoning.startswith("Correct: 'b' vs key 'B'")
        assert grade.quality_flags["question_type"] == "multiple_choice"
        assert grade.quality_flags["cross_validated"] is True
        assert grade.is_local is True

    def test_incorrect_mcq(self, config):
        key = AnswerKey(question_number=1, correct_answer="B")

        grade = grade_question_locally(question(1, "C"), key, config)

        assert grade.is_correct is False
        assert grade.points_earned == 0
        assert grade.confidence == pytest.approx(0.95)
        assert grade.reasoning.startswith("Incorrect")

    def test_medium_confidence_is_enhanced(self, config):
        key = AnswerKey(question_number=1, correct_answer="B")

        grade = grade_question_locally(question(1, "B", confidence=0.7), key, config)

        assert grade.grading_method == "local_enhanced"
        assert grade.confidence == pytest.approx(0.7)

    def test_true_false_variation(self, config):
        key = AnswerKey(question_number=2, correct_answer="true", question_type="true_false")

        grade = grade_question_locally(question(2, "yes"), key, config)

        assert grade.is_correct is True
        assert grade.confidence == pytest.approx(0.95)
        assert grade.question_type == "true_false"

    def test_numeric_tolerance(self, config):
        key = AnswerKey(question_number=3, correct_answer="3.14")

        grade = grade_question_locally(question(3, "3.1415"), key, config)

        assert grade.is_correct is True
        assert grade.confidence == pytest.approx(0.9)

    def test_fill_in_blank(self, config):
        key = AnswerKey(question_number=4, correct_answer="Paris", question_text="Capital of France?")

        grade = grade_question_locally(question(4, "paris"), key, config)

        assert grade.is_correct is True
        assert grade.grading_method == "local_confident"

    def test_complex_requires_ai(self, config):
        key = AnswerKey(
            question_number=5,
            correct_answer="Enzymes lower the activation energy so reactions proceed faster.",
        )

        grade = grade_question_locally(question(5, "they speed things up"), key, config)

        assert grade.grading_method == REQUIRES_AI
        assert grade.reasoning == "Complex question requiring AI analysis"
        assert grade.is_local is False

    def test_low_quality_requires_ai(self, config):
        key = AnswerKey(question_number=1, correct_answer="B")

        grade = grade_question_locally(question(1, "B", review_flag=True), key, config)

        assert grade.grading_method == REQUIRES_AI
        assert grade.reasoning == "Flagged for manual review"
        assert grade.points_earned == 0


class TestSemanticHelpers:
    def test_normalize_answer(self):
        assert normalize_answer("  The  Cell's   Membrane! ") == "the cells membrane"

    def test_cosine_similarity(self):
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([1.0, 0.0])) == pytest.approx(1.0)
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 1.0])) == pytest.approx(0.0)
        assert cosine_similarity(np.zeros(2), np.array([1.0, 0.0])) == 0.0

    @pytest.mark.parametrize(
        "similarity, expected",
        [(0.95, 0.95), (0.85, 0.85), (0.75, 0.75), (0.65, 0.65), (0.3, 0.5)],
    )
    def test_similarity_confidence(self, similarity, expected):
        assert similarity_confidence(similarity) == expected

    @pytest.mark.parametrize(
        "student, correct, text, expected",
        [
            ("cell membrane", "plasma membrane", "", True),
            ("x = 2", "2", "", False),
            ("short", "answer", "Solve a + b for b.", False),
            ("a" * 101, "answer", "", False),
        ],
    )
    def test_is_semantic_candidate(self, student, correct, text, expected):
        assert is_semantic_candidate(student, correct, text, max_length=100) is expected


class TestSemanticGrader:
    """Embedding similarity grading with an injected encoder."""

    def test_similar_answer_accepted(self, fake_encoder):
        fake_encoder.vectors["plasma membrane"] = [1.0, 0.0]
        fake_encoder.vectors["cell membrane"] = [0.95, 0.3122]
        grader = SemanticGrader(encoder=fake_encoder, threshold=0.75)

        grade = grader.grade(1, "Cell membrane", "Plasma membrane", 2.0)

        assert grade.is_correct is True
        assert grade.points_earned == 2.0
        assert grade.grading_method == "local_semantic"
        assert grade.confidence == 0.95
        assert grade.quality_flags["similarity"] == pytest.approx(0.95, abs=0.01)
        assert fake_encoder.calls == [["cell membrane", "plasma membrane"]]

    def test_dissimilar_answer_rejected(self, fake_encoder):
        fake_encoder.vectors["osmosis"] = [1.0, 0.0]
        fake_encoder.vectors["diffusion"] = [0.6, 0.8]
        grader = SemanticGrader(encoder=fake_encoder, threshold=0.75)

        grade = grader.grade(1, "diffusion", "osmosis", 1.0)

        assert grade.is_correct is False
        assert grade.points_earned == 0
        assert grade.confidence == 0.5
        assert "threshold 0.75" in grade.reasoning

    def test_threshold_from_config(self, fake_encoder):
        assert SemanticGrader(encoder=fake_encoder).threshold == GradingConfig().semantic_threshold

    @pytest.mark.parametrize("answer", ["", "   ", NO_ANSWER, "!!!"])
    def test_empty_answer(self, fake_encoder, answer):
        grader = SemanticGrader(encoder=fake_encoder)

        grade = grader.grade(1, answer, "osmosis", 1.0)

        assert grade.is_correct is False
        assert grade.confidence == 1.0
        assert grade.reasoning == "No answer provided"
        assert fake_encoder.calls == []

    def test_encoder_failure_falls_back_to_pattern(self):
        class BrokenEncoder:
            def encode(self, sentences):
                raise RuntimeError("model crashed")

        grader = SemanticGrader(encoder=BrokenEncoder())

        match = grader.grade(1, "Osmosis!", "osmosis", 1.0)
        miss = grader.grade(2, "diffusion", "osmosis", 1.0)

        assert match.grading_method == "pattern_match"
        assert match.is_correct is True
        assert match.confidence == 0.9
        assert miss.is_correct is False
        assert miss.confidence == 0.3

    def test_model_load_failure_is_remembered(self, monkeypatch):
        import sentence_transformers

        calls = []

        def broken_model(name):
            calls.append(name)
            raise OSError("no weights")

        monkeypatch.setattr(sentence_transformers, "SentenceTransformer", broken_model)
        grader = SemanticGrader(model_name="missing-model")

        assert grader.is_available is False
        assert grader.similarity("a", "b") is None
        assert calls == ["missing-model"]
