"""Tests for question classification, answer validation and complexity."""

import pytest

from grading.config.app_config import GradingConfig
from grading.core.classifier import (
    AnswerPattern,
    analyze_complexity,
    build_answer_pattern,
    classify_question,
    detect_question_type,
    is_complex_text,
    validate_simple_answer,
)
from grading.core.exam_repository import NO_ANSWER, AnswerKey, DetectedAnswer, StudentQuestion


def make_question(
    number: int,
    answer: str,
    confidence: float = 0.95,
    bubble_quality: str = "heavy",
    cross_validated: bool = True,
    **kwargs,
) -> StudentQuestion:
    """Student question with a cleanly detected answer unless overridden."""
    return StudentQuestion(
        question_number=number,
        detected_answer=DetectedAnswer(
            selected_option=answer,
            confidence=confidence,
            bubble_quality=bubble_quality,
            detection_method="omr",
            cross_validated=cross_validated,
            **kwargs,
        ),
    )


@pytest.fixture
def config() -> GradingConfig:
    return GradingConfig()


def key(answer: str, text: str = "", question_type: str = "", options=None) -> AnswerKey:
    return AnswerKey(
        question_number=1,
        question_text=text,
        correct_answer=answer,
        question_type=question_type,
        options=options or [],
    )


class TestDetectQuestionType:
    """Question type from the answer key alone."""

    @pytest.mark.parametrize(
        "answer_key, expected",
        [
            (key("B"), ("multiple_choice", "mcq_pattern")),
            (key("c"), ("multiple_choice", "mcq_pattern")),
            (key("Mitochondria", options=["Nucleus", "Mitochondria"]), ("multiple_choice", "mcq_pattern")),
            (key("Paris", question_type="multiple choice"), ("multiple_choice", "mcq_pattern")),
            (key("true"), ("true_false", "boolean_pattern")),
            (key("No"), ("true_false", "boolean_pattern")),
            (key("Water boils at 100C", text="True or false: water boils at 100C"), ("true_false", "boolean_pattern")),
            (key("1"), ("numeric", "numeric_pattern")),
            (key("42"), ("numeric", "numeric_pattern")),
            (key("-3.5"), ("numeric", "numeric_pattern")),
            (key("9.8 m"), ("numeric", "numeric_pattern")),
            (key("3/4"), ("numeric", "numeric_pattern")),
            (key("Paris"), ("fill_in_blank", "short_answer_pattern")),
            (key("cell membrane"), ("fill_in_blank", "short_answer_pattern")),
            (
                key("The mitochondria is where cellular respiration produces most ATP."),
                ("complex", "no_simple_pattern"),
            ),
        ],
    )
    def test_detection(self, answer_key, expected):
        assert detect_question_type(answer_key) == expected

    def test_mcq_pattern_variations(self):
        pattern = build_answer_pattern("multiple_choice", key("b"))

        assert pattern.type == "exact_match"
        assert "B" in pattern.variations
        assert "(B)" in pattern.variations

    def test_complex_has_no_pattern(self):
        assert build_answer_pattern("complex", key("long answer")) is None


class TestClassifyQuestion:
    """Quality gates for local grading."""

    def test_clean_mcq_is_local(self, config):
        result = classify_question(make_question(1, "B"), key("B"), config)

        assert result.question_type == "multiple_choice"
        assert result.is_simple is True
        assert result.should_use_local_grading is True
        assert result.fallback_reason is None
        assert result.confidence == pytest.approx(0.95)

    def test_true_false_confidence_boost(self, config):
        result = classify_question(make_question(1, "T", confidence=0.95), key("true"), config)

        assert result.confidence == 1.0
        assert result.should_use_local_grading is True

    def test_numeric_confidence_boost(self, config):
        result = classify_question(make_question(1, "42", confidence=0.8), key("42"), config)

        assert result.confidence == pytest.approx(0.85)

    def test_complex_goes_to_cloud(self, config):
        answer_key = key("Photosynthesis turns light into chemical energy stored in glucose molecules.")
        result = classify_question(make_question(1, "plants make food"), answer_key, config)

        assert result.question_type == "complex"
        assert result.is_simple is False
        assert result.confidence == 0.0
        assert result.fallback_reason == "Complex question requiring AI analysis"
        assert result.answer_pattern is None

    def test_low_ocr_confidence(self, config):
        result = classify_question(make_question(1, "B", confidence=0.3), key("B"), config)

        assert result.should_use_local_grading is False
        assert "Low OCR confidence (30%)" in result.fallback_reason

    def test_mcq_medium_band_rejected(self, config):
        result = classify_question(make_question(1, "B", confidence=0.5), key("B"), config)

        assert result.should_use_local_grading is False
        assert result.fallback_reason == "Low OCR confidence (50%)"

    def test_true_false_medium_band_accepted(self, config):
        result = classify_question(make_question(1, "F", confidence=0.45), key("false"), config)

        assert result.should_use_local_grading is True

    def test_review_and_multiple_marks(self, config):
        question = make_question(1, "B", review_flag=True, multiple_marks_detected=True)
        result = classify_question(question, key("B"), config)

        assert result.should_use_local_grading is False
        assert result.fallback_reason == "Flagged for manual review, Multiple marks detected"

    def test_no_answer(self, config):
        result = classify_question(make_question(1, NO_ANSWER), key("B"), config)

        assert "No clear answer detected" in result.fallback_reason

    def test_mcq_unclear_response(self, config):
        result = classify_question(make_question(1, "E"), key("B"), config)

        assert result.fallback_reason == "Empty or unclear response"


class TestValidateSimpleAnswer:
    """Pattern-based answer checks."""

    def test_exact_match(self):
        pattern = build_answer_pattern("multiple_choice", key("B"))

        assert validate_simple_answer("b", "B", pattern).is_correct is True
        assert validate_simple_answer("B", "B", pattern).confidence == 1.0

    def test_exact_match_variation(self):
        pattern = build_answer_pattern("multiple_choice", key("B"))
        result = validate_simple_answer("(B)", "B", pattern)

        assert result.is_correct is True
        assert result.confidence == 0.95

    def test_exact_mismatch_is_confident(self):
        pattern = build_answer_pattern("multiple_choice", key("B"))
        result = validate_simple_answer("C", "B", pattern)

        assert result.is_correct is False
        assert result.confidence == 1.0

    @pytest.mark.parametrize("student, expected", [("T", True), ("yes", True), ("wrong", False), ("0", False)])
    def test_boolean_variations(self, student, expected):
        pattern = build_answer_pattern("true_false", key("true"))
        result = validate_simple_answer(student, "true", pattern)

        assert result.is_correct is expected
        assert result.confidence == 0.95

    def test_boolean_unrecognized(self):
        pattern = build_answer_pattern("true_false", key("true"))
        result = validate_simple_answer("maybe", "true", pattern)

        assert result.is_correct is False
        assert result.confidence == 0.5

    @pytest.mark.parametrize("student, expected", [("42", True), ("42.0", True), ("0.75", True), ("43", False)])
    def test_numeric(self, student, expected):
        correct = "3/4" if student == "0.75" else "42"
        pattern = AnswerPattern(type="numeric_range", expected_format="number")

        assert validate_simple_answer(student, correct, pattern).is_correct is expected

    def test_numeric_with_unit(self):
        pattern = AnswerPattern(type="numeric_range", expected_format="number")

        assert validate_simple_answer("9.8 m", "9.8", pattern).is_correct is True

    def test_numeric_unparseable(self):
        pattern = AnswerPattern(type="numeric_range", expected_format="number")
        result = validate_simple_answer("forty", "40", pattern)

        assert result.is_correct is False
        assert result.confidence == 0.5

    def test_case_insensitive(self):
        pattern = build_answer_pattern("fill_in_blank", key("Paris"))

        assert validate_simple_answer("paris", "Paris", pattern).confidence == 0.95
        cleaned = validate_simple_answer("Paris.", "Paris", pattern)
        assert cleaned.is_correct is True
        assert cleaned.confidence == 0.85
        assert validate_simple_answer("Lyon", "Paris", pattern).is_correct is False


class TestAnalyzeComplexity:
    """Complexity score and model choice."""

    def test_clean_mcq_uses_simple_model(self, config):
        result = analyze_complexity(make_question(1, "B"), key("B"), config)

        assert result.complexity_score <= config.complexity_simple_threshold
        assert result.recommended_model == config.cloud_model_simple
        assert result.reasoning[0].startswith("Low complexity")
        assert "High OCR confidence suggests clear detection" in result.reasoning

    def test_essay_uses_complex_model(self, config):
        answer_key = key(
            "Light reactions produce ATP and NADPH which the Calvin cycle uses to fix carbon.",
            question_type="essay",
        )
        question = make_question(
            1,
            "Plants use sunlight to make sugar in their leaves.",
            confidence=0.8,
            bubble_quality="medium",
            cross_validated=False,
        )

        result = analyze_complexity(question, answer_key, config)

        assert result.complexity_score == pytest.approx(70.2, abs=0.1)
        assert result.recommended_model == config.cloud_model_complex
        assert "Essay question requires advanced reasoning" in result.reasoning

    def test_score_is_clamped(self, config):
        question = make_question(
            1,
            NO_ANSWER,
            confidence=0.0,
            bubble_quality="empty",
            cross_validated=False,
            multiple_marks_detected=True,
            review_flag=True,
        )

        result = analyze_complexity(question, key("x", question_type="essay"), config)

        assert result.complexity_score == 100.0

    def test_decision_confidence_range(self, config):
        result = analyze_complexity(make_question(1, "B"), key("B"), config)

        assert 50 <= result.confidence_in_decision <= 100

    def test_threshold_from_config(self):
        strict = GradingConfig(complexity_simple_threshold=0)
        result = analyze_complexity(make_question(1, "B"), key("B"), strict)

        assert result.recommended_model == strict.cloud_model_complex


class TestIsComplexText:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Paris", False),
            ("x = 4", True),
            ("2 + 2", True),
            ("One. Two. Three. Four.", True),
            (" ".join(["word"] * 21), True),
            ("A short phrase with a few words", False),
        ],
    )
    def test_detection(self, text, expected):
        assert is_complex_text(text) is expected
