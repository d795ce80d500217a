"""Question classification module.

Responsibilities:
- Decide the question type from the answer key and OCR signals
  (multiple_choice, true_false, numeric, fill_in_blank, complex)
- Apply quality gates that decide whether a question may be graded locally
- Validate simple answers against an answer pattern (no model involved)
- Score question complexity to pick the cloud model

All rules are deterministic; nothing here calls an LLM.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from grading.config.app_config import GradingConfig, load_app_config
from grading.core.exam_repository import AnswerKey, StudentQuestion

logger = structlog.get_logger(__name__)

# =============================================================================
# TYPES
# =============================================================================

QuestionType = Literal["multiple_choice", "true_false", "numeric", "fill_in_blank", "complex"]
PatternType = Literal["exact_match", "boolean_variation", "numeric_range", "case_insensitive"]

SIMPLE_TYPES = ("multiple_choice", "true_false", "numeric", "fill_in_blank")

# =============================================================================
# PATTERNS
# =============================================================================

TRUE_PATTERNS = ["true", "t", "yes", "y", "correct", "1", "right"]
FALSE_PATTERNS = ["false", "f", "no", "n", "incorrect", "0", "wrong"]

MCQ_ANSWER = re.compile(r"^[A-D]$", re.IGNORECASE)
NUMERIC_PLAIN = re.compile(r"^-?\d+(\.\d+)?([eE][+-]?\d+)?$")
NUMERIC_WITH_UNIT = re.compile(r"^-?\d+(\.\d+)?\s*[a-zA-Z°%]{0,5}$")
FRACTION = re.compile(r"^\d+/\d+$")
ACADEMIC_TERM = re.compile(r"^[A-Za-z0-9\s\-_+()=<>]+$")
SENTENCE_END = re.compile(r"[.!?]")
TF_PHRASES = ("true or false", "t/f", "yes or no", "y/n")

COMPLEX_PATTERNS = [
    re.compile(r"="),
    re.compile(r"\+"),
]
SENTENCE_BOUNDARY = re.compile(r"[.!?]+(?:\s|$)")

FILL_IN_BLANK_MAX_CHARS = 50
MAX_COMPLEX_WORDS = 20


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class AnswerPattern:
    """How a student answer should be compared against the key."""

    type: PatternType
    expected_format: str
    variations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "expected_format": self.expected_format,
            "variations": self.variations,
        }


@dataclass
class QuestionClassification:
    """Result of classifying one question."""

    question_number: int
    question_type: QuestionType
    is_simple: bool
    confidence: float
    detection_method: str
    should_use_local_grading: bool
    fallback_reason: str | None = None
    answer_pattern: AnswerPattern | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "question_number": self.question_number,
            "question_type": self.question_type,
            "is_simple": self.is_simple,
            "confidence": self.confidence,
            "detection_method": self.detection_method,
            "should_use_local_grading": self.should_use_local_grading,
            "fallback_reason": self.fallback_reason,
            "answer_pattern": self.answer_pattern.to_dict() if self.answer_pattern else None,
        }


@dataclass
class SimpleAnswerValidation:
    is_correct: bool
    confidence: float
    method: str


@dataclass
class ComplexityAnalysis:
    """Complexity score (0-100) and the cloud model it calls for."""

    complexity_score: float
    recommended_model: str
    reasoning: list[str]
    confidence_in_decision: float
    factors: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "complexity_score": self.complexity_score,
            "recommended_model": self.recommended_model,
            "reasoning": self.reasoning,
            "confidence_in_decision": self.confidence_in_decision,
            "factors": self.factors,
        }


# =============================================================================
# TYPE DETECTION
# =============================================================================


def _is_boolean_word(value: str) -> bool:
    v = value.strip().lower()
    return v in TRUE_PATTERNS or v in FALSE_PATTERNS


def _to_boolean(value: str) -> bool | None:
    v = value.strip().lower()
    if v in TRUE_PATTERNS:
        return True
    if v in FALSE_PATTERNS:
        return False
    return None


def _is_multiple_choice(key: AnswerKey) -> bool:
    return (
        "multiple" in key.question_type.lower()
        or bool(key.options)
        or bool(MCQ_ANSWER.match(key.correct_answer.strip()))
    )


def _is_true_false(key: AnswerKey) -> bool:
    hint = key.question_type.lower()
    text = key.question_text.lower()
    answer = key.correct_answer.strip()
    # A bare "1"/"0" key is a number unless the hint says otherwise
    return (
        (_is_boolean_word(answer) and not NUMERIC_PLAIN.match(answer))
        or "true" in hint
        or "false" in hint
        or "boolean" in hint
        or any(phrase in text for phrase in TF_PHRASES)
    )


def _is_numeric(key: AnswerKey) -> bool:
    answer = key.correct_answer.strip()
    return bool(
        NUMERIC_PLAIN.match(answer)
        or NUMERIC_WITH_UNIT.match(answer)
        or FRACTION.match(answer)
    )


def _is_fill_in_blank(key: AnswerKey) -> bool:
    answer = key.correct_answer.strip()
    if not answer or len(answer) > FILL_IN_BLANK_MAX_CHARS:
        return False
    if len(SENTENCE_END.findall(answer)) > 1:
        return False
    words = answer.split()
    if len(words) <= 3:
        return True
    return len(words) <= 5 and bool(ACADEMIC_TERM.match(answer))


def detect_question_type(key: AnswerKey) -> tuple[QuestionType, str]:
    """Return (question_type, detection_method) for an answer key."""
    if _is_multiple_choice(key):
        return "multiple_choice", "mcq_pattern"
    if _is_true_false(key):
        return "true_false", "boolean_pattern"
    if _is_numeric(key):
        return "numeric", "numeric_pattern"
    if _is_fill_in_blank(key):
        return "fill_in_blank", "short_answer_pattern"
    return "complex", "no_simple_pattern"


def build_answer_pattern(question_type: QuestionType, key: AnswerKey) -> AnswerPattern | None:
    correct = key.correct_answer.strip()
    if question_type == "multiple_choice":
        letter = correct.upper()
        return AnswerPattern(
            type="exact_match",
            expected_format="A-D",
            variations=[letter, letter.lower(), f"({letter})", f"{letter})", f"{letter}."],
        )
    if question_type == "true_false":
        return AnswerPattern(
            type="boolean_variation",
            expected_format="true/false",
            variations=TRUE_PATTERNS + FALSE_PATTERNS,
        )
    if question_type == "numeric":
        return AnswerPattern(type="numeric_range", expected_format="number")
    if question_type == "fill_in_blank":
        return AnswerPattern(
            type="case_insensitive",
            expected_format="short_text",
            variations=[correct.lower()],
        )
    return None


# =============================================================================
# CLASSIFICATION
# =============================================================================


def _quality_failures(
    question_type: QuestionType,
    question: StudentQuestion,
    confidence: float,
    config: GradingConfig,
) -> list[str]:
    detected = question.detected_answer
    answer = detected.selected_option.strip()
    reasons: list[str] = []

    if confidence < config.simple_confidence:
        reasons.append(f"Low OCR confidence ({confidence * 100:.0f}%)")
    if detected.review_flag:
        reasons.append("Flagged for manual review")
    if detected.multiple_marks_detected:
        reasons.append("Multiple marks detected")
    if not detected.has_answer:
        reasons.append("No clear answer detected")

    if question_type == "multiple_choice":
        if confidence < config.medium_confidence and confidence >= config.simple_confidence:
            reasons.append(f"Low OCR confidence ({confidence * 100:.0f}%)")
        if detected.has_answer and not MCQ_ANSWER.match(answer):
            reasons.append("Empty or unclear response")
        if detected.bubble_quality == "empty" and detected.has_answer:
            reasons.append("Empty or unclear response")
    elif question_type == "true_false":
        if detected.bubble_quality == "empty" and detected.has_answer:
            reasons.append("Empty or unclear response")
    elif question_type == "numeric":
        if confidence < config.medium_confidence and confidence >= config.simple_confidence:
            reasons.append(f"Low OCR confidence ({confidence * 100:.0f}%)")
    elif question_type == "fill_in_blank":
        if confidence < config.medium_confidence and confidence >= config.simple_confidence:
            reasons.append(f"Low OCR confidence ({confidence * 100:.0f}%)")
        if len(answer) > FILL_IN_BLANK_MAX_CHARS:
            reasons.append("Empty or unclear response")

    # Keep first occurrence order, drop repeats
    return list(dict.fromkeys(reasons))


def classify_question(
    question: StudentQuestion,
    answer_key: AnswerKey,
    config: GradingConfig | None = None,
) -> QuestionClassification:
    """Classify a question and decide whether it can be graded locally.

    Args:
        question: Student question with OCR-detected answer
        answer_key: Answer key entry for the question
        config: Grading thresholds (defaults from app config)

    Returns:
        QuestionClassification with the local-grading decision
    """
    if config is None:
        config = load_app_config().grading

    question_type, method = detect_question_type(answer_key)
    ocr_confidence = question.detected_answer.confidence

    if question_type == "true_false":
        confidence = min(ocr_confidence + 0.1, 1.0)
    elif question_type == "numeric":
        confidence = min(ocr_confidence + 0.05, 1.0)
    elif question_type == "complex":
        confidence = 0.0
    else:
        confidence = ocr_confidence

    if question_type == "complex":
        return QuestionClassification(
            question_number=question.question_number,
            question_type="complex",
            is_simple=False,
            confidence=0.0,
            detection_method=method,
            should_use_local_grading=False,
            fallback_reason="Complex question requiring AI analysis",
        )

    failures = _quality_failures(question_type, question, confidence, config)
    should_use_local = not failures

    classification = QuestionClassification(
        question_number=question.question_number,
        question_type=question_type,
        is_simple=True,
        confidence=round(confidence, 4),
        detection_method=method,
        should_use_local_grading=should_use_local,
        fallback_reason=None if should_use_local else (", ".join(failures) or "Quality threshold not met"),
        answer_pattern=build_answer_pattern(question_type, answer_key),
    )

    logger.debug(
        "question_classified",
        question_number=question.question_number,
        question_type=question_type,
        local=should_use_local,
        reason=classification.fallback_reason,
    )
    return classification


# =============================================================================
# ANSWER VALIDATION
# =============================================================================


def _parse_number(value: str) -> float | None:
    value = value.strip()
    if FRACTION.match(value):
        num, den = value.split("/")
        return float(num) / float(den) if float(den) != 0 else None
    cleaned = re.sub(r"[^\d.\-eE]", "", value)
    # Units like "5 m" leave stray letters only when they are e/E
    if not NUMERIC_PLAIN.match(cleaned):
        cleaned = re.sub(r"[^\d.-]", "", value)
    try:
        return float(cleaned)
    except ValueError:
        return None


def _clean_text(value: str) -> str:
    value = re.sub(r"[^\w\s]", "", value.lower())
    return re.sub(r"\s+", " ", value).strip()


def validate_simple_answer(
    student_answer: str,
    correct_answer: str,
    pattern: AnswerPattern,
) -> SimpleAnswerValidation:
    """Compare a student answer to the key using the pattern's rules."""
    student = student_answer.strip()
    correct = correct_answer.strip()

    if pattern.type == "exact_match":
        if student.upper() == correct.upper():
            return SimpleAnswerValidation(True, 1.0, "exact_match")
        if any(student.lower() == v.lower() for v in pattern.variations):
            return SimpleAnswerValidation(True, 0.95, "exact_match_variation")
        return SimpleAnswerValidation(False, 1.0, "exact_match")

    if pattern.type == "boolean_variation":
        student_bool = _to_boolean(student)
        correct_bool = _to_boolean(correct)
        if student_bool is None or correct_bool is None:
            return SimpleAnswerValidation(False, 0.5, "boolean_unrecognized")
        return SimpleAnswerValidation(student_bool == correct_bool, 0.95, "boolean_variation")

    if pattern.type == "numeric_range":
        student_num = _parse_number(student)
        correct_num = _parse_number(correct)
        if student_num is None or correct_num is None:
            return SimpleAnswerValidation(False, 0.5, "numeric_unparseable")
        tolerance = abs(correct_num) * 0.001 + 0.001
        return SimpleAnswerValidation(
            abs(student_num - correct_num) <= tolerance, 0.9, "numeric_range"
        )

    # case_insensitive
    if student.lower() == correct.lower():
        return SimpleAnswerValidation(True, 0.95, "case_insensitive")
    if _clean_text(student) and _clean_text(student) == _clean_text(correct):
        return SimpleAnswerValidation(True, 0.85, "case_insensitive_cleaned")
    return SimpleAnswerValidation(False, 0.85, "case_insensitive")


# =============================================================================
# COMPLEXITY ANALYSIS
# =============================================================================


def _complexity_question_type(key: AnswerKey | None, question_type: QuestionType) -> str:
    if key is None:
        return "unknown"
    hint = key.question_type.lower()
    if "essay" in hint or "written" in hint:
        return "essay"
    if "math" in hint or "calculation" in hint:
        return "math"
    if question_type == "complex":
        return "essay" if len(key.correct_answer) > 100 else "short_response"
    return question_type


def _answer_clarity(question: StudentQuestion) -> float:
    detected = question.detected_answer
    clarity = detected.confidence * 100 * 0.6
    quality = detected.bubble_quality
    if quality == "heavy":
        clarity += 25
    elif quality == "medium":
        clarity += 15
    elif quality == "light":
        clarity += 5
    elif quality in ("empty", "overfilled"):
        clarity -= 20
    if detected.cross_validated:
        clarity += 10
    if MCQ_ANSWER.match(detected.selected_option.strip()):
        clarity += 5
    return max(0.0, min(100.0, clarity))


def analyze_complexity(
    question: StudentQuestion,
    answer_key: AnswerKey | None,
    config: GradingConfig | None = None,
) -> ComplexityAnalysis:
    """Score how hard a question is to grade, 0 (trivial) to 100."""
    if config is None:
        config = load_app_config().grading

    detected = question.detected_answer
    question_type: QuestionType = (
        detect_question_type(answer_key)[0] if answer_key is not None else "complex"
    )
    kind = _complexity_question_type(answer_key, question_type)
    ocr = detected.confidence * 100
    clarity = _answer_clarity(question)

    score = (100 - ocr) * 0.3 + (100 - clarity) * 0.25
    if detected.multiple_marks_detected:
        score += 30
    if detected.review_flag:
        score += 25
    if not detected.cross_validated:
        score += 15
    if detected.bubble_quality in ("empty", "overfilled"):
        score += 20
    elif detected.bubble_quality == "unknown":
        score += 10

    if kind == "essay":
        score += 40
    elif kind in ("math", "short_response"):
        score += 25
    elif kind == "unknown":
        score += 15

    if not detected.has_answer:
        score += 20
    elif question_type == "multiple_choice" and not MCQ_ANSWER.match(detected.selected_option.strip()):
        score += 15

    score = round(max(0.0, min(100.0, score)), 1)

    simple = score <= config.complexity_simple_threshold
    model = config.cloud_model_simple if simple else config.cloud_model_complex

    reasoning = [
        f"Low complexity ({score}) - suitable for {model}"
        if simple
        else f"High complexity ({score}) - requires {model}"
    ]
    if ocr > 85:
        reasoning.append("High OCR confidence suggests clear detection")
    elif ocr < 60:
        reasoning.append("Low OCR confidence indicates detection issues")
    if detected.multiple_marks_detected:
        reasoning.append("Multiple marks detected - needs careful analysis")
    if detected.review_flag:
        reasoning.append("Flagged for review due to quality concerns")
    if kind == "essay":
        reasoning.append("Essay question requires advanced reasoning")
    elif kind == "math":
        reasoning.append("Mathematical content may need specialized handling")

    decision = 80.0
    if score <= 20 or score >= 80:
        decision += 15
    elif 40 <= score <= 60:
        decision -= 20
    if detected.cross_validated and ocr > 85:
        decision += 10
    if detected.multiple_marks_detected or detected.review_flag:
        decision += 10
    if detected.bubble_quality in ("heavy", "medium"):
        decision += 5
    decision = max(50.0, min(100.0, decision))

    return ComplexityAnalysis(
        complexity_score=score,
        recommended_model=model,
        reasoning=reasoning,
        confidence_in_decision=decision,
        factors={
            "ocr_confidence": ocr,
            "answer_clarity": clarity,
            "question_type": kind,
            "bubble_quality": detected.bubble_quality,
            "multiple_marks": detected.multiple_marks_detected,
            "review_flag": detected.review_flag,
            "cross_validated": detected.cross_validated,
        },
    )


def is_complex_text(text: str) -> bool:
    """True if text carries formulas, several sentences, or many words."""
    if any(p.search(text) for p in COMPLEX_PATTERNS):
        return True
    if len(SENTENCE_BOUNDARY.findall(text.strip())) > 2:
        return True
    return len(text.split()) > MAX_COMPLEX_WORDS
