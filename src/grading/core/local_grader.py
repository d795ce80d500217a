"""Local (offline) grading module.

Responsibilities:
- Grade simple questions by pattern (MCQ, true/false, numeric, short text)
- Grade short free-text answers by semantic similarity with a local
  sentence-transformers model (all-MiniLM-L6-v2 by default)
- Report which questions still need a cloud model

Nothing in this module performs network calls once the model is cached.
"""

from __future__ import annotations

import re
from typing import Any, Protocol

import numpy as np
import structlog

from grading.config.app_config import GradingConfig, load_app_config
from grading.core.classifier import (
    QuestionClassification,
    classify_question,
    is_complex_text,
    validate_simple_answer,
)
from grading.core.exam_repository import AnswerKey, StudentQuestion
from grading.core.results import QuestionGrade

logger = structlog.get_logger(__name__)

REQUIRES_AI = "requires_ai"

# =============================================================================
# PATTERN GRADING
# =============================================================================


def _describe_detection(question: StudentQuestion, classification: QuestionClassification) -> str:
    detected = question.detected_answer
    parts = [
        f"{classification.question_type} via {classification.detection_method}",
        f"OCR {detected.detection_method} ({detected.confidence:.0%})",
        f"bubble {detected.bubble_quality}",
    ]
    if detected.cross_validated:
        parts.append("cross-validated")
    if detected.multiple_marks_detected:
        parts.append("multiple marks")
    if detected.review_flag:
        parts.append("review flag")
    return ", ".join(parts)


def _quality_flags(question: StudentQuestion) -> dict[str, Any]:
    detected = question.detected_answer
    return {
        "bubble_quality": detected.bubble_quality,
        "ocr_confidence": detected.confidence,
        "multiple_marks": detected.multiple_marks_detected,
        "review_flag": detected.review_flag,
        "cross_validated": detected.cross_validated,
    }


def grade_question_locally(
    question: StudentQuestion,
    answer_key: AnswerKey,
    config: GradingConfig | None = None,
) -> QuestionGrade:
    """Grade one question with deterministic rules.

    Returns a grade with method "requires_ai" when the question must be
    escalated; its reasoning carries the fallback reason.
    """
    if config is None:
        config = load_app_config().grading

    classification = classify_question(question, answer_key, config)
    flags = _quality_flags(question)
    flags["question_type"] = classification.question_type

    if not classification.should_use_local_grading or classification.answer_pattern is None:
        return QuestionGrade(
            question_number=question.question_number,
            is_correct=False,
            points_earned=0.0,
            points_possible=answer_key.points,
            confidence=classification.confidence,
            grading_method=REQUIRES_AI,
            reasoning=classification.fallback_reason or "Quality threshold not met",
            student_answer=question.answer,
            correct_answer=answer_key.correct_answer,
            question_type=classification.question_type,
            quality_flags=flags,
        )

    validation = validate_simple_answer(
        question.answer, answer_key.correct_answer, classification.answer_pattern
    )
    confidence = min(classification.confidence, validation.confidence)

    if confidence >= config.high_confidence:
        method = "local_confident"
    elif confidence >= config.simple_confidence:
        method = "local_enhanced"
    else:
        method = "local_question_based"

    verdict = "Correct" if validation.is_correct else "Incorrect"
    reasoning = (
        f"{verdict}: '{question.answer}' vs key '{answer_key.correct_answer}' "
        f"({validation.method}; {_describe_detection(question, classification)})"
    )

    return QuestionGrade(
        question_number=question.question_number,
        is_correct=validation.is_correct,
        points_earned=answer_key.points if validation.is_correct else 0.0,
        points_possible=answer_key.points,
        confidence=confidence,
        grading_method=method,
        reasoning=reasoning,
        student_answer=question.answer,
        correct_answer=answer_key.correct_answer,
        question_type=classification.question_type,
        quality_flags=flags,
    )


# =============================================================================
# SEMANTIC GRADING
# =============================================================================


class Encoder(Protocol):
    def encode(self, sentences: list[str]) -> Any: ...


def normalize_answer(text: str) -> str:
    """Lowercase, drop punctuation except '.' and '-', collapse spaces."""
    text = re.sub(r"[^\w\s.-]", "", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


def similarity_confidence(similarity: float) -> float:
    if similarity > 0.9:
        return 0.95
    if similarity > 0.8:
        return 0.85
    if similarity > 0.7:
        return 0.75
    if similarity > 0.6:
        return 0.65
    return 0.5


def is_semantic_candidate(
    student_answer: str,
    correct_answer: str,
    question_text: str = "",
    max_length: int = 100,
) -> bool:
    """True if a short free-text answer can be judged by embedding similarity."""
    if len(student_answer) > max_length or len(correct_answer) > max_length:
        return False
    for text in (question_text, student_answer, correct_answer):
        if text and is_complex_text(text):
            return False
    return True


class SemanticGrader:
    """Embedding-similarity grader backed by sentence-transformers.

    The model loads on first use. An encoder with an ``encode(list[str])``
    method may be injected instead (tests, alternative backends).
    """

    def __init__(
        self,
        model_name: str | None = None,
        encoder: Encoder | None = None,
        threshold: float | None = None,
    ):
        config = load_app_config().grading
        self.model_name = model_name or config.semantic_model
        self.threshold = config.semantic_threshold if threshold is None else threshold
        self._encoder = encoder
        self._load_failed = False

    def _get_encoder(self) -> Encoder | None:
        if self._encoder is not None:
            return self._encoder
        if self._load_failed:
            return None

        try:
            from sentence_transformers import SentenceTransformer

            self._encoder = SentenceTransformer(self.model_name)
            logger.info("semantic_model_loaded", model=self.model_name)
        except Exception as e:
            # Missing weights or no network: grade by pattern instead
            logger.warning("semantic_model_unavailable", model=self.model_name, error=str(e))
            self._load_failed = True
            return None

        return self._encoder

    @property
    def is_available(self) -> bool:
        return self._get_encoder() is not None

    def similarity(self, student_answer: str, correct_answer: str) -> float | None:
        """Cosine similarity of the normalised answers, or None if the model failed."""
        encoder = self._get_encoder()
        if encoder is None:
            return None
        try:
            vectors = np.asarray(
                encoder.encode([normalize_answer(student_answer), normalize_answer(correct_answer)])
            )
        except Exception as e:
            logger.warning("semantic_encode_failed", error=str(e))
            return None
        return cosine_similarity(vectors[0], vectors[1])

    def grade(
        self,
        question_number: int,
        student_answer: str,
        correct_answer: str,
        points_possible: float,
        question_type: str = "",
    ) -> QuestionGrade:
        """Grade a short free-text answer."""
        base = {
            "question_number": question_number,
            "points_possible": points_possible,
            "student_answer": student_answer,
            "correct_answer": correct_answer,
            "question_type": question_type,
        }

        if not normalize_answer(student_answer) or student_answer.strip().lower() == "no_answer":
            return QuestionGrade(
                is_correct=False,
                points_earned=0.0,
                confidence=1.0,
                grading_method="local_semantic",
                reasoning="No answer provided",
                **base,
            )

        similarity = self.similarity(student_answer, correct_answer)

        if similarity is None:
            matches = normalize_answer(student_answer) == normalize_answer(correct_answer)
            return QuestionGrade(
                is_correct=matches,
                points_earned=points_possible if matches else 0.0,
                confidence=0.9 if matches else 0.3,
                grading_method="pattern_match",
                reasoning=(
                    "Semantic model unavailable; exact normalized match"
                    if matches
                    else "Semantic model unavailable; answers differ"
                ),
                **base,
            )

        is_correct = similarity >= self.threshold
        logger.debug(
            "semantic_graded",
            question_number=question_number,
            similarity=round(similarity, 3),
            correct=is_correct,
        )
        return QuestionGrade(
            is_correct=is_correct,
            points_earned=points_possible if is_correct else 0.0,
            confidence=similarity_confidence(similarity),
            grading_method="local_semantic",
            reasoning=f"Semantic similarity {similarity:.2f} (threshold {self.threshold:.2f})",
            quality_flags={"similarity": round(similarity, 4)},
            **base,
        )
