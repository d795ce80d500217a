"""Exam repository module.

Responsibilities:
- Store exam definitions (answer keys with skill mappings) as JSON
- Load exams from data/exams/{exam_id}.json
- Parse and validate student submissions (OCR-detected answers)

Output structure (JSON):
- exam_v1 schema with answer_keys array
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import structlog

logger = structlog.get_logger(__name__)

SkillType = Literal["content", "subject"]
BubbleQuality = Literal["heavy", "medium", "light", "empty", "overfilled", "unknown"]

EXAM_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
NO_ANSWER = "no_answer"

VALID_BUBBLE_QUALITIES = {"heavy", "medium", "light", "empty", "overfilled", "unknown"}

# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class SkillMapping:
    """Link between a question and a skill it assesses."""

    skill_id: str
    skill_name: str
    skill_type: SkillType = "content"
    skill_weight: float = 1.0
    confidence: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "skill_id": self.skill_id,
            "skill_name": self.skill_name,
            "skill_type": self.skill_type,
            "skill_weight": self.skill_weight,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SkillMapping:
        skill_type = data.get("skill_type", "content")
        if skill_type not in ("content", "subject"):
            skill_type = "content"
        name = str(data.get("skill_name", "")).strip() or "General"
        return cls(
            skill_id=str(data.get("skill_id") or name),
            skill_name=name,
            skill_type=skill_type,
            skill_weight=float(data.get("skill_weight", 1.0)),
            confidence=float(data.get("confidence", 1.0)),
        )


@dataclass
class AnswerKey:
    """Expected answer for one exam question."""

    question_number: int
    correct_answer: str
    question_text: str = ""
    question_type: str = ""
    points: float = 1.0
    options: list[str] | None = None
    skills: list[SkillMapping] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "question_number": self.question_number,
            "question_text": self.question_text,
            "question_type": self.question_type,
            "correct_answer": self.correct_answer,
            "points": self.points,
            "skills": [s.to_dict() for s in self.skills],
        }
        if self.options is not None:
            result["options"] = self.options
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnswerKey:
        return cls(
            question_number=int(data["question_number"]),
            correct_answer=str(data.get("correct_answer", "")),
            question_text=data.get("question_text", "") or "",
            question_type=data.get("question_type", "") or "",
            points=float(data.get("points", 1)),
            options=data.get("options"),
            skills=[SkillMapping.from_dict(s) for s in data.get("skills", [])],
        )


@dataclass
class Exam:
    """An exam definition with its answer key."""

    exam_id: str
    title: str
    answer_keys: list[AnswerKey]
    class_id: str | None = None

    def key_for(self, question_number: int) -> AnswerKey | None:
        for key in self.answer_keys:
            if key.question_number == question_number:
                return key
        return None

    @property
    def total_points(self) -> float:
        return sum(k.points for k in self.answer_keys)

    def to_dict(self) -> dict[str, Any]:
        return {
            "$schema": "exam_v1",
            "exam_id": self.exam_id,
            "title": self.title,
            "class_id": self.class_id,
            "answer_keys": [k.to_dict() for k in self.answer_keys],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Exam:
        return cls(
            exam_id=data["exam_id"],
            title=data.get("title", data["exam_id"]),
            class_id=data.get("class_id"),
            answer_keys=[AnswerKey.from_dict(k) for k in data.get("answer_keys", [])],
        )


@dataclass
class DetectedAnswer:
    """Answer as read off the answer sheet, with OCR quality signals."""

    selected_option: str = NO_ANSWER
    confidence: float = 0.0
    multiple_marks_detected: bool = False
    review_flag: bool = False
    bubble_quality: BubbleQuality = "unknown"
    detection_method: str = "unknown"
    cross_validated: bool = False
    processing_notes: list[str] = field(default_factory=list)

    @property
    def has_answer(self) -> bool:
        value = self.selected_option.strip()
        return bool(value) and value.lower() != NO_ANSWER

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected_option": self.selected_option,
            "confidence": self.confidence,
            "multiple_marks_detected": self.multiple_marks_detected,
            "review_flag": self.review_flag,
            "bubble_quality": self.bubble_quality,
            "detection_method": self.detection_method,
            "cross_validated": self.cross_validated,
            "processing_notes": self.processing_notes,
        }


@dataclass
class StudentQuestion:
    """One answered question in a submission."""

    question_number: int
    detected_answer: DetectedAnswer

    @property
    def answer(self) -> str:
        return self.detected_answer.selected_option


@dataclass
class Submission:
    """A student's answer sheet for an exam."""

    exam_id: str
    student_id: str
    questions: list[StudentQuestion]
    student_name: str = ""
    class_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "class_id": self.class_id,
            "questions": [
                {
                    "question_number": q.question_number,
                    "detected_answer": q.detected_answer.to_dict(),
                }
                for q in self.questions
            ],
        }


class ExamNotFoundError(Exception):
    """Exam definition does not exist."""

    pass


class ExamValidationError(Exception):
    """Exam definition is malformed."""

    pass


class SubmissionValidationError(Exception):
    """Error validating a submission."""

    pass


# =============================================================================
# EXAMS
# =============================================================================


def _exam_path(exam_id: str, data_dir: Path) -> Path:
    if not EXAM_ID_PATTERN.match(exam_id):
        raise ExamValidationError(f"Invalid exam_id: {exam_id!r}")
    return data_dir / "exams" / f"{exam_id}.json"


def load_exam(exam_id: str, data_dir: Path | None = None) -> Exam | None:
    """Load exam definition from filesystem.

    Args:
        exam_id: Exam identifier
        data_dir: Base data directory

    Returns:
        Exam or None if not found or unreadable
    """
    if data_dir is None:
        data_dir = Path("data")

    try:
        exam_path = _exam_path(exam_id, data_dir)
    except ExamValidationError:
        return None

    if not exam_path.exists():
        return None

    try:
        with open(exam_path, encoding="utf-8") as f:
            return Exam.from_dict(json.load(f))
    except (json.JSONDecodeError, OSError, KeyError, ValueError, TypeError) as e:
        logger.warning("exam_load_failed", exam_id=exam_id, error=str(e))
        return None


def require_exam(exam_id: str, data_dir: Path | None = None) -> Exam:
    """Like load_exam, but raises ExamNotFoundError instead of returning None."""
    exam = load_exam(exam_id, data_dir)
    if exam is None:
        raise ExamNotFoundError(f"Exam '{exam_id}' not found")
    return exam


def save_exam(exam: Exam, data_dir: Path | None = None, overwrite: bool = True) -> Path:
    """Persist an exam definition.

    Raises:
        ExamValidationError: If exam_id is invalid or the exam exists and
            overwrite is False
    """
    if data_dir is None:
        data_dir = Path("data")

    exam_path = _exam_path(exam.exam_id, data_dir)
    if exam_path.exists() and not overwrite:
        raise ExamValidationError(f"Exam already exists: {exam.exam_id}")

    exam_path.parent.mkdir(parents=True, exist_ok=True)
    with open(exam_path, "w", encoding="utf-8") as f:
        json.dump(exam.to_dict(), f, indent=2, ensure_ascii=False)

    logger.info("exam_saved", exam_id=exam.exam_id, questions=len(exam.answer_keys))
    return exam_path


def list_exam_ids(data_dir: Path | None = None) -> list[str]:
    if data_dir is None:
        data_dir = Path("data")
    exams_dir = data_dir / "exams"
    if not exams_dir.exists():
        return []
    return sorted(p.stem for p in exams_dir.glob("*.json"))


def validate_answer_keys(exam: Exam) -> list[str]:
    """Return human-readable warnings for a suspicious answer key."""
    warnings: list[str] = []
    seen: set[int] = set()

    for key in exam.answer_keys:
        if key.question_number in seen:
            warnings.append(f"Duplicate question number in answer key: {key.question_number}")
        seen.add(key.question_number)

        if key.points <= 0:
            warnings.append(f"Question {key.question_number} has non-positive points ({key.points})")
        if not key.correct_answer.strip():
            warnings.append(f"Question {key.question_number} has an empty correct answer")

    return warnings


# =============================================================================
# SUBMISSIONS
# =============================================================================


def _parse_detected_answer(data: Any) -> DetectedAnswer:
    # A bare string is accepted as a confidently read answer
    if data is None:
        return DetectedAnswer()
    if isinstance(data, (str, int, float, bool)):
        return DetectedAnswer(
            selected_option=str(data),
            confidence=1.0,
            bubble_quality="unknown",
            detection_method="manual",
        )
    if not isinstance(data, dict):
        raise SubmissionValidationError(f"Invalid detected_answer: {data!r}")

    selected = data.get("selected_option")
    selected_str = NO_ANSWER if selected is None else str(selected).strip()

    quality = str(data.get("bubble_quality", "unknown")).lower()
    if quality not in VALID_BUBBLE_QUALITIES:
        quality = "unknown"

    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError) as e:
        raise SubmissionValidationError(f"Invalid confidence: {data.get('confidence')!r}") from e

    return DetectedAnswer(
        selected_option=selected_str or NO_ANSWER,
        confidence=max(0.0, min(1.0, confidence)),
        multiple_marks_detected=bool(data.get("multiple_marks_detected", False)),
        review_flag=bool(data.get("review_flag", False)),
        bubble_quality=quality,  # type: ignore[arg-type]
        detection_method=str(data.get("detection_method", "unknown")),
        cross_validated=bool(data.get("cross_validated", False)),
        processing_notes=list(data.get("processing_notes", [])),
    )


def parse_submission(data: dict[str, Any]) -> Submission:
    """Build a Submission from a JSON-like dict.

    Raises:
        SubmissionValidationError: On missing ids or malformed questions
    """
    exam_id = str(data.get("exam_id") or "").strip()
    student_id = str(data.get("student_id") or "").strip()
    if not exam_id:
        raise SubmissionValidationError("exam_id is required")
    if not student_id:
        raise SubmissionValidationError("student_id is required")

    raw_questions = data.get("questions")
    if not isinstance(raw_questions, list):
        raise SubmissionValidationError("questions must be a list")

    questions: list[StudentQuestion] = []
    seen: set[int] = set()
    for raw in raw_questions:
        if not isinstance(raw, dict):
            raise SubmissionValidationError(f"Invalid question entry: {raw!r}")
        try:
            number = int(raw.get("question_number"))
        except (TypeError, ValueError) as e:
            raise SubmissionValidationError(
                f"Invalid question_number: {raw.get('question_number')!r}"
            ) from e
        if number < 1:
            raise SubmissionValidationError(f"question_number must be >= 1 (got {number})")
        if number in seen:
            raise SubmissionValidationError(f"Duplicate question_number: {number}")
        seen.add(number)

        questions.append(
            StudentQuestion(
                question_number=number,
                detected_answer=_parse_detected_answer(raw.get("detected_answer")),
            )
        )

    return Submission(
        exam_id=exam_id,
        student_id=student_id,
        student_name=str(data.get("student_name", "")),
        class_id=data.get("class_id"),
        questions=questions,
    )


def load_submission(path: Path) -> Submission:
    """Read a submission JSON file.

    Raises:
        SubmissionValidationError: If the file is unreadable or malformed
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise SubmissionValidationError(f"Could not read submission {path}: {e}") from e

    if not isinstance(data, dict):
        raise SubmissionValidationError("Submission must be a JSON object")
    return parse_submission(data)
