"""Cloud LLM grading module.

Responsibilities:
- Grade a single open question with a cloud model (JSON reply)
- Grade batches of questions in one call, each question isolated by a
  delimiter so grades cannot leak between questions
- Sanitize model output (clamped points and confidence)
- Degrade to flagged fallback grades when the provider fails
- Track token usage and cost per model
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from grading.config.app_config import AppConfig, load_app_config
from grading.core.results import QuestionGrade
from grading.llm.client import LLMClient, LLMError, LLMResponse, extract_json

logger = structlog.get_logger(__name__)

QUESTION_DELIMITER = "---END QUESTION---"
REASONING_DEPTHS = ("shallow", "medium", "deep")
TRUE_WORDS = {"true", "yes", "correct", "1"}
FALSE_WORDS = {"false", "no", "incorrect", "0"}

FALLBACK_CONFIDENCE = 0.3
DELIMITER_PARSE_CONFIDENCE = 0.7

# =============================================================================
# PROMPTS
# =============================================================================

SYSTEM_PROMPT_SINGLE = """You are an experienced teacher grading a student's exam answer.

RULES:
1. Judge ONLY against the correct answer and the question
2. Award partial credit when the answer is partially correct
3. Reply ONLY with valid JSON

JSON structure:
{
  "isCorrect": true | false,
  "pointsEarned": number between 0 and the points possible,
  "confidence": 0.0 to 1.0,
  "reasoning": "short explanation for the teacher",
  "complexityScore": 0.0 to 1.0,
  "reasoningDepth": "shallow" | "medium" | "deep"
}"""

USER_PROMPT_SINGLE = """Question {question_number} ({points_possible} points):
{question_text}

Correct answer:
{correct_answer}

Student answer:
{student_answer}
{skills_line}
Grade the answer and reply with the JSON."""

SYSTEM_PROMPT_BATCH = """You are an experienced teacher grading several exam answers.

RULES:
1. Grade EACH question independently; never let one answer influence another
2. Questions are separated by the line "{delimiter}"
3. Judge ONLY against each question's correct answer
4. Reply ONLY with valid JSON

JSON structure:
{{
  "results": [
    {{
      "questionNumber": number,
      "isCorrect": true | false,
      "pointsEarned": number,
      "confidence": 0.0 to 1.0,
      "reasoning": "short explanation",
      "complexityScore": 0.0 to 1.0,
      "reasoningDepth": "shallow" | "medium" | "deep"
    }}
  ]
}}"""

RUBRIC_BLOCK = """
Grading rubric (applies to every question):
{rubric}
"""

# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class CloudGradingRequest:
    """One question sent to the cloud grader."""

    question_number: int
    question_text: str
    student_answer: str
    correct_answer: str
    points_possible: float = 1.0
    question_type: str = ""
    skills: list[str] = field(default_factory=list)


@dataclass
class CloudUsage:
    """Running token and cost totals for one grader instance."""

    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_cost: float = 0.0
    by_model: dict[str, dict[str, float]] = field(default_factory=dict)

    def add(self, model: str, usage: dict[str, int], cost: float) -> None:
        self.calls += 1
        self.prompt_tokens += usage.get("prompt_tokens", 0)
        self.completion_tokens += usage.get("completion_tokens", 0)
        self.total_cost += cost
        entry = self.by_model.setdefault(model, {"calls": 0, "tokens": 0, "cost": 0.0})
        entry["calls"] += 1
        entry["tokens"] += usage.get("total_tokens", 0)
        entry["cost"] += cost

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_cost": round(self.total_cost, 6),
            "by_model": self.by_model,
        }


class GradingError(Exception):
    """Error during grading."""

    pass


# =============================================================================
# HELPERS
# =============================================================================


def calculate_cost(usage: dict[str, int], model: str, config: AppConfig | None = None) -> float:
    """Cost in USD for a call, from the per-1K-token rate of the model."""
    if config is None:
        config = load_app_config()
    rates = config.costs.rates_per_1k
    rate = rates.get(model)
    if rate is None:
        # Dated snapshots such as "gpt-4.1-2025-04-14" share the base rate
        rate = next((r for name, r in rates.items() if model.startswith(name)), None)
    if rate is None:
        rate = max(rates.values()) if rates else 0.0
    return usage.get("total_tokens", 0) / 1000 * rate


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _as_bool(value: Any, default: bool) -> bool:
    """Read a yes/no field; models sometimes send "false" or 0 instead of false."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_WORDS:
            return True
        if text in FALSE_WORDS:
            return False
    return default


def _field(data: dict[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake, default)


def sanitize_grade(
    data: dict[str, Any],
    request: CloudGradingRequest,
    model: str,
    method: str,
) -> QuestionGrade:
    """Turn a raw model reply into a bounded QuestionGrade."""
    points = _clamp(
        _field(data, "pointsEarned", "points_earned", 0), 0.0, request.points_possible, 0.0
    )
    is_correct = _as_bool(_field(data, "isCorrect", "is_correct"), points >= request.points_possible)

    depth = _field(data, "reasoningDepth", "reasoning_depth", "medium")
    if depth not in REASONING_DEPTHS:
        depth = "medium"

    complexity = _clamp(_field(data, "complexityScore", "complexity_score", 0.5), 0.0, 1.0, 0.5)

    return QuestionGrade(
        question_number=request.question_number,
        is_correct=is_correct,
        points_earned=points,
        points_possible=request.points_possible,
        confidence=_clamp(data.get("confidence"), 0.0, 1.0, 0.5),
        grading_method=method,
        reasoning=str(data.get("reasoning", "") or ""),
        student_answer=request.student_answer,
        correct_answer=request.correct_answer,
        question_type=request.question_type,
        model=model,
        complexity_score=int(round(complexity * 100)),
        reasoning_depth=depth,
    )


def fallback_grade(request: CloudGradingRequest, reason: str, model: str | None = None) -> QuestionGrade:
    """Zero-point grade flagged for manual review."""
    return QuestionGrade(
        question_number=request.question_number,
        is_correct=False,
        points_earned=0.0,
        points_possible=request.points_possible,
        confidence=FALLBACK_CONFIDENCE,
        grading_method="cloud_fallback",
        reasoning=f"Manual review required: {reason}",
        student_answer=request.student_answer,
        correct_answer=request.correct_answer,
        question_type=request.question_type,
        model=model,
        needs_review=True,
    )


def build_batch_prompt(requests: list[CloudGradingRequest], rubric: str | None = None) -> str:
    blocks = []
    for r in requests:
        skills = f"\nSkills: {', '.join(r.skills)}" if r.skills else ""
        blocks.append(
            f"Question {r.question_number} ({r.points_possible:g} points):\n"
            f"{r.question_text}\n"
            f"Correct answer: {r.correct_answer}\n"
            f"Student answer: {r.student_answer}{skills}"
        )
    body = f"\n{QUESTION_DELIMITER}\n".join(blocks) + f"\n{QUESTION_DELIMITER}\n"
    if rubric:
        body = RUBRIC_BLOCK.format(rubric=rubric) + "\n" + body
    return body


def parse_delimited_results(text: str, requests: list[CloudGradingRequest]) -> list[dict[str, Any]]:
    """Best-effort grades from a non-JSON batch reply split on the delimiter."""
    blocks = [b.strip() for b in text.split(QUESTION_DELIMITER)]
    blocks = [b for b in blocks if b]
    parsed: list[dict[str, Any]] = []

    for request, block in zip(requests, blocks):
        lowered = block.lower()
        is_correct = "correct" in lowered and "incorrect" not in lowered
        match = re.search(r"points?\s*(?:earned)?\s*[:=]\s*(\d+(?:\.\d+)?)", lowered)
        points = float(match.group(1)) if match else (request.points_possible if is_correct else 0.0)
        parsed.append(
            {
                "questionNumber": request.question_number,
                "isCorrect": is_correct,
                "pointsEarned": points,
                "confidence": DELIMITER_PARSE_CONFIDENCE,
                "reasoning": block[:300],
            }
        )

    return parsed


# =============================================================================
# CLOUD GRADER
# =============================================================================


class CloudGrader:
    """Grades open questions with a cloud LLM."""

    def __init__(
        self,
        client: LLMClient | None = None,
        client_factory: Callable[[], LLMClient] | None = None,
        config: AppConfig | None = None,
    ):
        self.config = config or load_app_config()
        self._client = client
        self._client_factory = client_factory
        self.usage = CloudUsage()

    @property
    def client(self) -> LLMClient:
        if self._client is None:
            if self._client_factory is not None:
                self._client = self._client_factory()
            else:
                self._client = LLMClient(provider=self.config.grading.cloud_provider)
        return self._client

    def _record_usage(self, model: str) -> None:
        response = getattr(self.client, "last_response", None)
        if not isinstance(response, LLMResponse):
            return
        cost = calculate_cost(response.usage, model, self.config)
        self.usage.add(model, response.usage, cost)

    def grade_question(self, request: CloudGradingRequest, model: str | None = None) -> QuestionGrade:
        """Grade one question.

        Raises:
            GradingError: If the question text or either answer is missing
        """
        if not request.question_text.strip():
            raise GradingError(f"Question {request.question_number}: missing question text")
        if not request.student_answer.strip():
            raise GradingError(f"Question {request.question_number}: missing student answer")
        if not request.correct_answer.strip():
            raise GradingError(f"Question {request.question_number}: missing correct answer")

        model = model or self.config.grading.cloud_model_simple
        skills_line = f"\nSkills assessed: {', '.join(request.skills)}\n" if request.skills else ""
        user_prompt = USER_PROMPT_SINGLE.format(
            question_number=request.question_number,
            points_possible=f"{request.points_possible:g}",
            question_text=request.question_text,
            correct_answer=request.correct_answer,
            student_answer=request.student_answer,
            skills_line=skills_line,
        )

        try:
            result = self.client.simple_json(
                system_prompt=SYSTEM_PROMPT_SINGLE,
                user_message=user_prompt,
                temperature=0.3,
                max_tokens=1000,
                model=model,
            )
        except LLMError as e:
            logger.error("cloud_grading_failed", question_number=request.question_number, error=str(e))
            return fallback_grade(request, str(e), model)

        self._record_usage(model)

        if not isinstance(result, dict):
            return fallback_grade(request, "Unexpected response shape", model)

        return sanitize_grade(result, request, model, "cloud_single")

    def grade_batch(
        self,
        requests: list[CloudGradingRequest],
        model: str | None = None,
        rubric: str | None = None,
    ) -> list[QuestionGrade]:
        """Grade questions in batches of ``batch_size``; never raises on provider errors."""
        if not requests:
            return []

        model = model or self.config.grading.cloud_model_simple
        size = max(1, self.config.grading.batch_size)
        grades: list[QuestionGrade] = []

        for start in range(0, len(requests), size):
            grades.extend(self._grade_chunk(requests[start : start + size], model, rubric))

        logger.info(
            "cloud_batch_graded",
            model=model,
            questions=len(requests),
            fallbacks=sum(1 for g in grades if g.needs_review),
        )
        return grades

    def _grade_chunk(
        self,
        requests: list[CloudGradingRequest],
        model: str,
        rubric: str | None,
    ) -> list[QuestionGrade]:
        system_prompt = SYSTEM_PROMPT_BATCH.format(delimiter=QUESTION_DELIMITER)
        user_prompt = build_batch_prompt(requests, rubric)

        try:
            text = self.client.simple_chat(
                system_prompt=system_prompt,
                user_message=user_prompt,
                temperature=0.2,
                max_tokens=3000,
                model=model,
            )
        except LLMError as e:
            logger.error("cloud_batch_failed", model=model, questions=len(requests), error=str(e))
            return [fallback_grade(r, str(e), model) for r in requests]

        self._record_usage(model)

        parsed = extract_json(text)
        method = "cloud_batch"
        if isinstance(parsed, dict):
            items = parsed.get("results", [])
        elif isinstance(parsed, list):
            items = parsed
        else:
            logger.warning("cloud_batch_json_unparseable", model=model)
            items = parse_delimited_results(text, requests)
            method = "cloud_batch_text"

        by_number: dict[int, dict[str, Any]] = {}
        for position, item in enumerate(items):
            if not isinstance(item, dict):
                continue
            number = _field(item, "questionNumber", "question_number")
            try:
                number = int(number)
            except (TypeError, ValueError):
                # Fall back to reply order
                if position >= len(requests):
                    continue
                number = requests[position].question_number
            by_number.setdefault(number, item)

        grades = []
        for request in requests:
            item = by_number.get(request.question_number)
            if item is None:
                grades.append(fallback_grade(request, "No grade returned for this question", model))
            else:
                grades.append(sanitize_grade(item, request, model, method))
        return grades


