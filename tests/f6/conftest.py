"""Fixtures for F6 tests - Web API and CLI."""

import json
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from grading.core.cloud_grader import CloudGrader
from grading.core.local_grader import SemanticGrader
from grading.web import dependencies as deps
from grading.web.api import create_app


@pytest.fixture
def mock_llm_client() -> MagicMock:
    """Cloud client that grades question 3 with 3 of 4 points."""
    client = MagicMock()
    client.simple_chat.return_value = json.dumps(
        {
            "results": [
                {
                    "questionNumber": 3,
                    "isCorrect": False,
                    "pointsEarned": 3,
                    "confidence": 0.85,
                    "reasoning": "Covers light capture but not carbon fixation",
                }
            ]
        }
    )
    return client


@pytest.fixture
def client(tmp_path, monkeypatch, mock_llm_client, fake_encoder) -> TestClient:
    """Test client rooted in a temporary data directory."""
    monkeypatch.chdir(tmp_path)
    app = create_app()
    app.dependency_overrides[deps.cloud_grader] = lambda: CloudGrader(client=mock_llm_client)
    app.dependency_overrides[deps.semantic_grader] = lambda: SemanticGrader(encoder=fake_encoder)
    return TestClient(app)


@pytest.fixture
def exam_payload(sample_exam) -> dict:
    return sample_exam.to_dict()


@pytest.fixture
def submission_payload() -> dict:
    return {
        "student_id": "s1",
        "student_name": "Ana",
        "questions": [
            {
                "question_number": 1,
                "detected_answer": {"selected_option": "B", "confidence": 0.95, "bubble_quality": "heavy", "cross_validated": True},
            },
            {
                "question_number": 2,
                "detected_answer": {"selected_option": "T", "confidence": 0.95, "bubble_quality": "heavy", "cross_validated": True},
            },
            {
                "question_number": 3,
                "detected_answer": {
                    "selected_option": "Plants use sunlight to make sugar.",
                    "confidence": 0.9,
                    "bubble_quality": "heavy",
                    "cross_validated": True,
                },
            },
        ],
    }
