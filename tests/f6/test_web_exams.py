"""Tests for exam registration and grading endpoints."""


class TestRegisterExam:
    """POST /api/exams and GET /api/exams."""

    def test_register(self, client, exam_payload):
        response = client.post("/api/exams", json=exam_payload)

        assert response.status_code == 201
        data = response.json()
        assert data["exam_id"] == "bio-101-midterm"
        assert data["question_count"] == 3
        assert data["total_points"] == 6
        assert data["warnings"] == []

    def test_register_duplicate(self, client, exam_payload):
        client.post("/api/exams", json=exam_payload)

        response = client.post("/api/exams", json=exam_payload)

        assert response.status_code == 409

    def test_register_invalid_id(self, client, exam_payload):
        exam_payload["exam_id"] = "../etc"

        assert client.post("/api/exams", json=exam_payload).status_code == 422

    def test_register_without_keys(self, client, exam_payload):
        exam_payload["answer_keys"] = []

        assert client.post("/api/exams", json=exam_payload).status_code == 422

    def test_warnings_reported(self, client, exam_payload):
        exam_payload["answer_keys"][1]["points"] = 0

        data = client.post("/api/exams", json=exam_payload).json()

        assert data["warnings"] == ["Question 2 has non-positive points (0.0)"]

    def test_list_and_get(self, client, exam_payload):
        client.post("/api/exams", json=exam_payload)

        assert client.get("/api/exams").json() == ["bio-101-midterm"]
        data = client.get("/api/exams/bio-101-midterm").json()
        assert data["answer_keys"][0]["options"][1] == "Mitochondria"

    def test_get_missing(self, client):
        assert client.get("/api/exams/ghost").status_code == 404


class TestGradeEndpoint:
    """POST /api/exams/{exam_id}/grade."""

    def test_grade(self, client, exam_payload, submission_payload, mock_llm_client):
        client.post("/api/exams", json=exam_payload)

        response = client.post("/api/exams/bio-101-midterm/grade", json=submission_payload)

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Score: 5/6 (83.3%)"
        assert data["total_score"]["percentage"] == 83.33
        assert data["cost_analysis"]["local_questions"] == 2
        assert data["cost_analysis"]["cloud_questions"] == 1
        assert data["merged_results"][2]["grading_method"] == "cloud_batch"
        assert data["skill_scores"]["content:Energy"]["score"] == 75.0
        assert data["report_path"].endswith(f"{data['result_id']}.json")
        assert "Strongest skill" in data["feedback"]
        assert data["quality_report"]["bubble_quality_distribution"] == {"heavy": 3}
        mock_llm_client.simple_chat.assert_called_once()

    def test_grade_unknown_exam(self, client, submission_payload):
        response = client.post("/api/exams/ghost/grade", json=submission_payload)

        assert response.status_code == 404

    def test_grade_exam_id_mismatch(self, client, exam_payload, submission_payload):
        client.post("/api/exams", json=exam_payload)
        submission_payload["exam_id"] = "other-exam"

        response = client.post("/api/exams/bio-101-midterm/grade", json=submission_payload)

        assert response.status_code == 400

    def test_grade_duplicate_questions(self, client, exam_payload, submission_payload):
        client.post("/api/exams", json=exam_payload)
        submission_payload["questions"].append(submission_payload["questions"][0])

        response = client.post("/api/exams/bio-101-midterm/grade", json=submission_payload)

        assert response.status_code == 422
        assert "Duplicate" in response.json()["detail"]

    def test_grade_missing_student(self, client, exam_payload, submission_payload):
        client.post("/api/exams", json=exam_payload)
        del submission_payload["student_id"]

        response = client.post("/api/exams/bio-101-midterm/grade", json=submission_payload)

        assert response.status_code == 422

    def test_unknown_question_warning(self, client, exam_payload, submission_payload):
        client.post("/api/exams", json=exam_payload)
        submission_payload["questions"] = [
            {"question_number": 7, "detected_answer": {"selected_option": "A"}}
        ]

        data = client.post("/api/exams/bio-101-midterm/grade", json=submission_payload).json()

        assert data["warnings"] == ["No answer key for question 7; skipped"]
        assert data["summary"]["total_questions"] == 0
