"""
Tests for the competency domain models.
"""

import datetime

import pytest

from competency_backend.assessments.base.models import (
    Attempt,
    AttemptStatus,
    CompetencyResult,
    ProficiencyLevel,
    Question,
    QuestionAnswer,
    QuestionEvaluationResult,
    QuestionType,
)

from conftest import ASSESSMENT_ID, make_question


class TestEnums:
    def test_media_types(self):
        assert [t for t in QuestionType if t.is_media] == [QuestionType.AUDIO, QuestionType.VIDEO]

    def test_terminal_statuses(self):
        assert [s for s in AttemptStatus if s.is_terminal] == [AttemptStatus.EVALUATED, AttemptStatus.FAILED]


class TestQuestion:
    def test_type_coerced_from_string(self):
        question = Question(
            id="q1", assessment_id=ASSESSMENT_ID, domain_key="ai_literacy",
            question_type="SHORT_ANSWER", prompt="Why?", max_score=5,
        )
        assert question.question_type == QuestionType.SHORT_ANSWER

    @pytest.mark.parametrize("overrides", [
        {"question_type": "ESSAY"},
        {"max_score": 0},
        {"prompt": ""},
        {"domain_key": ""},
        {"options": None},
        {"correct_option": "Option Z"},
    ])
    def test_invalid_questions(self, overrides):
        fields = dict(
            id="q1", assessment_id=ASSESSMENT_ID, domain_key="ai_literacy",
            question_type="MCQ", prompt="Pick one", max_score=1,
            options=["Option A", "Option B"], correct_option="Option B",
        )
        fields.update(overrides)
        with pytest.raises(ValueError):
            Question(**fields)

    def test_public_view(self):
        mcq = make_question("mcq-1").to_public_dict()
        audio = make_question("audio-1", QuestionType.AUDIO, max_score=5).to_public_dict()

        assert "correct_option" not in mcq
        assert mcq["options"] == ["Option A", "Option B", "Option C", "Option D"]
        assert mcq["question_type"] == "MCQ"
        assert "options" not in audio


class TestAttempt:
    def test_coerces_nested_payloads(self):
        attempt = Attempt(
            id="",
            teacher_id="teacher-1",
            assessment_id=ASSESSMENT_ID,
            status="SUBMITTED",
            answers=[{"question_id": "q2", "answer": "b"}],
            selected_questions=[{"question_id": "q2", "order": 2}, {"question_id": "q1", "order": 1}],
            submitted_at="2026-01-02T09:30:00",
        )

        assert attempt.id
        assert attempt.status == AttemptStatus.SUBMITTED
        assert attempt.answers == [QuestionAnswer("q2", "b")]
        assert attempt.selected_question_ids() == ["q1", "q2"]
        assert attempt.submitted_at == datetime.datetime(2026, 1, 2, 9, 30)

    def test_requires_teacher(self):
        with pytest.raises(ValueError):
            Attempt(id="", teacher_id="", assessment_id=ASSESSMENT_ID)


class TestResults:
    def test_score_must_be_within_bounds(self):
        with pytest.raises(ValueError):
            QuestionEvaluationResult(
                question_id="q1", domain_key="a", question_type=QuestionType.MCQ, score=2, max_score=1,
            )

    def test_result_restored_from_stored_dict(self):
        result = CompetencyResult(
            id="r1",
            teacher_id="teacher-1",
            attempt_id="a1",
            assessment_id=ASSESSMENT_ID,
            overall_score=50.0,
            proficiency_level=ProficiencyLevel.DEVELOPING,
            domain_scores=[{"domain_key": "a", "raw_score": 3.5, "max_score": 7, "score_percent": 50.0}],
            gap_domains=["a"],
            question_results=[{
                "question_id": "q1", "domain_key": "a", "question_type": "SHORT_ANSWER",
                "score": 2.5, "max_score": 5, "feedback": "fallback",
            }],
        )

        restored = CompetencyResult.from_dict(result.to_dict())

        assert restored.proficiency_level == ProficiencyLevel.DEVELOPING
        assert restored.domain_scores[0].raw_score == 3.5
        assert restored.question_results[0].question_type == QuestionType.SHORT_ANSWER
        assert restored.created_at == result.created_at
