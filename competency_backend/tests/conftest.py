"""
Shared fixtures for the competency engine tests.

Provides fake judgment and transcription services, a question pool that
fills every type quota, and an in-memory repository seeded with it.
"""

import random
from typing import Callable, List, Optional, Sequence, Union

import pytest
import pytest_asyncio

from competency_backend.assessments.base.models import (
    CompetencyAssessment,
    Question,
    QuestionType,
)
from competency_backend.assessments.competency.answer_evaluation import AnswerEvaluator
from competency_backend.assessments.competency.competency_config import QUESTIONS_BY_TYPE
from competency_backend.assessments.competency.evaluation_service import EvaluationOrchestrator
from competency_backend.assessments.competency.judgment import JudgmentService
from competency_backend.assessments.competency.memory_repository import InMemoryCompetencyRepository
from competency_backend.assessments.competency.scoring import NarrativeGenerator
from competency_backend.assessments.competency.session_service import CompetencyService
from competency_backend.assessments.competency.transcription import TranscriptionService
from competency_backend.common.error_handling import (
    ExternalServiceError,
    RetryPolicy,
    TranscriptionFailedError,
)

ASSESSMENT_ID = "competency-v1"

Response = Union[str, Exception]


class FakeJudgmentService(JudgmentService):
    """
    Judgment service returning scripted responses.

    ``responses`` are consumed in order; once exhausted, ``default`` is used.
    Exceptions in either position are raised instead of returned.
    """

    def __init__(
        self,
        responses: Optional[Sequence[Response]] = None,
        default: Response = '{"score": 4, "feedback": "Thoughtful answer."}'
    ):
        self.responses: List[Response] = list(responses or [])
        self.default = default
        self.calls: List[dict] = []
        self.closed = False

    async def judge(self, system_prompt, user_prompt, *, temperature=0.3, max_tokens=500):
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


class UnavailableJudgmentService(FakeJudgmentService):
    """Judgment service whose every call fails."""

    def __init__(self):
        super().__init__(default=ExternalServiceError("judgment service unavailable", service="judgment"))


class FakeTranscriptionService(TranscriptionService):
    """Transcribes by lookup; unknown references fail."""

    def __init__(self, transcripts: Optional[dict] = None, default: Optional[str] = "I would listen first."):
        self.transcripts = dict(transcripts or {})
        self.default = default
        self.calls: List[tuple] = []

    async def transcribe(self, media_reference, media_type):
        self.calls.append((media_reference, media_type))
        transcript = self.transcripts.get(media_reference, self.default)
        if isinstance(transcript, Exception):
            raise transcript
        if not transcript:
            raise TranscriptionFailedError(f"No transcript for {media_reference}")
        return transcript


def make_question(
    question_id: str,
    question_type: QuestionType = QuestionType.MCQ,
    domain_key: str = "classroom_management",
    max_score: float = 1.0,
    order: int = 0,
    assessment_id: str = ASSESSMENT_ID
) -> Question:
    """Build a valid question of any type."""
    options = None
    correct_option = None
    if question_type == QuestionType.MCQ:
        options = ["Option A", "Option B", "Option C", "Option D"]
        correct_option = "Option B"
    return Question(
        id=question_id,
        assessment_id=assessment_id,
        domain_key=domain_key,
        question_type=question_type,
        prompt=f"Prompt for {question_id}",
        max_score=max_score,
        options=options,
        correct_option=correct_option,
        order=order,
    )


def build_pool(extra_per_type: int = 2) -> List[Question]:
    """A pool holding every type quota plus ``extra_per_type`` spare questions."""
    domains = ["classroom_management", "lesson_planning", "ai_literacy", "reflective_practice"]
    pool = []
    order = 0
    for question_type, required in QUESTIONS_BY_TYPE.items():
        for i in range(required + extra_per_type):
            order += 1
            pool.append(make_question(
                f"{question_type.value.lower()}-{i}",
                question_type,
                domain_key=domains[i % len(domains)],
                max_score=1.0 if question_type == QuestionType.MCQ else 5.0,
                order=order,
            ))
    return pool


def answers_for(questions: Sequence[Question], answer: Callable[[Question], str] = None) -> List[dict]:
    """Answer payloads for ``questions``; MCQ answered correctly, others with text or a URL."""
    def default_answer(question: Question) -> str:
        if question.question_type == QuestionType.MCQ:
            return question.correct_option
        if question.question_type.is_media:
            return f"https://media.example.com/{question.id}.mp3"
        return "I would set clear routines and expectations."

    answer = answer or default_answer
    return [{"question_id": q.id, "answer": answer(q)} for q in questions]


@pytest.fixture
def zero_delay_policy():
    """Retry policy with the default attempt count and no sleeping."""
    return RetryPolicy(max_retries=2, base_delay=0)


@pytest.fixture
def question_pool():
    return build_pool()


@pytest.fixture
def judgment():
    return FakeJudgmentService()


@pytest.fixture
def transcription():
    return FakeTranscriptionService()


@pytest_asyncio.fixture
async def repository(question_pool):
    """In-memory repository seeded with an active assessment and its pool."""
    repo = InMemoryCompetencyRepository()
    await repo.save_assessment(CompetencyAssessment(id=ASSESSMENT_ID, title="Teacher Competency"))
    await repo.save_questions(question_pool)
    return repo


@pytest_asyncio.fixture
async def service(repository):
    return CompetencyService(repository, rng=random.Random(7))


@pytest.fixture
def evaluator(judgment, transcription, zero_delay_policy):
    return AnswerEvaluator(judgment, transcription, retry_policy=zero_delay_policy)


@pytest_asyncio.fixture
async def orchestrator(repository, evaluator, judgment, zero_delay_policy):
    narrative = NarrativeGenerator(judgment, retry_policy=zero_delay_policy)
    return EvaluationOrchestrator(repository, evaluator, narrative, max_retries=3, batch_size=10)
