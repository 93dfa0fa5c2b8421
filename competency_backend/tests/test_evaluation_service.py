"""
Tests for the evaluation orchestrator: idempotent result storage, status
repair, result listeners and the batch sweep with its retry ceiling.
"""

import asyncio
import datetime
import random

import pytest

from competency_backend.assessments.base.models import (
    Attempt,
    AttemptStatus,
    CompetencyAssessment,
    EventType,
    ProficiencyLevel,
    SelectedQuestion,
    utc_now,
)
from competency_backend.assessments.competency.answer_evaluation import AnswerEvaluator
from competency_backend.assessments.competency.competency_config import TOTAL_COMPETENCY_QUESTIONS
from competency_backend.assessments.competency.evaluation_service import (
    EvaluationOrchestrator,
    SweepSummary,
    build_evaluation_orchestrator,
)
from competency_backend.assessments.competency.judgment import OpenAIJudgmentClient
from competency_backend.assessments.competency.memory_repository import InMemoryCompetencyRepository
from competency_backend.assessments.competency.scoring import NarrativeGenerator
from competency_backend.assessments.competency.session_service import CompetencyService
from competency_backend.assessments.competency.transcription import WhisperTranscriptionClient
from competency_backend.common.error_handling import (
    DatabaseError,
    EvaluationError,
    InvalidStateError,
    NotFoundError,
)
from competency_backend.config import Settings

from conftest import ASSESSMENT_ID, FakeJudgmentService, UnavailableJudgmentService, answers_for

TEACHER = "teacher-1"


async def submitted_attempt(service, teacher_id=TEACHER):
    started = await service.start(teacher_id)
    return await service.submit(teacher_id, started.attempt.id, answers_for(started.questions))


async def broken_attempt(repository, teacher_id, retry_count=0, submitted_at=None):
    """A submitted attempt whose selected question no longer exists in the pool."""
    attempt, _ = await repository.create_attempt_if_absent(Attempt(
        id="",
        teacher_id=teacher_id,
        assessment_id=ASSESSMENT_ID,
        status=AttemptStatus.SUBMITTED,
        selected_questions=[SelectedQuestion(question_id="ghost", order=1)],
        retry_count=retry_count,
        submitted_at=submitted_at,
    ))
    return attempt


class SlowJudgmentService(FakeJudgmentService):
    async def judge(self, system_prompt, user_prompt, **kwargs):
        await asyncio.sleep(1)
        return await super().judge(system_prompt, user_prompt, **kwargs)


class FlakyRepository(InMemoryCompetencyRepository):
    """In-memory repository whose chosen writes raise DatabaseError once."""

    def __init__(self, transition_fails=None, event_fails=False):
        super().__init__()
        self.transition_fails = transition_fails
        self.event_fails = event_fails

    async def transition_attempt(self, attempt_id, expected_status, new_status, changes=None):
        if self.transition_fails and self.transition_fails(expected_status, new_status, changes or {}):
            self.transition_fails = None
            raise DatabaseError("connection dropped", operation="transition_attempt")
        return await super().transition_attempt(attempt_id, expected_status, new_status, changes)

    async def create_event(self, event):
        if self.event_fails and event.event_type == EventType.EVALUATED:
            self.event_fails = False
            raise DatabaseError("connection dropped", operation="create_event")
        return await super().create_event(event)


@pytest.fixture
def flaky_engine(question_pool, evaluator, judgment, zero_delay_policy):
    """Build a repository, service and orchestrator over a FlakyRepository."""
    async def build(**failures):
        repository = FlakyRepository(**failures)
        await repository.save_assessment(CompetencyAssessment(id=ASSESSMENT_ID, title="Teacher Competency"))
        await repository.save_questions(question_pool)
        service = CompetencyService(repository, rng=random.Random(7))
        orchestrator = EvaluationOrchestrator(
            repository,
            evaluator,
            NarrativeGenerator(judgment, retry_policy=zero_delay_policy),
            max_retries=3,
        )
        return repository, service, orchestrator
    return build


def is_evaluated_transition(expected, new, changes):
    return expected == AttemptStatus.SUBMITTED and new == AttemptStatus.EVALUATED


def counts_a_retry(expected, new, changes):
    return "retry_count" in changes


class TestEvaluateAndSave:
    @pytest.mark.asyncio
    async def test_stores_result_and_marks_attempt_evaluated(self, service, orchestrator, repository, judgment):
        attempt = await submitted_attempt(service)

        result = await orchestrator.evaluate_and_save(attempt)

        assert result.attempt_id == attempt.id
        assert result.teacher_id == TEACHER
        assert len(result.question_results) == TOTAL_COMPETENCY_QUESTIONS
        # 10 correct MCQ at 1 point plus 8 judged answers at 4 of 5
        assert result.overall_score == 84.0
        assert result.proficiency_level == ProficiencyLevel.ADVANCED
        assert result.raw_feedback == "Thoughtful answer."
        assert set(result.strength_domains) | set(result.gap_domains) == {d.domain_key for d in result.domain_scores}

        stored = await repository.get_attempt(attempt.id)
        assert stored.status == AttemptStatus.EVALUATED
        assert stored.evaluated_at is not None
        # 5 short answers, 3 media answers and the narrative
        assert len(judgment.calls) == 9

    @pytest.mark.asyncio
    async def test_gap_domains_get_recommendations(self, service, orchestrator):
        attempt = await submitted_attempt(service)

        result = await orchestrator.evaluate_and_save(attempt)

        assert result.gap_domains
        assert result.recommended_micro_pds
        assert len(result.recommended_micro_pds) == len(set(result.recommended_micro_pds))

    @pytest.mark.asyncio
    async def test_records_evaluated_event(self, service, orchestrator, repository):
        attempt = await submitted_attempt(service)

        result = await orchestrator.evaluate_and_save(attempt)

        events = await repository.list_events(attempt.id)
        assert [e.event_type for e in events] == [EventType.SUBMIT, EventType.EVALUATED]
        assert events[1].metadata == {
            "resultId": result.id,
            "overallScore": result.overall_score,
            "proficiencyLevel": result.proficiency_level.value,
        }

    @pytest.mark.asyncio
    async def test_second_call_returns_existing_result(self, service, orchestrator, repository, judgment):
        attempt = await submitted_attempt(service)
        first = await orchestrator.evaluate_and_save(attempt)
        calls = len(judgment.calls)

        second = await orchestrator.evaluate_and_save(attempt)

        assert second.id == first.id
        assert len(judgment.calls) == calls
        assert len(await repository.list_results(TEACHER)) == 1
        assert len(await repository.list_events(attempt.id)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_evaluations_store_one_result(self, service, orchestrator, repository):
        attempt = await submitted_attempt(service)
        notified = []

        async def listener(result):
            notified.append(result.id)

        orchestrator.add_result_listener(listener)

        results = await asyncio.gather(*[orchestrator.evaluate_and_save(attempt) for _ in range(3)])

        assert len({r.id for r in results}) == 1
        assert len(await repository.list_results(TEACHER)) == 1
        assert notified == [results[0].id]
        events = await repository.list_events(attempt.id)
        assert [e.event_type for e in events].count(EventType.EVALUATED) == 1

    @pytest.mark.asyncio
    async def test_repairs_status_when_result_exists(self, service, orchestrator, repository):
        attempt = await submitted_attempt(service)
        result = await orchestrator.evaluate_attempt(attempt, await orchestrator._resolve_questions(attempt))
        await repository.create_result_if_absent(result)

        returned = await orchestrator.evaluate_and_save(attempt)

        assert returned.id == result.id
        assert (await repository.get_attempt(attempt.id)).status == AttemptStatus.EVALUATED

    @pytest.mark.asyncio
    async def test_in_progress_attempt_is_rejected(self, service, orchestrator):
        started = await service.start(TEACHER)

        with pytest.raises(InvalidStateError):
            await orchestrator.evaluate_and_save(started.attempt)

    @pytest.mark.asyncio
    async def test_failed_attempt_without_result_is_terminal(self, service, orchestrator, repository):
        attempt = await submitted_attempt(service)
        failed = await repository.transition_attempt(attempt.id, AttemptStatus.SUBMITTED, AttemptStatus.FAILED)

        with pytest.raises(InvalidStateError):
            await orchestrator.evaluate_and_save(failed)

        assert (await repository.get_attempt(attempt.id)).status == AttemptStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_attempt_with_result_is_repaired(self, service, orchestrator, repository):
        attempt = await submitted_attempt(service)
        result = await orchestrator.evaluate_attempt(attempt, await orchestrator._resolve_questions(attempt))
        await repository.create_result_if_absent(result)
        failed = await repository.transition_attempt(attempt.id, AttemptStatus.SUBMITTED, AttemptStatus.FAILED)

        returned = await orchestrator.evaluate_and_save(failed)

        assert returned.id == result.id
        stored = await repository.get_attempt(attempt.id)
        assert stored.status == AttemptStatus.EVALUATED
        assert stored.evaluated_at is not None

    @pytest.mark.asyncio
    async def test_attempt_without_selection_uses_full_pool(self, orchestrator, repository, question_pool):
        attempt, _ = await repository.create_attempt_if_absent(Attempt(
            id="",
            teacher_id=TEACHER,
            assessment_id=ASSESSMENT_ID,
            status=AttemptStatus.SUBMITTED,
        ))

        result = await orchestrator.evaluate_and_save(attempt)

        assert [r.question_id for r in result.question_results] == [q.id for q in question_pool]
        assert result.overall_score == 0.0
        assert result.proficiency_level == ProficiencyLevel.BEGINNER

    @pytest.mark.asyncio
    async def test_event_write_failure_still_notifies_listeners(self, flaky_engine):
        repository, service, orchestrator = await flaky_engine(event_fails=True)
        attempt = await submitted_attempt(service)
        notified = []

        async def listener(result):
            notified.append(result.id)

        orchestrator.add_result_listener(listener)

        result = await orchestrator.evaluate_and_save(attempt)

        assert notified == [result.id]
        assert (await repository.get_attempt(attempt.id)).status == AttemptStatus.EVALUATED
        assert [e.event_type for e in await repository.list_events(attempt.id)] == [EventType.SUBMIT]

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_fail_evaluation(self, service, orchestrator, repository):
        attempt = await submitted_attempt(service)

        async def broken_listener(result):
            raise RuntimeError("listener down")

        orchestrator.add_result_listener(broken_listener)

        result = await orchestrator.evaluate_and_save(attempt)

        assert await repository.get_result_by_attempt(attempt.id) is not None
        assert result.attempt_id == attempt.id

    @pytest.mark.asyncio
    async def test_timeout_raises_evaluation_error(self, service, repository, transcription, zero_delay_policy):
        judgment = SlowJudgmentService()
        orchestrator = EvaluationOrchestrator(
            repository,
            AnswerEvaluator(judgment, transcription, retry_policy=zero_delay_policy),
            NarrativeGenerator(judgment, retry_policy=zero_delay_policy),
            timeout=0.05,
        )
        attempt = await submitted_attempt(service)

        with pytest.raises(EvaluationError):
            await orchestrator.evaluate_and_save(attempt)

        assert await repository.get_result_by_attempt(attempt.id) is None
        assert (await repository.get_attempt(attempt.id)).status == AttemptStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_trigger_evaluation(self, service, orchestrator):
        attempt = await submitted_attempt(service)

        result = await orchestrator.trigger_evaluation(attempt.id)

        assert result.attempt_id == attempt.id
        with pytest.raises(NotFoundError):
            await orchestrator.trigger_evaluation("missing")


class TestSweep:
    @pytest.mark.asyncio
    async def test_evaluates_submitted_attempts(self, service, orchestrator, repository):
        first = await submitted_attempt(service, "teacher-a")
        second = await submitted_attempt(service, "teacher-b")
        await service.start("teacher-c")

        summary = await orchestrator.process_submitted_attempts()

        assert summary == SweepSummary(fetched=2, evaluated=2, retried=0, failed=0)
        for attempt in (first, second):
            assert (await repository.get_attempt(attempt.id)).status == AttemptStatus.EVALUATED

    @pytest.mark.asyncio
    async def test_batch_size_limits_the_page(self, service, orchestrator):
        for teacher in ("teacher-a", "teacher-b", "teacher-c"):
            await submitted_attempt(service, teacher)

        summary = await orchestrator.process_submitted_attempts(batch_size=2)

        assert summary.fetched == 2
        assert (await orchestrator.process_submitted_attempts()).fetched == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_the_sweep(self, service, orchestrator, repository):
        broken = await broken_attempt(repository, "teacher-broken")
        good = await submitted_attempt(service, "teacher-good")

        summary = await orchestrator.process_submitted_attempts()

        assert summary.evaluated == 1
        assert summary.retried == 1
        stored = await repository.get_attempt(broken.id)
        assert stored.status == AttemptStatus.SUBMITTED
        assert stored.retry_count == 1
        assert (await repository.get_attempt(good.id)).status == AttemptStatus.EVALUATED

    @pytest.mark.asyncio
    async def test_marks_failed_at_retry_ceiling(self, orchestrator, repository):
        broken = await broken_attempt(repository, "teacher-broken")

        summaries = [await orchestrator.process_submitted_attempts() for _ in range(4)]

        assert [s.retried for s in summaries[:2]] == [1, 1]
        assert summaries[2].failed == 1
        assert summaries[3].fetched == 0
        stored = await repository.get_attempt(broken.id)
        assert stored.status == AttemptStatus.FAILED
        assert stored.retry_count == 3
        assert await repository.get_result_by_attempt(broken.id) is None

    @pytest.mark.asyncio
    async def test_judgment_outage_still_produces_result(self, service, repository, transcription, zero_delay_policy):
        judgment = UnavailableJudgmentService()
        orchestrator = EvaluationOrchestrator(
            repository,
            AnswerEvaluator(judgment, transcription, retry_policy=zero_delay_policy),
            NarrativeGenerator(judgment, retry_policy=zero_delay_policy),
        )
        attempt = await submitted_attempt(service)

        summary = await orchestrator.process_submitted_attempts()

        assert summary.evaluated == 1
        result = await repository.get_result_by_attempt(attempt.id)
        # 10 MCQ points plus 8 answers at the 2.5 fallback, out of 50
        assert result.overall_score == 60.0
        assert result.proficiency_level == ProficiencyLevel.PROFICIENT
        assert "Areas for improvement:" in result.raw_feedback


class TestSweepRecovery:
    @pytest.mark.asyncio
    async def test_result_stored_before_status_update_is_not_failed(self, flaky_engine):
        repository, service, orchestrator = await flaky_engine(transition_fails=is_evaluated_transition)
        attempt = await submitted_attempt(service)
        attempt.retry_count = 2
        await repository.update_attempt(attempt)

        summary = await orchestrator.process_submitted_attempts()

        assert summary == SweepSummary(fetched=1, evaluated=1, retried=0, failed=0)
        stored = await repository.get_attempt(attempt.id)
        assert stored.status == AttemptStatus.EVALUATED
        assert stored.retry_count == 2
        assert await repository.get_result_by_attempt(attempt.id) is not None

    @pytest.mark.asyncio
    async def test_failure_bookkeeping_error_does_not_stop_the_sweep(self, flaky_engine):
        repository, service, orchestrator = await flaky_engine(transition_fails=counts_a_retry)
        broken = await broken_attempt(
            repository, "teacher-broken", submitted_at=utc_now() - datetime.timedelta(hours=1)
        )
        good = await submitted_attempt(service, "teacher-good")

        summary = await orchestrator.process_submitted_attempts()

        assert summary == SweepSummary(fetched=2, evaluated=1, retried=1, failed=0)
        assert (await repository.get_attempt(good.id)).status == AttemptStatus.EVALUATED
        stored = await repository.get_attempt(broken.id)
        assert stored.status == AttemptStatus.SUBMITTED
        assert stored.retry_count == 0


class TestBuildOrchestrator:
    @pytest.mark.asyncio
    async def test_wires_clients_from_settings(self, repository):
        config = Settings(
            JUDGMENT_API_KEY="judge-key",
            TRANSCRIPTION_API_KEY="stt-key",
            EVALUATION_TIMEOUT_SECONDS=42,
            MAX_EVALUATION_RETRIES=5,
            SWEEP_BATCH_SIZE=7,
        )

        orchestrator = build_evaluation_orchestrator(repository, config)

        assert orchestrator.timeout == 42
        assert orchestrator.max_retries == 5
        assert orchestrator.batch_size == 7
        client_types = {type(c) for c in orchestrator._clients}
        assert client_types == {OpenAIJudgmentClient, WhisperTranscriptionClient}
        await orchestrator.close()
