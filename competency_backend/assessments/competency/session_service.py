"""
Attempt Lifecycle Service for the Competency Assessment

This module owns the attempt state machine:

    IN_PROGRESS -> SUBMITTED -> EVALUATED
    IN_PROGRESS -> SUBMITTED -> FAILED

A teacher gets one attempt per assessment. ``start`` is idempotent for an
attempt that is still in progress and refuses to open a new one once the
attempt has been submitted. Answer payloads are fully validated at submit
time, so evaluation only ever sees well-formed input.
"""

import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from competency_backend.assessments.base.models import (
    Attempt,
    AttemptEvent,
    AttemptStatus,
    CompetencyAssessment,
    CompetencyResult,
    EventType,
    Question,
    QuestionAnswer,
    utc_now,
)
from competency_backend.assessments.base.repositories import CompetencyRepository
from competency_backend.assessments.competency.competency_config import (
    QUESTION_TYPE_ORDER,
    CompetencyDomain,
)
from competency_backend.assessments.competency.question_selection import select_questions
from competency_backend.common.error_handling import (
    ConflictError,
    InvalidAnswersError,
    InvalidStateError,
    MissingAnswersError,
    NotFoundError,
    ValidationError,
)
from competency_backend.common.logger import app_logger

# Module logger
logger = app_logger.getChild("competency.session_service")

AnswerInput = Union[QuestionAnswer, Mapping[str, Any]]

ALREADY_COMPLETED_MESSAGE = (
    "You have already completed the competency assessment. Reattempts are not allowed."
)
FAILED_ATTEMPT_MESSAGE = (
    "Your previous attempt could not be evaluated. Please contact support."
)
PENDING_SUBMISSION_MESSAGE = "You have a pending submission awaiting evaluation"


@dataclass
class StartedAttempt:
    """An attempt returned by ``start`` together with its selected questions."""
    attempt: Attempt
    questions: List[Question] = field(default_factory=list)
    created: bool = False

    def questions_by_type(self) -> Dict[str, List[Dict[str, Any]]]:
        """Client view of the questions grouped by type, in presentation order."""
        grouped: Dict[str, List[Dict[str, Any]]] = {t.value: [] for t in QUESTION_TYPE_ORDER}
        orders = {s.question_id: s.order for s in self.attempt.selected_questions}
        for question in self.questions:
            view = question.to_public_dict()
            view["order"] = orders.get(question.id, question.order)
            grouped[question.question_type.value].append(view)
        return grouped


def coerce_answers(answers: Sequence[AnswerInput]) -> List[QuestionAnswer]:
    """Build answer objects from request payloads (``questionId`` or ``question_id`` keys)."""
    coerced = []
    for item in answers or []:
        if isinstance(item, QuestionAnswer):
            coerced.append(item)
            continue
        question_id = item.get("question_id", item.get("questionId"))
        if not question_id:
            raise ValidationError("Each answer requires a question id")
        answer = item.get("answer")
        coerced.append(QuestionAnswer(
            question_id=str(question_id),
            answer="" if answer is None else str(answer),
        ))
    return coerced


def check_can_resume(attempt: Attempt) -> None:
    """
    Enforce the reattempt rules on an existing attempt.

    Raises:
        ConflictError: Unless the attempt is still in progress
    """
    if attempt.status == AttemptStatus.EVALUATED:
        message = ALREADY_COMPLETED_MESSAGE
    elif attempt.status == AttemptStatus.FAILED:
        message = FAILED_ATTEMPT_MESSAGE
    elif attempt.status == AttemptStatus.SUBMITTED:
        message = PENDING_SUBMISSION_MESSAGE
    else:
        return
    raise ConflictError(message, attempt_id=attempt.id, status=attempt.status.value)


def validate_submission(attempt: Attempt, answers: Sequence[QuestionAnswer]) -> None:
    """
    Check a submission against the attempt's selected questions.

    Raises:
        InvalidAnswersError: If a question is answered twice or is not part of the selection
        MissingAnswersError: If a selected question has no answer
    """
    seen = set()
    duplicates = []
    for answer in answers:
        if answer.question_id in seen and answer.question_id not in duplicates:
            duplicates.append(answer.question_id)
        seen.add(answer.question_id)
    if duplicates:
        raise InvalidAnswersError(
            duplicates,
            message=f"Duplicate answers for questions: {', '.join(duplicates)}",
        )

    selected = attempt.selected_question_ids()
    selected_set = set(selected)

    invalid = [a.question_id for a in answers if a.question_id not in selected_set]
    if invalid:
        raise InvalidAnswersError(invalid)

    missing = [question_id for question_id in selected if question_id not in seen]
    if missing:
        raise MissingAnswersError(missing)


def format_result_response(result: CompetencyResult) -> Dict[str, Any]:
    """Client view of a competency result."""
    return {
        "id": result.id,
        "attemptId": result.attempt_id,
        "assessmentId": result.assessment_id,
        "teacherId": result.teacher_id,
        "overallScore": result.overall_score,
        "proficiencyLevel": result.proficiency_level.value,
        "domainScores": [
            {"domainKey": d.domain_key, "scorePercent": round(d.score_percent, 2)}
            for d in result.domain_scores
        ],
        "strengthDomains": list(result.strength_domains),
        "gapDomains": list(result.gap_domains),
        "recommendedMicroPDs": list(result.recommended_micro_pds),
        "rawFeedback": result.raw_feedback,
        "createdAt": result.created_at.isoformat() if result.created_at else None,
    }


def format_attempt_response(attempt: Attempt) -> Dict[str, Any]:
    """Client view of an attempt."""
    return {
        "id": attempt.id,
        "teacherId": attempt.teacher_id,
        "assessmentId": attempt.assessment_id,
        "status": attempt.status.value,
        "answers": [{"questionId": a.question_id, "answer": a.answer} for a in attempt.answers],
        "selectedQuestions": [
            {"questionId": s.question_id, "order": s.order}
            for s in sorted(attempt.selected_questions, key=lambda s: s.order)
        ],
        "retryCount": attempt.retry_count,
        "createdAt": attempt.created_at.isoformat() if attempt.created_at else None,
        "submittedAt": attempt.submitted_at.isoformat() if attempt.submitted_at else None,
        "evaluatedAt": attempt.evaluated_at.isoformat() if attempt.evaluated_at else None,
    }


class CompetencyService:
    """
    Lifecycle service for competency attempts.

    The repository and the random source are injected so tests can use the
    in-memory repository and a seeded ``random.Random``.
    """

    def __init__(self, repository: CompetencyRepository, rng: Optional[random.Random] = None):
        self.repository = repository
        self.rng = rng

    # Catalog

    async def get_assessment_with_questions(
        self,
        assessment_id: Optional[str] = None
    ) -> Tuple[CompetencyAssessment, List[Question]]:
        """
        Load the active assessment (or the given one) and its question pool.

        Raises:
            NotFoundError: If no matching active assessment exists
        """
        if assessment_id:
            assessment = await self.repository.get_assessment(assessment_id)
            if assessment is None or not assessment.active:
                raise NotFoundError(f"Competency assessment {assessment_id} not found")
        else:
            assessment = await self.repository.get_active_assessment()
            if assessment is None:
                raise NotFoundError("No active competency assessment found")

        questions = await self.repository.get_questions(assessment.id)
        return assessment, questions

    async def import_assessment(
        self,
        assessment: CompetencyAssessment,
        questions: Sequence[Question]
    ) -> int:
        """
        Store an assessment and its question pool.

        Raises:
            ValidationError: If a question has an unknown domain or belongs to another assessment
        """
        unknown = sorted({q.domain_key for q in questions if not CompetencyDomain.is_valid(q.domain_key)})
        if unknown:
            raise ValidationError(
                f"Unknown competency domains: {', '.join(unknown)}",
                details={"domains": unknown},
            )
        foreign = [q.id for q in questions if q.assessment_id != assessment.id]
        if foreign:
            raise ValidationError(
                f"Questions do not belong to assessment {assessment.id}",
                details={"question_ids": foreign},
            )

        await self.repository.save_assessment(assessment)
        stored = await self.repository.save_questions(list(questions))
        logger.info(f"Imported assessment {assessment.id} with {stored} questions")
        return stored

    # Lifecycle

    async def start(self, teacher_id: str, assessment_id: Optional[str] = None) -> StartedAttempt:
        """
        Start (or resume) the teacher's attempt.

        An attempt that is still in progress is returned unchanged. Otherwise
        a fresh question set is drawn and a new attempt is stored; if another
        request created the attempt first, that attempt is used instead.

        Raises:
            NotFoundError: If there is no active assessment
            ConflictError: If the teacher's attempt was already submitted
            InsufficientQuestionPoolError: If the pool cannot fill the quotas
        """
        assessment, pool = await self.get_assessment_with_questions(assessment_id)

        existing = await self.repository.get_attempt_for_teacher(teacher_id, assessment.id)
        if existing is not None:
            check_can_resume(existing)
            logger.info(f"Resuming attempt {existing.id} for teacher {teacher_id}")
            return StartedAttempt(existing, self._ordered_questions(existing, pool), created=False)

        selected = select_questions(pool, rng=self.rng)
        attempt = Attempt(
            id="",
            teacher_id=teacher_id,
            assessment_id=assessment.id,
            selected_questions=selected,
        )

        stored, created = await self.repository.create_attempt_if_absent(attempt)
        if not created:
            # Lost a concurrent start; the winner's attempt is subject to the same rules
            check_can_resume(stored)
        else:
            logger.info(
                f"Started attempt {stored.id} for teacher {teacher_id} with {len(selected)} questions"
            )
        return StartedAttempt(stored, self._ordered_questions(stored, pool), created=created)

    @staticmethod
    def _ordered_questions(attempt: Attempt, pool: Sequence[Question]) -> List[Question]:
        by_id = {q.id: q for q in pool}
        return [by_id[qid] for qid in attempt.selected_question_ids() if qid in by_id]

    async def _get_owned_attempt(self, teacher_id: str, attempt_id: str) -> Attempt:
        attempt = await self.repository.get_attempt(attempt_id)
        if attempt is None or attempt.teacher_id != teacher_id:
            raise NotFoundError(f"Attempt {attempt_id} not found")
        return attempt

    async def save_progress(
        self,
        teacher_id: str,
        attempt_id: str,
        answers: Sequence[AnswerInput]
    ) -> Attempt:
        """
        Replace the attempt's answers while it is in progress.

        Raises:
            NotFoundError: If the attempt does not exist or belongs to another teacher
            InvalidStateError: If the attempt is no longer in progress
        """
        attempt = await self._get_owned_attempt(teacher_id, attempt_id)
        if attempt.status != AttemptStatus.IN_PROGRESS:
            raise InvalidStateError(
                "Cannot save progress on a submitted attempt",
                current_status=attempt.status.value,
            )

        updated = await self.repository.transition_attempt(
            attempt_id,
            AttemptStatus.IN_PROGRESS,
            AttemptStatus.IN_PROGRESS,
            {"answers": coerce_answers(answers)},
        )
        if updated is None:
            current = await self.repository.get_attempt(attempt_id)
            raise InvalidStateError(
                "Cannot save progress on a submitted attempt",
                current_status=current.status.value if current else None,
            )

        logger.debug(f"Saved {len(updated.answers)} answers on attempt {attempt_id}")
        return updated

    async def submit(
        self,
        teacher_id: str,
        attempt_id: str,
        answers: Sequence[AnswerInput]
    ) -> Attempt:
        """
        Submit the final answers and queue the attempt for evaluation.

        Raises:
            NotFoundError: If the attempt does not exist or belongs to another teacher
            InvalidStateError: If the attempt was already submitted
            InvalidAnswersError: If answers are duplicated or outside the selection
            MissingAnswersError: If a selected question is unanswered
        """
        attempt = await self._get_owned_attempt(teacher_id, attempt_id)
        if attempt.status != AttemptStatus.IN_PROGRESS:
            raise InvalidStateError("Attempt already submitted", current_status=attempt.status.value)

        final_answers = coerce_answers(answers)
        validate_submission(attempt, final_answers)

        submitted_at = utc_now()
        updated = await self.repository.transition_attempt(
            attempt_id,
            AttemptStatus.IN_PROGRESS,
            AttemptStatus.SUBMITTED,
            {"answers": final_answers, "submitted_at": submitted_at},
        )
        if updated is None:
            raise InvalidStateError("Attempt already submitted")

        await self.repository.create_event(AttemptEvent(
            id="",
            teacher_id=teacher_id,
            attempt_id=attempt_id,
            event_type=EventType.SUBMIT,
            metadata={"answerCount": len(final_answers)},
        ))

        logger.info(f"Attempt {attempt_id} submitted by teacher {teacher_id}")
        return updated

    # Queries

    async def get_attempt(self, teacher_id: str, attempt_id: str) -> Attempt:
        """Retrieve one of the teacher's attempts."""
        return await self._get_owned_attempt(teacher_id, attempt_id)

    async def list_attempts(self, teacher_id: str) -> List[Attempt]:
        return await self.repository.list_attempts_by_teacher(teacher_id)

    async def get_result(self, teacher_id: str) -> CompetencyResult:
        """
        Retrieve the teacher's most recent result.

        Raises:
            NotFoundError: If the teacher has no result yet
        """
        result = await self.repository.get_latest_result(teacher_id)
        if result is None:
            raise NotFoundError("No competency results found")
        return result

    async def list_results(self, teacher_id: str) -> List[CompetencyResult]:
        return await self.repository.list_results(teacher_id)
