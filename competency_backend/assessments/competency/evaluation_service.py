"""
Evaluation Orchestrator for the Competency Assessment

Drives the evaluation of submitted attempts:

1. Each question is scored by the ``AnswerEvaluator``.
2. Results are aggregated and classified (``scoring``).
3. Gap domains are mapped to micro-PD recommendations.
4. A narrative summary is generated.
5. One ``CompetencyResult`` is stored per attempt and the attempt moves to EVALUATED.

``evaluate_and_save`` is idempotent: it may run for the same attempt from the
submit request and from the periodic sweep, and it only ever stores one
result. The sweep counts failed evaluations on the attempt and gives up
after ``max_retries``, moving the attempt to FAILED.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from competency_backend.assessments.base.models import (
    Attempt,
    AttemptEvent,
    AttemptStatus,
    CompetencyResult,
    EventType,
    Question,
    utc_now,
)
from competency_backend.assessments.base.repositories import CompetencyRepository
from competency_backend.assessments.competency.answer_evaluation import AnswerEvaluator
from competency_backend.assessments.competency.judgment import OpenAIJudgmentClient
from competency_backend.assessments.competency.recommendations import recommend_micro_pds
from competency_backend.assessments.competency.scoring import NarrativeGenerator, summarize_results
from competency_backend.assessments.competency.transcription import WhisperTranscriptionClient
from competency_backend.common.error_handling import (
    EvaluationError,
    InvalidStateError,
    NotFoundError,
    RetryPolicy,
    log_error,
)
from competency_backend.common.logger import LoggerAdapter, app_logger, log_execution_time
from competency_backend.config import Settings, settings as default_settings

# Module logger
logger = app_logger.getChild("competency.evaluation_service")

ResultListener = Callable[[CompetencyResult], Awaitable[None]]


@dataclass
class SweepSummary:
    """Outcome of one batch sweep over submitted attempts."""
    fetched: int = 0
    evaluated: int = 0
    retried: int = 0
    failed: int = 0


class EvaluationOrchestrator:
    """
    Evaluates submitted attempts and stores their results.

    All collaborators are injected; ``build_evaluation_orchestrator`` wires
    the production clients from settings.
    """

    def __init__(
        self,
        repository: CompetencyRepository,
        evaluator: AnswerEvaluator,
        narrative: NarrativeGenerator,
        timeout: Optional[float] = None,
        max_retries: int = 3,
        batch_size: int = 10,
        clients: Optional[Sequence[Any]] = None
    ):
        self.repository = repository
        self.evaluator = evaluator
        self.narrative = narrative
        self.timeout = timeout
        self.max_retries = max_retries
        self.batch_size = batch_size
        self._listeners: List[ResultListener] = []
        # External clients owned by this orchestrator, closed by close()
        self._clients = list(clients or [])

    async def close(self) -> None:
        for client in self._clients:
            await client.close()

    def add_result_listener(self, listener: ResultListener) -> None:
        """Register a coroutine called once for every newly stored result."""
        self._listeners.append(listener)

    async def _notify(self, result: CompetencyResult) -> None:
        for listener in self._listeners:
            try:
                await listener(result)
            except Exception as e:
                logger.error(
                    f"Result listener {getattr(listener, '__name__', listener)} failed "
                    f"for attempt {result.attempt_id}: {type(e).__name__}: {e}"
                )

    # Evaluation pass

    async def _evaluate(self, attempt: Attempt, questions: Sequence[Question]) -> CompetencyResult:
        log = LoggerAdapter(logger, {"attempt_id": attempt.id, "teacher_id": attempt.teacher_id})
        log.info(f"Evaluating {len(questions)} questions")

        question_results = await self.evaluator.evaluate_all(questions, attempt.answer_map())
        summary = summarize_results(question_results)
        recommendations = recommend_micro_pds(summary.gap_domains)
        narrative = await self.narrative.generate(summary)

        log.info(
            f"Overall score {summary.overall_score} ({summary.proficiency_level.value}), "
            f"{len(summary.gap_domains)} gap domains"
        )
        return CompetencyResult(
            id="",
            teacher_id=attempt.teacher_id,
            attempt_id=attempt.id,
            assessment_id=attempt.assessment_id,
            overall_score=summary.overall_score,
            proficiency_level=summary.proficiency_level,
            domain_scores=summary.domain_scores,
            strength_domains=summary.strength_domains,
            gap_domains=summary.gap_domains,
            recommended_micro_pds=recommendations,
            question_results=question_results,
            raw_feedback=narrative,
        )

    @log_execution_time(logger)
    async def evaluate_attempt(
        self,
        attempt: Attempt,
        questions: Sequence[Question]
    ) -> CompetencyResult:
        """
        Evaluate an attempt without storing anything.

        Raises:
            EvaluationError: If the evaluation exceeds the configured timeout
        """
        if self.timeout is None:
            return await self._evaluate(attempt, questions)
        try:
            return await asyncio.wait_for(self._evaluate(attempt, questions), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise EvaluationError(
                f"Evaluation timed out after {self.timeout} seconds",
                attempt_id=attempt.id,
                cause=e,
            ) from e

    async def _resolve_questions(self, attempt: Attempt) -> List[Question]:
        pool = await self.repository.get_questions(attempt.assessment_id)
        selected_ids = attempt.selected_question_ids()
        if not selected_ids:
            logger.warning(f"Attempt {attempt.id} has no selected questions, using the full pool")
            return pool

        by_id = {q.id: q for q in pool}
        missing = [qid for qid in selected_ids if qid not in by_id]
        if missing:
            raise EvaluationError(
                f"Selected questions missing from the pool: {', '.join(missing)}",
                attempt_id=attempt.id,
            )
        return [by_id[qid] for qid in selected_ids]

    async def _mark_evaluated(
        self,
        attempt_id: str,
        from_status: AttemptStatus = AttemptStatus.SUBMITTED
    ) -> None:
        moved = await self.repository.transition_attempt(
            attempt_id,
            from_status,
            AttemptStatus.EVALUATED,
            {"evaluated_at": utc_now()},
        )
        if moved is None:
            logger.debug(f"Attempt {attempt_id} was not {from_status.value}, status left unchanged")

    async def _repair_status(self, attempt_id: str) -> None:
        """Move an attempt whose result is stored to EVALUATED."""
        current = await self.repository.get_attempt(attempt_id)
        if current is None or current.status in (AttemptStatus.EVALUATED, AttemptStatus.IN_PROGRESS):
            return
        logger.info(f"Result exists for attempt {attempt_id}, repairing status {current.status.value}")
        await self._mark_evaluated(attempt_id, current.status)

    async def _record_evaluated_event(self, attempt: Attempt, result: CompetencyResult) -> None:
        # Non-fatal: the result is already stored
        try:
            await self.repository.create_event(AttemptEvent(
                id="",
                teacher_id=attempt.teacher_id,
                attempt_id=attempt.id,
                event_type=EventType.EVALUATED,
                metadata={
                    "resultId": result.id,
                    "overallScore": result.overall_score,
                    "proficiencyLevel": result.proficiency_level.value,
                },
            ))
        except Exception as e:
            log_error(
                e,
                include_stack_trace=False,
                context={"attempt_id": attempt.id, "event_type": EventType.EVALUATED.value},
                log=logger,
            )

    @log_execution_time(logger)
    async def evaluate_and_save(self, attempt: Attempt) -> CompetencyResult:
        """
        Evaluate a submitted attempt and store its result exactly once.

        If a result already exists it is returned unchanged, and a stored
        status left SUBMITTED or FAILED by an earlier partial run is repaired
        to EVALUATED.

        Raises:
            InvalidStateError: If the attempt is in progress, or FAILED without a result
            EvaluationError: If the evaluation times out or its questions are missing
        """
        if attempt.status == AttemptStatus.IN_PROGRESS:
            raise InvalidStateError(
                f"Attempt {attempt.id} has not been submitted",
                current_status=attempt.status.value,
            )

        existing = await self.repository.get_result_by_attempt(attempt.id)
        if existing is not None:
            await self._repair_status(attempt.id)
            return existing

        if attempt.status.is_terminal:
            # FAILED is terminal; EVALUATED without a result cannot be re-run either
            raise InvalidStateError(
                f"Attempt {attempt.id} cannot be evaluated",
                current_status=attempt.status.value,
            )

        questions = await self._resolve_questions(attempt)
        result = await self.evaluate_attempt(attempt, questions)

        stored, created = await self.repository.create_result_if_absent(result)
        if created:
            logger.info(f"Stored result {stored.id} for attempt {attempt.id}")
            await self._record_evaluated_event(attempt, stored)
            await self._notify(stored)
        else:
            logger.info(f"Result for attempt {attempt.id} was stored by a concurrent evaluation")

        await self._mark_evaluated(attempt.id)
        return stored

    async def trigger_evaluation(self, attempt_id: str) -> CompetencyResult:
        """
        Evaluate an attempt on demand (administrative re-run).

        Raises:
            NotFoundError: If the attempt does not exist
            InvalidStateError: If the attempt is in progress, or FAILED without a result
        """
        attempt = await self.repository.get_attempt(attempt_id)
        if attempt is None:
            raise NotFoundError(f"Attempt {attempt_id} not found")
        return await self.evaluate_and_save(attempt)

    # Batch sweep

    async def _record_failure(self, attempt: Attempt, error: Exception) -> bool:
        """
        Count a failed evaluation on the attempt.

        Returns:
            True if the attempt reached the retry ceiling and is now FAILED
        """
        retry_count = attempt.retry_count + 1
        exhausted = retry_count >= self.max_retries
        new_status = AttemptStatus.FAILED if exhausted else AttemptStatus.SUBMITTED

        moved = await self.repository.transition_attempt(
            attempt.id, AttemptStatus.SUBMITTED, new_status, {"retry_count": retry_count}
        )
        if moved is None:
            logger.warning(f"Attempt {attempt.id} changed status during the sweep, not counting the failure")
            return False

        if exhausted:
            logger.error(
                f"Attempt {attempt.id} failed evaluation {retry_count} times, marking FAILED: {error}"
            )
        else:
            logger.warning(
                f"Evaluation of attempt {attempt.id} failed ({retry_count}/{self.max_retries}): {error}"
            )
        return exhausted

    async def process_submitted_attempts(self, batch_size: Optional[int] = None) -> SweepSummary:
        """
        Evaluate a page of submitted attempts, oldest submission first.

        Each attempt is evaluated independently; a failure never stops the sweep.
        """
        limit = batch_size or self.batch_size
        attempts = await self.repository.list_attempts_by_status(AttemptStatus.SUBMITTED, limit=limit)
        summary = SweepSummary(fetched=len(attempts))
        logger.info(f"Sweep fetched {summary.fetched} submitted attempts")

        for attempt in attempts:
            try:
                await self.evaluate_and_save(attempt)
                summary.evaluated += 1
            except Exception as e:
                try:
                    if await self.repository.get_result_by_attempt(attempt.id) is not None:
                        logger.warning(
                            f"Attempt {attempt.id} failed after its result was stored, "
                            f"repairing status: {type(e).__name__}: {e}"
                        )
                        await self._repair_status(attempt.id)
                        summary.evaluated += 1
                    elif await self._record_failure(attempt, e):
                        summary.failed += 1
                    else:
                        summary.retried += 1
                except Exception as bookkeeping_error:
                    # The attempt stays SUBMITTED and is picked up by the next sweep
                    log_error(
                        bookkeeping_error,
                        include_stack_trace=False,
                        context={"attempt_id": attempt.id, "evaluation_error": str(e)},
                        log=logger,
                    )
                    summary.retried += 1

        logger.info(
            f"Sweep finished: {summary.evaluated} evaluated, "
            f"{summary.retried} to retry, {summary.failed} failed"
        )
        return summary


def build_retry_policy(config: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=config.JUDGMENT_MAX_RETRIES,
        base_delay=config.JUDGMENT_RETRY_DELAY_SECONDS,
    )


def build_judgment_client(config: Settings) -> OpenAIJudgmentClient:
    return OpenAIJudgmentClient(
        api_key=config.JUDGMENT_API_KEY,
        base_url=config.JUDGMENT_API_BASE_URL,
        model=config.JUDGMENT_MODEL,
        timeout=config.JUDGMENT_TIMEOUT_SECONDS,
    )


def build_transcription_client(config: Settings) -> WhisperTranscriptionClient:
    return WhisperTranscriptionClient(
        api_key=config.TRANSCRIPTION_API_KEY,
        base_url=config.TRANSCRIPTION_API_BASE_URL,
        model=config.TRANSCRIPTION_MODEL,
        timeout=config.TRANSCRIPTION_TIMEOUT_SECONDS,
        max_file_bytes=config.TRANSCRIPTION_MAX_FILE_BYTES,
    )


def build_evaluation_orchestrator(
    repository: CompetencyRepository,
    config: Optional[Settings] = None
) -> EvaluationOrchestrator:
    """
    Wire an orchestrator with the production judgment and transcription clients.

    Args:
        repository: Repository to read attempts from and store results in
        config: Settings to use (defaults to the application settings)
    """
    config = config or default_settings
    retry_policy = build_retry_policy(config)
    judgment = build_judgment_client(config)
    transcription = build_transcription_client(config)

    evaluator = AnswerEvaluator(
        judgment,
        transcription,
        retry_policy=retry_policy,
        fallback_fraction=config.FALLBACK_SCORE_FRACTION,
        temperature=config.JUDGMENT_TEMPERATURE,
        max_tokens=config.JUDGMENT_MAX_TOKENS,
    )
    narrative = NarrativeGenerator(
        judgment,
        retry_policy=retry_policy,
        temperature=config.FEEDBACK_TEMPERATURE,
        max_tokens=config.FEEDBACK_MAX_TOKENS,
    )
    return EvaluationOrchestrator(
        repository,
        evaluator,
        narrative,
        timeout=config.EVALUATION_TIMEOUT_SECONDS,
        max_retries=config.MAX_EVALUATION_RETRIES,
        batch_size=config.SWEEP_BATCH_SIZE,
        clients=[judgment, transcription],
    )
