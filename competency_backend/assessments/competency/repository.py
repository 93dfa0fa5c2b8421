"""
Repository Module for the Competency Assessment

SQLAlchemy (async) implementation of ``CompetencyRepository``.

The single-attempt and single-result guarantees rest on the database's
unique constraints: an insert that loses a race raises ``IntegrityError`` and
the repository then returns the row that won. Status transitions are
conditional UPDATEs on the current status.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from competency_backend.assessments.base.models import (
    Attempt,
    AttemptEvent,
    AttemptStatus,
    CompetencyAssessment,
    CompetencyResult,
    Question,
    utc_now,
)
from competency_backend.assessments.base.repositories import (
    CompetencyRepository,
    check_transition_changes,
)
from competency_backend.assessments.competency.database_models import (
    CompetencyAssessmentRecord,
    CompetencyAttemptRecord,
    CompetencyEventRecord,
    CompetencyQuestionRecord,
    CompetencyResultRecord,
)
from competency_backend.common.error_handling import DatabaseError, NotFoundError
from competency_backend.common.logger import app_logger
from competency_backend.common.serialization import serialize

# Module logger
logger = app_logger.getChild("competency.repository")


class SQLAlchemyCompetencyRepository(CompetencyRepository):
    """Competency repository backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker):
        """
        Initialize the repository.

        Args:
            session_factory: Factory producing ``AsyncSession`` objects
        """
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session_scope(self, operation: str) -> AsyncIterator[AsyncSession]:
        """
        Provide an async transactional scope around a series of operations.
        """
        session: AsyncSession = self._session_factory()
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database error in {operation}: {str(e)}")
            raise DatabaseError(
                f"Database error in {operation}", operation=operation, cause=e
            ) from e
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    # Assessments and questions

    async def get_active_assessment(self) -> Optional[CompetencyAssessment]:
        async with self._session_scope("get_active_assessment") as session:
            row = (await session.execute(
                select(CompetencyAssessmentRecord)
                .where(CompetencyAssessmentRecord.active.is_(True))
                .order_by(CompetencyAssessmentRecord.created_at.desc())
                .limit(1)
            )).scalars().first()
            return row.to_domain() if row else None

    async def get_assessment(self, assessment_id: str) -> Optional[CompetencyAssessment]:
        async with self._session_scope("get_assessment") as session:
            row = await session.get(CompetencyAssessmentRecord, assessment_id)
            return row.to_domain() if row else None

    async def save_assessment(self, assessment: CompetencyAssessment) -> CompetencyAssessment:
        async with self._session_scope("save_assessment") as session:
            await session.merge(CompetencyAssessmentRecord.from_domain(assessment))
        return assessment

    async def save_questions(self, questions: List[Question]) -> int:
        async with self._session_scope("save_questions") as session:
            for question in questions:
                await session.merge(CompetencyQuestionRecord.from_domain(question))
        return len(questions)

    async def get_questions(self, assessment_id: str) -> List[Question]:
        async with self._session_scope("get_questions") as session:
            rows = (await session.execute(
                select(CompetencyQuestionRecord)
                .where(CompetencyQuestionRecord.assessment_id == assessment_id)
                .order_by(CompetencyQuestionRecord.sort_order, CompetencyQuestionRecord.id)
            )).scalars().all()
            return [row.to_domain() for row in rows]

    # Attempts

    @staticmethod
    async def _find_attempt(
        session: AsyncSession,
        teacher_id: str,
        assessment_id: str
    ) -> Optional[CompetencyAttemptRecord]:
        return (await session.execute(
            select(CompetencyAttemptRecord).where(
                CompetencyAttemptRecord.teacher_id == teacher_id,
                CompetencyAttemptRecord.assessment_id == assessment_id,
            )
        )).scalars().first()

    async def create_attempt_if_absent(self, attempt: Attempt) -> Tuple[Attempt, bool]:
        async with self._session_scope("create_attempt_if_absent") as session:
            existing = await self._find_attempt(session, attempt.teacher_id, attempt.assessment_id)
            if existing is not None:
                return existing.to_domain(), False

            session.add(CompetencyAttemptRecord.from_domain(attempt))
            try:
                await session.flush()
            except IntegrityError:
                # Another request created the attempt between our read and insert
                await session.rollback()
                winner = await self._find_attempt(session, attempt.teacher_id, attempt.assessment_id)
                if winner is None:
                    raise
                logger.info(
                    f"Concurrent start for teacher {attempt.teacher_id}, returning attempt {winner.id}"
                )
                return winner.to_domain(), False

        return attempt, True

    async def get_attempt(self, attempt_id: str) -> Optional[Attempt]:
        async with self._session_scope("get_attempt") as session:
            row = await session.get(CompetencyAttemptRecord, attempt_id)
            return row.to_domain() if row else None

    async def get_attempt_for_teacher(
        self,
        teacher_id: str,
        assessment_id: str
    ) -> Optional[Attempt]:
        async with self._session_scope("get_attempt_for_teacher") as session:
            row = await self._find_attempt(session, teacher_id, assessment_id)
            return row.to_domain() if row else None

    async def list_attempts_by_teacher(self, teacher_id: str) -> List[Attempt]:
        async with self._session_scope("list_attempts_by_teacher") as session:
            rows = (await session.execute(
                select(CompetencyAttemptRecord)
                .where(CompetencyAttemptRecord.teacher_id == teacher_id)
                .order_by(CompetencyAttemptRecord.created_at.desc())
            )).scalars().all()
            return [row.to_domain() for row in rows]

    async def list_attempts_by_status(
        self,
        status: AttemptStatus,
        limit: int = 10
    ) -> List[Attempt]:
        async with self._session_scope("list_attempts_by_status") as session:
            rows = (await session.execute(
                select(CompetencyAttemptRecord)
                .where(CompetencyAttemptRecord.status == status.value)
                .order_by(
                    CompetencyAttemptRecord.submitted_at.asc(),
                    CompetencyAttemptRecord.created_at.asc(),
                )
                .limit(limit)
            )).scalars().all()
            return [row.to_domain() for row in rows]

    async def update_attempt(self, attempt: Attempt) -> Attempt:
        attempt.updated_at = utc_now()
        async with self._session_scope("update_attempt") as session:
            row = await session.get(CompetencyAttemptRecord, attempt.id)
            if row is None:
                raise NotFoundError(f"Attempt {attempt.id} not found")
            row.status = attempt.status.value
            row.answers = serialize(attempt.answers)
            row.selected_questions = serialize(attempt.selected_questions)
            row.retry_count = attempt.retry_count
            row.updated_at = attempt.updated_at
            row.submitted_at = attempt.submitted_at
            row.evaluated_at = attempt.evaluated_at
        return attempt

    async def transition_attempt(
        self,
        attempt_id: str,
        expected_status: AttemptStatus,
        new_status: AttemptStatus,
        changes: Optional[Dict[str, Any]] = None
    ) -> Optional[Attempt]:
        values = check_transition_changes(changes)
        if "answers" in values:
            values["answers"] = serialize(values["answers"])
        values["status"] = new_status.value
        values["updated_at"] = utc_now()

        async with self._session_scope("transition_attempt") as session:
            outcome = await session.execute(
                update(CompetencyAttemptRecord)
                .where(
                    CompetencyAttemptRecord.id == attempt_id,
                    CompetencyAttemptRecord.status == expected_status.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount == 0:
                return None
            row = (await session.execute(
                select(CompetencyAttemptRecord)
                .where(CompetencyAttemptRecord.id == attempt_id)
                .execution_options(populate_existing=True)
            )).scalars().one()
            return row.to_domain()

    # Results

    @staticmethod
    async def _find_result(
        session: AsyncSession,
        attempt_id: str
    ) -> Optional[CompetencyResultRecord]:
        return (await session.execute(
            select(CompetencyResultRecord).where(CompetencyResultRecord.attempt_id == attempt_id)
        )).scalars().first()

    async def create_result_if_absent(
        self,
        result: CompetencyResult
    ) -> Tuple[CompetencyResult, bool]:
        async with self._session_scope("create_result_if_absent") as session:
            existing = await self._find_result(session, result.attempt_id)
            if existing is not None:
                return existing.to_domain(), False

            session.add(CompetencyResultRecord.from_domain(result))
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                winner = await self._find_result(session, result.attempt_id)
                if winner is None:
                    raise
                logger.info(f"Result for attempt {result.attempt_id} was created concurrently")
                return winner.to_domain(), False

        return result, True

    async def get_result_by_attempt(self, attempt_id: str) -> Optional[CompetencyResult]:
        async with self._session_scope("get_result_by_attempt") as session:
            row = await self._find_result(session, attempt_id)
            return row.to_domain() if row else None

    async def get_latest_result(self, teacher_id: str) -> Optional[CompetencyResult]:
        results = await self.list_results(teacher_id)
        return results[0] if results else None

    async def list_results(self, teacher_id: str) -> List[CompetencyResult]:
        async with self._session_scope("list_results") as session:
            rows = (await session.execute(
                select(CompetencyResultRecord)
                .where(CompetencyResultRecord.teacher_id == teacher_id)
                .order_by(CompetencyResultRecord.created_at.desc())
            )).scalars().all()
            return [row.to_domain() for row in rows]

    # Events

    async def create_event(self, event: AttemptEvent) -> AttemptEvent:
        async with self._session_scope("create_event") as session:
            session.add(CompetencyEventRecord.from_domain(event))
        return event

    async def list_events(self, attempt_id: str) -> List[AttemptEvent]:
        async with self._session_scope("list_events") as session:
            rows = (await session.execute(
                select(CompetencyEventRecord)
                .where(CompetencyEventRecord.attempt_id == attempt_id)
                .order_by(CompetencyEventRecord.created_at.asc())
            )).scalars().all()
            return [row.to_domain() for row in rows]
