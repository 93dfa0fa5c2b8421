"""
Competency Repository Interface

This module defines the persistence interface the competency engine depends
on. Implementations must make the two check-then-write operations
(``create_attempt_if_absent`` and ``create_result_if_absent``) safe under
concurrent callers, and must implement ``transition_attempt`` as a
compare-and-set on the attempt status.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from competency_backend.assessments.base.models import (
    Attempt,
    AttemptEvent,
    AttemptStatus,
    CompetencyAssessment,
    CompetencyResult,
    Question,
)

# Attempt fields that may be changed together with a status transition
TRANSITION_FIELDS = frozenset({"answers", "retry_count", "submitted_at", "evaluated_at"})


class CompetencyRepository(ABC):
    """
    Abstract repository for assessments, questions, attempts, results and events.
    """

    # Assessments and questions

    @abstractmethod
    async def get_active_assessment(self) -> Optional[CompetencyAssessment]:
        """
        Retrieve the active assessment.

        Returns:
            The most recently created active assessment, or None
        """
        pass

    @abstractmethod
    async def get_assessment(self, assessment_id: str) -> Optional[CompetencyAssessment]:
        """
        Retrieve an assessment by its ID.

        Args:
            assessment_id: The unique identifier for the assessment

        Returns:
            The assessment if found, None otherwise
        """
        pass

    @abstractmethod
    async def save_assessment(self, assessment: CompetencyAssessment) -> CompetencyAssessment:
        """Insert or replace an assessment."""
        pass

    @abstractmethod
    async def save_questions(self, questions: List[Question]) -> int:
        """
        Insert or replace questions.

        Args:
            questions: Questions to store

        Returns:
            Number of questions stored
        """
        pass

    @abstractmethod
    async def get_questions(self, assessment_id: str) -> List[Question]:
        """
        Retrieve the full question pool of an assessment.

        Args:
            assessment_id: The assessment whose questions to load

        Returns:
            Questions ordered by their catalog ``order``
        """
        pass

    # Attempts

    @abstractmethod
    async def create_attempt_if_absent(self, attempt: Attempt) -> Tuple[Attempt, bool]:
        """
        Store ``attempt`` unless one already exists for its teacher and assessment.

        Args:
            attempt: The new attempt

        Returns:
            Tuple of (stored attempt, created). When an attempt already existed,
            that attempt is returned with ``created`` False.
        """
        pass

    @abstractmethod
    async def get_attempt(self, attempt_id: str) -> Optional[Attempt]:
        """Retrieve an attempt by its ID."""
        pass

    @abstractmethod
    async def get_attempt_for_teacher(
        self,
        teacher_id: str,
        assessment_id: str
    ) -> Optional[Attempt]:
        """Retrieve the attempt of a teacher for an assessment."""
        pass

    @abstractmethod
    async def list_attempts_by_teacher(self, teacher_id: str) -> List[Attempt]:
        """Retrieve all attempts of a teacher, newest first."""
        pass

    @abstractmethod
    async def list_attempts_by_status(
        self,
        status: AttemptStatus,
        limit: int = 10
    ) -> List[Attempt]:
        """
        Retrieve a bounded page of attempts in ``status``.

        Args:
            status: Status to filter on
            limit: Maximum number of attempts to return

        Returns:
            Attempts ordered by submission time, oldest first
        """
        pass

    @abstractmethod
    async def update_attempt(self, attempt: Attempt) -> Attempt:
        """
        Persist all mutable fields of an attempt.

        Raises:
            NotFoundError: If the attempt does not exist
        """
        pass

    @abstractmethod
    async def transition_attempt(
        self,
        attempt_id: str,
        expected_status: AttemptStatus,
        new_status: AttemptStatus,
        changes: Optional[Dict[str, Any]] = None
    ) -> Optional[Attempt]:
        """
        Atomically move an attempt from ``expected_status`` to ``new_status``.

        Args:
            attempt_id: The attempt to update
            expected_status: Status the attempt must currently have
            new_status: Status to set
            changes: Other fields to set in the same write (see TRANSITION_FIELDS)

        Returns:
            The updated attempt, or None if the attempt is missing or its
            status was not ``expected_status``
        """
        pass

    # Results

    @abstractmethod
    async def create_result_if_absent(
        self,
        result: CompetencyResult
    ) -> Tuple[CompetencyResult, bool]:
        """
        Store ``result`` unless a result already exists for its attempt.

        Returns:
            Tuple of (stored result, created)
        """
        pass

    @abstractmethod
    async def get_result_by_attempt(self, attempt_id: str) -> Optional[CompetencyResult]:
        """Retrieve the result of an attempt."""
        pass

    @abstractmethod
    async def get_latest_result(self, teacher_id: str) -> Optional[CompetencyResult]:
        """Retrieve the most recent result of a teacher."""
        pass

    @abstractmethod
    async def list_results(self, teacher_id: str) -> List[CompetencyResult]:
        """Retrieve all results of a teacher, newest first."""
        pass

    # Events

    @abstractmethod
    async def create_event(self, event: AttemptEvent) -> AttemptEvent:
        """Record an audit event."""
        pass

    @abstractmethod
    async def list_events(self, attempt_id: str) -> List[AttemptEvent]:
        """Retrieve the events of an attempt, oldest first."""
        pass


def check_transition_changes(changes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate the extra fields of a status transition."""
    changes = dict(changes or {})
    unknown = set(changes) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Unsupported attempt fields in transition: {sorted(unknown)}")
    return changes
