"""
In-memory implementation of ``CompetencyRepository``.

Used by the tests and for local runs without a database. A single
``asyncio.Lock`` serializes every operation, which gives the check-then-write
and compare-and-set operations the same guarantees the database constraints
give the SQLAlchemy repository. Stored and returned objects are deep copies
so callers never share state with the store.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

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
from competency_backend.common.error_handling import NotFoundError


class InMemoryCompetencyRepository(CompetencyRepository):
    """Dictionary-backed competency repository."""

    def __init__(self):
        self._assessments: Dict[str, CompetencyAssessment] = {}
        self._questions: Dict[str, Question] = {}
        self._attempts: Dict[str, Attempt] = {}
        self._results: Dict[str, CompetencyResult] = {}
        self._events: List[AttemptEvent] = []
        self._lock = asyncio.Lock()

    # Assessments and questions

    async def get_active_assessment(self) -> Optional[CompetencyAssessment]:
        async with self._lock:
            active = [a for a in self._assessments.values() if a.active]
            if not active:
                return None
            return copy.deepcopy(max(active, key=lambda a: a.created_at))

    async def get_assessment(self, assessment_id: str) -> Optional[CompetencyAssessment]:
        async with self._lock:
            return copy.deepcopy(self._assessments.get(assessment_id))

    async def save_assessment(self, assessment: CompetencyAssessment) -> CompetencyAssessment:
        async with self._lock:
            self._assessments[assessment.id] = copy.deepcopy(assessment)
        return assessment

    async def save_questions(self, questions: List[Question]) -> int:
        async with self._lock:
            for question in questions:
                self._questions[question.id] = copy.deepcopy(question)
        return len(questions)

    async def get_questions(self, assessment_id: str) -> List[Question]:
        async with self._lock:
            questions = [q for q in self._questions.values() if q.assessment_id == assessment_id]
            questions.sort(key=lambda q: (q.order, q.id))
            return copy.deepcopy(questions)

    # Attempts

    def _find_attempt(self, teacher_id: str, assessment_id: str) -> Optional[Attempt]:
        for attempt in self._attempts.values():
            if attempt.teacher_id == teacher_id and attempt.assessment_id == assessment_id:
                return attempt
        return None

    async def create_attempt_if_absent(self, attempt: Attempt) -> Tuple[Attempt, bool]:
        async with self._lock:
            existing = self._find_attempt(attempt.teacher_id, attempt.assessment_id)
            if existing is not None:
                return copy.deepcopy(existing), False
            self._attempts[attempt.id] = copy.deepcopy(attempt)
            return copy.deepcopy(attempt), True

    async def get_attempt(self, attempt_id: str) -> Optional[Attempt]:
        async with self._lock:
            return copy.deepcopy(self._attempts.get(attempt_id))

    async def get_attempt_for_teacher(
        self,
        teacher_id: str,
        assessment_id: str
    ) -> Optional[Attempt]:
        async with self._lock:
            return copy.deepcopy(self._find_attempt(teacher_id, assessment_id))

    async def list_attempts_by_teacher(self, teacher_id: str) -> List[Attempt]:
        async with self._lock:
            attempts = [a for a in self._attempts.values() if a.teacher_id == teacher_id]
            attempts.sort(key=lambda a: a.created_at, reverse=True)
            return copy.deepcopy(attempts)

    async def list_attempts_by_status(
        self,
        status: AttemptStatus,
        limit: int = 10
    ) -> List[Attempt]:
        async with self._lock:
            attempts = [a for a in self._attempts.values() if a.status == status]
            attempts.sort(key=lambda a: (a.submitted_at or a.created_at, a.created_at))
            return copy.deepcopy(attempts[:limit])

    async def update_attempt(self, attempt: Attempt) -> Attempt:
        async with self._lock:
            if attempt.id not in self._attempts:
                raise NotFoundError(f"Attempt {attempt.id} not found")
            attempt.updated_at = utc_now()
            self._attempts[attempt.id] = copy.deepcopy(attempt)
        return attempt

    async def transition_attempt(
        self,
        attempt_id: str,
        expected_status: AttemptStatus,
        new_status: AttemptStatus,
        changes: Optional[Dict[str, Any]] = None
    ) -> Optional[Attempt]:
        values = check_transition_changes(changes)
        async with self._lock:
            stored = self._attempts.get(attempt_id)
            if stored is None or stored.status != expected_status:
                return None
            updated = copy.deepcopy(stored)
            for name, value in values.items():
                setattr(updated, name, copy.deepcopy(value))
            updated.status = new_status
            updated.updated_at = utc_now()
            # Re-run coercion so dict answers become QuestionAnswer objects
            updated.__post_init__()
            self._attempts[attempt_id] = updated
            return copy.deepcopy(updated)

    # Results

    async def create_result_if_absent(
        self,
        result: CompetencyResult
    ) -> Tuple[CompetencyResult, bool]:
        async with self._lock:
            existing = self._results.get(result.attempt_id)
            if existing is not None:
                return copy.deepcopy(existing), False
            self._results[result.attempt_id] = copy.deepcopy(result)
            return copy.deepcopy(result), True

    async def get_result_by_attempt(self, attempt_id: str) -> Optional[CompetencyResult]:
        async with self._lock:
            return copy.deepcopy(self._results.get(attempt_id))

    async def get_latest_result(self, teacher_id: str) -> Optional[CompetencyResult]:
        results = await self.list_results(teacher_id)
        return results[0] if results else None

    async def list_results(self, teacher_id: str) -> List[CompetencyResult]:
        async with self._lock:
            results = [r for r in self._results.values() if r.teacher_id == teacher_id]
            results.sort(key=lambda r: r.created_at, reverse=True)
            return copy.deepcopy(results)

    # Events

    async def create_event(self, event: AttemptEvent) -> AttemptEvent:
        async with self._lock:
            self._events.append(copy.deepcopy(event))
        return event

    async def list_events(self, attempt_id: str) -> List[AttemptEvent]:
        async with self._lock:
            events = [e for e in self._events if e.attempt_id == attempt_id]
            events.sort(key=lambda e: e.created_at)
            return copy.deepcopy(events)
