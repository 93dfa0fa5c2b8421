"""
SQLAlchemy ORM models for the competency assessment.

This module defines the database models of the competency engine:
- CompetencyAssessmentRecord: assessment metadata
- CompetencyQuestionRecord: the question pool of an assessment
- CompetencyAttemptRecord: a teacher's attempt (one per teacher and assessment)
- CompetencyResultRecord: the evaluation result (one per attempt)
- CompetencyEventRecord: attempt audit trail

Nested values (answers, selected questions, domain scores, question results)
are stored as JSON columns.
"""

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text
)
from sqlalchemy.schema import UniqueConstraint

from competency_backend.assessments.base.models import (
    Attempt,
    AttemptEvent,
    AttemptStatus,
    CompetencyAssessment,
    CompetencyResult,
    Question,
    utc_now,
)
from competency_backend.common.serialization import serialize
from competency_backend.database.base import ModelBase


class CompetencyAssessmentRecord(ModelBase):
    """Assessment metadata."""
    __tablename__ = "competency_assessment"

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    @classmethod
    def from_domain(cls, assessment: CompetencyAssessment) -> "CompetencyAssessmentRecord":
        return cls(
            id=assessment.id,
            title=assessment.title,
            description=assessment.description,
            active=assessment.active,
            created_at=assessment.created_at,
        )

    def to_domain(self) -> CompetencyAssessment:
        return CompetencyAssessment(
            id=self.id,
            title=self.title,
            description=self.description or "",
            active=bool(self.active),
            created_at=self.created_at,
        )


class CompetencyQuestionRecord(ModelBase):
    """A question of an assessment's pool."""
    __tablename__ = "competency_question"

    id = Column(String(64), primary_key=True)
    assessment_id = Column(
        String(64), ForeignKey("competency_assessment.id"), nullable=False, index=True
    )
    domain_key = Column(String(100), nullable=False)
    question_type = Column(String(20), nullable=False)
    prompt = Column(Text, nullable=False)
    max_score = Column(Float, nullable=False)
    options = Column(JSON, nullable=True)
    correct_option = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    @classmethod
    def from_domain(cls, question: Question) -> "CompetencyQuestionRecord":
        return cls(
            id=question.id,
            assessment_id=question.assessment_id,
            domain_key=question.domain_key,
            question_type=question.question_type.value,
            prompt=question.prompt,
            max_score=question.max_score,
            options=list(question.options) if question.options is not None else None,
            correct_option=question.correct_option,
            sort_order=question.order,
        )

    def to_domain(self) -> Question:
        return Question(
            id=self.id,
            assessment_id=self.assessment_id,
            domain_key=self.domain_key,
            question_type=self.question_type,
            prompt=self.prompt,
            max_score=self.max_score,
            options=self.options,
            correct_option=self.correct_option,
            order=self.sort_order,
        )


class CompetencyAttemptRecord(ModelBase):
    """A teacher's attempt. The unique constraint enforces one attempt per teacher and assessment."""
    __tablename__ = "competency_attempt"

    id = Column(String(64), primary_key=True)
    teacher_id = Column(String(255), nullable=False)
    assessment_id = Column(String(64), ForeignKey("competency_assessment.id"), nullable=False)
    status = Column(String(20), nullable=False, default=AttemptStatus.IN_PROGRESS.value)
    answers = Column(JSON, nullable=False, default=list)
    selected_questions = Column(JSON, nullable=False, default=list)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)
    submitted_at = Column(DateTime, nullable=True)
    evaluated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("teacher_id", "assessment_id"),
        Index("idx_competency_attempt_status_submitted", "status", "submitted_at"),
    )

    @classmethod
    def from_domain(cls, attempt: Attempt) -> "CompetencyAttemptRecord":
        return cls(
            id=attempt.id,
            teacher_id=attempt.teacher_id,
            assessment_id=attempt.assessment_id,
            status=attempt.status.value,
            answers=serialize(attempt.answers),
            selected_questions=serialize(attempt.selected_questions),
            retry_count=attempt.retry_count,
            created_at=attempt.created_at,
            updated_at=attempt.updated_at,
            submitted_at=attempt.submitted_at,
            evaluated_at=attempt.evaluated_at,
        )

    def to_domain(self) -> Attempt:
        return Attempt(
            id=self.id,
            teacher_id=self.teacher_id,
            assessment_id=self.assessment_id,
            status=self.status,
            answers=list(self.answers or []),
            selected_questions=list(self.selected_questions or []),
            retry_count=self.retry_count or 0,
            created_at=self.created_at,
            updated_at=self.updated_at,
            submitted_at=self.submitted_at,
            evaluated_at=self.evaluated_at,
        )


class CompetencyResultRecord(ModelBase):
    """The evaluation result of an attempt. The unique attempt_id keeps it to one per attempt."""
    __tablename__ = "competency_result"

    id = Column(String(64), primary_key=True)
    attempt_id = Column(
        String(64), ForeignKey("competency_attempt.id"), nullable=False, unique=True
    )
    teacher_id = Column(String(255), nullable=False, index=True)
    assessment_id = Column(String(64), nullable=False)
    overall_score = Column(Float, nullable=False)
    proficiency_level = Column(String(20), nullable=False)
    domain_scores = Column(JSON, nullable=False, default=list)
    strength_domains = Column(JSON, nullable=False, default=list)
    gap_domains = Column(JSON, nullable=False, default=list)
    recommended_micro_pds = Column(JSON, nullable=False, default=list)
    question_results = Column(JSON, nullable=False, default=list)
    raw_feedback = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utc_now)

    @classmethod
    def from_domain(cls, result: CompetencyResult) -> "CompetencyResultRecord":
        return cls(
            id=result.id,
            attempt_id=result.attempt_id,
            teacher_id=result.teacher_id,
            assessment_id=result.assessment_id,
            overall_score=result.overall_score,
            proficiency_level=result.proficiency_level.value,
            domain_scores=serialize(result.domain_scores),
            strength_domains=list(result.strength_domains),
            gap_domains=list(result.gap_domains),
            recommended_micro_pds=list(result.recommended_micro_pds),
            question_results=serialize(result.question_results),
            raw_feedback=result.raw_feedback,
            created_at=result.created_at,
        )

    def to_domain(self) -> CompetencyResult:
        return CompetencyResult(
            id=self.id,
            teacher_id=self.teacher_id,
            attempt_id=self.attempt_id,
            assessment_id=self.assessment_id,
            overall_score=self.overall_score,
            proficiency_level=self.proficiency_level,
            domain_scores=list(self.domain_scores or []),
            strength_domains=list(self.strength_domains or []),
            gap_domains=list(self.gap_domains or []),
            recommended_micro_pds=list(self.recommended_micro_pds or []),
            question_results=list(self.question_results or []),
            raw_feedback=self.raw_feedback or "",
            created_at=self.created_at,
        )


class CompetencyEventRecord(ModelBase):
    """Attempt audit event."""
    __tablename__ = "competency_event"

    id = Column(String(64), primary_key=True)
    teacher_id = Column(String(255), nullable=False)
    attempt_id = Column(String(64), ForeignKey("competency_attempt.id"), nullable=False, index=True)
    event_type = Column(String(20), nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    @classmethod
    def from_domain(cls, event: AttemptEvent) -> "CompetencyEventRecord":
        return cls(
            id=event.id,
            teacher_id=event.teacher_id,
            attempt_id=event.attempt_id,
            event_type=event.event_type.value,
            event_metadata=serialize(event.metadata),
            created_at=event.created_at,
        )

    def to_domain(self) -> AttemptEvent:
        return AttemptEvent(
            id=self.id,
            teacher_id=self.teacher_id,
            attempt_id=self.attempt_id,
            event_type=self.event_type,
            metadata=dict(self.event_metadata or {}),
            created_at=self.created_at,
        )
