"""
Competency Assessment Models

This module defines the core data models of the competency engine: the
assessment and its question pool, a teacher's attempt with its selected
questions and answers, per-question and per-domain evaluation results, the
final result record and the attempt audit events.
"""

import uuid
import enum
import datetime
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field

from competency_backend.common.serialization import SerializableMixin


def utc_now() -> datetime.datetime:
    """Current UTC time as a naive datetime (the form stored by the database)."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def _parse_datetime(value: Any) -> Optional[datetime.datetime]:
    if isinstance(value, str):
        return datetime.datetime.fromisoformat(value)
    return value


class QuestionType(enum.Enum):
    """Question types of the competency assessment."""
    MCQ = "MCQ"
    SHORT_ANSWER = "SHORT_ANSWER"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"

    @property
    def is_media(self) -> bool:
        """Whether answers of this type are media references to transcribe."""
        return self in (QuestionType.AUDIO, QuestionType.VIDEO)


class AttemptStatus(enum.Enum):
    """Status of a teacher's attempt."""
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    EVALUATED = "EVALUATED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.EVALUATED, AttemptStatus.FAILED)


class ProficiencyLevel(enum.Enum):
    """
    Proficiency band of the overall score.

    Bands: 0-39% Beginner, 40-59% Developing, 60-79% Proficient, 80-100% Advanced
    """
    BEGINNER = "Beginner"
    DEVELOPING = "Developing"
    PROFICIENT = "Proficient"
    ADVANCED = "Advanced"


class EventType(enum.Enum):
    """Audit event types recorded for an attempt."""
    SUBMIT = "SUBMIT"
    EVALUATED = "EVALUATED"


@dataclass
class CompetencyAssessment(SerializableMixin):
    """Assessment metadata. One active assessment is served to teachers."""

    __serializable_fields__ = ["id", "title", "description", "active", "created_at"]
    __optional_fields__ = ["description", "active", "created_at"]

    id: str
    title: str
    description: str = ""
    active: bool = True
    created_at: datetime.datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not self.id:
            self.id = str(uuid.uuid4())
        if not self.title:
            raise ValueError("Assessment title is required")
        self.created_at = _parse_datetime(self.created_at)


@dataclass
class Question(SerializableMixin):
    """
    An assessment question.

    MCQ questions carry their ``options`` and the ``correct_option``; the
    other types are answered with free text (SHORT_ANSWER) or with a stored
    media reference (AUDIO, VIDEO).
    """

    __serializable_fields__ = [
        "id", "assessment_id", "domain_key", "question_type", "prompt",
        "max_score", "options", "correct_option", "order"
    ]
    __optional_fields__ = ["options", "correct_option", "order"]

    id: str
    assessment_id: str
    domain_key: str
    question_type: QuestionType
    prompt: str
    max_score: float
    options: Optional[List[str]] = None
    correct_option: Optional[str] = None
    order: int = 0

    def __post_init__(self):
        """Validate and initialize after creation."""
        if not self.id:
            self.id = str(uuid.uuid4())

        if not self.domain_key:
            raise ValueError("Question domain is required")

        if not self.prompt:
            raise ValueError("Question prompt is required")

        if isinstance(self.question_type, str):
            try:
                self.question_type = QuestionType(self.question_type)
            except ValueError:
                raise ValueError(f"Invalid question type: {self.question_type}")

        if self.max_score is None or self.max_score <= 0:
            raise ValueError(f"Question max score must be positive, got {self.max_score}")

        if self.question_type == QuestionType.MCQ:
            if not self.options:
                raise ValueError("MCQ questions require options")
            if not self.correct_option:
                raise ValueError("MCQ questions require a correct option")
            normalized = [option.strip().lower() for option in self.options]
            if self.correct_option.strip().lower() not in normalized:
                raise ValueError("MCQ correct option must be one of the options")

    def to_public_dict(self) -> Dict[str, Any]:
        """Client view of the question; never includes the correct option."""
        data = self.to_dict()
        data.pop("correct_option", None)
        if self.question_type != QuestionType.MCQ:
            data.pop("options", None)
        return data


@dataclass
class SelectedQuestion(SerializableMixin):
    """A question drawn for an attempt and its presentation order (1-based)."""

    __serializable_fields__ = ["question_id", "order"]

    question_id: str
    order: int


@dataclass
class QuestionAnswer(SerializableMixin):
    """
    A teacher's raw answer: the selected option for MCQ, free text for
    SHORT_ANSWER, or a storage reference for AUDIO and VIDEO.
    """

    __serializable_fields__ = ["question_id", "answer"]

    question_id: str
    answer: str


@dataclass
class Attempt(SerializableMixin):
    """
    A teacher's single attempt at an assessment.

    At most one attempt exists per (teacher_id, assessment_id).
    """

    __serializable_fields__ = [
        "id", "teacher_id", "assessment_id", "status", "answers",
        "selected_questions", "retry_count", "created_at", "updated_at",
        "submitted_at", "evaluated_at"
    ]
    __optional_fields__ = [
        "status", "answers", "selected_questions", "retry_count", "created_at",
        "updated_at", "submitted_at", "evaluated_at"
    ]

    id: str
    teacher_id: str
    assessment_id: str
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    answers: List[QuestionAnswer] = field(default_factory=list)
    selected_questions: List[SelectedQuestion] = field(default_factory=list)
    retry_count: int = 0
    created_at: datetime.datetime = field(default_factory=utc_now)
    updated_at: datetime.datetime = field(default_factory=utc_now)
    submitted_at: Optional[datetime.datetime] = None
    evaluated_at: Optional[datetime.datetime] = None

    def __post_init__(self):
        """Initialize and validate attempt data."""
        if not self.id:
            self.id = str(uuid.uuid4())

        if not self.teacher_id:
            raise ValueError("Teacher ID is required")

        if not self.assessment_id:
            raise ValueError("Assessment ID is required")

        if isinstance(self.status, str):
            try:
                self.status = AttemptStatus(self.status)
            except ValueError:
                raise ValueError(f"Invalid attempt status: {self.status}")

        self.answers = [
            a if isinstance(a, QuestionAnswer) else QuestionAnswer.from_dict(a)
            for a in (self.answers or [])
        ]
        self.selected_questions = [
            s if isinstance(s, SelectedQuestion) else SelectedQuestion.from_dict(s)
            for s in (self.selected_questions or [])
        ]

        self.created_at = _parse_datetime(self.created_at)
        self.updated_at = _parse_datetime(self.updated_at)
        self.submitted_at = _parse_datetime(self.submitted_at)
        self.evaluated_at = _parse_datetime(self.evaluated_at)

    def selected_question_ids(self) -> List[str]:
        """Selected question ids in presentation order."""
        return [s.question_id for s in sorted(self.selected_questions, key=lambda s: s.order)]

    def answer_map(self) -> Dict[str, str]:
        """Map of question id to raw answer."""
        return {a.question_id: a.answer for a in self.answers}


@dataclass
class QuestionEvaluationResult(SerializableMixin):
    """Outcome of scoring one question. 0 <= score <= max_score."""

    __serializable_fields__ = [
        "question_id", "domain_key", "question_type", "score", "max_score", "feedback"
    ]
    __optional_fields__ = ["feedback"]

    question_id: str
    domain_key: str
    question_type: QuestionType
    score: float
    max_score: float
    feedback: str = ""

    def __post_init__(self):
        if isinstance(self.question_type, str):
            self.question_type = QuestionType(self.question_type)
        if self.score < 0 or self.score > self.max_score:
            raise ValueError(
                f"Score {self.score} outside [0, {self.max_score}] for question {self.question_id}"
            )


@dataclass
class DomainScore(SerializableMixin):
    """Aggregate of all question results in one competency domain."""

    __serializable_fields__ = ["domain_key", "raw_score", "max_score", "score_percent"]

    domain_key: str
    raw_score: float
    max_score: float
    score_percent: float


@dataclass
class CompetencyResult(SerializableMixin):
    """The evaluation record of an attempt. Exactly one exists per attempt."""

    __serializable_fields__ = [
        "id", "teacher_id", "attempt_id", "assessment_id", "overall_score",
        "proficiency_level", "domain_scores", "strength_domains", "gap_domains",
        "recommended_micro_pds", "question_results", "raw_feedback", "created_at"
    ]
    __optional_fields__ = [
        "domain_scores", "strength_domains", "gap_domains", "recommended_micro_pds",
        "question_results", "raw_feedback", "created_at"
    ]

    id: str
    teacher_id: str
    attempt_id: str
    assessment_id: str
    overall_score: float
    proficiency_level: ProficiencyLevel
    domain_scores: List[DomainScore] = field(default_factory=list)
    strength_domains: List[str] = field(default_factory=list)
    gap_domains: List[str] = field(default_factory=list)
    recommended_micro_pds: List[str] = field(default_factory=list)
    question_results: List[QuestionEvaluationResult] = field(default_factory=list)
    raw_feedback: str = ""
    created_at: datetime.datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not self.id:
            self.id = str(uuid.uuid4())

        if isinstance(self.proficiency_level, str):
            self.proficiency_level = ProficiencyLevel(self.proficiency_level)

        self.domain_scores = [
            d if isinstance(d, DomainScore) else DomainScore.from_dict(d)
            for d in (self.domain_scores or [])
        ]
        self.question_results = [
            q if isinstance(q, QuestionEvaluationResult) else QuestionEvaluationResult.from_dict(q)
            for q in (self.question_results or [])
        ]
        self.created_at = _parse_datetime(self.created_at)


@dataclass
class AttemptEvent(SerializableMixin):
    """Audit trail entry for an attempt."""

    __serializable_fields__ = [
        "id", "teacher_id", "attempt_id", "event_type", "metadata", "created_at"
    ]
    __optional_fields__ = ["metadata", "created_at"]

    id: str
    teacher_id: str
    attempt_id: str
    event_type: EventType
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime.datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not self.id:
            self.id = str(uuid.uuid4())
        if isinstance(self.event_type, str):
            self.event_type = EventType(self.event_type)
        self.created_at = _parse_datetime(self.created_at)
