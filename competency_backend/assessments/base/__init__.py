"""
Base Competency Architecture

This package defines the data model and the persistence interface shared by
the competency engine's services and repositories.
"""

from competency_backend.assessments.base.models import (
    Attempt,
    AttemptEvent,
    AttemptStatus,
    CompetencyAssessment,
    CompetencyResult,
    DomainScore,
    EventType,
    ProficiencyLevel,
    Question,
    QuestionAnswer,
    QuestionEvaluationResult,
    QuestionType,
    SelectedQuestion,
)

from competency_backend.assessments.base.repositories import CompetencyRepository

__all__ = [
    # Models
    'Attempt',
    'AttemptEvent',
    'AttemptStatus',
    'CompetencyAssessment',
    'CompetencyResult',
    'DomainScore',
    'EventType',
    'ProficiencyLevel',
    'Question',
    'QuestionAnswer',
    'QuestionEvaluationResult',
    'QuestionType',
    'SelectedQuestion',

    # Repositories
    'CompetencyRepository',
]
