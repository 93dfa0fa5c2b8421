"""
Competency Assessment Module

This module implements the teacher competency assessment: question
selection, the attempt lifecycle, answer evaluation, scoring and the
evaluation orchestrator.
"""

from competency_backend.assessments.competency.answer_evaluation import AnswerEvaluator
from competency_backend.assessments.competency.evaluation_service import (
    EvaluationOrchestrator,
    SweepSummary,
    build_evaluation_orchestrator,
)
from competency_backend.assessments.competency.memory_repository import InMemoryCompetencyRepository
from competency_backend.assessments.competency.question_selection import select_questions
from competency_backend.assessments.competency.scoring import NarrativeGenerator, summarize_results
from competency_backend.assessments.competency.session_service import CompetencyService

__all__ = [
    'AnswerEvaluator',
    'CompetencyService',
    'EvaluationOrchestrator',
    'InMemoryCompetencyRepository',
    'NarrativeGenerator',
    'SweepSummary',
    'build_evaluation_orchestrator',
    'select_questions',
    'summarize_results',
]
