"""
Stratified Question Selection for the Competency Assessment

This module draws the question set of one attempt: a fixed number of
questions per type, sampled uniformly within each type, then shuffled
across types so the presentation order is not grouped by type.
"""

import random
from typing import Dict, List, Mapping, Optional, Sequence, TypeVar

from competency_backend.assessments.base.models import Question, QuestionType, SelectedQuestion
from competency_backend.assessments.competency.competency_config import (
    QUESTION_TYPE_ORDER,
    QUESTIONS_BY_TYPE,
)
from competency_backend.common.error_handling import InsufficientQuestionPoolError
from competency_backend.common.logger import app_logger

# Module logger
logger = app_logger.getChild("competency.question_selection")

T = TypeVar('T')


def fisher_yates_shuffle(items: Sequence[T], rng: Optional[random.Random] = None) -> List[T]:
    """
    Return a uniformly shuffled copy of ``items``.

    Args:
        items: Items to shuffle (left untouched)
        rng: Random source; the module-level generator when omitted

    Returns:
        New list with the items in random order
    """
    rng = rng or random
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def group_questions_by_type(questions: Sequence[Question]) -> Dict[QuestionType, List[Question]]:
    """Group questions by type, keeping their relative order. Every type has a key."""
    grouped: Dict[QuestionType, List[Question]] = {t: [] for t in QUESTION_TYPE_ORDER}
    for question in questions:
        grouped.setdefault(question.question_type, []).append(question)
    return grouped


def select_questions(
    pool: Sequence[Question],
    quotas: Optional[Mapping[QuestionType, int]] = None,
    rng: Optional[random.Random] = None
) -> List[SelectedQuestion]:
    """
    Draw a type-balanced, randomly ordered question set from ``pool``.

    Every type's quota is checked before anything is drawn, so a short
    pool fails without a partial selection.

    Args:
        pool: The assessment's full question pool
        quotas: Required count per question type
        rng: Random source, for reproducible draws

    Returns:
        Selected question references numbered 1..N in presentation order

    Raises:
        InsufficientQuestionPoolError: If a type has fewer questions than required
    """
    quotas = QUESTIONS_BY_TYPE if quotas is None else quotas

    # A question id is drawn at most once even if the pool repeats it
    unique: Dict[str, Question] = {}
    for question in pool:
        unique.setdefault(question.id, question)
    grouped = group_questions_by_type(list(unique.values()))

    for question_type, required in quotas.items():
        available = len(grouped.get(question_type, []))
        if available < required:
            logger.error(
                f"Insufficient {question_type.value} questions: required {required}, available {available}"
            )
            raise InsufficientQuestionPoolError(question_type.value, available, required)

    drawn: List[Question] = []
    for question_type, required in quotas.items():
        if required <= 0:
            continue
        drawn.extend(fisher_yates_shuffle(grouped[question_type], rng)[:required])

    ordered = fisher_yates_shuffle(drawn, rng)
    selected = [
        SelectedQuestion(question_id=question.id, order=index)
        for index, question in enumerate(ordered, start=1)
    ]

    logger.debug(f"Selected {len(selected)} questions from a pool of {len(unique)}")
    return selected
