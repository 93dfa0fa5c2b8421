"""
Competency Assessment Tasks Module

Celery tasks of the competency engine:

- ``competency.process_submitted_attempts``: periodic sweep evaluating
  submitted attempts (scheduled by celery beat)
- ``competency.trigger_evaluation``: evaluate one attempt on demand

Each task opens its own database engine and external clients, runs the
async orchestrator to completion with ``asyncio.run`` and releases them.
"""

import asyncio
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from competency_backend.assessments.competency.evaluation_service import (
    EvaluationOrchestrator,
    build_evaluation_orchestrator,
)
from competency_backend.assessments.competency.repository import SQLAlchemyCompetencyRepository
from competency_backend.assessments.competency.session_service import format_result_response
from competency_backend.common.logger import app_logger
from competency_backend.common.tasks import create_celery_app, load_config_from_settings
from competency_backend.config import settings
from competency_backend.database.init_db import (
    close_database,
    get_session_factory,
    initialize_database,
)

# Module logger
logger = app_logger.getChild("competency.tasks")

T = TypeVar("T")

SWEEP_TASK_NAME = "competency.process_submitted_attempts"
TRIGGER_TASK_NAME = "competency.trigger_evaluation"

task_config = load_config_from_settings(settings)
task_config.add_periodic_task(
    "competency-evaluation-sweep",
    SWEEP_TASK_NAME,
    settings.SWEEP_INTERVAL_SECONDS,
)

celery_app = create_celery_app("competency", task_config)


async def _with_orchestrator(work: Callable[[EvaluationOrchestrator], Awaitable[T]]) -> T:
    await initialize_database(
        database_url=settings.DATABASE_URL,
        echo=settings.SQL_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
    )
    orchestrator = build_evaluation_orchestrator(
        SQLAlchemyCompetencyRepository(get_session_factory()), settings
    )
    try:
        return await work(orchestrator)
    finally:
        await orchestrator.close()
        await close_database()


@celery_app.task(name=SWEEP_TASK_NAME)
def process_submitted_attempts(batch_size: Optional[int] = None) -> Dict[str, int]:
    """Evaluate a page of submitted attempts."""
    summary = asyncio.run(_with_orchestrator(
        lambda orchestrator: orchestrator.process_submitted_attempts(batch_size)
    ))
    return asdict(summary)


@celery_app.task(name=TRIGGER_TASK_NAME)
def trigger_evaluation(attempt_id: str) -> Dict[str, Any]:
    """Evaluate one attempt, returning the client view of its result."""
    logger.info(f"Evaluation triggered for attempt {attempt_id}")
    result = asyncio.run(_with_orchestrator(
        lambda orchestrator: orchestrator.trigger_evaluation(attempt_id)
    ))
    return format_result_response(result)
