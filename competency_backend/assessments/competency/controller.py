"""
Competency Assessment Controller

This module implements the API endpoints of the competency assessment:
loading the assessment, starting an attempt, saving progress, submitting,
and reading attempts and results.

The calling teacher is identified by the ``X-Teacher-Id`` header; the
surrounding platform authenticates requests before they reach this router.
Engine errors propagate to the application's exception handlers, which map
them to HTTP status codes.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from competency_backend.api import APIResponse
from competency_backend.assessments.base.repositories import CompetencyRepository
from competency_backend.assessments.competency.evaluation_service import EvaluationOrchestrator
from competency_backend.assessments.competency.repository import SQLAlchemyCompetencyRepository
from competency_backend.assessments.competency.session_service import (
    CompetencyService,
    format_attempt_response,
    format_result_response,
)
from competency_backend.common.error_handling import ConfigurationError
from competency_backend.common.logger import app_logger
from competency_backend.config import Settings, settings
from competency_backend.database.init_db import get_session_factory

# Module logger
logger = app_logger.getChild("competency.controller")

router = APIRouter()


# Request Models
class AnswerPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_id: str = Field(..., alias="questionId", min_length=1)
    answer: str = ""


class AnswersRequest(BaseModel):
    answers: List[AnswerPayload] = Field(default_factory=list)

    def to_answers(self) -> List[Dict[str, str]]:
        return [{"question_id": a.question_id, "answer": a.answer} for a in self.answers]


# Dependencies
def get_settings() -> Settings:
    return settings


def get_repository() -> CompetencyRepository:
    return SQLAlchemyCompetencyRepository(get_session_factory())


def get_competency_service(
    repository: CompetencyRepository = Depends(get_repository)
) -> CompetencyService:
    return CompetencyService(repository)


def get_evaluation_orchestrator(request: Request) -> EvaluationOrchestrator:
    """The orchestrator built at application startup."""
    orchestrator = getattr(request.app.state, "evaluation_orchestrator", None)
    if orchestrator is None:
        raise ConfigurationError("Evaluation orchestrator is not configured")
    return orchestrator


def get_teacher_id(x_teacher_id: str = Header(..., alias="X-Teacher-Id", min_length=1)) -> str:
    return x_teacher_id


# Endpoints
@router.get("/assessment")
async def get_assessment(
    assessment_id: Optional[str] = Query(None, alias="assessmentId"),
    service: CompetencyService = Depends(get_competency_service)
) -> Dict[str, Any]:
    """Get the active assessment and the size of its question pool."""
    assessment, questions = await service.get_assessment_with_questions(assessment_id)
    return APIResponse.success({
        "id": assessment.id,
        "title": assessment.title,
        "description": assessment.description,
        "questionCount": len(questions),
    })


@router.post("/attempts/start")
async def start_attempt(
    assessment_id: Optional[str] = Query(None, alias="assessmentId"),
    teacher_id: str = Depends(get_teacher_id),
    service: CompetencyService = Depends(get_competency_service)
) -> Dict[str, Any]:
    """Start the teacher's attempt, or resume it while it is in progress."""
    started = await service.start(teacher_id, assessment_id)
    return APIResponse.success(
        {
            "attempt": format_attempt_response(started.attempt),
            "questions": started.questions_by_type(),
            "created": started.created,
        },
        message="Assessment started" if started.created else "Assessment resumed",
    )


@router.put("/attempts/{attempt_id}/progress")
async def save_progress(
    attempt_id: str,
    payload: AnswersRequest,
    teacher_id: str = Depends(get_teacher_id),
    service: CompetencyService = Depends(get_competency_service)
) -> Dict[str, Any]:
    """Replace the saved answers of an in-progress attempt."""
    attempt = await service.save_progress(teacher_id, attempt_id, payload.to_answers())
    return APIResponse.success(format_attempt_response(attempt), message="Progress saved")


@router.post("/attempts/{attempt_id}/submit")
async def submit_attempt(
    attempt_id: str,
    payload: AnswersRequest,
    request: Request,
    teacher_id: str = Depends(get_teacher_id),
    service: CompetencyService = Depends(get_competency_service),
    config: Settings = Depends(get_settings)
) -> Dict[str, Any]:
    """
    Submit the final answers.

    With ``EVALUATE_ON_SUBMIT`` the attempt is evaluated right away; if that
    fails, the attempt stays SUBMITTED and the periodic sweep picks it up.
    """
    # A missing orchestrator must fail the request before the attempt changes
    orchestrator = get_evaluation_orchestrator(request) if config.EVALUATE_ON_SUBMIT else None
    attempt = await service.submit(teacher_id, attempt_id, payload.to_answers())

    result = None
    if orchestrator is not None:
        try:
            result = await orchestrator.evaluate_and_save(attempt)
        except Exception as e:
            logger.error(
                f"Evaluation after submit failed for attempt {attempt_id}, "
                f"leaving it for the sweep: {type(e).__name__}: {e}"
            )

    if result is not None:
        attempt = await service.get_attempt(teacher_id, attempt_id)

    return APIResponse.success(
        {
            "attempt": format_attempt_response(attempt),
            "result": format_result_response(result) if result is not None else None,
        },
        message="Assessment submitted",
    )


@router.get("/attempts")
async def list_attempts(
    teacher_id: str = Depends(get_teacher_id),
    service: CompetencyService = Depends(get_competency_service)
) -> Dict[str, Any]:
    attempts = await service.list_attempts(teacher_id)
    return APIResponse.success([format_attempt_response(a) for a in attempts])


@router.get("/attempts/{attempt_id}")
async def get_attempt(
    attempt_id: str,
    teacher_id: str = Depends(get_teacher_id),
    service: CompetencyService = Depends(get_competency_service)
) -> Dict[str, Any]:
    attempt = await service.get_attempt(teacher_id, attempt_id)
    return APIResponse.success(format_attempt_response(attempt))


@router.get("/results/latest")
async def get_latest_result(
    teacher_id: str = Depends(get_teacher_id),
    service: CompetencyService = Depends(get_competency_service)
) -> Dict[str, Any]:
    result = await service.get_result(teacher_id)
    return APIResponse.success(format_result_response(result))


@router.get("/results")
async def list_results(
    teacher_id: str = Depends(get_teacher_id),
    service: CompetencyService = Depends(get_competency_service)
) -> Dict[str, Any]:
    results = await service.list_results(teacher_id)
    return APIResponse.success([format_result_response(r) for r in results])


@router.post("/attempts/{attempt_id}/evaluate")
async def trigger_evaluation(
    attempt_id: str,
    orchestrator: EvaluationOrchestrator = Depends(get_evaluation_orchestrator)
) -> Dict[str, Any]:
    """Evaluate a submitted attempt on demand (administrative re-run)."""
    result = await orchestrator.trigger_evaluation(attempt_id)
    return APIResponse.success(format_result_response(result), message="Attempt evaluated")
