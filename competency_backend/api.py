"""
Shared API utilities for the competency engine.

This module provides:
- Exception handlers mapping engine errors and request validation errors
  to standardized JSON responses
- The standard success response structure
"""

from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from competency_backend.common.error_handling import CompetencyError, error_response, log_error
from competency_backend.common.logger import app_logger

# Module logger
logger = app_logger.getChild("api")


async def competency_exception_handler(request: Request, exc: CompetencyError) -> JSONResponse:
    """
    Handle engine errors and return a standardized response.

    Precondition failures (4xx) are logged at INFO, everything else with
    the full error context.
    """
    status_code = exc.http_status
    if status_code >= 500:
        log_error(exc, include_stack_trace=False, context={"path": request.url.path}, log=logger)
    else:
        logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc.message}")

    return JSONResponse(status_code=status_code, content=error_response(exc))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handle validation errors and return a standardized response.

    Args:
        request: The incoming request
        exc: The validation exception

    Returns:
        A JSON response with error details
    """
    error_details = []
    for error in exc.errors():
        error_details.append({
            "location": list(error.get("loc", [])),
            "message": error.get("msg", "Unknown validation error"),
            "type": error.get("type", "")
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "status": "error",
            "code": "validation_error",
            "message": "Validation error",
            "details": error_details
        }
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the engine's exception handlers on ``app``."""
    app.add_exception_handler(CompetencyError, competency_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)


class APIResponse:
    """Standard API response structure"""

    @staticmethod
    def success(data: Any = None, message: str = "Success") -> Dict[str, Any]:
        """
        Create a success response.

        Args:
            data: Response data
            message: Success message

        Returns:
            Response dictionary
        """
        return {
            "status": "success",
            "message": message,
            "data": data
        }

