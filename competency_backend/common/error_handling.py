"""
Error Handling for the Competency Engine

This module provides the error handling framework used across the engine:
1. Exception hierarchy split into precondition, external-dependency and
   systemic failures
2. An explicit retry policy and a generic "call, retry, fall back" helper
3. Structured error logging and reporting
4. Error response generation for the API layer
"""

import asyncio
import logging
import traceback
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Type variables
T = TypeVar('T')

logger = logging.getLogger(__name__)

class ErrorSeverity(Enum):
    """Severity levels for errors"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

class ErrorCode(Enum):
    """Standard error codes for the competency engine"""
    # General errors
    UNKNOWN_ERROR = "unknown_error"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND_ERROR = "not_found_error"
    TIMEOUT_ERROR = "timeout_error"
    CONFIGURATION_ERROR = "configuration_error"

    # Attempt lifecycle errors
    CONFLICT_ERROR = "conflict_error"
    INVALID_STATE = "invalid_state"
    INSUFFICIENT_QUESTION_POOL = "insufficient_question_pool"
    MISSING_ANSWERS = "missing_answers"
    INVALID_ANSWERS = "invalid_answers"

    # Database errors
    DATABASE_ERROR = "database_error"

    # External service errors
    EXTERNAL_SERVICE_ERROR = "external_service_error"
    MALFORMED_RESPONSE = "malformed_response"
    TRANSCRIPTION_ERROR = "transcription_error"
    FILE_TOO_LARGE = "file_too_large"
    UNSUPPORTED_FORMAT = "unsupported_format"
    TRANSCRIPTION_FAILED = "transcription_failed"

    # Evaluation errors
    EVALUATION_ERROR = "evaluation_error"

# HTTP status codes used by the API layer
HTTP_STATUS_BY_CODE: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.NOT_FOUND_ERROR: 404,
    ErrorCode.TIMEOUT_ERROR: 504,
    ErrorCode.CONFIGURATION_ERROR: 500,
    ErrorCode.CONFLICT_ERROR: 409,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.INSUFFICIENT_QUESTION_POOL: 422,
    ErrorCode.MISSING_ANSWERS: 422,
    ErrorCode.INVALID_ANSWERS: 422,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCode.MALFORMED_RESPONSE: 502,
    ErrorCode.TRANSCRIPTION_ERROR: 502,
    ErrorCode.FILE_TOO_LARGE: 422,
    ErrorCode.UNSUPPORTED_FORMAT: 422,
    ErrorCode.TRANSCRIPTION_FAILED: 502,
    ErrorCode.EVALUATION_ERROR: 500,
}

class ErrorInfo(BaseModel):
    """Structured information about an error"""
    model_config = ConfigDict(use_enum_values=True)

    code: ErrorCode
    message: str
    timestamp: datetime = Field(default_factory=datetime.now)
    severity: ErrorSeverity = ErrorSeverity.ERROR
    details: Optional[Dict[str, Any]] = None
    exception_type: Optional[str] = None
    exception_message: Optional[str] = None
    stack_trace: Optional[List[str]] = None
    context: Optional[Dict[str, Any]] = None

    @field_validator('stack_trace', mode='before')
    @classmethod
    def validate_stack_trace(cls, v):
        """Format stack trace if it's a string"""
        if isinstance(v, str):
            return v.splitlines()
        return v

class CompetencyError(Exception):
    """Base exception class for all competency engine errors"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.details = details or {}
        self.cause = cause
        self.context = context or {}
        self.timestamp = datetime.now()

    @property
    def http_status(self) -> int:
        """HTTP status code the API layer reports for this error"""
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_error_info(self, include_stack_trace: bool = False) -> ErrorInfo:
        """Convert the exception to an ErrorInfo object"""
        stack_trace = None
        if include_stack_trace:
            stack_trace = traceback.format_exc().splitlines()

        details = dict(self.details)
        if self.cause is not None:
            details["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }

        return ErrorInfo(
            code=self.code,
            message=self.message,
            timestamp=self.timestamp,
            severity=self.severity,
            details=details,
            exception_type=type(self).__name__,
            exception_message=str(self),
            stack_trace=stack_trace,
            context=self.context
        )

    def to_dict(self, include_stack_trace: bool = False) -> Dict[str, Any]:
        """Convert the exception to a dictionary"""
        return self.to_error_info(include_stack_trace).model_dump()

    def to_json(self, include_stack_trace: bool = False) -> str:
        """Convert the exception to a JSON string"""
        return json.dumps(self.to_dict(include_stack_trace), default=str)

    def __str__(self) -> str:
        base_str = f"{self.code.value}: {self.message}"
        if self.details:
            base_str += f" (details: {self.details})"
        if self.cause:
            base_str += f" caused by {type(self.cause).__name__}: {str(self.cause)}"
        return base_str

# Precondition failures: surfaced to the caller, never retried

class ValidationError(CompetencyError):
    """Error raised when input validation fails"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )

class NotFoundError(CompetencyError):
    """Error raised when a requested resource is not found"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code=ErrorCode.NOT_FOUND_ERROR,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )

class ConflictError(CompetencyError):
    """Error raised when a teacher may not start another attempt"""

    def __init__(
        self,
        message: str,
        attempt_id: Optional[str] = None,
        status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if attempt_id is not None:
            details["attempt_id"] = attempt_id
        if status is not None:
            details["status"] = status

        super().__init__(
            message=message,
            code=ErrorCode.CONFLICT_ERROR,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )

class InvalidStateError(CompetencyError):
    """Error raised when an operation is not allowed in the attempt's status"""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if current_status is not None:
            details["current_status"] = current_status

        super().__init__(
            message=message,
            code=ErrorCode.INVALID_STATE,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )

class InsufficientQuestionPoolError(CompetencyError):
    """Error raised when a question type has fewer questions than required"""

    def __init__(
        self,
        question_type: str,
        available: int,
        required: int,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["question_type"] = question_type
        details["available"] = available
        details["required"] = required

        if available == 0:
            message = f"No {question_type} questions available"
        else:
            message = (
                f"Insufficient {question_type} questions. "
                f"Required: {required}, Available: {available}"
            )

        super().__init__(
            message=message,
            code=ErrorCode.INSUFFICIENT_QUESTION_POOL,
            severity=ErrorSeverity.ERROR,
            details=details,
            cause=cause,
            context=context
        )
        self.question_type = question_type
        self.available = available
        self.required = required

class MissingAnswersError(CompetencyError):
    """Error raised when a submission leaves selected questions unanswered"""

    def __init__(
        self,
        missing_ids: List[str],
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["missing_question_ids"] = list(missing_ids)

        super().__init__(
            message=f"Missing answers for questions: {', '.join(missing_ids)}",
            code=ErrorCode.MISSING_ANSWERS,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )
        self.missing_ids = list(missing_ids)

class InvalidAnswersError(CompetencyError):
    """Error raised when answers reference questions outside the selection"""

    def __init__(
        self,
        invalid_ids: List[str],
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["invalid_question_ids"] = list(invalid_ids)

        super().__init__(
            message=message or f"Invalid question IDs: {', '.join(invalid_ids)}",
            code=ErrorCode.INVALID_ANSWERS,
            severity=ErrorSeverity.WARNING,
            details=details,
            cause=cause,
            context=context
        )
        self.invalid_ids = list(invalid_ids)

class ConfigurationError(CompetencyError):
    """Error raised when the engine is wired or configured incorrectly"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code=ErrorCode.CONFIGURATION_ERROR,
            severity=ErrorSeverity.CRITICAL,
            details=details,
            cause=cause,
            context=context
        )

class DatabaseError(CompetencyError):
    """Error raised when a persistence operation fails"""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if operation is not None:
            details["operation"] = operation

        super().__init__(
            message=message,
            code=ErrorCode.DATABASE_ERROR,
            severity=ErrorSeverity.ERROR,
            details=details,
            cause=cause,
            context=context
        )

# Transient external-dependency failures

class ExternalServiceError(CompetencyError):
    """Error raised when a call to an external service fails"""

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        status_code: Optional[int] = None,
        code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if service is not None:
            details["service"] = service
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(
            message=message,
            code=code,
            severity=ErrorSeverity.ERROR,
            details=details,
            cause=cause,
            context=context
        )

class MalformedResponseError(ExternalServiceError):
    """Error raised when the judgment service returns unusable output"""

    def __init__(
        self,
        message: str,
        raw_response: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if raw_response is not None:
            details["raw_response"] = raw_response[:500]

        super().__init__(
            message=message,
            service="judgment",
            code=ErrorCode.MALFORMED_RESPONSE,
            details=details,
            cause=cause,
            context=context
        )

class TranscriptionError(ExternalServiceError):
    """Base class for transcription failures"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.TRANSCRIPTION_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            service="transcription",
            code=code,
            details=details,
            cause=cause,
            context=context
        )

class FileTooLargeError(TranscriptionError):
    """Error raised when a media file exceeds the transcription size limit"""

    def __init__(
        self,
        size_bytes: int,
        limit_bytes: int,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["size_bytes"] = size_bytes
        details["limit_bytes"] = limit_bytes

        super().__init__(
            message=(
                f"File size ({size_bytes / 1024 / 1024:.2f}MB) exceeds maximum "
                f"allowed size ({limit_bytes / 1024 / 1024:.0f}MB)"
            ),
            code=ErrorCode.FILE_TOO_LARGE,
            details=details,
            cause=cause,
            context=context
        )

class UnsupportedFormatError(TranscriptionError):
    """Error raised when a media file has a format the transcriber rejects"""

    def __init__(
        self,
        file_format: str,
        supported: List[str],
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        details["format"] = file_format
        details["supported_formats"] = list(supported)

        super().__init__(
            message=f"Unsupported format: {file_format}. Supported formats: {', '.join(supported)}",
            code=ErrorCode.UNSUPPORTED_FORMAT,
            details=details,
            cause=cause,
            context=context
        )

class TranscriptionFailedError(TranscriptionError):
    """Error raised when the transcription call fails or returns nothing"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code=ErrorCode.TRANSCRIPTION_FAILED,
            details=details,
            cause=cause,
            context=context
        )

# Systemic failures

class EvaluationError(CompetencyError):
    """Error raised when a whole attempt could not be evaluated"""

    def __init__(
        self,
        message: str,
        attempt_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        details = details or {}
        if attempt_id is not None:
            details["attempt_id"] = attempt_id

        super().__init__(
            message=message,
            code=ErrorCode.EVALUATION_ERROR,
            severity=ErrorSeverity.ERROR,
            details=details,
            cause=cause,
            context=context
        )

def convert_exception(
    exception: Exception,
    default_message: str = "An unexpected error occurred",
    default_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
    default_severity: ErrorSeverity = ErrorSeverity.ERROR,
    context: Optional[Dict[str, Any]] = None
) -> CompetencyError:
    """
    Convert a standard exception to a CompetencyError.

    Args:
        exception: The exception to convert
        default_message: Default message if the exception has no message
        default_code: Default error code
        default_severity: Default error severity
        context: Optional additional context

    Returns:
        Converted CompetencyError
    """
    if isinstance(exception, CompetencyError):
        if context:
            exception.context.update(context)
        return exception

    return CompetencyError(
        message=str(exception) or default_message,
        code=default_code,
        severity=default_severity,
        cause=exception,
        context=context
    )

def linear_backoff(base_delay: float, attempt: int) -> float:
    """Delay before the retry that follows failed attempt ``attempt`` (0-based)."""
    return base_delay * (attempt + 1)

@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry policy for calls into external services.

    Attributes:
        max_retries: Additional attempts after the first one
        base_delay: Base delay in seconds fed to the backoff function
        backoff: Maps (base_delay, failed attempt index) to a delay in seconds
    """
    max_retries: int = 2
    base_delay: float = 1.0
    backoff: Callable[[float, int], float] = linear_backoff

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.backoff(self.base_delay, attempt))

async def call_with_fallback(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    fallback: Callable[[Optional[Exception]], T],
    operation_name: str = "external call",
    log: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None
) -> T:
    """
    Run an async operation under a retry policy, degrading to a fallback.

    Every exception counts as a failed attempt. Malformed responses are
    logged separately from transport failures so they stay visible, but are
    retried the same way. When all attempts fail, ``fallback`` is called with
    the last exception and its value is returned; this helper never raises
    for a failing operation.

    Args:
        operation: Zero-argument coroutine factory performing one attempt
        policy: Retry policy to apply
        fallback: Produces the degraded value from the last exception
        operation_name: Name used in log messages
        log: Logger to use (defaults to this module's logger)

    Returns:
        The operation's result, or the fallback value
    """
    log = log or logger
    last_error: Optional[Exception] = None

    for attempt in range(policy.total_attempts):
        try:
            return await operation()
        except MalformedResponseError as e:
            last_error = e
            log.warning(
                f"Malformed response from {operation_name} "
                f"(attempt {attempt + 1}/{policy.total_attempts}): {e.message}"
            )
        except Exception as e:
            last_error = e
            log.error(
                f"{operation_name} failed "
                f"(attempt {attempt + 1}/{policy.total_attempts}): {type(e).__name__}: {e}"
            )

        if attempt < policy.max_retries:
            await asyncio.sleep(policy.delay_for(attempt))

    log.error(f"{operation_name} exhausted {policy.total_attempts} attempts, using fallback")
    return fallback(last_error)

# API response generator
def error_response(
    error: Union[CompetencyError, Exception],
    include_details: bool = True,
    include_stack_trace: bool = False
) -> Dict[str, Any]:
    """
    Generate a standardized API error response.

    Args:
        error: The error to generate a response for
        include_details: Whether to include error details
        include_stack_trace: Whether to include stack trace

    Returns:
        Standardized error response dictionary
    """
    if not isinstance(error, CompetencyError):
        error = convert_exception(error)

    error_info = error.to_error_info(include_stack_trace=include_stack_trace)

    response = {
        "status": "error",
        "code": error_info.code,
        "message": error_info.message
    }

    if include_details and error_info.details:
        response["details"] = error_info.details

    return response

def log_error(
    error: Union[CompetencyError, Exception],
    level: int = logging.ERROR,
    include_stack_trace: bool = True,
    context: Optional[Dict[str, Any]] = None,
    log: Optional[logging.Logger] = None
) -> None:
    """
    Log an error with standardized format.

    Args:
        error: The error to log
        level: Logging level
        include_stack_trace: Whether to include stack trace
        context: Additional context to include
        log: Logger to use (defaults to this module's logger)
    """
    if not isinstance(error, CompetencyError):
        error = convert_exception(error, context=context)
    elif context:
        error.context.update(context)

    message = f"ERROR [{error.code.value}]: {error.message}"

    if error.context:
        context_str = ", ".join(f"{k}={v}" for k, v in error.context.items())
        message += f" (context: {context_str})"

    if error.cause:
        message += f" caused by {type(error.cause).__name__}: {str(error.cause)}"

    if include_stack_trace:
        message += f"\n{traceback.format_exc()}"

    (log or logger).log(level, message)
