"""
Common Components for the competency backend

This package contains infrastructure shared by the assessment engine:
1. Logging - Centralized logger configuration
2. Error Handling - Error taxonomy, retry policy and error responses
3. Serialization - JSON conversion of dataclasses, enums and datetimes
4. Tasks - Celery configuration and worker factory
"""

from competency_backend.common.logger import app_logger, log_execution_time
from competency_backend.common.error_handling import (
    CompetencyError, ErrorCode, ErrorSeverity, RetryPolicy,
    call_with_fallback, error_response, log_error
)

__all__ = [
    # Logging
    'app_logger', 'log_execution_time',

    # Error handling
    'CompetencyError', 'ErrorCode', 'ErrorSeverity', 'RetryPolicy',
    'call_with_fallback', 'error_response', 'log_error',
]
