"""
Task Scheduling Module

Celery configuration and application factory for the background workers.
"""

from competency_backend.common.tasks.config import (
    TaskConfig,
    load_config_from_settings
)
from competency_backend.common.tasks.worker import create_celery_app

__all__ = [
    'TaskConfig',
    'load_config_from_settings',
    'create_celery_app',
]
