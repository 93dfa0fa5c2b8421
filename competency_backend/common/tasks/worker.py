"""
Celery Application Factory

This module creates the Celery application used by the background workers
and wires its signals into the application logger.
"""

from celery import Celery
from celery.signals import beat_init, task_failure, task_retry, worker_init

from competency_backend.common.logger import app_logger
from competency_backend.common.tasks.config import TaskConfig

# Module logger
logger = app_logger.getChild("tasks.worker")


def _register_signals() -> None:
    """Register Celery signal handlers."""

    @worker_init.connect(weak=False, dispatch_uid="competency.worker_init")
    def on_worker_init(sender, **kwargs):
        logger.info(f"Worker initialized: {sender}")

    @beat_init.connect(weak=False, dispatch_uid="competency.beat_init")
    def on_beat_init(sender, **kwargs):
        logger.info(f"Beat scheduler initialized: {sender}")

    @task_failure.connect(weak=False, dispatch_uid="competency.task_failure")
    def on_task_failure(sender, task_id, exception, **kwargs):
        logger.error(f"Task failed: {sender.name} [{task_id}] -> {exception}")

    @task_retry.connect(weak=False, dispatch_uid="competency.task_retry")
    def on_task_retry(sender, request, reason, **kwargs):
        logger.warning(f"Task retrying: {sender.name} -> {reason}")


def create_celery_app(app_name: str, config: TaskConfig) -> Celery:
    """
    Create a configured Celery application.

    Args:
        app_name: Name of the Celery application
        config: Task configuration

    Returns:
        The Celery application
    """
    celery_app = Celery(
        app_name,
        broker=config.broker_url,
        backend=config.result_backend
    )
    celery_app.conf.update(config.to_celery_config())
    _register_signals()

    logger.info(f"Initialized Celery app {app_name} with broker {config.broker_url}")
    return celery_app
