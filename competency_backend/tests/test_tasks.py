"""
Tests for the background task configuration and the competency Celery tasks.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from competency_backend.assessments.base.models import CompetencyResult, ProficiencyLevel
from competency_backend.assessments.competency import tasks
from competency_backend.assessments.competency.evaluation_service import SweepSummary
from competency_backend.common.tasks import TaskConfig, load_config_from_settings
from competency_backend.config import Settings

from conftest import ASSESSMENT_ID


def fake_with_orchestrator(orchestrator):
    async def run(work):
        return await work(orchestrator)
    return run


class TestTaskConfig:
    def test_celery_config(self):
        config = TaskConfig(broker_url="amqp://broker//", additional_options={"task_acks_late": True})

        celery_config = config.to_celery_config()

        assert celery_config["broker_url"] == "amqp://broker//"
        assert celery_config["result_backend"] == "rpc://"
        assert celery_config["task_acks_late"] is True
        assert "beat_schedule" not in celery_config

    def test_periodic_task(self):
        config = TaskConfig()
        config.add_periodic_task("sweep", "competency.process_submitted_attempts", 300, {"batch_size": 5})

        schedule = config.to_celery_config()["beat_schedule"]["sweep"]

        assert schedule == {
            "task": "competency.process_submitted_attempts",
            "schedule": 300.0,
            "kwargs": {"batch_size": 5},
        }

    def test_periodic_task_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            TaskConfig().add_periodic_task("sweep", "task", 0)

    def test_load_from_settings(self):
        config = load_config_from_settings(
            Settings(TASK_BROKER_URL="amqp://rabbit//", TASK_RESULT_BACKEND="rpc://results")
        )

        assert config.broker_url == "amqp://rabbit//"
        assert config.result_backend == "rpc://results"


class TestCompetencyTasks:
    def test_sweep_is_scheduled(self):
        schedule = tasks.celery_app.conf.beat_schedule["competency-evaluation-sweep"]

        assert schedule["task"] == tasks.SWEEP_TASK_NAME
        assert tasks.SWEEP_TASK_NAME in tasks.celery_app.tasks
        assert tasks.TRIGGER_TASK_NAME in tasks.celery_app.tasks

    def test_sweep_task_returns_summary(self):
        orchestrator = MagicMock()
        orchestrator.process_submitted_attempts = AsyncMock(
            return_value=SweepSummary(fetched=3, evaluated=2, retried=1, failed=0)
        )

        with patch.object(tasks, "_with_orchestrator", fake_with_orchestrator(orchestrator)):
            outcome = tasks.process_submitted_attempts(batch_size=5)

        assert outcome == {"fetched": 3, "evaluated": 2, "retried": 1, "failed": 0}
        orchestrator.process_submitted_attempts.assert_awaited_once_with(5)

    def test_trigger_task_returns_result_view(self):
        result = CompetencyResult(
            id="result-1",
            teacher_id="teacher-1",
            attempt_id="attempt-1",
            assessment_id=ASSESSMENT_ID,
            overall_score=45.0,
            proficiency_level=ProficiencyLevel.DEVELOPING,
        )
        orchestrator = MagicMock()
        orchestrator.trigger_evaluation = AsyncMock(return_value=result)

        with patch.object(tasks, "_with_orchestrator", fake_with_orchestrator(orchestrator)):
            outcome = tasks.trigger_evaluation("attempt-1")

        assert outcome["id"] == "result-1"
        assert outcome["proficiencyLevel"] == "Developing"
        orchestrator.trigger_evaluation.assert_awaited_once_with("attempt-1")
