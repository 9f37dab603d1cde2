"""
Tests for the Celery task layer

The async bodies are tested directly against the test context; the sync task
wrappers are tested with run_async patched so no broker or event loop is used.
"""
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select

from app.core.config import settings
from app.core.redis_client import DRAIN_LOCK_KEY
from app.db.models.webhook_job import JobStatus, WebhookJob
from app.workers import tasks
from app.workers.celery_app import celery_app


def _consume(result):
    """Stand-in for run_async: closes the coroutine and returns a canned value"""
    def _run(coro):
        coro.close()
        return result
    return _run


class TestAsyncBodies:

    @pytest.mark.integration
    async def test_dispatch_event_enqueues(self, service_context, subscription_factory, session_factory) -> None:
        await subscription_factory()
        await subscription_factory(url="https://other.example.com/in")

        triggered = await tasks.dispatch_event(
            service_context, "order.created", "tenant-a", {"id": 1}
        )

        assert triggered == 2
        async with session_factory() as db:
            assert await db.scalar(select(func.count()).select_from(WebhookJob)) == 2

    @pytest.mark.integration
    async def test_drain_jobs_delivers_everything_due(
        self, service_context, subscription_factory, subscriber, session_factory, fake_redis
    ) -> None:
        for i in range(3):
            await subscription_factory(url=f"https://hooks.example.com/{i}")
        await tasks.dispatch_event(service_context, "order.created", "tenant-a", {})

        assert await tasks.drain_jobs(service_context) == 3

        assert len(subscriber.requests) == 3
        async with session_factory() as db:
            statuses = (await db.execute(select(WebhookJob.status))).scalars().all()
        assert set(statuses) == {JobStatus.SUCCEEDED}
        assert fake_redis.store == {}

    @pytest.mark.integration
    async def test_drain_jobs_skips_while_another_drain_holds_the_lock(
        self, service_context, subscription_factory, subscriber, fake_redis
    ) -> None:
        await subscription_factory()
        await tasks.dispatch_event(service_context, "order.created", "tenant-a", {})
        fake_redis.store[DRAIN_LOCK_KEY] = "other-worker"

        assert await tasks.drain_jobs(service_context) == 0

        assert subscriber.requests == []
        assert fake_redis.store[DRAIN_LOCK_KEY] == "other-worker"


class TestTaskWrappers:

    @pytest.mark.unit
    def test_dispatch_nudges_drain_when_triggered(self) -> None:
        with patch.object(tasks, "run_async", side_effect=_consume(2)), \
                patch.object(tasks, "process_webhook_jobs") as drain:
            result = tasks.dispatch_webhook_event("order.created", "tenant-a", {"id": 1})

        assert result == {"event": "order.created", "tenant_id": "tenant-a", "triggered_count": 2}
        drain.delay.assert_called_once_with()

    @pytest.mark.unit
    def test_dispatch_without_matches_does_not_nudge(self) -> None:
        with patch.object(tasks, "run_async", side_effect=_consume(0)), \
                patch.object(tasks, "process_webhook_jobs") as drain:
            result = tasks.dispatch_webhook_event("order.created", "tenant-a", {})

        assert result["triggered_count"] == 0
        drain.delay.assert_not_called()

    @pytest.mark.unit
    def test_process_reports_attempts(self) -> None:
        with patch.object(tasks, "run_async", side_effect=_consume(7)):
            assert tasks.process_webhook_jobs() == {"attempts": 7}

    @pytest.mark.unit
    def test_reclaim_logs_when_jobs_recovered(self) -> None:
        with patch.object(tasks, "run_async", side_effect=_consume(3)), \
                patch.object(tasks, "logger", MagicMock()) as logger:
            assert tasks.reclaim_stuck_webhook_jobs() == {"reclaimed": 3}

        logger.warning.assert_called_once()

    @pytest.mark.unit
    def test_cleanup_reports_deleted(self) -> None:
        with patch.object(tasks, "run_async", side_effect=_consume(4)):
            assert tasks.cleanup_finished_webhook_jobs(days=3) == {"deleted": 4}


class TestCeleryConfig:

    @pytest.mark.unit
    def test_tasks_registered(self) -> None:
        for name in (
            "app.workers.tasks.dispatch_webhook_event",
            "app.workers.tasks.process_webhook_jobs",
            "app.workers.tasks.reclaim_stuck_webhook_jobs",
            "app.workers.tasks.cleanup_finished_webhook_jobs",
        ):
            assert name in celery_app.tasks

    @pytest.mark.unit
    def test_routes_separate_fanout_from_delivery(self) -> None:
        routes = celery_app.conf.task_routes
        assert routes["app.workers.tasks.dispatch_webhook_event"]["queue"] == "events"
        assert routes["app.workers.tasks.process_webhook_jobs"]["queue"] == "webhooks"
        assert routes["app.workers.tasks.reclaim_stuck_webhook_jobs"]["queue"] == "maintenance"

    @pytest.mark.unit
    def test_hard_time_limit_matches_settings(self) -> None:
        assert celery_app.conf.task_time_limit == settings.CELERY_TASK_TIME_LIMIT_SECONDS
        assert settings.WEBHOOK_DRAIN_MAX_SECONDS < settings.CELERY_TASK_TIME_LIMIT_SECONDS

    @pytest.mark.unit
    def test_beat_schedule(self) -> None:
        schedule = celery_app.conf.beat_schedule
        assert schedule["process-webhook-jobs"]["task"] == "app.workers.tasks.process_webhook_jobs"
        assert schedule["reclaim-stuck-webhook-jobs-every-minute"]["schedule"] == 60.0
        assert "cleanup-finished-webhook-jobs-daily" in schedule
