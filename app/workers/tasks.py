"""
Celery Tasks for outbound webhooks

Thin wrappers: each task builds its own service context on a fresh event
loop, runs the domain service, and closes the context again.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict

from app.core.context import ServiceContext, task_context
from app.core.logging import get_logger, log_async_operation, set_correlation_id
from app.core.redis_client import drain_lock
from app.domain.services.delivery_queue import SqlDeliveryQueue, utcnow
from app.domain.services.delivery_worker import DeliveryWorker, DeliveryWorkerPool
from app.domain.services.webhook_dispatcher import WebhookDispatcher
from app.workers.celery_app import celery_app

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def dispatch_event(
    context: ServiceContext, event: str, tenant_id: str, payload: Dict[str, Any]
) -> int:
    queue = SqlDeliveryQueue(context.session_factory, context.settings)
    async with context.session_factory() as db:
        dispatcher = WebhookDispatcher(db, queue)
        result = await dispatcher.dispatch(event, tenant_id, payload)
    return result.triggered_count


@log_async_operation("drain_webhook_jobs")
async def drain_jobs(context: ServiceContext) -> int:
    """
    Run the bounded worker pool until nothing is due or the drain budget is spent.

    Overlapping runs (beat ticks, dispatch nudges, several worker processes)
    share one Redis lock; all but the holder return 0 at once.
    """
    settings = context.settings
    queue = SqlDeliveryQueue(context.session_factory, settings)
    worker = DeliveryWorker(context.session_factory, context.http_client, queue, settings)
    pool = DeliveryWorkerPool(
        queue,
        worker,
        settings.WEBHOOK_CONCURRENCY,
        lock=drain_lock(context.redis, settings),
        max_seconds=settings.WEBHOOK_DRAIN_MAX_SECONDS,
    )
    return await pool.run_until_idle()


@celery_app.task(name="app.workers.tasks.dispatch_webhook_event")
def dispatch_webhook_event(event: str, tenant_id: str, payload: Dict[str, Any]):
    """
    Fire-and-forget entry point for other subsystems:

        dispatch_webhook_event.delay("order.created", tenant_id, {...})

    Fans the event out to matching subscriptions and nudges the drain task.
    """

    async def _dispatch():
        async with task_context() as context:
            return await dispatch_event(context, event, tenant_id, payload)

    triggered = run_async(_dispatch())
    if triggered:
        process_webhook_jobs.delay()
    return {"event": event, "tenant_id": tenant_id, "triggered_count": triggered}


@celery_app.task(name="app.workers.tasks.process_webhook_jobs")
def process_webhook_jobs():
    """Deliver every due job with at most WEBHOOK_CONCURRENCY in flight"""

    async def _process():
        async with task_context() as context:
            return await drain_jobs(context)

    attempts = run_async(_process())
    return {"attempts": attempts}


@celery_app.task(name="app.workers.tasks.reclaim_stuck_webhook_jobs")
def reclaim_stuck_webhook_jobs():
    """Return jobs whose worker died mid-attempt to the queue"""

    async def _reclaim():
        async with task_context() as context:
            settings = context.settings
            queue = SqlDeliveryQueue(context.session_factory, settings)
            cutoff = utcnow() - timedelta(minutes=settings.WEBHOOK_STUCK_MINUTES)
            return await queue.reclaim_stuck(cutoff)

    reclaimed = run_async(_reclaim())
    if reclaimed:
        logger.warning(
            "Reclaimed stuck webhook jobs",
            extra_data={"count": reclaimed},
        )
    return {"reclaimed": reclaimed}


@celery_app.task(name="app.workers.tasks.cleanup_finished_webhook_jobs")
def cleanup_finished_webhook_jobs(days: int | None = None):
    """Delete finished job rows. The delivery log is kept."""

    async def _cleanup():
        async with task_context() as context:
            retention = days if days is not None else context.settings.WEBHOOK_JOB_RETENTION_DAYS
            queue = SqlDeliveryQueue(context.session_factory, context.settings)
            return await queue.purge_finished(utcnow() - timedelta(days=retention))

    deleted = run_async(_cleanup())
    logger.info(
        "Cleaned up finished webhook jobs",
        extra_data={"deleted": deleted},
    )
    return {"deleted": deleted}
