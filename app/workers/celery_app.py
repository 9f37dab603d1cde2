"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from app.core.config import settings

celery_app = Celery(
    "tenant_webhooks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.CELERY_TASK_TIME_LIMIT_SECONDS,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_ignore_result=True,
)

# Separate queues so delivery draining never starves event fan-out
celery_app.conf.task_queues = (
    Queue("webhooks"),
    Queue("events"),
    Queue("maintenance"),
)
celery_app.conf.task_default_queue = "webhooks"
celery_app.conf.task_routes = {
    "app.workers.tasks.process_webhook_jobs": {"queue": "webhooks"},
    "app.workers.tasks.dispatch_webhook_event": {"queue": "events"},
    "app.workers.tasks.reclaim_stuck_webhook_jobs": {"queue": "maintenance"},
    "app.workers.tasks.cleanup_finished_webhook_jobs": {"queue": "maintenance"},
}

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-webhook-jobs": {
        "task": "app.workers.tasks.process_webhook_jobs",
        "schedule": settings.WEBHOOK_POLL_INTERVAL_SECONDS,
        # A late drain is useless once the next one is due
        "options": {"expires": max(settings.WEBHOOK_POLL_INTERVAL_SECONDS * 5, 5.0)},
    },
    "reclaim-stuck-webhook-jobs-every-minute": {
        "task": "app.workers.tasks.reclaim_stuck_webhook_jobs",
        "schedule": 60.0,
    },
    "cleanup-finished-webhook-jobs-daily": {
        "task": "app.workers.tasks.cleanup_finished_webhook_jobs",
        "schedule": crontab(hour="3", minute="30"),
    },
}
