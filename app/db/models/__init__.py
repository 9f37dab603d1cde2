"""
Database Models
"""
from app.db.models.webhook_subscription import WebhookSubscription
from app.db.models.webhook_job import WebhookJob, JobStatus
from app.db.models.webhook_delivery import WebhookDelivery

__all__ = [
    "WebhookSubscription",
    "WebhookJob",
    "JobStatus",
    "WebhookDelivery",
]
