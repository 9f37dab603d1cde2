"""
Domain Services
"""
from app.domain.services.delivery_log import DeliveryLogService
from app.domain.services.delivery_queue import (
    DeliveryJobSpec,
    DeliveryQueue,
    SqlDeliveryQueue,
)
from app.domain.services.delivery_worker import DeliveryWorker, DeliveryWorkerPool
from app.domain.services.webhook_dispatcher import DispatchResult, WebhookDispatcher
from app.domain.services.webhook_registry import WebhookRegistryService

__all__ = [
    "DeliveryLogService",
    "DeliveryJobSpec",
    "DeliveryQueue",
    "SqlDeliveryQueue",
    "DeliveryWorker",
    "DeliveryWorkerPool",
    "DispatchResult",
    "WebhookDispatcher",
    "WebhookRegistryService",
]
