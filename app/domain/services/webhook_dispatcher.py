"""
Webhook Dispatcher - fans an event out to matching subscriptions

Used through the ``dispatch_webhook_event`` Celery task by other subsystems
(fire-and-forget); callers never see delivery outcomes.
"""
from dataclasses import dataclass
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.webhook_subscription import WebhookSubscription
from app.domain.services.delivery_queue import DeliveryJobSpec, DeliveryQueue

logger = get_logger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    triggered_count: int
    job_ids: tuple[str, ...] = ()


class WebhookDispatcher:
    """Matches active subscriptions and enqueues one job per match"""

    def __init__(self, db: AsyncSession, queue: DeliveryQueue):
        self.db = db
        self.queue = queue

    async def matching_subscriptions(
        self, event: str, tenant_id: str
    ) -> List[WebhookSubscription]:
        # Event membership is checked in Python; JSON containment is not portable
        result = await self.db.execute(
            select(WebhookSubscription)
            .where(
                WebhookSubscription.tenant_id == tenant_id,
                WebhookSubscription.is_active.is_(True),
            )
            .order_by(WebhookSubscription.created_at)
        )
        return [s for s in result.scalars().all() if s.subscribes_to(event)]

    async def dispatch(
        self, event: str, tenant_id: str, payload: Dict[str, Any]
    ) -> DispatchResult:
        """
        Enqueue a delivery for every active subscription of the tenant that
        lists ``event``. Each job gets its own snapshot of url, secret and
        payload. With no match the queue is not touched.
        """
        subscriptions = await self.matching_subscriptions(event, tenant_id)
        if not subscriptions:
            logger.debug(
                "No webhook subscriptions for event",
                extra_data={"event": event, "tenant_id": tenant_id},
            )
            return DispatchResult(triggered_count=0)

        specs = [
            DeliveryJobSpec(
                subscription_id=s.id,
                tenant_id=tenant_id,
                event=event,
                url=s.url,
                secret=s.secret,
                payload=dict(payload),
            )
            for s in subscriptions
        ]
        jobs = await self.queue.enqueue(specs)

        logger.info(
            "Webhook event dispatched",
            extra_data={
                "event": event,
                "tenant_id": tenant_id,
                "triggered_count": len(jobs),
            },
        )
        return DispatchResult(
            triggered_count=len(jobs),
            job_ids=tuple(job.id for job in jobs),
        )
