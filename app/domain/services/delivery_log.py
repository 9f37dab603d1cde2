"""
Delivery Log Service - append-only audit of delivery attempts
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.webhook_delivery import WebhookDelivery

DEFAULT_RESPONSE_BODY_MAX_CHARS = 1000


def truncate_body(body: str | None, max_chars: int = DEFAULT_RESPONSE_BODY_MAX_CHARS) -> str | None:
    if body is None:
        return None
    return body[:max_chars]


class DeliveryLogService:
    """Writes and reads delivery attempt rows.

    Rows are only ever inserted. Tenant checks are the caller's job
    (see ``WebhookRegistryService.list_deliveries``).
    """

    def __init__(self, db: AsyncSession, *, response_body_max_chars: int = DEFAULT_RESPONSE_BODY_MAX_CHARS):
        self.db = db
        self.response_body_max_chars = response_body_max_chars

    async def record_attempt(
        self,
        *,
        webhook_id: str,
        job_id: str,
        event: str,
        payload: dict[str, Any],
        url: str,
        attempt: int,
        status_code: int | None,
        response_body: str | None,
        error: str | None,
        delivered_at: datetime | None,
    ) -> WebhookDelivery:
        """Add one attempt row to the session. The caller commits."""
        row = WebhookDelivery(
            webhook_id=webhook_id,
            job_id=job_id,
            event=event,
            payload=payload,
            url=url,
            attempts=attempt,
            status_code=status_code,
            response_body=truncate_body(response_body, self.response_body_max_chars),
            error=error[:1000] if error else None,
            delivered_at=delivered_at,
        )
        self.db.add(row)
        return row

    async def list_for_subscription(
        self, webhook_id: str, *, page: int = 1, limit: int = 50
    ) -> Tuple[List[WebhookDelivery], int]:
        """Most recent first"""
        offset = (page - 1) * limit
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(WebhookDelivery.webhook_id == webhook_id)
            .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.attempts.desc())
            .offset(offset)
            .limit(limit)
        )
        items = list(result.scalars().all())

        total = await self.db.scalar(
            select(func.count()).select_from(WebhookDelivery).where(
                WebhookDelivery.webhook_id == webhook_id
            )
        )
        return items, int(total or 0)

    async def history_for_job(self, webhook_id: str, job_id: str) -> List[WebhookDelivery]:
        """Full retry history of one job, in attempt order"""
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(
                WebhookDelivery.webhook_id == webhook_id,
                WebhookDelivery.job_id == job_id,
            )
            .order_by(WebhookDelivery.attempts)
        )
        return list(result.scalars().all())
