"""
Webhook Registry Service - per-tenant subscription management

Every lookup is scoped by tenant_id: a subscription owned by another tenant
is reported exactly like one that does not exist. Registry operations never
enqueue deliveries.
"""
import re
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.exceptions import ErrorCode, ServiceError, ServiceResult
from app.core.logging import get_logger
from app.db.models.webhook_delivery import WebhookDelivery
from app.db.models.webhook_subscription import WebhookSubscription, generate_webhook_secret
from app.domain.services.delivery_log import DeliveryLogService

logger = get_logger(__name__)

MAX_URL_LENGTH = 2048
MAX_EVENT_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 500
ALLOWED_SCHEMES = ("http", "https")
# Event names travel in the X-Webhook-Event header, which is ASCII only
EVENT_NAME_PATTERN = re.compile(r"[A-Za-z0-9._:-]+")

# Sentinel for "field not supplied" in partial updates
_UNSET = object()


def validate_url(url: Optional[str]) -> Optional[ServiceError]:
    """Absolute http(s) URL with a host"""
    if not url or not url.strip():
        return ServiceError.validation(
            "url is required", "url", ErrorCode.WEBHOOK_INVALID_URL
        )
    url = url.strip()
    if len(url) > MAX_URL_LENGTH:
        return ServiceError.validation(
            f"url must be at most {MAX_URL_LENGTH} characters",
            "url",
            ErrorCode.WEBHOOK_INVALID_URL,
        )
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError:
        hostname = None
        parts = None
    if parts is None or parts.scheme.lower() not in ALLOWED_SCHEMES or not hostname:
        return ServiceError.validation(
            "url must be an absolute http or https URL",
            "url",
            ErrorCode.WEBHOOK_INVALID_URL,
        )
    return None


def normalize_events(events: Optional[Iterable[str]]) -> List[str]:
    """Strip, drop blanks, de-duplicate keeping first occurrence"""
    normalized: List[str] = []
    for event in events or []:
        if not isinstance(event, str):
            continue
        name = event.strip()
        if name and name not in normalized:
            normalized.append(name)
    return normalized


def validate_events(events: List[str]) -> Optional[ServiceError]:
    if not events:
        return ServiceError.validation(
            "events must contain at least one event name",
            "events",
            ErrorCode.WEBHOOK_NO_EVENTS,
        )
    too_long = [e for e in events if len(e) > MAX_EVENT_LENGTH]
    if too_long:
        return ServiceError.validation(
            f"event names must be at most {MAX_EVENT_LENGTH} characters",
            "events",
            ErrorCode.WEBHOOK_NO_EVENTS,
        )
    invalid = [e for e in events if not EVENT_NAME_PATTERN.fullmatch(e)]
    if invalid:
        return ServiceError.validation(
            "event names may only contain letters, digits, '.', '_', ':' and '-'",
            "events",
            ErrorCode.WEBHOOK_NO_EVENTS,
        )
    return None


def validate_description(description: Optional[str]) -> Optional[ServiceError]:
    if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
        return ServiceError.validation(
            f"description must be at most {MAX_DESCRIPTION_LENGTH} characters",
            "description",
        )
    return None


class WebhookRegistryService:
    """CRUD over webhook subscriptions"""

    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.settings = settings

    async def _get_owned(
        self, tenant_id: str, webhook_id: str
    ) -> Optional[WebhookSubscription]:
        result = await self.db.execute(
            select(WebhookSubscription).where(
                WebhookSubscription.id == webhook_id,
                WebhookSubscription.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def count_active(self, tenant_id: str) -> int:
        total = await self.db.scalar(
            select(func.count()).select_from(WebhookSubscription).where(
                WebhookSubscription.tenant_id == tenant_id,
                WebhookSubscription.is_active.is_(True),
            )
        )
        return int(total or 0)

    async def _check_active_cap(self, tenant_id: str) -> Optional[ServiceError]:
        cap = self.settings.WEBHOOK_MAX_ACTIVE_PER_TENANT
        if cap is None:
            return None
        active = await self.count_active(tenant_id)
        if active >= cap:
            return ServiceError.conflict(
                f"Active webhook limit reached ({cap})",
                ErrorCode.WEBHOOK_LIMIT_REACHED,
                {"limit": cap, "active": active},
            )
        return None

    async def create_webhook(
        self,
        tenant_id: str,
        user_id: str,
        url: str,
        events: Iterable[str],
        description: Optional[str] = None,
    ) -> ServiceResult[WebhookSubscription]:
        """Register a new active subscription with a fresh secret"""
        error = validate_url(url)
        if error:
            return ServiceResult.fail(error)

        normalized_events = normalize_events(events)
        error = validate_events(normalized_events) or validate_description(description)
        if error:
            return ServiceResult.fail(error)

        error = await self._check_active_cap(tenant_id)
        if error:
            return ServiceResult.fail(error)

        subscription = WebhookSubscription(
            tenant_id=tenant_id,
            url=url.strip(),
            events=normalized_events,
            secret=generate_webhook_secret(),
            is_active=True,
            description=description,
            created_by=user_id,
        )
        self.db.add(subscription)
        await self.db.commit()
        await self.db.refresh(subscription)

        logger.info(
            "Webhook subscription created",
            extra_data={
                "webhook_id": subscription.id,
                "tenant_id": tenant_id,
                "user_id": user_id,
                "events": normalized_events,
            },
        )
        return ServiceResult.ok(subscription)

    async def list_webhooks(
        self, tenant_id: str, page: int = 1, limit: int = 50
    ) -> Tuple[List[WebhookSubscription], int]:
        """Newest first"""
        offset = (page - 1) * limit
        result = await self.db.execute(
            select(WebhookSubscription)
            .where(WebhookSubscription.tenant_id == tenant_id)
            .order_by(WebhookSubscription.created_at.desc(), WebhookSubscription.id)
            .offset(offset)
            .limit(limit)
        )
        items = list(result.scalars().all())
        total = await self.db.scalar(
            select(func.count()).select_from(WebhookSubscription).where(
                WebhookSubscription.tenant_id == tenant_id
            )
        )
        return items, int(total or 0)

    async def get_webhook(
        self, tenant_id: str, webhook_id: str
    ) -> ServiceResult[WebhookSubscription]:
        subscription = await self._get_owned(tenant_id, webhook_id)
        if subscription is None:
            return ServiceResult.fail(
                ServiceError.not_found("Webhook", webhook_id, ErrorCode.WEBHOOK_NOT_FOUND)
            )
        return ServiceResult.ok(subscription)

    async def update_webhook(
        self,
        tenant_id: str,
        webhook_id: str,
        *,
        url=_UNSET,
        events=_UNSET,
        description=_UNSET,
        is_active=_UNSET,
    ) -> ServiceResult[WebhookSubscription]:
        """
        Partial update. Only supplied fields change; url and events are
        validated independently of each other.
        """
        found = await self.get_webhook(tenant_id, webhook_id)
        if not found.is_ok:
            return found
        subscription = found.value

        changes = {}
        if url is not _UNSET:
            error = validate_url(url)
            if error:
                return ServiceResult.fail(error)
            changes["url"] = url.strip()

        if events is not _UNSET:
            normalized_events = normalize_events(events)
            error = validate_events(normalized_events)
            if error:
                return ServiceResult.fail(error)
            changes["events"] = normalized_events

        if description is not _UNSET:
            error = validate_description(description)
            if error:
                return ServiceResult.fail(error)
            changes["description"] = description

        if is_active is not _UNSET and is_active is not None:
            if is_active and not subscription.is_active:
                error = await self._check_active_cap(tenant_id)
                if error:
                    return ServiceResult.fail(error)
            changes["is_active"] = bool(is_active)

        for field, value in changes.items():
            setattr(subscription, field, value)
        if changes:
            subscription.updated_at = datetime.utcnow()
            await self.db.commit()
            await self.db.refresh(subscription)

            logger.info(
                "Webhook subscription updated",
                extra_data={
                    "webhook_id": webhook_id,
                    "tenant_id": tenant_id,
                    "fields": sorted(changes),
                },
            )
        return ServiceResult.ok(subscription)

    async def delete_webhook(self, tenant_id: str, webhook_id: str) -> ServiceResult[bool]:
        """Remove the subscription. Queued jobs and log rows are kept."""
        found = await self.get_webhook(tenant_id, webhook_id)
        if not found.is_ok:
            return ServiceResult.fail(found.error)

        await self.db.delete(found.value)
        await self.db.commit()

        logger.info(
            "Webhook subscription deleted",
            extra_data={"webhook_id": webhook_id, "tenant_id": tenant_id},
        )
        return ServiceResult.ok(True)

    async def rotate_secret(
        self, tenant_id: str, webhook_id: str
    ) -> ServiceResult[WebhookSubscription]:
        """New secret, same identity. Already enqueued jobs keep the old one."""
        found = await self.get_webhook(tenant_id, webhook_id)
        if not found.is_ok:
            return found
        subscription = found.value

        subscription.secret = generate_webhook_secret()
        subscription.updated_at = datetime.utcnow()
        await self.db.commit()
        await self.db.refresh(subscription)

        logger.info(
            "Webhook secret rotated",
            extra_data={"webhook_id": webhook_id, "tenant_id": tenant_id},
        )
        return ServiceResult.ok(subscription)

    async def list_deliveries(
        self,
        tenant_id: str,
        webhook_id: str,
        page: int = 1,
        limit: int = 50,
    ) -> ServiceResult[Tuple[List[WebhookDelivery], int]]:
        """Delivery log of one subscription, after the tenant check"""
        found = await self.get_webhook(tenant_id, webhook_id)
        if not found.is_ok:
            return ServiceResult.fail(found.error)

        log = DeliveryLogService(
            self.db, response_body_max_chars=self.settings.WEBHOOK_RESPONSE_BODY_MAX_CHARS
        )
        items, total = await log.list_for_subscription(webhook_id, page=page, limit=limit)
        return ServiceResult.ok((items, total))
