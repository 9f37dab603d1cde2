"""
Webhook Subscription API Routes

Every route is scoped to the caller's tenant (from the JWT). Subscriptions of
other tenants answer 404, exactly like missing ones. The signing secret is
returned only by create and rotate-secret.
"""
import math
from datetime import datetime
from typing import Any, List

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_permission
from app.api.dependencies.context import get_settings
from app.api.errors import unwrap
from app.core.auth import (
    PERMISSION_DELETE,
    PERMISSION_READ,
    PERMISSION_WRITE,
    TokenPayload,
)
from app.core.config import Settings
from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.webhook_registry import WebhookRegistryService

logger = get_logger(__name__)

router = APIRouter()

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


class WebhookCreate(BaseModel):
    """Schema for registering a webhook"""
    url: str = Field(..., description="Absolute http(s) URL that receives POSTs")
    events: List[str] = Field(..., description="Event names to subscribe to")
    description: str | None = None


class WebhookUpdate(BaseModel):
    """Partial update. Omitted fields are left unchanged."""
    url: str | None = None
    events: List[str] | None = None
    description: str | None = None
    is_active: bool | None = None


class WebhookResponse(BaseModel):
    """Subscription without its secret"""
    id: str
    tenant_id: str
    url: str
    events: List[str]
    is_active: bool
    description: str | None
    created_by: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class WebhookWithSecretResponse(WebhookResponse):
    """Returned once, at creation or rotation"""
    secret: str


class WebhookListResponse(BaseModel):
    items: List[WebhookResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class DeliveryResponse(BaseModel):
    """One delivery attempt from the log"""
    id: str
    webhook_id: str
    job_id: str
    event: str
    payload: Any
    url: str
    status_code: int | None
    response_body: str | None
    error: str | None
    attempts: int
    delivered_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class DeliveryListResponse(BaseModel):
    items: List[DeliveryResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class DeleteResponse(BaseModel):
    success: bool
    message: str


def _total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if total else 0


@router.post(
    "",
    response_model=WebhookWithSecretResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook",
    description="Creates an active subscription and returns it together with its signing secret.",
    responses={
        201: {"description": "Webhook created"},
        409: {"description": "Active webhook limit reached"},
        422: {"description": "Invalid URL or empty event list"},
    },
)
async def create_webhook(
    data: WebhookCreate,
    principal: TokenPayload = Depends(require_permission(PERMISSION_WRITE)),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> WebhookWithSecretResponse:
    """
    Register a webhook for the caller's tenant.

    - **url**: absolute http/https URL
    - **events**: non-empty list of event names
    - **description**: optional free text
    """
    service = WebhookRegistryService(db, settings)
    subscription = unwrap(
        await service.create_webhook(
            tenant_id=principal.tenant_id,
            user_id=principal.sub,
            url=data.url,
            events=data.events,
            description=data.description,
        )
    )
    return WebhookWithSecretResponse.model_validate(subscription)


@router.get(
    "",
    response_model=WebhookListResponse,
    summary="List webhooks",
    description="Paginated list of the tenant's webhooks, newest first.",
)
async def list_webhooks(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    principal: TokenPayload = Depends(require_permission(PERMISSION_READ)),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> WebhookListResponse:
    service = WebhookRegistryService(db, settings)
    items, total = await service.list_webhooks(principal.tenant_id, page=page, limit=limit)
    return WebhookListResponse(
        items=[WebhookResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
        total_pages=_total_pages(total, limit),
    )


@router.get(
    "/{webhook_id}",
    response_model=WebhookResponse,
    summary="Get webhook by ID",
    responses={404: {"description": "Webhook not found"}},
)
async def get_webhook(
    webhook_id: str,
    principal: TokenPayload = Depends(require_permission(PERMISSION_READ)),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> WebhookResponse:
    service = WebhookRegistryService(db, settings)
    subscription = unwrap(await service.get_webhook(principal.tenant_id, webhook_id))
    return WebhookResponse.model_validate(subscription)


@router.patch(
    "/{webhook_id}",
    response_model=WebhookResponse,
    summary="Update webhook",
    description="Changes only the supplied fields. Re-activation counts against the active limit.",
    responses={
        404: {"description": "Webhook not found"},
        409: {"description": "Active webhook limit reached"},
        422: {"description": "Invalid URL or empty event list"},
    },
)
async def update_webhook(
    webhook_id: str,
    data: WebhookUpdate,
    principal: TokenPayload = Depends(require_permission(PERMISSION_WRITE)),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> WebhookResponse:
    service = WebhookRegistryService(db, settings)
    subscription = unwrap(
        await service.update_webhook(
            principal.tenant_id,
            webhook_id,
            **data.model_dump(exclude_unset=True),
        )
    )
    return WebhookResponse.model_validate(subscription)


@router.delete(
    "/{webhook_id}",
    response_model=DeleteResponse,
    summary="Delete webhook",
    description="Removes the subscription. Deliveries already queued still run.",
    responses={404: {"description": "Webhook not found"}},
)
async def delete_webhook(
    webhook_id: str,
    principal: TokenPayload = Depends(require_permission(PERMISSION_DELETE)),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> DeleteResponse:
    service = WebhookRegistryService(db, settings)
    unwrap(await service.delete_webhook(principal.tenant_id, webhook_id))
    return DeleteResponse(success=True, message="Webhook deleted")


@router.post(
    "/{webhook_id}/rotate-secret",
    response_model=WebhookWithSecretResponse,
    summary="Rotate signing secret",
    description="Generates a new secret. Deliveries already queued are signed with the old one.",
    responses={404: {"description": "Webhook not found"}},
)
async def rotate_secret(
    webhook_id: str,
    principal: TokenPayload = Depends(require_permission(PERMISSION_WRITE)),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> WebhookWithSecretResponse:
    service = WebhookRegistryService(db, settings)
    subscription = unwrap(await service.rotate_secret(principal.tenant_id, webhook_id))
    return WebhookWithSecretResponse.model_validate(subscription)


@router.get(
    "/{webhook_id}/deliveries",
    response_model=DeliveryListResponse,
    summary="List delivery attempts",
    description="Delivery log of one webhook, most recent first.",
    responses={404: {"description": "Webhook not found"}},
)
async def list_deliveries(
    webhook_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    principal: TokenPayload = Depends(require_permission(PERMISSION_READ)),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> DeliveryListResponse:
    service = WebhookRegistryService(db, settings)
    items, total = unwrap(
        await service.list_deliveries(principal.tenant_id, webhook_id, page=page, limit=limit)
    )
    return DeliveryListResponse(
        items=[DeliveryResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
        total_pages=_total_pages(total, limit),
    )
