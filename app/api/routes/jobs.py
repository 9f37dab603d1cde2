"""
Delivery queue introspection
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.dependencies.auth import require_permission
from app.api.dependencies.context import get_delivery_queue
from app.core.auth import PERMISSION_READ, TokenPayload
from app.domain.services.delivery_queue import SqlDeliveryQueue

router = APIRouter()


class JobStatsResponse(BaseModel):
    queued: int
    active: int
    succeeded: int
    retry_scheduled: int
    exhausted: int


@router.get(
    "/stats",
    response_model=JobStatsResponse,
    summary="Delivery queue counts",
    description="Number of the tenant's webhook jobs in each state.",
)
async def job_stats(
    principal: TokenPayload = Depends(require_permission(PERMISSION_READ)),
    queue: SqlDeliveryQueue = Depends(get_delivery_queue),
) -> JobStatsResponse:
    return JobStatsResponse(**await queue.stats(tenant_id=principal.tenant_id))
