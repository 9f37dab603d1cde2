"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.jobs import router as jobs_router
from app.api.routes.webhooks import router as webhooks_router

router = APIRouter()

router.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
router.include_router(jobs_router, prefix="/jobs", tags=["Jobs"])
