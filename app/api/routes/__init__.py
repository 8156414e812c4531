"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.jobs import router as jobs_router
from app.api.webhooks.provider import router as provider_webhook_router

router = APIRouter()

router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
router.include_router(provider_webhook_router, prefix="/webhooks", tags=["webhooks"])
