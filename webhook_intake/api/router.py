"""
API router - aggregates all route modules.
Webhook routes are only bound when webhooks are enabled.
"""
from fastapi import APIRouter

from webhook_intake.api.health import router as health_router
from webhook_intake.api.webhooks import router as webhooks_router


def build_api_router(webhooks_enabled: bool = True) -> APIRouter:
    api_router = APIRouter()
    if webhooks_enabled:
        api_router.include_router(webhooks_router)
    api_router.include_router(health_router)
    return api_router
