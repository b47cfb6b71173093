from fastapi import APIRouter

from family_events.api.routes import automation, health, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(automation.router, prefix="/automation", tags=["automation"])
