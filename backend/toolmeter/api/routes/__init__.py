from fastapi import APIRouter

from toolmeter.api.routes import health, subscription, tools, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(subscription.router, prefix="/subscription", tags=["subscription"])
api_router.include_router(tools.router, prefix="/tools", tags=["tools"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
