from fastapi import APIRouter

from reconciler.api.routes import billing, bounties, health, installations, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, tags=["webhooks"])
api_router.include_router(installations.router, tags=["installations"])
api_router.include_router(billing.router, prefix="/billing", tags=["billing"])
api_router.include_router(bounties.router, prefix="/bounties", tags=["bounties"])
