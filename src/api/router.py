"""API router for everything mounted under the API prefix."""

from fastapi import APIRouter

from .endpoints import auth, billing, link, plans, stripe_webhooks, usage

api_router = APIRouter()

api_router.include_router(link.router, prefix="/link", tags=["link"])
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(stripe_webhooks.router, prefix="/stripe", tags=["stripe"])
api_router.include_router(plans.router, prefix="/plans", tags=["billing"])
api_router.include_router(billing.router, prefix="/billing", tags=["billing"])
api_router.include_router(usage.router, prefix="/user", tags=["usage"])
