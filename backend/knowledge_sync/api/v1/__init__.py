from fastapi import APIRouter

# Aggregate all v1 routers here
from .routers import documents, integrations, system, webhooks

api_router = APIRouter()
api_router.include_router(integrations.router)
api_router.include_router(documents.router)
api_router.include_router(webhooks.router)
api_router.include_router(system.router)

__all__ = ["api_router"]
