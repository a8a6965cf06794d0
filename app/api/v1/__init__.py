from fastapi import APIRouter

from app.api.v1.routers import health, pipeline, signing, webhooks

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(pipeline.router)
api_router.include_router(signing.router)
api_router.include_router(webhooks.router)

__all__ = ["api_router"]
