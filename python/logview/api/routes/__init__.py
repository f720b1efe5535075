"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
"""

from fastapi import APIRouter

from logview.api.routes.calls import router as calls_router
from logview.api.routes.health import router as health_router
from logview.api.routes.media import router as media_router
from logview.api.routes.messages import router as messages_router
from logview.api.routes.search import router as search_router


def create_api_router() -> APIRouter:
    """Create the API router with all routes registered."""
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(messages_router, tags=["messages"])
    api_router.include_router(calls_router, tags=["calls"])
    api_router.include_router(media_router, tags=["media"])
    api_router.include_router(search_router, tags=["search"])
    return api_router


__all__ = ["create_api_router"]
