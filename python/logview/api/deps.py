"""FastAPI dependencies for route handlers.

Everything here reads shared, immutable state from app.state; nothing is
request-scoped except the viewer.
"""

from fastapi import Request

from logview.auth.permissions import Permission
from logview.config import Settings
from logview.services.fetch import FetchOrchestrator

__all__ = ["get_app_settings", "get_orchestrator", "get_permission"]


def get_orchestrator(request: Request) -> FetchOrchestrator:
    """Get the shared FetchOrchestrator built at startup."""
    return request.app.state.orchestrator


def get_permission(request: Request) -> Permission:
    return request.app.state.permission


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
