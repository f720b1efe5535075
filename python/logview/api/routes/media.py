"""Media proxy route.

Media bytes are only reachable through signed /media/<token> links issued
with a message instance. The parent message is re-fetched and gated on
every request.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Response

from logview.api.deps import get_orchestrator, get_permission
from logview.auth.middleware import Viewer, get_viewer
from logview.auth.permissions import Permission
from logview.services.fetch import FetchOrchestrator

router = APIRouter()


@router.get("/media/{token}")
async def get_media(
    token: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    orchestrator: Annotated[FetchOrchestrator, Depends(get_orchestrator)],
    permission: Annotated[Permission, Depends(get_permission)],
) -> Response:
    """Stream one media item back to the viewer."""
    content, content_type = await orchestrator.get_media(viewer.user, permission, token)
    return Response(
        content=content,
        media_type=content_type,
        headers={"Cache-Control": "private, max-age=300"},
    )
