"""Message routes.

Routes are transport-only:
- Take the viewer from request.state
- Call exactly one orchestrator operation
- Return success_response(...) or let ApiError propagate
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from logview.api.deps import get_app_settings, get_orchestrator, get_permission
from logview.api.routes.listing import listing_meta
from logview.auth.middleware import Viewer, get_viewer
from logview.auth.permissions import Permission
from logview.config import Settings
from logview.responses import success_response
from logview.schemas.views import MediaOut, MessageInstanceOut, MessageListOut
from logview.services.fetch import FetchOrchestrator

router = APIRouter()


@router.get("/messages")
async def list_messages(
    request: Request,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    orchestrator: Annotated[FetchOrchestrator, Depends(get_orchestrator)],
    permission: Annotated[Permission, Depends(get_permission)],
) -> dict:
    """List one page of messages.

    Query parameters are from, to, start, end (YYYY-MM-DD), or the opaque
    `next` token from a previous response. Anything else is a 400.
    """
    listing = await orchestrator.list_messages(
        viewer.user, permission, request.query_params.multi_items()
    )
    out = MessageListOut(
        messages=[view.to_out() for view in listing.page.messages],
        next_page=listing.next_page,
        query=listing.query,
        **listing_meta(permission, orchestrator.now()),
    )
    return success_response(out.model_dump(mode="json"))


@router.get("/messages/{sid}")
async def get_message(
    sid: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    orchestrator: Annotated[FetchOrchestrator, Depends(get_orchestrator)],
    permission: Annotated[Permission, Depends(get_permission)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> dict:
    """Get one message and its media.

    media is null when the message has none. When media exists but cannot
    be shown, media.error says why and the message is still returned.
    """
    instance = await orchestrator.get_message(viewer.user, permission, sid)
    media = None
    if instance.media is not None:
        media = MediaOut(urls=instance.media.urls, error=instance.media.error)
    out = MessageInstanceOut(
        message=instance.message.to_out(),
        media=media,
        show_media_by_default=settings.show_media_by_default,
    )
    return success_response(out.model_dump(mode="json"))
