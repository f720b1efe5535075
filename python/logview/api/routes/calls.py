"""Call routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from logview.api.deps import get_orchestrator, get_permission
from logview.api.routes.listing import listing_meta
from logview.auth.middleware import Viewer, get_viewer
from logview.auth.permissions import Permission
from logview.responses import success_response
from logview.schemas.views import CallInstanceOut, CallListOut
from logview.services.fetch import FetchOrchestrator

router = APIRouter()


@router.get("/calls")
async def list_calls(
    request: Request,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    orchestrator: Annotated[FetchOrchestrator, Depends(get_orchestrator)],
    permission: Annotated[Permission, Depends(get_permission)],
) -> dict:
    """List one page of calls.

    Accepts the message filters plus `status`.
    """
    listing = await orchestrator.list_calls(
        viewer.user, permission, request.query_params.multi_items()
    )
    out = CallListOut(
        calls=[view.to_out() for view in listing.page.calls],
        next_page=listing.next_page,
        query=listing.query,
        **listing_meta(permission, orchestrator.now()),
    )
    return success_response(out.model_dump(mode="json"))


@router.get("/calls/{sid}")
async def get_call(
    sid: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    orchestrator: Annotated[FetchOrchestrator, Depends(get_orchestrator)],
    permission: Annotated[Permission, Depends(get_permission)],
) -> dict:
    instance = await orchestrator.get_call(viewer.user, permission, sid)
    out = CallInstanceOut(call=instance.call.to_out())
    return success_response(out.model_dump(mode="json"))
