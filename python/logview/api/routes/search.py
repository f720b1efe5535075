"""SID search: redirect a pasted SID to its instance route."""

import re
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from logview.auth.middleware import Viewer, get_viewer
from logview.errors import ApiErrorCode, InvalidRequestError
from logview.schemas.provider import CALL_SID_PATTERN, MESSAGE_SID_PATTERN

router = APIRouter()


@router.get("/search")
async def search(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    q: Annotated[str, Query()] = "",
) -> RedirectResponse:
    """Redirect to /messages/{sid} or /calls/{sid}; anything else is a 400."""
    sid = q.strip()
    if re.fullmatch(MESSAGE_SID_PATTERN, sid):
        return RedirectResponse(f"/messages/{sid}", status_code=302)
    if re.fullmatch(CALL_SID_PATTERN, sid):
        return RedirectResponse(f"/calls/{sid}", status_code=302)
    raise InvalidRequestError(ApiErrorCode.E_INVALID_REQUEST, "Not a message or call SID")
