"""Pydantic schemas for provider records and API responses.

All schemas are re-exported here for convenient imports.
"""

from logview.schemas.provider import Call, CallPage, Message, MessagePage
from logview.schemas.views import (
    CallInstanceOut,
    CallListOut,
    CallOut,
    MediaOut,
    MessageInstanceOut,
    MessageListOut,
    MessageOut,
)

__all__ = [
    "Call",
    "CallInstanceOut",
    "CallListOut",
    "CallOut",
    "CallPage",
    "MediaOut",
    "Message",
    "MessageInstanceOut",
    "MessageListOut",
    "MessageOut",
    "MessagePage",
]
