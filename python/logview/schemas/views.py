"""Response schemas for permission-checked views.

A field the viewer may not see is rendered as None. None never stands for
a real value: a visible message with no media has num_media == 0.

Pages never carry the provider's next page URI; only the encrypted
`next_page` token built by the fetch orchestrator.
"""

from datetime import datetime

from pydantic import BaseModel


class MessageOut(BaseModel):
    """A message as seen by one viewer."""

    sid: str
    date_created: datetime
    date_sent: datetime | None = None
    status: str
    direction: str
    from_number: str | None = None
    to_number: str | None = None
    body: str | None = None
    num_media: int | None = None
    price: str | None = None
    price_unit: str | None = None


class CallOut(BaseModel):
    """A call as seen by one viewer."""

    sid: str
    date_created: datetime
    status: str
    direction: str
    duration: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    from_number: str | None = None
    to_number: str | None = None
    price: str | None = None
    price_unit: str | None = None


class MediaOut(BaseModel):
    """Media attached to a message.

    urls are signed /media/<token> paths. error is set instead when the
    media could not be shown (hidden, timed out, or provider failure).
    """

    urls: list[str] = []
    error: str | None = None


class MessageInstanceOut(BaseModel):
    message: MessageOut
    media: MediaOut | None = None
    show_media_by_default: bool = False


class CallInstanceOut(BaseModel):
    call: CallOut


class ListingMetaOut(BaseModel):
    """Fields shared by every listing response."""

    next_page: str | None = None
    query: dict[str, str] = {}
    min_date: str
    max_date: str
    max_resource_age_seconds: int


class MessageListOut(ListingMetaOut):
    messages: list[MessageOut]


class CallListOut(ListingMetaOut):
    calls: list[CallOut]
