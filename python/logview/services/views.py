"""Permission-checked views over provider resources.

A view wraps one raw provider record for one viewer. The resource-level gate
runs exactly once, when the view is built:

1. Age: now - date_created > max_resource_age -> TooOld
2. Capability: the parent capability (can_view_messages / can_view_calls)
   is off -> PermissionDenied

Field reads are lazy. Every accessor re-checks the field's capability and
raises PermissionDenied instead of returning a placeholder, so "hidden" can
never be mistaken for an empty or zero value.

Page views drop items that fail the age gate. Provider pages are ordered
newest first, so a page that lost any item to age has no viewable
successor and its next page URI is discarded.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from logview.auth.permissions import Permission, PermissionDenied, TooOld, User
from logview.logging import get_logger
from logview.schemas.provider import Call, CallPage, Message, MessagePage
from logview.schemas.views import CallOut, MessageOut

logger = get_logger(__name__)

CapabilityCheck = Callable[[User], bool]

MESSAGE_PROPERTIES: dict[str, CapabilityCheck] = {
    "Sid": User.can_view_messages,
    "DateCreated": User.can_view_messages,
    "DateSent": User.can_view_messages,
    "Status": User.can_view_messages,
    "Direction": User.can_view_messages,
    "From": User.can_view_message_from,
    "To": User.can_view_message_to,
    "Body": User.can_view_message_body,
    "NumMedia": User.can_view_num_media,
    "Price": User.can_view_message_price,
}

CALL_PROPERTIES: dict[str, CapabilityCheck] = {
    "Sid": User.can_view_calls,
    "DateCreated": User.can_view_calls,
    "Status": User.can_view_calls,
    "Direction": User.can_view_calls,
    "Duration": User.can_view_calls,
    "StartTime": User.can_view_calls,
    "EndTime": User.can_view_calls,
    "From": User.can_view_call_from,
    "To": User.can_view_call_to,
    "Price": User.can_view_call_price,
}


class _ResourceView:
    """Shared property dispatch for message and call views."""

    _properties: dict[str, CapabilityCheck] = {}

    def __init__(self, user: User):
        self._user = user

    def can_view_property(self, name: str) -> bool:
        """Whether the viewer may read the named field.

        Unknown field names are never viewable.
        """
        check = self._properties.get(name)
        if check is None:
            logger.warning("unknown_view_property", property=name)
            return False
        return check(self._user)

    def _require(self, name: str) -> None:
        if not self.can_view_property(name):
            raise PermissionDenied()


class MessageView(_ResourceView):
    """A message visible to one viewer."""

    _properties = MESSAGE_PROPERTIES

    def __init__(self, message: Message, user: User):
        super().__init__(user)
        self._message = message

    @property
    def sid(self) -> str:
        self._require("Sid")
        return self._message.sid

    @property
    def date_created(self) -> datetime:
        self._require("DateCreated")
        return self._message.date_created

    @property
    def date_sent(self) -> datetime | None:
        self._require("DateSent")
        return self._message.date_sent

    @property
    def status(self) -> str:
        self._require("Status")
        return self._message.status

    @property
    def direction(self) -> str:
        self._require("Direction")
        return self._message.direction

    def from_number(self) -> str:
        self._require("From")
        return self._message.from_

    def to_number(self) -> str:
        self._require("To")
        return self._message.to

    def body(self) -> str:
        self._require("Body")
        return self._message.body

    def num_media(self) -> int:
        self._require("NumMedia")
        return self._message.num_media

    def price(self) -> tuple[str | None, str | None]:
        self._require("Price")
        return self._message.price, self._message.price_unit

    def to_out(self) -> MessageOut:
        """Render the fields this viewer may see; hidden fields are None."""
        price, price_unit = self.price() if self.can_view_property("Price") else (None, None)
        return MessageOut(
            sid=self.sid,
            date_created=self.date_created,
            date_sent=self.date_sent,
            status=self.status,
            direction=self.direction,
            from_number=self.from_number() if self.can_view_property("From") else None,
            to_number=self.to_number() if self.can_view_property("To") else None,
            body=self.body() if self.can_view_property("Body") else None,
            num_media=self.num_media() if self.can_view_property("NumMedia") else None,
            price=price,
            price_unit=price_unit,
        )


class CallView(_ResourceView):
    """A call visible to one viewer."""

    _properties = CALL_PROPERTIES

    def __init__(self, call: Call, user: User):
        super().__init__(user)
        self._call = call

    @property
    def sid(self) -> str:
        self._require("Sid")
        return self._call.sid

    @property
    def date_created(self) -> datetime:
        self._require("DateCreated")
        return self._call.date_created

    @property
    def status(self) -> str:
        self._require("Status")
        return self._call.status

    @property
    def direction(self) -> str:
        self._require("Direction")
        return self._call.direction

    def start_time(self) -> datetime | None:
        self._require("StartTime")
        return self._call.start_time

    def end_time(self) -> datetime | None:
        self._require("EndTime")
        return self._call.end_time

    def from_number(self) -> str:
        self._require("From")
        return self._call.from_

    def to_number(self) -> str:
        self._require("To")
        return self._call.to

    def duration(self) -> int | None:
        self._require("Duration")
        return self._call.duration

    def price(self) -> tuple[str | None, str | None]:
        self._require("Price")
        return self._call.price, self._call.price_unit

    def to_out(self) -> CallOut:
        price, price_unit = self.price() if self.can_view_property("Price") else (None, None)
        return CallOut(
            sid=self.sid,
            date_created=self.date_created,
            status=self.status,
            direction=self.direction,
            duration=self.duration(),
            start_time=self.start_time(),
            end_time=self.end_time(),
            from_number=self.from_number() if self.can_view_property("From") else None,
            to_number=self.to_number() if self.can_view_property("To") else None,
            price=price,
            price_unit=price_unit,
        )


def new_message_view(
    message: Message, user: User, permission: Permission, now: datetime | None = None
) -> MessageView:
    """Apply the resource-level gate and wrap the message.

    Raises:
        TooOld: If the message is older than the max resource age.
        PermissionDenied: If the viewer cannot view messages.
    """
    permission.check_age(message.date_created, now)
    if not user.can_view_messages():
        raise PermissionDenied()
    return MessageView(message, user)


def new_call_view(
    call: Call, user: User, permission: Permission, now: datetime | None = None
) -> CallView:
    """Apply the resource-level gate and wrap the call.

    Raises:
        TooOld: If the call is older than the max resource age.
        PermissionDenied: If the viewer cannot view calls.
    """
    permission.check_age(call.date_created, now)
    if not user.can_view_calls():
        raise PermissionDenied()
    return CallView(call, user)


class MessagePageView:
    """The viewable part of one provider message page."""

    def __init__(self, messages: list[MessageView], next_page_uri: str | None):
        self.messages = messages
        # Provider-internal; encrypt before it leaves the service.
        self.next_page_uri = next_page_uri


class CallPageView:
    """The viewable part of one provider call page."""

    def __init__(self, calls: list[CallView], next_page_uri: str | None):
        self.calls = calls
        self.next_page_uri = next_page_uri


def new_message_page_view(
    page: MessagePage, user: User, permission: Permission, now: datetime | None = None
) -> MessagePageView:
    """Wrap a message page, dropping messages past the age cutoff.

    Raises:
        PermissionDenied: If the viewer cannot view messages.
    """
    if not user.can_view_messages():
        raise PermissionDenied()
    now = now or datetime.now(UTC)
    views = []
    truncated = False
    for message in page.messages:
        try:
            views.append(new_message_view(message, user, permission, now))
        except TooOld:
            truncated = True
    if truncated:
        logger.debug("page_truncated_by_age", kept=len(views), total=len(page.messages))
    return MessagePageView(views, None if truncated else page.next_page_uri)


def new_call_page_view(
    page: CallPage, user: User, permission: Permission, now: datetime | None = None
) -> CallPageView:
    """Wrap a call page, dropping calls past the age cutoff.

    Raises:
        PermissionDenied: If the viewer cannot view calls.
    """
    if not user.can_view_calls():
        raise PermissionDenied()
    now = now or datetime.now(UTC)
    views = []
    truncated = False
    for call in page.calls:
        try:
            views.append(new_call_view(call, user, permission, now))
        except TooOld:
            truncated = True
    if truncated:
        logger.debug("page_truncated_by_age", kept=len(views), total=len(page.calls))
    return CallPageView(views, None if truncated else page.next_page_uri)
