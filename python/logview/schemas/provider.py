"""Provider resource schemas.

Raw Twilio REST resources as returned by the provider collaborator. These
carry every field, restricted or not, and must only leave the service
through a permission-checked view.
"""

from datetime import datetime
from email.utils import parsedate_to_datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

API_VERSION = "2010-04-01"

MESSAGE_SID_PATTERN = r"^(MM|SM)[a-f0-9]{32}$"
CALL_SID_PATTERN = r"^CA[a-f0-9]{32}$"
MEDIA_SID_PATTERN = r"^ME[a-f0-9]{32}$"


def _parse_provider_date(value):
    """Twilio renders dates as RFC 2822 ("Tue, 18 Aug 2015 20:01:40 +0000")."""
    if isinstance(value, str) and value and not value[0].isdigit():
        try:
            return parsedate_to_datetime(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid provider date: {value!r}") from e
    return value


class ProviderResource(BaseModel):
    """Base for provider records."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    sid: str
    date_created: datetime
    date_updated: datetime | None = None

    @field_validator("date_created", "date_updated", mode="before")
    @classmethod
    def parse_dates(cls, value):
        return _parse_provider_date(value)


class Message(ProviderResource):
    """A Twilio SMS/MMS message."""

    date_sent: datetime | None = None
    from_: str = Field(default="", alias="from")
    to: str = ""
    body: str = ""
    num_media: int = 0
    num_segments: int | None = None
    status: str = ""
    direction: str = ""
    price: str | None = None
    price_unit: str | None = None
    error_code: int | None = None
    error_message: str | None = None

    @field_validator("date_sent", mode="before")
    @classmethod
    def parse_date_sent(cls, value):
        return _parse_provider_date(value)


class Call(ProviderResource):
    """A Twilio voice call."""

    from_: str = Field(default="", alias="from")
    to: str = ""
    status: str = ""
    direction: str = ""
    duration: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    price: str | None = None
    price_unit: str | None = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_times(cls, value):
        return _parse_provider_date(value)


class MessagePage(BaseModel):
    """One page of the Messages list resource."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    messages: list[Message] = Field(default_factory=list)
    next_page_uri: str | None = None


class CallPage(BaseModel):
    """One page of the Calls list resource."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    calls: list[Call] = Field(default_factory=list)
    next_page_uri: str | None = None
