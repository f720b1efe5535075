"""Test helpers: provider double, record factories, and auth headers.

Provides:
- client_for: TestClient over a provider with overridden settings
- FakeProvider: in-memory Provider that records every call and can be told
  to fail or stall per operation
- make_message / make_call / make_message_page: provider record factories
- basic_auth_headers: Authorization header for Basic auth
"""

import asyncio
import base64
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta

from fastapi.testclient import TestClient

from logview.app import add_request_id_middleware, create_app
from logview.auth.permissions import all_user_settings
from logview.config import Settings
from logview.schemas.provider import Call, CallPage, Message, MessagePage
from logview.services.provider import Provider, ProviderError

TEST_SECRET_KEY = bytes(range(1, 33))
TEST_SECRET_KEY_HEX = TEST_SECRET_KEY.hex()
OTHER_SECRET_KEY = bytes(range(33, 65))

# Fixed clock for deterministic age checks
NOW = datetime(2026, 6, 1, 12, 0, 0, tzinfo=UTC)

ACCOUNT_SID = "AC" + "0" * 31 + "1"
NEXT_PAGE_PATH = f"/2010-04-01/Accounts/{ACCOUNT_SID}/Messages.json?PageSize=50&Page=1&PageToken=PAabc"
NEXT_CALL_PAGE_PATH = f"/2010-04-01/Accounts/{ACCOUNT_SID}/Calls.json?PageSize=50&Page=1&PageToken=PAdef"


def message_sid(n: int = 1) -> str:
    return f"MM{n:032x}"


def call_sid(n: int = 1) -> str:
    return f"CA{n:032x}"


def media_sid(n: int = 1) -> str:
    return f"ME{n:032x}"


def make_message(
    n: int = 1,
    *,
    age: timedelta = timedelta(hours=1),
    num_media: int = 0,
    body: str = "hello there",
    now: datetime = NOW,
) -> Message:
    """Build a message created `age` before `now`."""
    created = now - age
    return Message.model_validate(
        {
            "sid": message_sid(n),
            "date_created": created,
            "date_sent": created,
            "from": "+14155550100",
            "to": "+14155550199",
            "body": body,
            "num_media": num_media,
            "status": "delivered",
            "direction": "outbound-api",
            "price": "-0.00750",
            "price_unit": "USD",
        }
    )


def make_call(n: int = 1, *, age: timedelta = timedelta(hours=1), now: datetime = NOW) -> Call:
    created = now - age
    return Call.model_validate(
        {
            "sid": call_sid(n),
            "date_created": created,
            "from": "+14155550100",
            "to": "+14155550199",
            "status": "completed",
            "direction": "inbound",
            "duration": 42,
            "start_time": created,
            "end_time": created + timedelta(seconds=42),
            "price": "-0.0085",
            "price_unit": "USD",
        }
    )


def make_message_page(messages: list[Message], next_page_uri: str | None = None) -> MessagePage:
    return MessagePage(messages=messages, next_page_uri=next_page_uri)


def make_call_page(calls: list[Call], next_page_uri: str | None = None) -> CallPage:
    return CallPage(calls=calls, next_page_uri=next_page_uri)


def media_url(message: str, media: str) -> str:
    return f"https://api.twilio.com/2010-04-01/Accounts/{ACCOUNT_SID}/Messages/{message}/Media/{media}"


class FakeProvider(Provider):
    """In-memory provider.

    Attributes:
        calls: List of (operation, argument) tuples in call order.
        errors: operation name -> ProviderError to raise.
        delays: operation name -> seconds to sleep before answering.
    """

    def __init__(
        self,
        messages: list[Message] | None = None,
        calls: list[Call] | None = None,
        message_page: MessagePage | None = None,
        call_page: CallPage | None = None,
        media: dict[str, list[str]] | None = None,
        next_pages: dict[str, MessagePage | CallPage] | None = None,
    ):
        self.messages = {m.sid: m for m in messages or []}
        self.call_records = {c.sid: c for c in calls or []}
        self.message_page = message_page or MessagePage()
        self.call_page = call_page or CallPage()
        self.media = media or {}
        self.next_pages = next_pages or {}
        self.media_content: dict[str, tuple[bytes, str]] = {}
        self.calls: list[tuple[str, object]] = []
        self.errors: dict[str, ProviderError] = {}
        self.delays: dict[str, float] = {}

    def called(self, operation: str) -> list[object]:
        """Arguments of every call to `operation`."""
        return [arg for op, arg in self.calls if op == operation]

    async def _enter(self, operation: str, arg: object) -> None:
        self.calls.append((operation, arg))
        delay = self.delays.get(operation)
        if delay:
            await asyncio.sleep(delay)
        error = self.errors.get(operation)
        if error is not None:
            raise error

    async def get_message(self, sid: str) -> Message:
        await self._enter("get_message", sid)
        if sid not in self.messages:
            raise ProviderError(404, "The requested resource was not found", 20404)
        return self.messages[sid]

    async def get_message_page(self, filters: dict[str, str]) -> MessagePage:
        await self._enter("get_message_page", dict(filters))
        return self.message_page

    async def get_next_message_page(self, path: str) -> MessagePage:
        await self._enter("get_next_message_page", path)
        return self.next_pages.get(path, MessagePage())

    async def get_media_urls(self, message_sid: str) -> list[str]:
        await self._enter("get_media_urls", message_sid)
        return self.media.get(message_sid, [])

    async def get_media_content(self, message_sid: str, media_sid: str) -> tuple[bytes, str]:
        await self._enter("get_media_content", (message_sid, media_sid))
        return self.media_content.get(media_sid, (b"\x89PNG fake", "image/png"))

    async def get_call(self, sid: str) -> Call:
        await self._enter("get_call", sid)
        if sid not in self.call_records:
            raise ProviderError(404, "The requested resource was not found", 20404)
        return self.call_records[sid]

    async def get_call_page(self, filters: dict[str, str]) -> CallPage:
        await self._enter("get_call_page", dict(filters))
        return self.call_page

    async def get_next_call_page(self, path: str) -> CallPage:
        await self._enter("get_next_call_page", path)
        return self.next_pages.get(path, CallPage())


def make_settings(**overrides) -> Settings:
    """Build test Settings from alias-named overrides, ignoring any .env file."""
    values = {
        "LOGVIEW_ENV": "test",
        "SECRET_KEY": TEST_SECRET_KEY_HEX,
        "ALLOW_UNENCRYPTED_TRAFFIC": True,
        "USER_SETTINGS": all_user_settings(),
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def basic_auth_headers(name: str, password: str) -> dict[str, str]:
    """Build an Authorization header for HTTP Basic auth."""
    encoded = base64.b64encode(f"{name}:{password}".encode()).decode("ascii")
    return {"Authorization": f"Basic {encoded}"}


@contextmanager
def client_for(provider: FakeProvider, **settings_overrides):
    """TestClient over `provider` with Settings built from alias-named overrides."""
    app = create_app(
        settings=make_settings(**settings_overrides), provider=provider, clock=lambda: NOW
    )
    add_request_id_middleware(app, log_requests=False)
    with TestClient(app) as client:
        yield client
