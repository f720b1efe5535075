"""Telephony provider collaborator.

Rules:
- Async, over a shared httpx.AsyncClient
- No retries here; the orchestrator never retries either
- No visibility logic; raw resources go to the permission-checked views
- No logging of bodies, numbers, or URIs
- Every failure surfaces as ProviderError with the HTTP status when there is one
- Next pages are kept briefly in a PageCache, which is what the
  orchestrator's prefetch warms
"""

import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable
from urllib.parse import urljoin

import httpx
from pydantic import ValidationError

from logview.schemas.provider import API_VERSION, Call, CallPage, Message, MessagePage

TWILIO_BASE_URL = "https://api.twilio.com"


class ProviderError(Exception):
    """Exception for provider failures.

    Attributes:
        status_code: HTTP status returned by the provider, None for transport failures
        message: Human-readable error message
        code: Provider-specific error code (if any)
    """

    def __init__(self, status_code: int | None, message: str, code: int | None = None):
        self.status_code = status_code
        self.message = message
        self.code = code
        super().__init__(message)


class Provider(ABC):
    """Raw access to the provider's message, call, and media resources."""

    @abstractmethod
    async def get_message(self, sid: str) -> Message:
        """Fetch one message by SID."""

    @abstractmethod
    async def get_message_page(self, filters: dict[str, str]) -> MessagePage:
        """Fetch the first page of messages matching filters."""

    @abstractmethod
    async def get_next_message_page(self, path: str) -> MessagePage:
        """Fetch a message page from a provider next page path."""

    @abstractmethod
    async def get_media_urls(self, message_sid: str) -> list[str]:
        """List absolute URLs of the media attached to a message."""

    @abstractmethod
    async def get_media_content(self, message_sid: str, media_sid: str) -> tuple[bytes, str]:
        """Download one media item. Returns (content, content_type)."""

    @abstractmethod
    async def get_call(self, sid: str) -> Call:
        """Fetch one call by SID."""

    @abstractmethod
    async def get_call_page(self, filters: dict[str, str]) -> CallPage:
        """Fetch the first page of calls matching filters."""

    @abstractmethod
    async def get_next_call_page(self, path: str) -> CallPage:
        """Fetch a call page from a provider next page path."""


class PageCache:
    """Bounded LRU of provider pages keyed by next page path, with a TTL.

    Args:
        ttl_s: Seconds an entry stays fresh. 0 disables caching.
        max_entries: Oldest entries are evicted past this size.
        clock: Monotonic seconds (tests pin it).
    """

    def __init__(
        self,
        ttl_s: float = 60.0,
        max_entries: int = 128,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl_s = ttl_s
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, MessagePage | CallPage]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, path: str) -> MessagePage | CallPage | None:
        entry = self._entries.pop(path, None)
        if entry is None:
            return None
        stored_at, page = entry
        if self._clock() - stored_at > self._ttl_s:
            return None
        self._entries[path] = entry
        return page

    def put(self, path: str, page: MessagePage | CallPage) -> None:
        if self._ttl_s <= 0 or self._max_entries <= 0:
            return
        self._entries.pop(path, None)
        self._entries[path] = (self._clock(), page)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)


class TwilioProvider(Provider):
    """Twilio REST API client.

    Args:
        client: Shared httpx.AsyncClient for connection pooling.
        account_sid: Twilio account SID (AC...).
        auth_token: Twilio auth token.
        base_url: API host, overridable for tests.
        page_cache: Cache for next pages. None fetches every page upstream.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        account_sid: str,
        auth_token: str,
        base_url: str = TWILIO_BASE_URL,
        page_cache: PageCache | None = None,
    ):
        self._client = client
        self._page_cache = page_cache
        self._account_sid = account_sid
        self._auth = httpx.BasicAuth(account_sid, auth_token)
        self._base_url = base_url.rstrip("/")

    def _account_path(self, resource: str) -> str:
        return f"/{API_VERSION}/Accounts/{self._account_sid}/{resource}"

    async def _get(self, path: str, params: dict[str, str] | None = None) -> httpx.Response:
        try:
            response = await self._client.get(
                urljoin(self._base_url + "/", path.lstrip("/")),
                params=params,
                auth=self._auth,
                follow_redirects=True,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(None, "Timed out talking to provider") from e
        except httpx.HTTPError as e:
            raise ProviderError(None, f"Error talking to provider: {type(e).__name__}") from e

        if response.status_code >= 400:
            raise _error_from_response(response)
        return response

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> dict:
        response = await self._get(path, params)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(response.status_code, "Provider returned invalid JSON") from e

    @staticmethod
    def _parse(model, data: dict):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ProviderError(None, f"Unexpected provider response: {e.error_count()} errors") from e

    async def get_message(self, sid: str) -> Message:
        data = await self._get_json(self._account_path(f"Messages/{sid}.json"))
        return self._parse(Message, data)

    async def get_message_page(self, filters: dict[str, str]) -> MessagePage:
        data = await self._get_json(self._account_path("Messages.json"), params=filters)
        return self._parse(MessagePage, data)

    async def _get_next_page(self, path: str, model):
        if self._page_cache is not None:
            cached = self._page_cache.get(path)
            if isinstance(cached, model):
                return cached
        page = self._parse(model, await self._get_json(path))
        if self._page_cache is not None:
            self._page_cache.put(path, page)
        return page

    async def get_next_message_page(self, path: str) -> MessagePage:
        return await self._get_next_page(path, MessagePage)

    async def get_media_urls(self, message_sid: str) -> list[str]:
        data = await self._get_json(self._account_path(f"Messages/{message_sid}/Media.json"))
        media_list = data.get("media_list", []) if isinstance(data, dict) else None
        if not isinstance(media_list, list):
            raise ProviderError(None, "Unexpected provider response")
        urls = []
        for item in media_list:
            uri = item.get("uri", "") if isinstance(item, dict) else ""
            if not uri:
                raise ProviderError(None, "Unexpected provider response")
            if uri.endswith(".json"):
                uri = uri[: -len(".json")]
            urls.append(self._base_url + uri)
        return urls

    async def get_media_content(self, message_sid: str, media_sid: str) -> tuple[bytes, str]:
        response = await self._get(self._account_path(f"Messages/{message_sid}/Media/{media_sid}"))
        content_type = response.headers.get("content-type", "application/octet-stream")
        return response.content, content_type

    async def get_call(self, sid: str) -> Call:
        data = await self._get_json(self._account_path(f"Calls/{sid}.json"))
        return self._parse(Call, data)

    async def get_call_page(self, filters: dict[str, str]) -> CallPage:
        data = await self._get_json(self._account_path("Calls.json"), params=filters)
        return self._parse(CallPage, data)

    async def get_next_call_page(self, path: str) -> CallPage:
        return await self._get_next_page(path, CallPage)


def _error_from_response(response: httpx.Response) -> ProviderError:
    """Build a ProviderError from a Twilio error body.

    Twilio errors look like {"code": 20404, "message": "...", "status": 404}.
    """
    message = f"Provider returned HTTP {response.status_code}"
    code = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or message
        code = body.get("code")
    return ProviderError(response.status_code, message, code)
