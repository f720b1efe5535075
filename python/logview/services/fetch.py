"""Fetch orchestrator: the request-level flow from query to permission-checked view.

Per request:

    Start -> (DecodingCursor | BuildingFilter) -> Fetching
          -> [PrefetchingNext || FetchingMedia] -> Done | Failed

- Listing without cursor: validate filters against the allow-list, add the
  page size, fetch the first page.
- Listing with cursor: decrypt `next`, require the API version prefix,
  fetch the next page.
- Instance: fetch by SID. When the viewer can see media counts, media URLs
  are fetched concurrently with the resource and joined only after the
  resource gate passes.

After a page with a successor, the successor is encrypted for the caller
and prefetched in the PrefetchScope. The prefetch result is not kept: it
warms the provider side's cache and nothing here depends on it.

The user and permission are passed to every operation; nothing is read
from ambient request state. Nothing is retried.
"""

import asyncio
import re
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from logview.auth.permissions import Permission, PermissionDenied, ResourceHidden, TooOld, User
from logview.errors import (
    ApiError,
    ApiErrorCode,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    UpstreamError,
)
from logview.logging import get_logger
from logview.schemas.provider import (
    API_VERSION,
    CALL_SID_PATTERN,
    MEDIA_SID_PATTERN,
    MESSAGE_SID_PATTERN,
    CallPage,
    MessagePage,
)
from logview.services.crypto import (
    CursorDecodeError,
    MediaRefExpired,
    opaque,
    opaque_media,
    unopaque,
    unopaque_media,
)
from logview.services.filters import (
    CALL_FILTERS,
    MESSAGE_FILTERS,
    FilterError,
    FilterNames,
    build_page_filters,
    query_from_next_page,
    split_query,
)
from logview.services.provider import Provider, ProviderError
from logview.services.redact import hash_text, safe_kv
from logview.services.views import (
    CallPageView,
    CallView,
    MessagePageView,
    MessageView,
    new_call_page_view,
    new_call_view,
    new_message_page_view,
    new_message_view,
)

logger = get_logger(__name__)

T = TypeVar("T")

NEXT_PAGE_PREFIX = f"/{API_VERSION}/"

_MEDIA_SID_IN_URL = re.compile(r"/Media/(ME[a-f0-9]{32})$")


# =============================================================================
# Detached prefetch tasks
# =============================================================================


class PrefetchScope:
    """Owner of best-effort background fetches.

    Tasks belong to the process, not to the request that spawned them:
    a request may finish (or time out) while its prefetch keeps running.
    Each task is bounded by timeout_s, failures are logged at debug level
    and swallowed, and aclose() cancels whatever is still running at
    shutdown.
    """

    def __init__(self, timeout_s: float):
        self._timeout_s = timeout_s
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task | None:
        """Start coro in the background. Returns None once the scope is closed."""
        if self._closed:
            coro.close()
            logger.debug("prefetch_skipped", name=name, reason="scope_closed")
            return None
        task = asyncio.get_running_loop().create_task(self._run(name, coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, coro: Awaitable[Any]) -> None:
        try:
            await asyncio.wait_for(coro, self._timeout_s)
        except TimeoutError:
            logger.debug("prefetch_timed_out", name=name, timeout_s=self._timeout_s)
        except ProviderError as e:
            logger.debug("prefetch_failed", name=name, status_code=e.status_code, error=e.message)
        except Exception as e:
            logger.debug("prefetch_failed", name=name, error=repr(e))

    async def aclose(self) -> None:
        """Cancel and wait for outstanding tasks. Later spawns are refused."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("prefetch_scope_closed", cancelled=len(tasks))


# =============================================================================
# Results
# =============================================================================


@dataclass
class MediaResult:
    """Media for one message: signed URLs, or the reason there are none."""

    urls: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class MessageInstance:
    message: MessageView
    media: MediaResult | None = None


@dataclass
class CallInstance:
    call: CallView


@dataclass
class MessageListing:
    page: MessagePageView
    next_page: str | None
    query: dict[str, str]


@dataclass
class CallListing:
    page: CallPageView
    next_page: str | None
    query: dict[str, str]


def _discard(task: asyncio.Task) -> None:
    """Cancel a task we will not join, or consume its outcome if it already ran."""
    if not task.done():
        task.cancel()
    elif not task.cancelled():
        task.exception()


# =============================================================================
# Orchestrator
# =============================================================================


class FetchOrchestrator:
    """Produce permission-checked pages and resources for a viewer.

    Args:
        provider: The provider collaborator.
        secret_key: 32-byte key for cursors and media references.
        prefetch: Scope that owns next page prefetches.
        page_size: Provider page size for first pages.
        request_timeout_s: Deadline for the primary fetch and the media join.
        media_url_ttl_s: Lifetime of signed media links.
        clock: Returns the current time (tests pin it).
    """

    def __init__(
        self,
        provider: Provider,
        secret_key: bytes,
        prefetch: PrefetchScope,
        *,
        page_size: int = 50,
        request_timeout_s: float = 10.0,
        media_url_ttl_s: int = 3600,
        clock: Callable[[], datetime] | None = None,
    ):
        self._provider = provider
        self._secret_key = secret_key
        self._prefetch = prefetch
        self._page_size = page_size
        self._request_timeout_s = request_timeout_s
        self._media_url_ttl = timedelta(seconds=media_url_ttl_s)
        self._clock = clock or (lambda: datetime.now(UTC))

    def now(self) -> datetime:
        return self._clock()

    def _deadline(self) -> float:
        return asyncio.get_running_loop().time() + self._request_timeout_s

    async def _within(self, awaitable: Awaitable[T], deadline: float) -> T:
        remaining = deadline - asyncio.get_running_loop().time()
        return await asyncio.wait_for(awaitable, max(0.0, remaining))

    # -------------------------------------------------------------------------
    # Error mapping
    # -------------------------------------------------------------------------

    def _hidden(self, exc: ResourceHidden, **context) -> ForbiddenError:
        if isinstance(exc, TooOld):
            logger.info("resource_too_old", **context)
        else:
            logger.info("permission_denied", **context)
        return ForbiddenError(message=str(exc))

    def _provider_error(self, exc: ProviderError, *, listing: bool = False) -> ApiError:
        status = exc.status_code
        if status in (401, 403):
            logger.warning("provider_forbidden", status_code=status, provider_code=exc.code)
            return ForbiddenError()
        if status == 404:
            return NotFoundError()
        if status == 400 and listing:
            return InvalidRequestError(message=exc.message)
        logger.error(
            "provider_error", status_code=status, provider_code=exc.code, error=exc.message
        )
        return UpstreamError()

    def _timed_out(self, what: str) -> UpstreamError:
        logger.warning("provider_timeout", resource=what, timeout_s=self._request_timeout_s)
        return UpstreamError(ApiErrorCode.E_UPSTREAM_TIMEOUT, "Timed out waiting for provider")

    # -------------------------------------------------------------------------
    # Listings
    # -------------------------------------------------------------------------

    def _decode_cursor(self, opaque_next: str) -> str:
        try:
            path = unopaque(opaque_next, self._secret_key)
        except CursorDecodeError as e:
            logger.info("invalid_next_cursor", **safe_kv(opaque_sha256=hash_text(opaque_next)))
            raise InvalidRequestError(
                ApiErrorCode.E_INVALID_CURSOR,
                "Could not decrypt `next` query parameter",
            ) from e
        if not path.startswith(NEXT_PAGE_PREFIX):
            logger.warning(
                "invalid_next_page_uri",
                **safe_kv(next_sha256=hash_text(path), opaque_sha256=hash_text(opaque_next)),
            )
            raise InvalidRequestError(ApiErrorCode.E_INVALID_CURSOR, "Invalid next page uri")
        return path

    async def _fetch_page(
        self,
        kind: str,
        names: FilterNames,
        permission: Permission,
        query_items: Iterable[tuple[str, str]],
        get_page: Callable[[dict[str, str]], Awaitable[T]],
        get_next_page: Callable[[str], Awaitable[T]],
    ) -> tuple[T, dict[str, str]]:
        try:
            opaque_next, params = split_query(query_items, names)
        except FilterError as e:
            raise InvalidRequestError(ApiErrorCode.E_INVALID_FILTER, str(e)) from e

        deadline = self._deadline()
        if opaque_next is not None:
            path = self._decode_cursor(opaque_next)
            query = query_from_next_page(path, names)
            fetch = get_next_page(path)
        else:
            min_date = permission.oldest_viewable(self.now()).date()
            try:
                filters = build_page_filters(
                    params, names, page_size=self._page_size, min_date=min_date
                )
            except FilterError as e:
                raise InvalidRequestError(ApiErrorCode.E_INVALID_FILTER, str(e)) from e
            query = params
            fetch = get_page(filters)

        try:
            page = await self._within(fetch, deadline)
        except ProviderError as e:
            raise self._provider_error(e, listing=True) from e
        except TimeoutError as e:
            raise self._timed_out(kind) from e
        return page, query

    def _publish_next(
        self, kind: str, next_uri: str | None, get_next_page: Callable[[str], Awaitable[Any]]
    ) -> str | None:
        """Encrypt the successor page for the caller and start warming it."""
        if next_uri is None:
            return None
        token = opaque(next_uri, self._secret_key)
        self._prefetch.spawn(f"prefetch:{kind}", get_next_page(next_uri))
        return token

    async def list_messages(
        self, user: User, permission: Permission, query_items: Iterable[tuple[str, str]]
    ) -> MessageListing:
        """List one page of messages for the viewer.

        Raises:
            ForbiddenError: Viewer cannot view messages, or provider refused.
            InvalidRequestError: Bad filter or cursor, or provider rejected the filters.
            NotFoundError: Provider reports the list does not exist.
            UpstreamError: Any other provider failure or timeout.
        """
        if not user.can_view_messages():
            logger.info("permission_denied", resource="messages")
            raise ForbiddenError(message="Access denied")

        page: MessagePage
        page, query = await self._fetch_page(
            "messages",
            MESSAGE_FILTERS,
            permission,
            query_items,
            self._provider.get_message_page,
            self._provider.get_next_message_page,
        )
        try:
            view = new_message_page_view(page, user, permission, self.now())
        except ResourceHidden as e:
            raise self._hidden(e, resource="messages") from e

        next_page = self._publish_next(
            "messages", view.next_page_uri, self._provider.get_next_message_page
        )
        return MessageListing(page=view, next_page=next_page, query=query)

    async def list_calls(
        self, user: User, permission: Permission, query_items: Iterable[tuple[str, str]]
    ) -> CallListing:
        """List one page of calls for the viewer. Raises as list_messages."""
        if not user.can_view_calls():
            logger.info("permission_denied", resource="calls")
            raise ForbiddenError(message="Access denied")

        page: CallPage
        page, query = await self._fetch_page(
            "calls",
            CALL_FILTERS,
            permission,
            query_items,
            self._provider.get_call_page,
            self._provider.get_next_call_page,
        )
        try:
            view = new_call_page_view(page, user, permission, self.now())
        except ResourceHidden as e:
            raise self._hidden(e, resource="calls") from e

        next_page = self._publish_next("calls", view.next_page_uri, self._provider.get_next_call_page)
        return CallListing(page=view, next_page=next_page, query=query)

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    async def get_message(self, user: User, permission: Permission, sid: str) -> MessageInstance:
        """Fetch one message, and its media when the viewer can see it.

        Raises:
            NotFoundError: Malformed SID or provider 404.
            ForbiddenError: Resource gate failed, or provider refused.
            UpstreamError: Any other provider failure or timeout.
        """
        if not re.fullmatch(MESSAGE_SID_PATTERN, sid):
            raise NotFoundError()

        deadline = self._deadline()
        media_task = None
        if user.can_view_num_media():
            media_task = asyncio.create_task(self._provider.get_media_urls(sid))

        try:
            try:
                message = await self._within(self._provider.get_message(sid), deadline)
            except ProviderError as e:
                raise self._provider_error(e) from e
            except TimeoutError as e:
                raise self._timed_out("message") from e

            try:
                view = new_message_view(message, user, permission, self.now())
            except ResourceHidden as e:
                raise self._hidden(e, resource="message", sid=sid) from e
            if not view.can_view_property("Sid"):
                raise ForbiddenError(message="Cannot view this message")

            media = await self._join_media(view, media_task, deadline)
        finally:
            if media_task is not None:
                _discard(media_task)

        return MessageInstance(message=view, media=media)

    async def _join_media(
        self, view: MessageView, media_task: asyncio.Task | None, deadline: float
    ) -> MediaResult | None:
        try:
            num_media = view.num_media()
        except PermissionDenied as e:
            return MediaResult(error=str(e))
        if num_media == 0 or media_task is None:
            return None

        sid = view.sid
        try:
            urls = await self._within(media_task, deadline)
        except TimeoutError:
            logger.warning("media_fetch_timed_out", sid=sid, timeout_s=self._request_timeout_s)
            return MediaResult(error="Timed out fetching media")
        except ProviderError as e:
            logger.warning("media_fetch_failed", sid=sid, status_code=e.status_code)
            return MediaResult(error="Could not load media")

        return MediaResult(urls=self._sign_media_urls(sid, urls))

    def _sign_media_urls(self, message_sid: str, urls: list[str]) -> list[str]:
        expires_at = self.now() + self._media_url_ttl
        signed = []
        for url in urls:
            match = _MEDIA_SID_IN_URL.search(url)
            if match is None:
                logger.warning("unrecognised_media_url", sid=message_sid)
                continue
            token = opaque_media(message_sid, match.group(1), expires_at, self._secret_key)
            signed.append(f"/media/{token}")
        return signed

    async def get_call(self, user: User, permission: Permission, sid: str) -> CallInstance:
        """Fetch one call. Raises as get_message."""
        if not re.fullmatch(CALL_SID_PATTERN, sid):
            raise NotFoundError()

        try:
            call = await self._within(self._provider.get_call(sid), self._deadline())
        except ProviderError as e:
            raise self._provider_error(e) from e
        except TimeoutError as e:
            raise self._timed_out("call") from e

        try:
            view = new_call_view(call, user, permission, self.now())
        except ResourceHidden as e:
            raise self._hidden(e, resource="call", sid=sid) from e
        return CallInstance(call=view)

    async def get_media(self, user: User, permission: Permission, token: str) -> tuple[bytes, str]:
        """Resolve a signed media link to (content, content_type).

        The parent message is fetched again and gated, so a link never
        outlives the viewer's right to see the message.

        Raises:
            InvalidRequestError: Token is not an authentic media reference.
            ForbiddenError: Link expired, media hidden, or message gate failed.
            NotFoundError: Provider 404.
            UpstreamError: Any other provider failure or timeout.
        """
        try:
            ref = unopaque_media(token, self._secret_key, self.now())
        except MediaRefExpired as e:
            raise ForbiddenError(message="This media link has expired") from e
        except CursorDecodeError as e:
            logger.info("invalid_media_reference", **safe_kv(token_sha256=hash_text(token)))
            raise InvalidRequestError(ApiErrorCode.E_INVALID_CURSOR, "Invalid media link") from e

        if not (
            re.fullmatch(MESSAGE_SID_PATTERN, ref.message_sid)
            and re.fullmatch(MEDIA_SID_PATTERN, ref.media_sid)
        ):
            raise InvalidRequestError(ApiErrorCode.E_INVALID_CURSOR, "Invalid media link")

        if not user.can_view_num_media():
            raise self._hidden(PermissionDenied(), resource="media", sid=ref.message_sid)

        deadline = self._deadline()
        try:
            message = await self._within(self._provider.get_message(ref.message_sid), deadline)
            try:
                new_message_view(message, user, permission, self.now())
            except ResourceHidden as e:
                raise self._hidden(e, resource="media", sid=ref.message_sid) from e
            return await self._within(
                self._provider.get_media_content(ref.message_sid, ref.media_sid), deadline
            )
        except ProviderError as e:
            raise self._provider_error(e) from e
        except TimeoutError as e:
            raise self._timed_out("media") from e
