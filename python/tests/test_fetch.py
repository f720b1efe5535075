"""Tests for the fetch orchestrator and prefetch scope.

Tests cover:
- Listing: capability check before any provider call, filter allow-list,
  cursor decoding and the API version prefix, next-page tokens, prefetch
- Instances: SID shape, concurrent media fetch, media join timeout, media
  discarded on gate denial
- Media proxy: signed references, expiry, re-gating of the parent message
- Provider error classification
- PrefetchScope failure handling and shutdown
"""

import asyncio
import base64
from datetime import timedelta

import pytest

from logview.auth.permissions import Permission, User, UserSettings, all_user_settings
from logview.errors import (
    ApiErrorCode,
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    UpstreamError,
)
from logview.services.crypto import opaque, opaque_media, unopaque, unopaque_media
from logview.services.fetch import FetchOrchestrator, PrefetchScope
from logview.services.provider import ProviderError
from tests.helpers import (
    NEXT_CALL_PAGE_PATH,
    NEXT_PAGE_PATH,
    NOW,
    TEST_SECRET_KEY,
    FakeProvider,
    call_sid,
    make_call,
    make_call_page,
    make_message,
    make_message_page,
    media_sid,
    media_url,
    message_sid,
)

PERMISSION = Permission(timedelta(days=30))
EVERYTHING = User(all_user_settings())


def make_orchestrator(
    provider: FakeProvider, *, timeout: float = 1.0, prefetch: PrefetchScope | None = None
) -> FetchOrchestrator:
    return FetchOrchestrator(
        provider,
        TEST_SECRET_KEY,
        prefetch or PrefetchScope(timeout_s=5.0),
        page_size=50,
        request_timeout_s=timeout,
        media_url_ttl_s=3600,
        clock=lambda: NOW,
    )


async def _settle() -> None:
    """Let background tasks run."""
    for _ in range(5):
        await asyncio.sleep(0)


def _other_tasks() -> list[asyncio.Task]:
    current = asyncio.current_task()
    return [t for t in asyncio.all_tasks() if t is not current]


# =============================================================================
# Listings
# =============================================================================


class TestListMessages:
    """Tests for list_messages."""

    @pytest.mark.asyncio
    async def test_forbidden_before_any_provider_call(self):
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)
        with pytest.raises(ForbiddenError):
            await orchestrator.list_messages(User(), PERMISSION, [])
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_first_page_filters(self):
        provider = FakeProvider(message_page=make_message_page([make_message()]))
        orchestrator = make_orchestrator(provider)

        listing = await orchestrator.list_messages(EVERYTHING, PERMISSION, [("to", "+14155550199")])

        assert provider.called("get_message_page") == [
            {"PageSize": "50", "To": "+14155550199", "DateSent>": "2026-05-02"}
        ]
        assert len(listing.page.messages) == 1
        assert listing.next_page is None
        assert listing.query == {"to": "+14155550199"}

    @pytest.mark.asyncio
    async def test_next_token_is_opaque_and_decodes_exactly(self):
        provider = FakeProvider(message_page=make_message_page([make_message()], NEXT_PAGE_PATH))
        orchestrator = make_orchestrator(provider)

        listing = await orchestrator.list_messages(EVERYTHING, PERMISSION, [])

        assert listing.next_page is not None
        assert listing.next_page != NEXT_PAGE_PATH
        assert "2010-04-01" not in listing.next_page
        assert unopaque(listing.next_page, TEST_SECRET_KEY) == NEXT_PAGE_PATH

    @pytest.mark.asyncio
    async def test_next_page_is_prefetched(self):
        provider = FakeProvider(message_page=make_message_page([make_message()], NEXT_PAGE_PATH))
        orchestrator = make_orchestrator(provider)

        await orchestrator.list_messages(EVERYTHING, PERMISSION, [])
        await _settle()

        assert provider.called("get_next_message_page") == [NEXT_PAGE_PATH]

    @pytest.mark.asyncio
    async def test_prefetch_failure_does_not_affect_response(self):
        provider = FakeProvider(message_page=make_message_page([make_message()], NEXT_PAGE_PATH))
        provider.errors["get_next_message_page"] = ProviderError(500, "boom")
        orchestrator = make_orchestrator(provider)

        listing = await orchestrator.list_messages(EVERYTHING, PERMISSION, [])
        await _settle()

        assert listing.next_page is not None
        assert provider.called("get_next_message_page") == [NEXT_PAGE_PATH]

    @pytest.mark.asyncio
    async def test_valid_next_fetches_next_page(self):
        next_page = make_message_page([make_message(7)])
        provider = FakeProvider(next_pages={NEXT_PAGE_PATH: next_page})
        orchestrator = make_orchestrator(provider)
        token = opaque(NEXT_PAGE_PATH, TEST_SECRET_KEY)

        listing = await orchestrator.list_messages(EVERYTHING, PERMISSION, [("next", token)])

        assert provider.called("get_next_message_page") == [NEXT_PAGE_PATH]
        assert provider.called("get_message_page") == []
        assert [m.sid for m in listing.page.messages] == [message_sid(7)]

    @pytest.mark.asyncio
    async def test_tampered_next_is_invalid_and_fetches_nothing(self):
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)
        token = opaque(NEXT_PAGE_PATH, TEST_SECRET_KEY)
        raw = bytearray(base64.urlsafe_b64decode(token + "=" * (-len(token) % 4)))
        raw[-1] ^= 0x01
        tampered = base64.urlsafe_b64encode(bytes(raw)).rstrip(b"=").decode("ascii")

        with pytest.raises(InvalidRequestError) as exc_info:
            await orchestrator.list_messages(EVERYTHING, PERMISSION, [("next", tampered)])

        assert exc_info.value.code == ApiErrorCode.E_INVALID_CURSOR
        assert exc_info.value.status_code == 400
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_next_without_version_prefix_rejected(self):
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)
        token = opaque("https://evil.example/2010-04-01/Messages.json", TEST_SECRET_KEY)

        with pytest.raises(InvalidRequestError) as exc_info:
            await orchestrator.list_messages(EVERYTHING, PERMISSION, [("next", token)])

        assert exc_info.value.message == "Invalid next page uri"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_unknown_filter_rejected(self):
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)
        with pytest.raises(InvalidRequestError) as exc_info:
            await orchestrator.list_messages(EVERYTHING, PERMISSION, [("Body", "x")])
        assert exc_info.value.code == ApiErrorCode.E_INVALID_FILTER
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_start_before_cutoff_rejected(self):
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)
        with pytest.raises(InvalidRequestError):
            await orchestrator.list_messages(EVERYTHING, PERMISSION, [("start", "2026-01-01")])
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_old_items_dropped_and_no_next(self):
        page = make_message_page(
            [make_message(1), make_message(2, age=timedelta(days=45))], NEXT_PAGE_PATH
        )
        provider = FakeProvider(message_page=page)
        orchestrator = make_orchestrator(provider)

        listing = await orchestrator.list_messages(EVERYTHING, PERMISSION, [])
        await _settle()

        assert [m.sid for m in listing.page.messages] == [message_sid(1)]
        assert listing.next_page is None
        assert provider.called("get_next_message_page") == []

    @pytest.mark.asyncio
    async def test_timeout(self):
        provider = FakeProvider()
        provider.delays["get_message_page"] = 1.0
        orchestrator = make_orchestrator(provider, timeout=0.05)

        with pytest.raises(UpstreamError) as exc_info:
            await orchestrator.list_messages(EVERYTHING, PERMISSION, [])

        assert exc_info.value.code == ApiErrorCode.E_UPSTREAM_TIMEOUT
        assert exc_info.value.status_code == 504


class TestProviderErrorClassification:
    """Provider failures map to API errors."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,expected_status",
        [(400, 400), (401, 403), (403, 403), (404, 404), (429, 502), (500, 502), (None, 502)],
    )
    async def test_listing(self, status, expected_status):
        provider = FakeProvider()
        provider.errors["get_message_page"] = ProviderError(status, "Invalid 'To' Phone Number")
        orchestrator = make_orchestrator(provider)

        with pytest.raises(Exception) as exc_info:
            await orchestrator.list_messages(EVERYTHING, PERMISSION, [])

        assert exc_info.value.status_code == expected_status

    @pytest.mark.asyncio
    async def test_listing_400_carries_provider_message(self):
        provider = FakeProvider()
        provider.errors["get_message_page"] = ProviderError(400, "Invalid 'To' Phone Number")
        orchestrator = make_orchestrator(provider)

        with pytest.raises(InvalidRequestError) as exc_info:
            await orchestrator.list_messages(EVERYTHING, PERMISSION, [])

        assert exc_info.value.message == "Invalid 'To' Phone Number"

    @pytest.mark.asyncio
    async def test_instance_400_is_upstream_error(self):
        provider = FakeProvider()
        provider.errors["get_message"] = ProviderError(400, "bad")
        orchestrator = make_orchestrator(provider)

        with pytest.raises(UpstreamError):
            await orchestrator.get_message(EVERYTHING, PERMISSION, message_sid(1))


class TestListCalls:
    """Tests for list_calls."""

    @pytest.mark.asyncio
    async def test_forbidden_without_call_capability(self):
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)
        with pytest.raises(ForbiddenError):
            await orchestrator.list_calls(User(UserSettings(can_view_messages=True)), PERMISSION, [])
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_status_filter_and_next(self):
        provider = FakeProvider(call_page=make_call_page([make_call()], NEXT_CALL_PAGE_PATH))
        orchestrator = make_orchestrator(provider)

        listing = await orchestrator.list_calls(EVERYTHING, PERMISSION, [("status", "busy")])

        assert provider.called("get_call_page") == [
            {"PageSize": "50", "StartTime>": "2026-05-02", "Status": "busy"}
        ]
        assert unopaque(listing.next_page, TEST_SECRET_KEY) == NEXT_CALL_PAGE_PATH


# =============================================================================
# Instances
# =============================================================================


class TestGetMessage:
    """Tests for get_message and the concurrent media fetch."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sid", ["", "MM123", "CA" + "0" * 32, "MM" + "g" * 32, message_sid(1) + "\n"])
    async def test_malformed_sid_is_not_found(self, sid):
        provider = FakeProvider()
        orchestrator = make_orchestrator(provider)
        with pytest.raises(NotFoundError):
            await orchestrator.get_message(EVERYTHING, PERMISSION, sid)
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_provider_404(self):
        orchestrator = make_orchestrator(FakeProvider())
        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.get_message(EVERYTHING, PERMISSION, message_sid(1))
        assert exc_info.value.message == "Not found"

    @pytest.mark.asyncio
    async def test_media_urls_are_signed(self):
        message = make_message(num_media=2)
        urls = [media_url(message.sid, media_sid(1)), media_url(message.sid, media_sid(2))]
        provider = FakeProvider(messages=[message], media={message.sid: urls})
        orchestrator = make_orchestrator(provider)

        instance = await orchestrator.get_message(EVERYTHING, PERMISSION, message.sid)

        assert instance.media.error is None
        assert len(instance.media.urls) == 2
        for url, expected in zip(instance.media.urls, [media_sid(1), media_sid(2)]):
            assert url.startswith("/media/")
            assert "twilio" not in url
            ref = unopaque_media(url.removeprefix("/media/"), TEST_SECRET_KEY, NOW)
            assert ref.message_sid == message.sid
            assert ref.media_sid == expected
            assert ref.expires_at == NOW + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_media_fetched_concurrently_with_message(self):
        """Both fetches are in flight at once, so total time is ~max, not sum."""
        message = make_message(num_media=1)
        provider = FakeProvider(
            messages=[message], media={message.sid: [media_url(message.sid, media_sid(1))]}
        )
        provider.delays["get_message"] = 0.3
        provider.delays["get_media_urls"] = 0.3
        orchestrator = make_orchestrator(provider, timeout=0.5)

        instance = await orchestrator.get_message(EVERYTHING, PERMISSION, message.sid)

        assert instance.media.error is None
        assert len(instance.media.urls) == 1

    @pytest.mark.asyncio
    async def test_hidden_num_media_issues_no_media_fetch(self):
        message = make_message(num_media=3)
        provider = FakeProvider(messages=[message])
        orchestrator = make_orchestrator(provider)
        user = User(UserSettings(can_view_messages=True))

        instance = await orchestrator.get_message(user, PERMISSION, message.sid)

        assert provider.called("get_media_urls") == []
        assert instance.media.urls == []
        assert instance.media.error == "You do not have permission to access that information"

    @pytest.mark.asyncio
    async def test_zero_media_gives_no_media_result(self):
        message = make_message(num_media=0)
        provider = FakeProvider(messages=[message])
        orchestrator = make_orchestrator(provider)

        instance = await orchestrator.get_message(EVERYTHING, PERMISSION, message.sid)
        await _settle()

        assert instance.media is None
        assert _other_tasks() == []

    @pytest.mark.asyncio
    async def test_media_join_timeout_is_partial_failure(self):
        message = make_message(num_media=1)
        provider = FakeProvider(messages=[message])
        provider.delays["get_media_urls"] = 5.0
        orchestrator = make_orchestrator(provider, timeout=0.1)

        instance = await orchestrator.get_message(EVERYTHING, PERMISSION, message.sid)

        assert instance.message.sid == message.sid
        assert instance.media.urls == []
        assert instance.media.error == "Timed out fetching media"

    @pytest.mark.asyncio
    async def test_media_provider_failure_is_partial_failure(self):
        message = make_message(num_media=1)
        provider = FakeProvider(messages=[message])
        provider.errors["get_media_urls"] = ProviderError(500, "boom")
        orchestrator = make_orchestrator(provider)

        instance = await orchestrator.get_message(EVERYTHING, PERMISSION, message.sid)

        assert instance.media.error == "Could not load media"

    @pytest.mark.asyncio
    async def test_media_discarded_when_gate_denies(self):
        message = make_message(num_media=1, age=timedelta(days=31))
        provider = FakeProvider(
            messages=[message], media={message.sid: [media_url(message.sid, media_sid(1))]}
        )
        provider.delays["get_media_urls"] = 5.0
        orchestrator = make_orchestrator(provider)

        with pytest.raises(ForbiddenError) as exc_info:
            await orchestrator.get_message(EVERYTHING, PERMISSION, message.sid)
        await _settle()

        assert "age exceeds the viewable limit" in exc_info.value.message
        assert _other_tasks() == []

    @pytest.mark.asyncio
    async def test_media_discarded_when_message_fetch_fails(self):
        provider = FakeProvider()
        provider.delays["get_media_urls"] = 5.0
        orchestrator = make_orchestrator(provider)

        with pytest.raises(NotFoundError):
            await orchestrator.get_message(EVERYTHING, PERMISSION, message_sid(9))
        await _settle()

        assert _other_tasks() == []


class TestGetCall:
    @pytest.mark.asyncio
    async def test_get_call(self):
        call = make_call()
        orchestrator = make_orchestrator(FakeProvider(calls=[call]))
        instance = await orchestrator.get_call(EVERYTHING, PERMISSION, call.sid)
        assert instance.call.sid == call.sid

    @pytest.mark.asyncio
    async def test_message_sid_is_not_a_call(self):
        provider = FakeProvider()
        with pytest.raises(NotFoundError):
            await make_orchestrator(provider).get_call(EVERYTHING, PERMISSION, message_sid(1))
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_call_too_old(self):
        call = make_call(age=timedelta(days=31))
        orchestrator = make_orchestrator(FakeProvider(calls=[call]))
        with pytest.raises(ForbiddenError):
            await orchestrator.get_call(EVERYTHING, PERMISSION, call_sid(1))


# =============================================================================
# Media proxy
# =============================================================================


class TestGetMedia:
    """Tests for resolving signed media links."""

    def _token(self, expires_in: timedelta = timedelta(hours=1)) -> str:
        return opaque_media(message_sid(1), media_sid(1), NOW + expires_in, TEST_SECRET_KEY)

    @pytest.mark.asyncio
    async def test_returns_content(self):
        provider = FakeProvider(messages=[make_message(num_media=1)])
        provider.media_content[media_sid(1)] = (b"GIF89a", "image/gif")
        orchestrator = make_orchestrator(provider)

        content, content_type = await orchestrator.get_media(EVERYTHING, PERMISSION, self._token())

        assert (content, content_type) == (b"GIF89a", "image/gif")
        assert provider.called("get_media_content") == [(message_sid(1), media_sid(1))]

    @pytest.mark.asyncio
    async def test_expired_link(self):
        provider = FakeProvider(messages=[make_message(num_media=1)])
        orchestrator = make_orchestrator(provider)
        with pytest.raises(ForbiddenError):
            await orchestrator.get_media(EVERYTHING, PERMISSION, self._token(timedelta(seconds=-1)))
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_garbage_link(self):
        provider = FakeProvider()
        with pytest.raises(InvalidRequestError):
            await make_orchestrator(provider).get_media(EVERYTHING, PERMISSION, "garbage")
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_requires_num_media_capability(self):
        provider = FakeProvider(messages=[make_message(num_media=1)])
        user = User(UserSettings(can_view_messages=True))
        with pytest.raises(ForbiddenError):
            await make_orchestrator(provider).get_media(user, PERMISSION, self._token())
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_parent_message_regated(self):
        """A link minted before the message aged out stops working."""
        provider = FakeProvider(messages=[make_message(num_media=1, age=timedelta(days=31))])
        with pytest.raises(ForbiddenError):
            await make_orchestrator(provider).get_media(EVERYTHING, PERMISSION, self._token())
        assert provider.called("get_media_content") == []


# =============================================================================
# PrefetchScope
# =============================================================================


class TestPrefetchScope:
    """Tests for detached prefetch tasks."""

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self):
        scope = PrefetchScope(timeout_s=1.0)

        async def fail():
            raise ProviderError(None, "transport")

        task = scope.spawn("prefetch:test", fail())
        await task

        assert task.exception() is None
        assert scope.pending == 0

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_swallowed(self):
        scope = PrefetchScope(timeout_s=1.0)

        async def fail():
            raise RuntimeError("unexpected")

        task = scope.spawn("prefetch:test", fail())
        await task
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_bounded_by_timeout(self):
        scope = PrefetchScope(timeout_s=0.05)
        task = scope.spawn("prefetch:test", asyncio.sleep(10))
        await asyncio.wait_for(task, 1.0)
        assert not task.cancelled()

    @pytest.mark.asyncio
    async def test_aclose_cancels_outstanding(self):
        scope = PrefetchScope(timeout_s=10.0)
        task = scope.spawn("prefetch:test", asyncio.sleep(10))
        await asyncio.sleep(0)
        assert scope.pending == 1

        await scope.aclose()

        assert task.cancelled()
        assert scope.pending == 0

    @pytest.mark.asyncio
    async def test_spawn_after_close_is_refused(self):
        scope = PrefetchScope(timeout_s=1.0)
        await scope.aclose()
        assert scope.spawn("prefetch:test", asyncio.sleep(0)) is None
