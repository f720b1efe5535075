"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, middleware, and routes.

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)

Actual execution order per request:
1. RequestIDMiddleware (sets request_id, starts timer)
2. UpgradeInsecureMiddleware (redirects plain HTTP, unless allowed)
3. BasicAuthMiddleware (verifies credentials, sets viewer)
4. Route handler

Provider Client Lifecycle:
- httpx.AsyncClient is created at startup, stored in app.state
- TwilioProvider wraps the shared client for connection pooling
- PrefetchScope is closed before the client, cancelling pending prefetches
"""

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from logview.api.routes import create_api_router
from logview.auth.middleware import BasicAuthMiddleware
from logview.auth.permissions import Permission, User
from logview.auth.users import StaticUserDirectory, UserDirectory
from logview.config import Settings, get_settings
from logview.errors import ApiError, ApiErrorCode
from logview.logging import configure_logging, get_logger
from logview.middleware.request_id import RequestIDMiddleware
from logview.middleware.secure import UpgradeInsecureMiddleware
from logview.responses import (
    api_error_handler,
    error_response,
    http_exception_handler,
    unhandled_exception_handler,
)
from logview.services.fetch import FetchOrchestrator, PrefetchScope
from logview.services.provider import PageCache, Provider, TwilioProvider

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the provider, prefetch scope and orchestrator; tear them down in order."""
    settings: Settings = app.state.settings

    app.state.httpx_client = None
    provider: Provider | None = app.state.provider
    if provider is None:
        app.state.httpx_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout_s, connect=5.0),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            headers={"User-Agent": "logview"},
        )
        provider = TwilioProvider(
            app.state.httpx_client,
            account_sid=settings.twilio_account_sid or "",
            auth_token=settings.twilio_auth_token or "",
            base_url=settings.twilio_base_url,
            page_cache=PageCache(
                ttl_s=settings.next_page_cache_ttl_s,
                max_entries=settings.next_page_cache_size,
            ),
        )

    prefetch = PrefetchScope(timeout_s=settings.prefetch_timeout_s)
    app.state.prefetch_scope = prefetch
    app.state.orchestrator = FetchOrchestrator(
        provider,
        settings.secret_key_bytes,
        prefetch,
        page_size=settings.page_size,
        request_timeout_s=settings.request_timeout_s,
        media_url_ttl_s=settings.media_url_ttl_s,
        clock=app.state.clock,
    )
    logger.info(
        "orchestrator_initialized",
        page_size=settings.page_size,
        max_resource_age_s=int(settings.max_resource_age.total_seconds()),
        auth_enabled=settings.auth_enabled,
    )

    yield

    await prefetch.aclose()
    if app.state.httpx_client is not None:
        await app.state.httpx_client.aclose()
        logger.info("httpx_client_closed")


def create_app(
    settings: Settings | None = None,
    provider: Provider | None = None,
    user_directory: UserDirectory | None = None,
    clock=None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use (defaults to get_settings()).
        provider: Provider override (for testing). When None, a TwilioProvider
            is built at startup.
        user_directory: Identity lookup. Defaults to giving every configured
            Basic auth name the USER_SETTINGS capabilities.
        clock: Callable returning the current aware datetime (for testing).

    Logging is configured here: JSON in staging and prod, console otherwise.

    Returns:
        Configured FastAPI application instance.
    """
    settings = settings or get_settings()
    configure_logging(json_format=settings.is_production)

    app = FastAPI(
        title="logview API",
        description="Permission-gated viewer for telephony message and call logs",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.provider = provider
    app.state.clock = clock
    app.state.permission = Permission(settings.max_resource_age)

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=error_response(ApiErrorCode.E_INVALID_REQUEST, "Invalid request"),
        )

    app.include_router(create_api_router())

    credentials = settings.user_credentials
    directory = user_directory or StaticUserDirectory.shared(
        list(credentials), settings.user_settings
    )
    app.add_middleware(
        BasicAuthMiddleware,
        credentials=credentials,
        directory=directory,
        default_user=User(settings.user_settings),
    )
    if not credentials:
        logger.warning("basic_auth_disabled", env=settings.logview_env.value)

    if not settings.allow_unencrypted_traffic:
        app.add_middleware(UpgradeInsecureMiddleware, public_host=settings.public_host)

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    Call AFTER create_app() so it runs FIRST. Every response, including
    auth failures and redirects, then carries X-Request-ID.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
