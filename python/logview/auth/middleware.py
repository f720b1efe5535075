"""HTTP Basic authentication middleware for FastAPI.

Provides:
- BasicAuthMiddleware: Global middleware verifying Basic credentials
- get_viewer: Dependency for accessing the authenticated viewer

With no credentials configured, auth is disabled and every request runs
as the shared default identity.
"""

import base64
import binascii
import hmac
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from logview.auth.permissions import User
from logview.auth.users import DEFAULT_VIEWER_NAME, UserDirectory
from logview.errors import ApiError, ApiErrorCode
from logview.logging import get_logger, get_request_id, set_request_context
from logview.responses import error_response

logger = get_logger(__name__)

AUTHORIZATION_HEADER = "authorization"

# Paths that don't require authentication
PUBLIC_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}


@dataclass
class Viewer:
    """Authenticated viewer identity.

    Attributes:
        name: The Basic auth name, or DEFAULT_VIEWER_NAME when auth is disabled.
        user: The capabilities this viewer holds.
    """

    name: str
    user: User


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """Authentication middleware for FastAPI.

    Order of checks:
    1. Skip if public path
    2. If no credentials are configured, attach the default viewer
    3. Parse the Basic Authorization header (401 if missing or malformed)
    4. Compare the password in constant time (401 on mismatch)
    5. Resolve the name through the UserDirectory (403 if unknown)
    6. Attach Viewer to request state
    """

    def __init__(
        self,
        app: ASGIApp,
        credentials: dict[str, str],
        directory: UserDirectory,
        default_user: User | None = None,
        realm: str = "logview",
    ):
        """Initialize the auth middleware.

        Args:
            app: The ASGI application.
            credentials: Mapping of name to password. Empty disables auth.
            directory: Lookup from authenticated name to User.
            default_user: Identity used for every request when auth is disabled.
            realm: Realm advertised in WWW-Authenticate.
        """
        super().__init__(app)
        self.credentials = credentials
        self.directory = directory
        self.default_user = default_user or User()
        self.realm = realm

    async def dispatch(self, request: Request, call_next):
        """Process the request through auth checks."""
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        if not self.credentials:
            request.state.viewer = Viewer(name=DEFAULT_VIEWER_NAME, user=self.default_user)
            return await call_next(request)

        parsed = self._extract_basic_credentials(request)
        if parsed is None:
            return self._unauthenticated("Authentication required")
        name, password = parsed

        expected = self.credentials.get(name)
        # Compare against something even for unknown names
        candidate = expected if expected is not None else password + "\x00"
        if not hmac.compare_digest(password.encode(), candidate.encode()) or expected is None:
            logger.warning("auth_failure", reason="bad_credentials", request_path=request.url.path)
            return self._unauthenticated("Invalid credentials")

        user = self.directory.find(name)
        if user is None:
            logger.warning("auth_failure", reason="unknown_user", request_path=request.url.path)
            return self._error_json_response(ApiErrorCode.E_UNKNOWN_USER, "Unknown user", 403)

        request.state.viewer = Viewer(name=name, user=user)
        set_request_context(get_request_id(), user=name)
        return await call_next(request)

    def _extract_basic_credentials(self, request: Request) -> tuple[str, str] | None:
        """Extract (name, password) from the Authorization header.

        Returns:
            None if the header is missing or not valid Basic credentials.
        """
        auth_header = request.headers.get(AUTHORIZATION_HEADER)
        if not auth_header:
            logger.info("auth_failure", reason="missing_header", request_path=request.url.path)
            return None

        scheme, _, encoded = auth_header.partition(" ")
        if scheme.lower() != "basic" or not encoded.strip():
            logger.warning(
                "auth_failure", reason="invalid_header_format", request_path=request.url.path
            )
            return None

        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.warning(
                "auth_failure", reason="invalid_header_format", request_path=request.url.path
            )
            return None

        name, sep, password = decoded.partition(":")
        if not sep:
            return None
        return name, password

    def _unauthenticated(self, message: str) -> JSONResponse:
        response = self._error_json_response(ApiErrorCode.E_UNAUTHENTICATED, message, 401)
        response.headers["WWW-Authenticate"] = f'Basic realm="{self.realm}"'
        return response

    def _error_json_response(
        self, code: ApiErrorCode, message: str, status_code: int
    ) -> JSONResponse:
        """Create a JSON error response."""
        return JSONResponse(
            status_code=status_code,
            content=error_response(code, message),
        )


def get_viewer(request: Request) -> Viewer:
    """FastAPI dependency to get the authenticated viewer.

    Raises:
        ApiError: If viewer is not set (middleware didn't run or path is public).
    """
    viewer = getattr(request.state, "viewer", None)
    if viewer is None:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
    return viewer

