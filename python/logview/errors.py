"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
Domain-level conditions (PermissionDenied, TooOld, CursorDecodeError,
FilterError, ProviderError) are raised by the core modules and translated
into these by the fetch orchestrator.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"
    E_UNKNOWN_USER = "E_UNKNOWN_USER"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_CURSOR = "E_INVALID_CURSOR"
    E_INVALID_FILTER = "E_INVALID_FILTER"

    # Server errors
    E_INTERNAL = "E_INTERNAL"  # 500
    E_UPSTREAM_ERROR = "E_UPSTREAM_ERROR"  # 502
    E_UPSTREAM_TIMEOUT = "E_UPSTREAM_TIMEOUT"  # 504


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_UNKNOWN_USER: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INVALID_CURSOR: 400,
    ApiErrorCode.E_INVALID_FILTER: 400,
    ApiErrorCode.E_INTERNAL: 500,
    ApiErrorCode.E_UPSTREAM_ERROR: 502,
    ApiErrorCode.E_UPSTREAM_TIMEOUT: 504,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    """Authorization failure error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class UpstreamError(ApiError):
    """The telephony provider failed in a way the caller cannot fix."""

    def __init__(
        self,
        code: ApiErrorCode = ApiErrorCode.E_UPSTREAM_ERROR,
        message: str = "Upstream provider error",
    ):
        super().__init__(code, message)
