"""HTTPS upgrade middleware.

Behind a TLS-terminating proxy the app sees plain HTTP; the proxy reports
the client's scheme in X-Forwarded-Proto. Requests that arrived over plain
HTTP are redirected to https, and every other response gets an HSTS
header. Requests without X-Forwarded-Proto (direct or local) pass through.
"""

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import RedirectResponse

from logview.logging import get_logger

FORWARDED_PROTO_HEADER = "x-forwarded-proto"
HSTS_HEADER = "Strict-Transport-Security"
HSTS_VALUE = "max-age=31536000; includeSubDomains"

logger = get_logger(__name__)


class UpgradeInsecureMiddleware(BaseHTTPMiddleware):
    """Redirect X-Forwarded-Proto: http to https and set HSTS.

    Args:
        app: The ASGI application.
        public_host: Host to redirect to. Defaults to the request's Host.
    """

    def __init__(self, app, public_host: str | None = None):
        super().__init__(app)
        self.public_host = public_host

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        proto = request.headers.get(FORWARDED_PROTO_HEADER, "").lower()
        if proto == "http":
            url = request.url.replace(scheme="https")
            if self.public_host:
                url = url.replace(netloc=self.public_host)
            logger.info("insecure_request_redirected")
            return RedirectResponse(str(url), status_code=301)

        response = await call_next(request)
        if proto == "https":
            response.headers[HSTS_HEADER] = HSTS_VALUE
        return response
