"""Middleware modules for the logview API."""

from logview.middleware.request_id import REQUEST_ID_HEADER, RequestIDMiddleware
from logview.middleware.secure import UpgradeInsecureMiddleware

__all__ = ["RequestIDMiddleware", "REQUEST_ID_HEADER", "UpgradeInsecureMiddleware"]
