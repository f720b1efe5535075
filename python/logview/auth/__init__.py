"""Authentication and authorization module.

This module provides:
- Capability model and resource-age policy
- Identity lookup
- Basic auth middleware and viewer dependency
"""

from logview.auth.middleware import BasicAuthMiddleware, Viewer, get_viewer
from logview.auth.permissions import Permission, PermissionDenied, TooOld, User, UserSettings
from logview.auth.users import StaticUserDirectory, UserDirectory

__all__ = [
    "BasicAuthMiddleware",
    "Permission",
    "PermissionDenied",
    "StaticUserDirectory",
    "TooOld",
    "User",
    "UserDirectory",
    "UserSettings",
    "Viewer",
    "get_viewer",
]
