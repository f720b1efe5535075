"""Capability model for viewers and the global resource-age policy.

These predicates are the single source of truth for visibility logic.

Rules:
- A User is immutable once built from UserSettings.
- Every sub-capability is computed as (parent AND own) on each call. The
  effective value is never stored, so clearing the parent flag hides every
  field below it.
- Permission carries the process-wide max resource age. Any resource created
  before (now - max_resource_age) is hidden regardless of capabilities.
"""

from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict


class ResourceHidden(Exception):
    """Base class for visibility failures.

    Both subclasses map to a forbidden response, but are logged distinctly.
    """

    message = "Cannot view this resource"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class PermissionDenied(ResourceHidden):
    """The viewer lacks the capability for a resource or field."""

    message = "You do not have permission to access that information"


class TooOld(ResourceHidden):
    """The resource is older than the configured max resource age."""

    message = "Cannot access this resource because its age exceeds the viewable limit"


class UserSettings(BaseModel):
    """Raw capability flags, as loaded from configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    can_view_messages: bool = False
    can_view_message_from: bool = False
    can_view_message_to: bool = False
    can_view_message_body: bool = False
    can_view_num_media: bool = False
    can_view_message_price: bool = False

    can_view_calls: bool = False
    can_view_call_from: bool = False
    can_view_call_to: bool = False
    can_view_call_price: bool = False


def all_user_settings() -> UserSettings:
    """Return a UserSettings value with the widest possible set of permissions."""
    return UserSettings(**{name: True for name in UserSettings.model_fields})


class User:
    """A viewer identity with a fixed set of capabilities."""

    __slots__ = ("_settings",)

    def __init__(self, settings: UserSettings | None = None):
        object.__setattr__(self, "_settings", settings or UserSettings())

    def __setattr__(self, name, value):
        raise AttributeError("User is immutable")

    def __repr__(self) -> str:
        return f"User({self._settings!r})"

    # Messages

    def can_view_messages(self) -> bool:
        return self._settings.can_view_messages

    def can_view_message_from(self) -> bool:
        return self.can_view_messages() and self._settings.can_view_message_from

    def can_view_message_to(self) -> bool:
        return self.can_view_messages() and self._settings.can_view_message_to

    def can_view_message_body(self) -> bool:
        return self.can_view_messages() and self._settings.can_view_message_body

    def can_view_num_media(self) -> bool:
        return self.can_view_messages() and self._settings.can_view_num_media

    def can_view_message_price(self) -> bool:
        return self.can_view_messages() and self._settings.can_view_message_price

    # Calls

    def can_view_calls(self) -> bool:
        return self._settings.can_view_calls

    def can_view_call_from(self) -> bool:
        return self.can_view_calls() and self._settings.can_view_call_from

    def can_view_call_to(self) -> bool:
        return self.can_view_calls() and self._settings.can_view_call_to

    def can_view_call_price(self) -> bool:
        return self.can_view_calls() and self._settings.can_view_call_price


class Permission:
    """Global visibility policy shared by every request."""

    __slots__ = ("_max_resource_age",)

    def __init__(self, max_resource_age: timedelta):
        if max_resource_age <= timedelta(0):
            raise ValueError("max_resource_age must be positive")
        object.__setattr__(self, "_max_resource_age", max_resource_age)

    def __setattr__(self, name, value):
        raise AttributeError("Permission is immutable")

    @property
    def max_resource_age(self) -> timedelta:
        return self._max_resource_age

    def oldest_viewable(self, now: datetime | None = None) -> datetime:
        """Earliest creation time that is still viewable."""
        return (now or datetime.now(UTC)) - self._max_resource_age

    def check_age(self, created_at: datetime, now: datetime | None = None) -> None:
        """Raise TooOld if created_at falls outside the viewable window."""
        now = now or datetime.now(UTC)
        if created_at.tzinfo is None:
            # Provider timestamps are UTC
            created_at = created_at.replace(tzinfo=UTC)
        if now - created_at > self._max_resource_age:
            raise TooOld()
