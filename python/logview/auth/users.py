"""Identity lookup for authenticated viewers.

The lookup is injected into the auth middleware; nothing else reads a
global user table.
"""

from typing import Protocol

from logview.auth.permissions import User, UserSettings

# Name logged for requests when Basic auth is disabled
DEFAULT_VIEWER_NAME = "default"


class UserDirectory(Protocol):
    """Resolve an authenticated name to the User holding its capabilities."""

    def find(self, name: str) -> User | None: ...


class StaticUserDirectory:
    """In-memory directory built once from configuration.

    Args:
        users: Mapping of name to User.
    """

    def __init__(self, users: dict[str, User]):
        self._users = dict(users)

    @classmethod
    def shared(cls, names: list[str], settings: UserSettings) -> "StaticUserDirectory":
        """Give every configured name the same capabilities."""
        user = User(settings)
        return cls({name: user for name in names})

    def find(self, name: str) -> User | None:
        return self._users.get(name)

    def __len__(self) -> int:
        return len(self._users)
