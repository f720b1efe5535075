"""Application settings loaded from environment variables.

Environment Configuration:
    LOGVIEW_ENV: Deployment environment (local | test | staging | prod)
    SECRET_KEY: 32-byte key, hex or base64, never all zeros (required)

Provider Configuration:
    TWILIO_ACCOUNT_SID: Account SID (required outside test)
    TWILIO_AUTH_TOKEN: Auth token (required outside test)
    TWILIO_BASE_URL: API host (defaults to https://api.twilio.com)

Viewing Policy:
    PAGE_SIZE: Provider page size, 1..1000
    MAX_RESOURCE_AGE: Seconds or ISO-8601 duration; older resources are hidden
    USER_SETTINGS: JSON object of capability flags shared by every user
    SHOW_MEDIA_BY_DEFAULT: Hint echoed to clients

    NEXT_PAGE_CACHE_TTL_S: Seconds a fetched next page is reused; 0 disables
    NEXT_PAGE_CACHE_SIZE: Maximum cached next pages

Auth / Transport:
    BASIC_AUTH_USERS: "name:password,name2:password2"; empty disables auth
    ALLOW_UNENCRYPTED_TRAFFIC: Skip the X-Forwarded-Proto https redirect
    PUBLIC_HOST: Host used in https redirects
"""

from datetime import timedelta
from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from logview.auth.permissions import UserSettings, all_user_settings
from logview.services.crypto import CryptoError, load_secret_key
from logview.services.provider import TWILIO_BASE_URL


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Validation rules:
    - SECRET_KEY is always required and must decode to a non-zero 32-byte key
    - TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are required outside test
    - BASIC_AUTH_USERS entries must be name:password with a non-empty name
    """

    logview_env: Environment = Field(default=Environment.LOCAL, alias="LOGVIEW_ENV")
    secret_key: Annotated[str, Field(alias="SECRET_KEY", repr=False)]

    # Provider
    twilio_account_sid: str | None = Field(default=None, alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = Field(default=None, alias="TWILIO_AUTH_TOKEN", repr=False)
    twilio_base_url: str = Field(default=TWILIO_BASE_URL, alias="TWILIO_BASE_URL")

    # Viewing policy
    page_size: int = Field(default=50, ge=1, le=1000, alias="PAGE_SIZE")
    max_resource_age: timedelta = Field(default=timedelta(days=30), alias="MAX_RESOURCE_AGE")
    user_settings: UserSettings = Field(default_factory=all_user_settings, alias="USER_SETTINGS")
    show_media_by_default: bool = Field(default=True, alias="SHOW_MEDIA_BY_DEFAULT")

    # Timeouts (seconds)
    request_timeout_s: float = Field(default=10.0, gt=0, alias="REQUEST_TIMEOUT_S")
    prefetch_timeout_s: float = Field(default=30.0, gt=0, alias="PREFETCH_TIMEOUT_S")
    media_url_ttl_s: int = Field(default=3600, gt=0, alias="MEDIA_URL_TTL_S")

    # Provider-side next page cache, warmed by prefetch
    next_page_cache_ttl_s: float = Field(default=60.0, ge=0, alias="NEXT_PAGE_CACHE_TTL_S")
    next_page_cache_size: int = Field(default=128, ge=0, alias="NEXT_PAGE_CACHE_SIZE")

    # Auth / transport
    basic_auth_users: str = Field(default="", alias="BASIC_AUTH_USERS", repr=False)
    allow_unencrypted_traffic: bool = Field(default=False, alias="ALLOW_UNENCRYPTED_TRAFFIC")
    public_host: str | None = Field(default=None, alias="PUBLIC_HOST")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, value: str) -> str:
        try:
            load_secret_key(value)
        except CryptoError as e:
            raise ValueError(str(e)) from e
        return value

    @field_validator("max_resource_age")
    @classmethod
    def validate_max_resource_age(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("MAX_RESOURCE_AGE must be positive")
        return value

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Provider credentials are required outside test; auth users must parse."""
        if self.logview_env != Environment.TEST:
            missing = []
            if not self.twilio_account_sid:
                missing.append("TWILIO_ACCOUNT_SID")
            if not self.twilio_auth_token:
                missing.append("TWILIO_AUTH_TOKEN")
            if missing:
                raise ValueError(
                    f"Missing required provider settings for LOGVIEW_ENV="
                    f"{self.logview_env.value}: {', '.join(missing)}"
                )

        # Raises ValueError on malformed entries
        _ = self.user_credentials
        return self

    @property
    def secret_key_bytes(self) -> bytes:
        return load_secret_key(self.secret_key)

    @property
    def user_credentials(self) -> dict[str, str]:
        """Parse BASIC_AUTH_USERS into a name -> password mapping."""
        credentials: dict[str, str] = {}
        for entry in self.basic_auth_users.split(","):
            entry = entry.strip()
            if not entry:
                continue
            name, sep, password = entry.partition(":")
            if not sep or not name:
                raise ValueError("BASIC_AUTH_USERS entries must look like name:password")
            credentials[name] = password
        return credentials

    @property
    def auth_enabled(self) -> bool:
        return bool(self.user_credentials)

    @property
    def is_production(self) -> bool:
        return self.logview_env in (Environment.STAGING, Environment.PROD)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
