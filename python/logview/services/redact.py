"""Redaction, hashing, and log guard utilities.

- hash_text: stable SHA-256 hex digest for log correlation
- safe_kv: log guard that blocks forbidden keys at call site

Never-log policy:
- Message bodies
- Phone numbers (from/to)
- Decrypted cursors and raw next page URIs
- Opaque tokens
- Secret keys and Basic auth passwords

Allowed (with suffix):
- _sha256, _hash: hash of value
- _length, _chars: length of value
"""

import hashlib
import os

FORBIDDEN_KEYS = frozenset(
    {
        "body",
        "from_number",
        "to_number",
        "next",
        "next_uri",
        "opaque",
        "token",
        "secret",
        "secret_key",
        "password",
        "media_url",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")


def hash_text(value: str) -> str:
    """SHA-256 hex digest of a string.

    Stable: same input always produces same output.
    Used for log correlation without exposing content.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _has_redacted_suffix(key: str) -> bool:
    """Check if key ends with a recognized redacted suffix."""
    return any(key.endswith(suffix) for suffix in REDACTED_SUFFIXES)


def safe_kv(*, _env: str | None = None, **kwargs) -> dict:
    """Validate that no forbidden keys are present unless already redacted.

    Raises ValueError in local/test environments if a forbidden key is used
    without a redacted suffix. In other environments, logs a warning instead.

    Usage:
        logger.warning("invalid_next_page_uri", **safe_kv(
            next_sha256=hash_text(next_uri),   # OK: _sha256 suffix
            # next=next_uri,                   # BLOCKED: forbidden key
        ))

    Args:
        _env: Override for LOGVIEW_ENV (test-only). If None, reads from env.
        **kwargs: Keyword arguments to validate and return.

    Returns:
        The same kwargs dict, after validation.

    Raises:
        ValueError: In local/test, if a forbidden key is used without redacted suffix.
    """
    violations = []
    for key in kwargs:
        if key in FORBIDDEN_KEYS and not _has_redacted_suffix(key):
            violations.append(key)

    if violations:
        msg = f"Forbidden log keys without redacted suffix: {violations}"
        env = _env or os.environ.get("LOGVIEW_ENV", "local")
        if env in ("local", "test"):
            raise ValueError(msg)
        else:
            import structlog

            _logger = structlog.get_logger("logview.services.redact")
            _logger.warning("safe_kv_violation", forbidden_keys=violations)

    return kwargs
