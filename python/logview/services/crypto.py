"""Opaque tokens for pagination cursors and media references.

Implements XSalsa20-Poly1305 authenticated encryption using PyNaCl
(libsodium bindings). A token is:

    base64url_nopad(nonce[24] || ciphertext+tag)

Two plaintext schemas share the primitive and the key:
- Cursors: the provider's next page path, e.g. "/2010-04-01/Accounts/.../Messages.json?..."
- Media references: "media:<message_sid>:<media_sid>:<expires_unix>"

Security invariants:
- Nonce is drawn from the OS CSPRNG for every encryption, never reused
- Any decoding, length, or authentication failure raises; no partial plaintext
- Never log plaintexts or tokens; hash them with redact.hash_text instead
- The key is read-only after startup
"""

import base64
import binascii
import re
from dataclasses import dataclass
from datetime import UTC, datetime

import nacl.exceptions
import nacl.utils
from nacl.secret import SecretBox

# XSalsa20-Poly1305 nonce size (24 bytes)
NONCE_SIZE = SecretBox.NONCE_SIZE

# Poly1305 authentication tag size (16 bytes)
MAC_SIZE = SecretBox.MACBYTES

# Secret key size (32 bytes)
KEY_SIZE = SecretBox.KEY_SIZE

MEDIA_PREFIX = "media"

_URLSAFE_ALPHABET = re.compile(r"^[A-Za-z0-9_-]*$")
_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


class CryptoError(Exception):
    """Raised when cryptographic operations fail."""

    pass


class CursorDecodeError(CryptoError):
    """Raised when a token is malformed, truncated, forged, or encrypted under another key."""

    pass


class MediaRefExpired(CryptoError):
    """Raised when an authentic media reference is past its expiry."""

    pass


@dataclass(frozen=True)
class MediaRef:
    """A decoded media reference."""

    message_sid: str
    media_sid: str
    expires_at: datetime


def load_secret_key(value: str) -> bytes:
    """Parse a configured secret key.

    Accepts 64 hex characters or standard/URL-safe base64 encoding 32 bytes.

    Raises:
        CryptoError: If the key is malformed, the wrong size, or all zeroes.
    """
    value = value.strip()
    if _HEX_KEY.match(value):
        key = bytes.fromhex(value)
    else:
        try:
            key = base64.b64decode(value + "=" * (-len(value) % 4), altchars=b"-_", validate=True)
        except (binascii.Error, ValueError) as e:
            raise CryptoError(f"secret key is not valid hex or base64: {e}") from e

    if len(key) != KEY_SIZE:
        raise CryptoError(f"secret key must be {KEY_SIZE} bytes, got {len(key)} bytes")
    if not any(key):
        raise CryptoError("secret key must not be all zeroes")
    return key


def _box(key: bytes) -> SecretBox:
    if len(key) != KEY_SIZE:
        raise CryptoError(f"secret key must be {KEY_SIZE} bytes, got {len(key)} bytes")
    return SecretBox(key)


def generate_nonce() -> bytes:
    """Generate a random 24-byte nonce for encryption.

    Each encryption operation MUST use a unique nonce.
    Using the same nonce twice with the same key breaks security.
    """
    return nacl.utils.random(NONCE_SIZE)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(token: str) -> bytes:
    if not _URLSAFE_ALPHABET.match(token) or len(token) % 4 == 1:
        raise CursorDecodeError("token is not valid URL-safe base64")
    try:
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
    except (binascii.Error, ValueError) as e:
        raise CursorDecodeError("token is not valid URL-safe base64") from e
    # Unused trailing bits must be zero: one encoding per byte string
    if _b64encode(raw) != token:
        raise CursorDecodeError("token is not canonical URL-safe base64")
    return raw


def opaque(plaintext: str, key: bytes) -> str:
    """Encrypt plaintext into a URL-safe token.

    Two calls with the same plaintext and key produce different tokens.
    """
    nonce = generate_nonce()
    encrypted = _box(key).encrypt(plaintext.encode("utf-8"), nonce)
    # EncryptedMessage is nonce || ciphertext+tag
    return _b64encode(bytes(encrypted))


def unopaque(token: str, key: bytes) -> str:
    """Decrypt a token produced by opaque().

    Raises:
        CursorDecodeError: On malformed base64, short input, authentication
            failure, or non-UTF-8 plaintext.
    """
    raw = _b64decode(token)
    if len(raw) < NONCE_SIZE + MAC_SIZE:
        raise CursorDecodeError("token is too short")

    box = _box(key)
    try:
        plaintext = box.decrypt(raw[NONCE_SIZE:], raw[:NONCE_SIZE])
    except nacl.exceptions.CryptoError as e:
        raise CursorDecodeError("token failed authentication") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CursorDecodeError("token plaintext is not UTF-8") from e


def opaque_media(message_sid: str, media_sid: str, expires_at: datetime, key: bytes) -> str:
    """Sign a reference to one media item of one message, valid until expires_at."""
    plaintext = f"{MEDIA_PREFIX}:{message_sid}:{media_sid}:{int(expires_at.timestamp())}"
    return opaque(plaintext, key)


def unopaque_media(token: str, key: bytes, now: datetime | None = None) -> MediaRef:
    """Decode a media reference.

    Raises:
        CursorDecodeError: If the token is not an authentic media reference.
        MediaRefExpired: If the reference is authentic but expired.
    """
    plaintext = unopaque(token, key)
    parts = plaintext.split(":")
    if len(parts) != 4 or parts[0] != MEDIA_PREFIX or not parts[3].isdigit():
        raise CursorDecodeError("token is not a media reference")

    expires_at = datetime.fromtimestamp(int(parts[3]), tz=UTC)
    if (now or datetime.now(UTC)) >= expires_at:
        raise MediaRefExpired("media reference has expired")
    return MediaRef(message_sid=parts[1], media_sid=parts[2], expires_at=expires_at)
