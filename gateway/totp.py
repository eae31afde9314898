"""Minimal TOTP helpers (RFC 6238 / 4226): SHA-1, 6 digits, 30 second steps."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import struct
from urllib.parse import quote, urlencode

DEFAULT_DIGITS = 6
DEFAULT_PERIOD_SECONDS = 30


def generate_totp_secret(length: int = 32) -> str:
    """Generate a base32 secret for TOTP."""

    # 20 raw bytes -> 32 base32 chars without padding.
    raw = secrets.token_bytes(max(20, length // 2))
    encoded = base64.b32encode(raw).decode("ascii").rstrip("=")
    return encoded[:length]


def _normalize_secret(secret: str) -> bytes:
    candidate = secret.strip().replace(" ", "").upper()
    padding = "=" * ((8 - len(candidate) % 8) % 8)
    return base64.b32decode(candidate + padding, casefold=True)


def _hotp(secret: bytes, counter: int, *, digits: int = DEFAULT_DIGITS) -> str:
    message = struct.pack(">Q", counter)
    digest = hmac.new(secret, message, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(code_int % (10**digits)).zfill(digits)


def totp_at(secret: str, timestamp: float, *, period_seconds: int = DEFAULT_PERIOD_SECONDS) -> str:
    counter = int(timestamp) // period_seconds
    return _hotp(_normalize_secret(secret), counter)


def verify_totp(
    secret: str,
    code: str,
    timestamp: float,
    *,
    period_seconds: int = DEFAULT_PERIOD_SECONDS,
    valid_window: int = 1,
) -> bool:
    """Accept the code for the current step or +-valid_window steps."""
    if len(code) != DEFAULT_DIGITS or not code.isdigit():
        return False
    counter = int(timestamp) // period_seconds
    secret_bytes = _normalize_secret(secret)
    for delta in range(-valid_window, valid_window + 1):
        if hmac.compare_digest(_hotp(secret_bytes, counter + delta), code):
            return True
    return False


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    """Build the otpauth:// URI authenticator apps scan from a QR code."""
    label = quote(f"{issuer}:{account}")
    query = urlencode({"secret": secret, "issuer": issuer, "digits": DEFAULT_DIGITS, "period": DEFAULT_PERIOD_SECONDS})
    return f"otpauth://totp/{label}?{query}"
