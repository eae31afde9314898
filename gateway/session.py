"""
gateway/session.py -- Session token extraction and verification.

Token sources, in priority order:
  1. Authorization: Bearer <token>  -- API clients. Values carrying the API key
     prefix are skipped; they belong to the API key gate.
  2. "token" cookie                 -- set by the login response (httpOnly).

Every verification failure collapses to one 401 "unauthorized". The specific
TokenFailure is returned in the rejection reason for the audit log only, so a
caller cannot tell an expired token from a forged one.
"""

from __future__ import annotations

from gateway.errors import Rejection, unauthorized
from gateway.models import Principal
from gateway.tokens import TokenInvalid, TokenService, looks_like_api_key

SESSION_COOKIE = "token"


def extract_session_token(headers, cookies) -> str | None:
    auth_header = headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        candidate = auth_header[7:].strip()
        if candidate and not looks_like_api_key(candidate):
            return candidate
    return cookies.get(SESSION_COOKIE) or None


class SessionAuthenticator:
    """Turns a presented session token into a Principal."""

    def __init__(self, tokens: TokenService) -> None:
        self._tokens = tokens

    def authenticate(self, headers, cookies) -> Principal | Rejection:
        token = extract_session_token(headers, cookies)
        if token is None:
            return unauthorized("session_missing")

        result = self._tokens.verify_session_token(token)
        if isinstance(result, TokenInvalid):
            return unauthorized(f"session_{result.failure.value}")
        return Principal.from_claims(result)
