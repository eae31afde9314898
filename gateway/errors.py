"""
gateway/errors.py -- Typed rejection results shared by every gateway layer.

Gateway layers never raise for expected failures. They return a Rejection,
and the FastAPI dependency layer turns it into an HTTP response. The reason
code is for the audit log only; clients see the generic message of the kind.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    TOO_MANY_REQUESTS = "too_many_requests"
    INTERNAL = "internal_error"


_STATUS: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.TOO_MANY_REQUESTS: 429,
    ErrorKind.INTERNAL: 500,
}

_MESSAGE: dict[ErrorKind, str] = {
    ErrorKind.UNAUTHORIZED: "Unauthorized",
    ErrorKind.FORBIDDEN: "Forbidden",
    ErrorKind.BAD_REQUEST: "Bad request",
    ErrorKind.NOT_FOUND: "Not found",
    ErrorKind.TOO_MANY_REQUESTS: "Too many requests",
    ErrorKind.INTERNAL: "An unexpected error occurred.",
}


@dataclass(frozen=True)
class Rejection:
    """A failed gateway check.

    kind:    error class, decides status code and client-facing message.
    reason:  internal reason code (e.g. "api_key_expired"), logged, never sent.
    message: optional override for the client message. Only used where the
             wire contract fixes a body (e.g. invalid MFA code format).
    """

    kind: ErrorKind
    reason: str
    message: str | None = None

    @property
    def status_code(self) -> int:
        return _STATUS[self.kind]

    @property
    def public_message(self) -> str:
        return self.message or _MESSAGE[self.kind]


def unauthorized(reason: str) -> Rejection:
    return Rejection(ErrorKind.UNAUTHORIZED, reason)


def forbidden(reason: str) -> Rejection:
    return Rejection(ErrorKind.FORBIDDEN, reason)


def bad_request(reason: str, message: str | None = None) -> Rejection:
    return Rejection(ErrorKind.BAD_REQUEST, reason, message)


def not_found(reason: str) -> Rejection:
    return Rejection(ErrorKind.NOT_FOUND, reason)


def internal(reason: str) -> Rejection:
    return Rejection(ErrorKind.INTERNAL, reason)
