"""
gateway/models.py -- Domain dataclasses for gateway entities.

Pattern: Data class (pure data containers, no I/O). Stores and flows do the
work; these types only own shape plus a couple of tiny derived properties.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Fixed role hierarchy. Rank ordering lives in ROLE_RANK."""

    sys_admin = "sys_admin"
    school_admin = "school_admin"
    instructor = "instructor"
    student = "student"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]


ROLE_RANK: dict[Role, int] = {
    Role.sys_admin: 4,
    Role.school_admin: 3,
    Role.instructor: 2,
    Role.student: 1,
}


@dataclass(frozen=True)
class SessionClaims:
    """Identity claims carried inside a session token.

    Only the fields below are encoded. Registered JWT claims (exp, iat) are
    handled by the token service and never surface here, which keeps
    verify(issue(claims)) == claims.
    """

    user_id: int
    role: Role
    school_id: int | None = None
    student_id: int | None = None
    instructor_id: int | None = None


@dataclass(frozen=True)
class Principal:
    """The verified identity attached to one request after session authentication."""

    user_id: int
    role: Role
    school_id: int | None = None
    student_id: int | None = None
    instructor_id: int | None = None

    @classmethod
    def from_claims(cls, claims: SessionClaims) -> Principal:
        return cls(
            user_id=claims.user_id,
            role=claims.role,
            school_id=claims.school_id,
            student_id=claims.student_id,
            instructor_id=claims.instructor_id,
        )


@dataclass
class User:
    """A person who can log in.

    mfa_enabled means a second factor is required at every login.
    mfa_verified means the enrolment was confirmed with a first valid code.
    It is NOT a per-login flag: login progress lives in PendingAuth.
    """

    email: str
    role: Role
    hashed_password: str | None = None
    id: int | None = None
    school_id: int | None = None
    student_id: int | None = None
    instructor_id: int | None = None
    is_active: bool = True
    mfa_enabled: bool = False
    mfa_verified: bool = False
    mfa_secret: str | None = None
    created_at: datetime | None = None

    def claims(self) -> SessionClaims:
        return SessionClaims(
            user_id=self.id,
            role=self.role,
            school_id=self.school_id,
            student_id=self.student_id,
            instructor_id=self.instructor_id,
        )


@dataclass
class ApiKey:
    """A persisted API key credential.

    hashed_key is HMAC-SHA256(pepper, plaintext). last_six is the tail of the
    plaintext kept for display only. The plaintext itself is never stored.
    Revocation flips is_active; rows are kept for audit history.
    """

    user_id: int
    label: str
    hashed_key: str
    last_six: str
    id: int | None = None
    is_active: bool = True
    created_at: datetime | None = None
    expires_at: datetime | None = None
    last_used_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class CsrfToken:
    """A CSRF token value and its expiration."""

    value: str
    expires_at: datetime


@dataclass
class PendingAuth:
    """Short-lived record of a login that passed the password check and awaits MFA.

    Keyed by a random correlation id handed to the client. Decoupled from the
    User row so two concurrent logins for one account cannot interfere.
    """

    id: str
    user_id: int
    expires_at: datetime
    created_at: datetime | None = None
    attempts: int = 0
    consumed: bool = False


@dataclass
class School:
    """Tenant root. admins / instructors are user ids with authority in the school."""

    name: str
    id: int | None = None
    admins: list[int] = field(default_factory=list)
    instructors: list[int] = field(default_factory=list)


@dataclass
class Student:
    """A student record. user_id links the record to the login that owns it."""

    school_id: int
    user_id: int
    name: str
    id: int | None = None
