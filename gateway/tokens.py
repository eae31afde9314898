"""
gateway/tokens.py -- Session tokens, CSRF tokens, password hashing, API key digests.

Security design decisions:
  JWT: python-jose with HS256, signed with the one process-wide secret handed
       to TokenService at startup. Tokens carry user_id, role, scope ids,
       iat and exp. verify_session_token() never raises: it returns the claims
       or a TokenInvalid naming the failure (malformed / expired / signature
       mismatch). The dependency layer collapses all three to the same 401.

       Expiry is checked here rather than by jose so that the clock is
       injectable. A fixed skew tolerance (settings.clock_skew_seconds, at
       most 30 s) absorbs drift between issuing and verifying hosts.

  CSRF: 32 random bytes, hex encoded, followed by the expiry timestamp and an
       HMAC over both: "<nonce>.<exp>.<mac>". The cookie therefore carries its
       own expiration and a client cannot extend it without the CSRF secret.
       Validation is a constant-time comparison of the submitted and stored
       values, then an expiry check on the stored value.

  Passwords: bcrypt directly (no passlib). _DUMMY_HASH enables timing
       equalization in authenticate_password() so response time does not
       reveal whether an email exists.

  API keys: "fsk_" + secrets.token_hex(32), 256 bits of entropy. Stored as
       HMAC-SHA256(pepper, raw_key) so lookup is O(1) and a leaked table is
       useless without the pepper.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from gateway.models import CsrfToken, Role, SessionClaims

if TYPE_CHECKING:
    from core.config import Settings
    from gateway.models import User
    from gateway.store import CredentialStore

logger = logging.getLogger("flightschool.gateway")

_ALGORITHM = "HS256"

API_KEY_PREFIX = "fsk_"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the database.
        return False


# Computed once at import so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("flightschool_timing_dummy")


def authenticate_password(store: CredentialStore, email: str, password: str) -> User | None:
    """Verify an email/password pair with timing equalization.

    bcrypt runs whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH.
    - Wrong password: bcrypt runs against the real hash.

    Returns the User on success, None on any failure (including inactive users).
    """
    user = store.find_user_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# API key generation
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate a new API key: fsk_<64 hex chars>."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


def looks_like_api_key(value: str) -> bool:
    return value.startswith(API_KEY_PREFIX)


# ---------------------------------------------------------------------------
# Verification results
# ---------------------------------------------------------------------------


class TokenFailure(str, Enum):
    MALFORMED = "malformed"
    EXPIRED = "expired"
    SIGNATURE_MISMATCH = "signature_mismatch"


@dataclass(frozen=True)
class TokenInvalid:
    failure: TokenFailure


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and verifies session and CSRF tokens.

    Holds the signing material it is constructed with; there is no module-level
    secret. clock defaults to the wall clock and can be replaced in tests.
    """

    def __init__(
        self,
        secret_key: str,
        csrf_secret: str,
        api_key_pepper: str,
        *,
        session_ttl: timedelta = timedelta(days=7),
        csrf_ttl: timedelta = timedelta(hours=24),
        clock_skew: timedelta = timedelta(seconds=30),
        clock: Clock = utc_now,
    ) -> None:
        self._secret_key = secret_key
        self._csrf_secret = csrf_secret.encode("utf-8")
        self._api_key_pepper = api_key_pepper.encode("utf-8")
        self.session_ttl = session_ttl
        self.csrf_ttl = csrf_ttl
        self.clock_skew = clock_skew
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utc_now) -> TokenService:
        return cls(
            settings.secret_key,
            settings.csrf_secret,
            settings.api_key_pepper,
            session_ttl=timedelta(seconds=settings.session_ttl_seconds),
            csrf_ttl=timedelta(seconds=settings.csrf_ttl_seconds),
            clock_skew=timedelta(seconds=settings.clock_skew_seconds),
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    def issue_session_token(self, claims: SessionClaims, ttl: timedelta | None = None) -> str:
        """Encode and sign claims. exp = now + ttl (default: session_ttl)."""
        issued = self.now()
        expires = issued + (ttl if ttl is not None else self.session_ttl)
        payload = {
            "sub": str(claims.user_id),
            "user_id": claims.user_id,
            "role": claims.role.value,
            "school_id": claims.school_id,
            "student_id": claims.student_id,
            "instructor_id": claims.instructor_id,
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify_session_token(self, token: str) -> SessionClaims | TokenInvalid:
        """Check signature and expiry. Returns SessionClaims or TokenInvalid, never raises."""
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError:
            return TokenInvalid(TokenFailure.MALFORMED)

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except JWTError:
            return TokenInvalid(TokenFailure.SIGNATURE_MISMATCH)

        claims = _claims_from_payload(payload)
        exp = payload.get("exp")
        if claims is None or not isinstance(exp, int):
            return TokenInvalid(TokenFailure.MALFORMED)

        if self.now() > datetime.fromtimestamp(exp, tz=timezone.utc) + self.clock_skew:
            return TokenInvalid(TokenFailure.EXPIRED)
        return claims

    # ------------------------------------------------------------------
    # CSRF tokens
    # ------------------------------------------------------------------

    def issue_csrf_token(self, ttl: timedelta | None = None) -> CsrfToken:
        expires = self.now() + (ttl if ttl is not None else self.csrf_ttl)
        nonce = secrets.token_hex(32)
        exp = int(expires.timestamp())
        value = f"{nonce}.{exp}.{self._csrf_mac(nonce, exp)}"
        return CsrfToken(value=value, expires_at=datetime.fromtimestamp(exp, tz=timezone.utc))

    def validate_csrf_token(self, submitted: str | None, stored: str | None) -> bool:
        """Return True only for byte-equal values whose stored expiry has not passed."""
        if not submitted or not stored:
            return False
        if not hmac.compare_digest(submitted.encode("utf-8"), stored.encode("utf-8")):
            return False
        expires = self.csrf_expiry(stored)
        return expires is not None and self.now() < expires

    def csrf_expiry(self, value: str) -> datetime | None:
        """Return the expiry encoded in a CSRF value, or None if it is malformed or forged."""
        parts = value.split(".")
        if len(parts) != 3 or not parts[1].isdigit():
            return None
        nonce, exp_text, mac = parts
        exp = int(exp_text)
        if not hmac.compare_digest(mac.encode("utf-8"), self._csrf_mac(nonce, exp).encode("utf-8")):
            return None
        return datetime.fromtimestamp(exp, tz=timezone.utc)

    def _csrf_mac(self, nonce: str, exp: int) -> str:
        return hmac.new(self._csrf_secret, f"{nonce}.{exp}".encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # API key digests
    # ------------------------------------------------------------------

    def hash_api_key(self, raw_key: str) -> str:
        """Return HMAC-SHA256(pepper, raw_key) as hex. Same digest at issuance and lookup."""
        return hmac.new(self._api_key_pepper, raw_key.encode("utf-8"), hashlib.sha256).hexdigest()


def _claims_from_payload(payload: dict) -> SessionClaims | None:
    user_id = payload.get("user_id")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        return None
    try:
        role = Role(payload.get("role"))
    except ValueError:
        return None
    scope = {}
    for name in ("school_id", "student_id", "instructor_id"):
        value = payload.get(name)
        if value is not None and not isinstance(value, int):
            return None
        scope[name] = value
    return SessionClaims(user_id=user_id, role=role, **scope)
