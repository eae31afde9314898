"""
gateway/mfa.py -- Login state machine with MFA escalation.

States:
  PASSWORD_VERIFIED    credentials checked (transient, never returned to a client)
  MFA_PENDING          second factor outstanding; a PendingAuth record exists
  FULLY_AUTHENTICATED  session token and CSRF pair minted

Transitions:
  PASSWORD_VERIFIED -> FULLY_AUTHENTICATED  user has MFA disabled
  PASSWORD_VERIFIED -> MFA_PENDING          user has MFA enabled, no code supplied
  MFA_PENDING -> FULLY_AUTHENTICATED        valid 6-digit TOTP code via complete()

Login progress is carried by a PendingAuth row keyed by a random correlation
id, never by flags on the user row. A user with MFA enabled gets a session
token only after a successful code check in the same flow, at every login.
Pending records are single use (conditional consume in the store) and allow
at most max_attempts wrong codes before they are burned; a burned record
answers TOO_MANY_REQUESTS from then on.

Code format is checked first: anything but exactly six ASCII digits is a 400
before any lookup or verification happens.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from gateway.errors import ErrorKind, Rejection, bad_request, internal, unauthorized
from gateway.models import CsrfToken, PendingAuth, User
from gateway.store import CredentialStore
from gateway.tokens import TokenService, authenticate_password
from gateway.totp import generate_totp_secret, provisioning_uri, verify_totp

logger = logging.getLogger("flightschool.gateway")

_CODE_RE = re.compile(r"[0-9]{6}")

INVALID_CODE_FORMAT = "Token must be a 6-digit code"


class LoginState(str, Enum):
    PASSWORD_VERIFIED = "password_verified"
    MFA_PENDING = "mfa_pending"
    FULLY_AUTHENTICATED = "fully_authenticated"


@dataclass(frozen=True)
class LoginOutcome:
    state: LoginState
    user: User
    session_token: str | None = None
    csrf: CsrfToken | None = None
    pending_auth_id: str | None = None


@dataclass(frozen=True)
class MfaEnrolment:
    secret: str
    otpauth_uri: str


@dataclass(frozen=True)
class MfaStatus:
    enabled: bool
    verified: bool


def is_valid_code_format(code: object) -> bool:
    # fullmatch, not match with "$": "$" also matches before a trailing newline.
    return isinstance(code, str) and _CODE_RE.fullmatch(code) is not None


def _locked() -> Rejection:
    return Rejection(ErrorKind.TOO_MANY_REQUESTS, "pending_auth_locked")


class LoginFlow:
    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        *,
        issuer: str = "FlightSchool",
        pending_ttl: timedelta = timedelta(minutes=5),
        max_attempts: int = 5,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._issuer = issuer
        self._pending_ttl = pending_ttl
        self._max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, code: object = None) -> LoginOutcome | Rejection:
        """Check the password, then either finish the login or escalate to MFA.

        A code supplied together with the password is checked in the same
        flow; without one, an MFA user gets MFA_PENDING and no tokens.
        """
        user = authenticate_password(self._store, email, password)
        if user is None:
            return unauthorized("bad_credentials")

        if not user.mfa_enabled:
            return self._authenticated(user)

        if not user.mfa_secret:
            logger.error("MFA enabled without a secret for user_id=%s", user.id)
            return internal("mfa_secret_missing")

        if code is None or code == "":
            return self._pending(user)

        if not is_valid_code_format(code):
            return bad_request("mfa_code_format", INVALID_CODE_FORMAT)
        if not self._check_code(user, code):
            return unauthorized("mfa_code_invalid")
        return self._authenticated(user)

    def complete(self, pending_id: str, code: object) -> LoginOutcome | Rejection:
        """Finish an MFA_PENDING login with a one-time code."""
        if not is_valid_code_format(code):
            return bad_request("mfa_code_format", INVALID_CODE_FORMAT)

        pending = self._store.find_pending_auth(pending_id) if pending_id else None
        if pending is None:
            return unauthorized("pending_auth_unknown")
        # Checked before consumed: a record burned by failures stays locked (429).
        if pending.attempts >= self._max_attempts:
            return _locked()
        if pending.consumed:
            return unauthorized("pending_auth_unknown")
        if pending.expires_at <= self._tokens.now():
            return unauthorized("pending_auth_expired")

        user = self._store.find_user_by_id(pending.user_id)
        if user is None or not user.is_active or not user.mfa_enabled or not user.mfa_secret:
            return unauthorized("pending_auth_user_invalid")

        if not self._check_code(user, code):
            attempts = self._store.increment_pending_attempts(pending.id, max_attempts=self._max_attempts)
            if attempts is None:
                return _locked()
            if attempts >= self._max_attempts:
                self._store.consume_pending_auth(pending.id)
                logger.warning("Pending login burned after %d failed codes for user_id=%s", attempts, user.id)
            return unauthorized("mfa_code_invalid")

        if not self._store.consume_pending_auth(pending.id):
            return unauthorized("pending_auth_replayed")
        return self._authenticated(user)

    # ------------------------------------------------------------------
    # Enrolment
    # ------------------------------------------------------------------

    def begin_enrolment(self, user: User) -> MfaEnrolment | Rejection:
        """Generate and store a new TOTP secret. MFA is enforced from now on."""
        if user.mfa_enabled and user.mfa_verified:
            return bad_request("mfa_already_enabled", "MFA is already enabled")
        secret = generate_totp_secret()
        self._store.set_mfa_enrolment(user.id, secret)
        logger.info("MFA enrolment started for user_id=%s", user.id)
        return MfaEnrolment(secret=secret, otpauth_uri=provisioning_uri(secret, user.email, self._issuer))

    def confirm_enrolment(self, user: User, code: object) -> Rejection | None:
        if not is_valid_code_format(code):
            return bad_request("mfa_code_format", INVALID_CODE_FORMAT)
        if not user.mfa_enabled or user.mfa_verified or not user.mfa_secret:
            return bad_request("mfa_state_invalid", "Invalid MFA state. Please set up MFA first.")
        if not self._check_code(user, code):
            return bad_request("mfa_code_invalid", "Invalid verification code")
        self._store.confirm_mfa_enrolment(user.id)
        logger.info("MFA enrolment confirmed for user_id=%s", user.id)
        return None

    def disable(self, user: User, code: object) -> Rejection | None:
        if not is_valid_code_format(code):
            return bad_request("mfa_code_format", INVALID_CODE_FORMAT)
        if not user.mfa_enabled or not user.mfa_secret:
            return bad_request("mfa_not_enabled", "MFA is not enabled")
        if not self._check_code(user, code):
            return unauthorized("mfa_code_invalid")
        self._store.clear_mfa(user.id)
        logger.info("MFA disabled for user_id=%s", user.id)
        return None

    def status(self, user: User) -> MfaStatus:
        return MfaStatus(enabled=user.mfa_enabled, verified=user.mfa_verified)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_code(self, user: User, code: str) -> bool:
        return verify_totp(user.mfa_secret, code, self._tokens.now().timestamp())

    def _pending(self, user: User) -> LoginOutcome:
        now = self._tokens.now()
        pending = PendingAuth(
            id=secrets.token_urlsafe(32),
            user_id=user.id,
            created_at=now,
            expires_at=now + self._pending_ttl,
        )
        self._store.create_pending_auth(pending)
        return LoginOutcome(state=LoginState.MFA_PENDING, user=user, pending_auth_id=pending.id)

    def _authenticated(self, user: User) -> LoginOutcome:
        return LoginOutcome(
            state=LoginState.FULLY_AUTHENTICATED,
            user=user,
            session_token=self._tokens.issue_session_token(user.claims()),
            csrf=self._tokens.issue_csrf_token(),
        )
