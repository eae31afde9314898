"""
gateway/api_keys.py -- API key admission and key lifecycle.

The gate is the outermost perimeter: it proves the calling application is
trusted, independent of any end-user session. It runs first on every
protected route.

Header priority (first match wins):
  1. Authorization: Bearer <key>  -- only when the value has the API key
     prefix. A session JWT in the same header is left for the session
     authenticator, so both credentials can be stacked on one request.
  2. X-API-Key: <key>

Rejections (all 401 to the client, reason codes in the audit log):
  api_key_missing, api_key_unknown, api_key_inactive, api_key_expired,
  api_key_owner_inactive.

lastUsedAt is NOT written here. admit() returns the record and the caller
schedules CredentialStore.touch_api_key_usage() off the request path.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from gateway.errors import Rejection, unauthorized
from gateway.models import ApiKey, User
from gateway.store import CredentialStore
from gateway.tokens import TokenService, generate_api_key, looks_like_api_key

logger = logging.getLogger("flightschool.gateway")


class DurationType(str, Enum):
    days = "days"
    weeks = "weeks"
    months = "months"
    years = "years"


@dataclass(frozen=True)
class AdmittedContext:
    """Result of a successful admission: the key's owner and the key record."""

    user_id: int
    api_key: ApiKey


def extract_api_key(headers) -> str | None:
    """Return the presented API key following the fixed header priority, or None."""
    auth_header = headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        candidate = auth_header[7:].strip()
        if candidate and looks_like_api_key(candidate):
            return candidate
    raw_key = headers.get("X-API-Key", "").strip()
    return raw_key or None


class ApiKeyGate:
    """Admission filter validating a presented key against the credential store."""

    def __init__(self, store: CredentialStore, tokens: TokenService) -> None:
        self._store = store
        self._tokens = tokens

    def admit(self, headers) -> AdmittedContext | Rejection:
        raw_key = extract_api_key(headers)
        if raw_key is None:
            return unauthorized("api_key_missing")

        record = self._store.find_api_key_by_hash(self._tokens.hash_api_key(raw_key))
        if record is None:
            return unauthorized("api_key_unknown")
        if not record.is_active:
            return unauthorized("api_key_inactive")
        if record.is_expired(self._tokens.now()):
            return unauthorized("api_key_expired")

        owner = self._store.find_user_by_id(record.user_id)
        if owner is None or not owner.is_active:
            return unauthorized("api_key_owner_inactive")

        return AdmittedContext(user_id=record.user_id, api_key=record)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_api_key(
        self,
        owner: User,
        label: str,
        duration_value: int | None = None,
        duration_type: DurationType | None = None,
    ) -> tuple[str, ApiKey]:
        """Mint a key for owner. Returns (plaintext, stored record).

        The plaintext is returned to the caller here and nowhere else. Without
        a duration the key never expires.
        """
        raw_key = generate_api_key()
        now = self._tokens.now()
        expires_at = None
        if duration_value is not None and duration_type is not None:
            expires_at = compute_expiry(now, duration_value, duration_type)

        record = ApiKey(
            user_id=owner.id,
            label=label,
            hashed_key=self._tokens.hash_api_key(raw_key),
            last_six=raw_key[-6:],
            created_at=now,
            expires_at=expires_at,
        )
        record.id = self._store.create_api_key(record)
        logger.info("Created API key ...%s for user_id=%s (label=%r)", record.last_six, owner.id, label)
        return raw_key, record

    def list_api_keys(self, owner: User) -> list[ApiKey]:
        return self._store.list_api_keys(owner.id)

    def revoke_api_key(self, owner: User, key_id: int) -> bool:
        """Flip is_active off. Ownership is enforced by the store's WHERE clause."""
        revoked = self._store.set_api_key_active(key_id, owner.id, active=False)
        if revoked:
            logger.info("Revoked API key id=%s for user_id=%s", key_id, owner.id)
        return revoked


def compute_expiry(start: datetime, value: int, duration_type: DurationType) -> datetime:
    """Add a duration to start.

    Months and years are calendar arithmetic; the day is clamped to the end of
    the target month (Jan 31 + 1 month = Feb 28/29).
    """
    if value <= 0:
        raise ValueError("duration value must be positive")
    duration_type = DurationType(duration_type)
    if duration_type is DurationType.days:
        return start + timedelta(days=value)
    if duration_type is DurationType.weeks:
        return start + timedelta(weeks=value)
    months = value if duration_type is DurationType.months else value * 12
    return _add_months(start, months)


def _add_months(start: datetime, months: int) -> datetime:
    index = start.month - 1 + months
    year = start.year + index // 12
    month = index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)
