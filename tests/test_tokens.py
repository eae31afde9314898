"""Unit tests for gateway/tokens.py -- session JWTs, CSRF values, passwords, key digests.

Covers:
- verify(issue(claims)) == claims for every role and scope combination
- expiry honoured with the 30 s skew tolerance, against the injected clock
- tampered, foreign-secret and garbage tokens give the right TokenFailure
- CSRF validation is exact, symmetric and expiry-aware; forged expiry rejected
- password hashing and timing-equalised authentication
- API key digests depend on the pepper
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from jose import jwt

from conftest import TEST_CSRF_SECRET, TEST_PEPPER, FrozenClock, make_user
from gateway.models import Role, SessionClaims
from gateway.tokens import (
    API_KEY_PREFIX,
    TokenFailure,
    TokenInvalid,
    TokenService,
    authenticate_password,
    generate_api_key,
    hash_password,
    looks_like_api_key,
    verify_password,
)

# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "claims",
    [
        SessionClaims(user_id=1, role=Role.sys_admin),
        SessionClaims(user_id=7, role=Role.school_admin, school_id=3),
        SessionClaims(user_id=8, role=Role.instructor, school_id=3, instructor_id=8),
        SessionClaims(user_id=9, role=Role.student, school_id=3, student_id=42),
    ],
)
def test_session_round_trip(tokens: TokenService, claims: SessionClaims) -> None:
    assert tokens.verify_session_token(tokens.issue_session_token(claims)) == claims


def test_issue_is_deterministic_for_fixed_clock(tokens: TokenService) -> None:
    claims = SessionClaims(user_id=5, role=Role.student, school_id=1, student_id=2)
    assert tokens.issue_session_token(claims) == tokens.issue_session_token(claims)


def test_default_lifetime_is_seven_days(tokens: TokenService, clock: FrozenClock) -> None:
    token = tokens.issue_session_token(SessionClaims(user_id=1, role=Role.student))
    payload = jwt.get_unverified_claims(token)
    assert payload["exp"] - payload["iat"] == 7 * 24 * 3600
    assert payload["iat"] == int(clock.now.timestamp())


def test_expired_token_rejected_after_skew(tokens: TokenService, clock: FrozenClock) -> None:
    token = tokens.issue_session_token(SessionClaims(user_id=1, role=Role.student), ttl=timedelta(minutes=10))

    clock.advance(minutes=10, seconds=30)
    assert isinstance(tokens.verify_session_token(token), SessionClaims)

    clock.advance(seconds=1)
    assert tokens.verify_session_token(token) == TokenInvalid(TokenFailure.EXPIRED)


def test_token_valid_just_before_expiry(tokens: TokenService, clock: FrozenClock) -> None:
    token = tokens.issue_session_token(SessionClaims(user_id=1, role=Role.student), ttl=timedelta(hours=1))
    clock.advance(minutes=59, seconds=59)
    assert tokens.verify_session_token(token) == SessionClaims(user_id=1, role=Role.student)


def test_foreign_secret_is_signature_mismatch(clock: FrozenClock) -> None:
    ours = TokenService("a" * 40, TEST_CSRF_SECRET, TEST_PEPPER, clock=clock)
    theirs = TokenService("b" * 40, TEST_CSRF_SECRET, TEST_PEPPER, clock=clock)
    token = theirs.issue_session_token(SessionClaims(user_id=1, role=Role.sys_admin))
    assert ours.verify_session_token(token) == TokenInvalid(TokenFailure.SIGNATURE_MISMATCH)


def test_tampered_payload_is_signature_mismatch(tokens: TokenService) -> None:
    token = tokens.issue_session_token(SessionClaims(user_id=9, role=Role.student))
    header, _payload, signature = token.split(".")
    forged_payload = jwt.encode({"user_id": 9, "role": "sys_admin", "exp": 9999999999}, "x" * 40).split(".")[1]
    forged = ".".join([header, forged_payload, signature])
    assert tokens.verify_session_token(forged) == TokenInvalid(TokenFailure.SIGNATURE_MISMATCH)


@pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b", "a.b.c", "fsk_" + "0" * 64])
def test_garbage_is_malformed(tokens: TokenService, garbage: str) -> None:
    assert tokens.verify_session_token(garbage) == TokenInvalid(TokenFailure.MALFORMED)


def test_unknown_role_is_malformed(tokens: TokenService, clock: FrozenClock) -> None:
    exp = int((clock.now + timedelta(hours=1)).timestamp())
    token = jwt.encode({"user_id": 1, "role": "admin", "exp": exp}, "test-secret-key-" + "x" * 32, algorithm="HS256")
    assert tokens.verify_session_token(token) == TokenInvalid(TokenFailure.MALFORMED)


def test_missing_exp_is_malformed(tokens: TokenService) -> None:
    token = jwt.encode({"user_id": 1, "role": "student"}, "test-secret-key-" + "x" * 32, algorithm="HS256")
    assert tokens.verify_session_token(token) == TokenInvalid(TokenFailure.MALFORMED)


# ---------------------------------------------------------------------------
# CSRF tokens
# ---------------------------------------------------------------------------


def test_csrf_pair_validates(tokens: TokenService) -> None:
    pair = tokens.issue_csrf_token()
    assert tokens.validate_csrf_token(pair.value, pair.value)


def test_csrf_values_are_unique(tokens: TokenService) -> None:
    assert tokens.issue_csrf_token().value != tokens.issue_csrf_token().value


def test_csrf_validation_is_symmetric(tokens: TokenService) -> None:
    a, b = tokens.issue_csrf_token(), tokens.issue_csrf_token()
    assert tokens.validate_csrf_token(a.value, b.value) == tokens.validate_csrf_token(b.value, a.value) is False
    assert tokens.validate_csrf_token(a.value, a.value) == tokens.validate_csrf_token(a.value, a.value) is True


def test_csrf_single_character_change_fails(tokens: TokenService) -> None:
    value = tokens.issue_csrf_token().value
    flipped = ("1" if value[0] != "1" else "2") + value[1:]
    assert not tokens.validate_csrf_token(flipped, value)
    assert not tokens.validate_csrf_token(value, flipped)


def test_csrf_expired_is_treated_as_absent(tokens: TokenService, clock: FrozenClock) -> None:
    pair = tokens.issue_csrf_token(ttl=timedelta(minutes=5))
    assert pair.expires_at == clock.now + timedelta(minutes=5)
    clock.advance(minutes=5)
    assert not tokens.validate_csrf_token(pair.value, pair.value)


def test_csrf_forged_expiry_rejected(tokens: TokenService) -> None:
    nonce, exp, mac = tokens.issue_csrf_token(ttl=timedelta(minutes=5)).value.split(".")
    extended = f"{nonce}.{int(exp) + 86400}.{mac}"
    assert tokens.csrf_expiry(extended) is None
    assert not tokens.validate_csrf_token(extended, extended)


@pytest.mark.parametrize("submitted, stored", [(None, "x"), ("x", None), ("", ""), ("abc", "abc")])
def test_csrf_missing_or_malformed(tokens: TokenService, submitted, stored) -> None:
    assert not tokens.validate_csrf_token(submitted, stored)


# ---------------------------------------------------------------------------
# Passwords and API key digests
# ---------------------------------------------------------------------------


def test_password_hash_round_trip() -> None:
    hashed = hash_password("hunter22")
    assert hashed != "hunter22"
    assert verify_password("hunter22", hashed)
    assert not verify_password("hunter23", hashed)


def test_verify_password_with_corrupt_hash_is_false() -> None:
    assert not verify_password("anything", "not-a-bcrypt-hash")


def test_authenticate_password(store) -> None:
    user = make_user(store, "Pilot@Example.test", Role.student)
    assert authenticate_password(store, "pilot@example.test", "correct-horse-battery").id == user.id
    assert authenticate_password(store, "pilot@example.test", "wrong") is None
    assert authenticate_password(store, "nobody@example.test", "correct-horse-battery") is None


def test_authenticate_password_inactive_user(store) -> None:
    make_user(store, "gone@example.test", Role.student, is_active=False)
    assert authenticate_password(store, "gone@example.test", "correct-horse-battery") is None


def test_generated_api_keys_have_prefix_and_entropy() -> None:
    a, b = generate_api_key(), generate_api_key()
    assert a != b
    assert a.startswith(API_KEY_PREFIX) and len(a) == len(API_KEY_PREFIX) + 64
    assert looks_like_api_key(a)
    assert not looks_like_api_key("eyJhbGciOiJIUzI1NiJ9.e30.x")


def test_api_key_digest_depends_on_pepper(clock: FrozenClock) -> None:
    raw = generate_api_key()
    one = TokenService("a" * 40, TEST_CSRF_SECRET, "p" * 40, clock=clock)
    two = TokenService("a" * 40, TEST_CSRF_SECRET, "q" * 40, clock=clock)
    assert one.hash_api_key(raw) == one.hash_api_key(raw)
    assert one.hash_api_key(raw) != two.hash_api_key(raw)
    assert raw not in one.hash_api_key(raw)
