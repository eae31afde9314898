"""
tests/conftest.py -- Shared test fixtures for FlightSchool gateway tests.

This module provides:
  - FrozenClock: injectable clock for TokenService (and everything using it)
  - make_store(): isolated named shared-memory CredentialStore
  - clock / tokens / store: function-scoped unit-test fixtures
  - gateway_env: TestClient over the real app with a patched lifespan and a
    seeded tenant graph (two schools, every role, an MFA user, API keys)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any core/api import so Settings()
auto-generates missing secrets in dev mode instead of raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any core/api import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_gateway
from core.config import Settings
from gateway.api_keys import ApiKeyGate, DurationType
from gateway.csrf import CSRF_COOKIE
from gateway.models import Role, School, Student, User
from gateway.store import CredentialStore
from gateway.tokens import TokenService, hash_password
from gateway.totp import generate_totp_secret

TEST_SECRET = "test-secret-key-" + "x" * 32
TEST_CSRF_SECRET = "test-csrf-secret-" + "y" * 32
TEST_PEPPER = "test-api-key-pepper-" + "z" * 32
PASSWORD = "correct-horse-battery"

START = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_store(name: str) -> CredentialStore:
    """Isolated named shared-memory store. name must be unique per test scope."""
    return CredentialStore(f"sqlite:///file:test_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def make_tokens(clock: FrozenClock) -> TokenService:
    return TokenService(TEST_SECRET, TEST_CSRF_SECRET, TEST_PEPPER, clock=clock)


def make_user(store: CredentialStore, email: str, role: Role, **fields) -> User:
    user = User(email=email, role=role, hashed_password=hash_password(PASSWORD), **fields)
    user.id = store.create_user(user)
    return user


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def tokens(clock: FrozenClock) -> TokenService:
    return make_tokens(clock)


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = make_store("unit")
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Integration environment
# ---------------------------------------------------------------------------


@dataclass
class GatewayEnv:
    """Everything an integration test needs: the client plus the seeded graph."""

    client: TestClient
    store: CredentialStore
    tokens: TokenService
    clock: FrozenClock
    api_key: str
    users: dict[str, User] = field(default_factory=dict)
    schools: dict[str, School] = field(default_factory=dict)
    students: dict[str, Student] = field(default_factory=dict)
    mfa_secret: str = ""
    revoked_key: str = ""
    expired_key: str = ""

    def user(self, name: str) -> User:
        """Fresh copy of a seeded user from the store."""
        return self.store.find_user_by_id(self.users[name].id)

    def session_headers(self, name: str, csrf: bool = True) -> dict[str, str]:
        """Headers for a fully authenticated request as the named seeded user."""
        token = self.tokens.issue_session_token(self.user(name).claims())
        headers = {"X-API-Key": self.api_key, "Authorization": f"Bearer {token}"}
        if csrf:
            pair = self.tokens.issue_csrf_token()
            headers["X-CSRF-Token"] = pair.value
            headers["Cookie"] = f"{CSRF_COOKIE}={pair.value}"
        return headers


def _seed(store: CredentialStore, tokens: TokenService) -> dict:
    users = {
        "sys_admin": make_user(store, "root@flightschool.test", Role.sys_admin),
        "alpha_admin": make_user(store, "admin@alpha.test", Role.school_admin),
        "alpha_instructor": make_user(store, "cfi@alpha.test", Role.instructor),
        "alpha_student": make_user(store, "amelia@alpha.test", Role.student),
        "alpha_student2": make_user(store, "bessie@alpha.test", Role.student),
        "beta_admin": make_user(store, "admin@beta.test", Role.school_admin),
        "beta_student": make_user(store, "chuck@beta.test", Role.student),
    }
    mfa_secret = generate_totp_secret()
    users["mfa_admin"] = make_user(
        store,
        "mfa@alpha.test",
        Role.school_admin,
        mfa_enabled=True,
        mfa_verified=True,
        mfa_secret=mfa_secret,
    )

    alpha = School(
        name="Alpha Aviation",
        admins=[users["alpha_admin"].id, users["mfa_admin"].id],
        instructors=[users["alpha_instructor"].id],
    )
    alpha.id = store.create_school(alpha)
    beta = School(name="Beta Flight Academy", admins=[users["beta_admin"].id])
    beta.id = store.create_school(beta)

    students = {}
    for key, school in (("alpha_student", alpha), ("alpha_student2", alpha), ("beta_student", beta)):
        record = Student(school_id=school.id, user_id=users[key].id, name=users[key].email.split("@")[0].title())
        record.id = store.create_student(record)
        students[key] = record
        store.update_user_scope(users[key].id, school_id=school.id, student_id=record.id, instructor_id=None)

    for key, school in (("alpha_admin", alpha), ("mfa_admin", alpha), ("beta_admin", beta)):
        store.update_user_scope(users[key].id, school_id=school.id, student_id=None, instructor_id=None)
    store.update_user_scope(
        users["alpha_instructor"].id, school_id=alpha.id, student_id=None, instructor_id=users["alpha_instructor"].id
    )

    gate = ApiKeyGate(store, tokens)
    owner = users["sys_admin"]
    api_key, _ = gate.create_api_key(owner, "test-suite")
    revoked_key, revoked = gate.create_api_key(owner, "revoked")
    gate.revoke_api_key(owner, revoked.id)
    expired_key, _ = gate.create_api_key(owner, "expired", 1, DurationType.days)

    return {
        "users": users,
        "schools": {"alpha": alpha, "beta": beta},
        "students": students,
        "mfa_secret": mfa_secret,
        "api_key": api_key,
        "revoked_key": revoked_key,
        "expired_key": expired_key,
    }


def _patch_lifespan(settings: Settings, store: CredentialStore, tokens: TokenService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and the frozen-clock token service into app.state
    through the same build_gateway() the real lifespan uses.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_gateway(app, settings, store, tokens)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def gateway_env() -> Generator[GatewayEnv, None, None]:
    """Yield a GatewayEnv for integration tests (one TestClient per test module).

    The expired key is created with a one day lifetime and the clock is then
    moved two days ahead, so it is past expiry for the whole module.
    """
    clock = FrozenClock()
    tokens = make_tokens(clock)
    store = make_store("api")
    settings = Settings(
        debug=True,
        secret_key=TEST_SECRET,
        csrf_secret=TEST_CSRF_SECRET,
        api_key_pepper=TEST_PEPPER,
        database_url="sqlite://",
    )
    seeded = _seed(store, tokens)
    clock.advance(days=2)

    app.router.lifespan_context = _patch_lifespan(settings, store, tokens)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield GatewayEnv(client=client, store=store, tokens=tokens, clock=clock, **seeded)

    store.close()


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    limiter.reset()


@pytest.fixture
def env(gateway_env: GatewayEnv) -> Generator[GatewayEnv, None, None]:
    """Per-test view of gateway_env: empty cookie jar, clock restored afterwards."""
    gateway_env.client.cookies.clear()
    saved = gateway_env.clock.now
    yield gateway_env
    gateway_env.clock.now = saved
    gateway_env.client.cookies.clear()

