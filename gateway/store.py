"""
gateway/store.py -- SQLAlchemy Core persistence layer for gateway entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_* functions are the mappers. Gateway and route code never touches SQL
directly. The store holds no policy: an inactive or expired API key is still
returned by find_api_key_by_hash(), and the gate decides what that means.

Security:
  All queries use bound parameters. No f-strings in SQL.
  API keys are looked up by digest only; the plaintext never reaches this module.

Concurrency:
  Every write touches a single row. consume_pending_auth() is a conditional
  UPDATE (consumed = 0 in the WHERE clause) so two concurrent MFA completions
  for the same pending login cannot both win.

Timestamps are stored as ISO 8601 UTC strings and mapped back to aware
datetimes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from gateway.models import ApiKey, PendingAuth, Role, School, Student, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False),
    Column("school_id", Integer),
    Column("student_id", Integer),
    Column("instructor_id", Integer),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_verified", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", Text),
    Column("created_at", String(32), nullable=False),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("label", String(100), nullable=False),
    Column("hashed_key", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("last_six", String(6), nullable=False),  # display only
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32)),
    Column("last_used_at", String(32)),
)

_pending_auth = Table(
    "pending_auth",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("consumed", Integer, nullable=False, server_default="0"),
)

_schools = Table(
    "schools",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
)

_school_members = Table(
    "school_members",
    _metadata,
    Column("school_id", Integer, ForeignKey("schools.id"), primary_key=True),
    Column("user_id", Integer, primary_key=True),
    Column("kind", String(20), primary_key=True),  # "admin" or "instructor"
)

_students = Table(
    "students",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("school_id", Integer, ForeignKey("schools.id"), nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("name", String(255), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during single-row writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, API keys, pending logins, schools and student records.

    Usage:
        store = CredentialStore(settings.database_url)
        user_id = store.create_user(User(email="a@b.c", role=Role.student, hashed_password=...))
        user = store.find_user_by_email("a@b.c")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    school_id=user.school_id,
                    student_id=user.student_id,
                    instructor_id=user.instructor_id,
                    is_active=1 if user.is_active else 0,
                    mfa_enabled=1 if user.mfa_enabled else 0,
                    mfa_verified=1 if user.mfa_verified else 0,
                    mfa_secret=user.mfa_secret,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_email(self, email: str) -> User | None:
        """Look up a user by email. Emails are stored and compared lower-cased."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user_scope(
        self,
        user_id: int,
        *,
        school_id: int | None = None,
        student_id: int | None = None,
        instructor_id: int | None = None,
    ) -> bool:
        """Attach scope ids to a user after the scoped records exist."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(school_id=school_id, student_id=student_id, instructor_id=instructor_id)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # MFA fields on the user row
    # ------------------------------------------------------------------

    def set_mfa_enrolment(self, user_id: int, secret: str) -> None:
        """Store a fresh TOTP secret and enable MFA. Enrolment is unconfirmed until confirm_mfa_enrolment()."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    mfa_enabled=1,
                    mfa_verified=0,
                    mfa_secret=secret,
                )
            )
            conn.commit()

    def confirm_mfa_enrolment(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(mfa_verified=1))
            conn.commit()

    def clear_mfa(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(mfa_enabled=0, mfa_verified=0, mfa_secret=None)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> int:
        """Insert a new API key record and return its id."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    user_id=api_key.user_id,
                    label=api_key.label,
                    hashed_key=api_key.hashed_key,
                    last_six=api_key.last_six,
                    is_active=1 if api_key.is_active else 0,
                    created_at=_to_iso(api_key.created_at) or _now_iso(),
                    expires_at=_to_iso(api_key.expires_at),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_api_key_by_hash(self, hashed_key: str) -> ApiKey | None:
        """Look up an API key by digest, active or not. O(1) via the UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.hashed_key == hashed_key)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def find_api_key_by_id(self, key_id: int) -> ApiKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys(self, user_id: int) -> list[ApiKey]:
        """Return every key owned by a user, newest first. Revoked keys are included for audit."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where(_api_keys.c.user_id == user_id)
                .order_by(_api_keys.c.created_at.desc(), _api_keys.c.id.desc())
            ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def touch_api_key_usage(self, key_id: int) -> None:
        """Stamp last_used_at. Callers run this off the request path."""
        with self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used_at=_now_iso()))
            conn.commit()

    def set_api_key_active(self, key_id: int, user_id: int, active: bool) -> bool:
        """Toggle is_active. user_id is part of the WHERE clause to prevent IDOR.

        Returns True if a key was updated, False if not found or wrong owner.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update()
                .where((_api_keys.c.id == key_id) & (_api_keys.c.user_id == user_id))
                .values(is_active=1 if active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Pending MFA logins
    # ------------------------------------------------------------------

    def create_pending_auth(self, pending: PendingAuth) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _pending_auth.insert().values(
                    id=pending.id,
                    user_id=pending.user_id,
                    created_at=_to_iso(pending.created_at) or _now_iso(),
                    expires_at=_to_iso(pending.expires_at),
                    attempts=pending.attempts,
                    consumed=1 if pending.consumed else 0,
                )
            )
            conn.commit()

    def find_pending_auth(self, pending_id: str) -> PendingAuth | None:
        with self.engine.connect() as conn:
            row = conn.execute(_pending_auth.select().where(_pending_auth.c.id == pending_id)).fetchone()
        return _row_to_pending(row) if row is not None else None

    def increment_pending_attempts(self, pending_id: str, max_attempts: int | None = None) -> int | None:
        """Count one failed code attempt and return the new total.

        With max_attempts the UPDATE only applies while attempts < max_attempts,
        so concurrent failures cannot push the counter past the bound. Returns
        None when no row was updated (unknown id or budget already spent).
        """
        condition = _pending_auth.c.id == pending_id
        if max_attempts is not None:
            condition = condition & (_pending_auth.c.attempts < max_attempts)
        with self.engine.connect() as conn:
            result = conn.execute(
                _pending_auth.update().where(condition).values(attempts=_pending_auth.c.attempts + 1)
            )
            if result.rowcount == 0:
                conn.commit()
                return None
            attempts = conn.execute(
                select(_pending_auth.c.attempts).where(_pending_auth.c.id == pending_id)
            ).scalar()
            conn.commit()
        return attempts

    def consume_pending_auth(self, pending_id: str) -> bool:
        """Mark a pending login as used. Returns False if it was already consumed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _pending_auth.update()
                .where((_pending_auth.c.id == pending_id) & (_pending_auth.c.consumed == 0))
                .values(consumed=1)
            )
            conn.commit()
        return result.rowcount > 0

    def purge_pending_auth(self, before: datetime) -> int:
        """Delete pending logins that expired before the given instant."""
        with self.engine.connect() as conn:
            result = conn.execute(_pending_auth.delete().where(_pending_auth.c.expires_at < _to_iso(before)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Schools and students
    # ------------------------------------------------------------------

    def create_school(self, school: School) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_schools.insert().values(name=school.name))
            school_id = result.inserted_primary_key[0]
            members = [{"school_id": school_id, "user_id": uid, "kind": "admin"} for uid in school.admins]
            members += [{"school_id": school_id, "user_id": uid, "kind": "instructor"} for uid in school.instructors]
            if members:
                conn.execute(_school_members.insert(), members)
            conn.commit()
        return school_id

    def find_school_by_id(self, school_id: int) -> School | None:
        with self.engine.connect() as conn:
            row = conn.execute(_schools.select().where(_schools.c.id == school_id)).fetchone()
            if row is None:
                return None
            members = conn.execute(
                _school_members.select()
                .where(_school_members.c.school_id == school_id)
                .order_by(_school_members.c.user_id)
            ).fetchall()
        return School(
            id=row.id,
            name=row.name,
            admins=[m.user_id for m in members if m.kind == "admin"],
            instructors=[m.user_id for m in members if m.kind == "instructor"],
        )

    def create_student(self, student: Student) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _students.insert().values(school_id=student.school_id, user_id=student.user_id, name=student.name)
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_student_by_id(self, student_id: int) -> Student | None:
        with self.engine.connect() as conn:
            row = conn.execute(_students.select().where(_students.c.id == student_id)).fetchone()
        return _row_to_student(row) if row is not None else None

    def list_students(self, school_id: int) -> list[Student]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _students.select().where(_students.c.school_id == school_id).order_by(_students.c.id)
            ).fetchall()
        return [_row_to_student(r) for r in rows]

    def update_student(self, student_id: int, **fields) -> bool:
        """Update mutable student fields. Accepted: name."""
        unknown = set(fields) - {"name"}
        if unknown:
            raise ValueError(f"Unknown student fields: {unknown!r}")
        if not fields:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(_students.update().where(_students.c.id == student_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        school_id=row.school_id,
        student_id=row.student_id,
        instructor_id=row.instructor_id,
        is_active=bool(row.is_active),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_verified=bool(row.mfa_verified),
        mfa_secret=row.mfa_secret,
        created_at=_from_iso(row.created_at),
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        user_id=row.user_id,
        label=row.label,
        hashed_key=row.hashed_key,
        last_six=row.last_six,
        is_active=bool(row.is_active),
        created_at=_from_iso(row.created_at),
        expires_at=_from_iso(row.expires_at),
        last_used_at=_from_iso(row.last_used_at),
    )


def _row_to_pending(row) -> PendingAuth:
    return PendingAuth(
        id=row.id,
        user_id=row.user_id,
        created_at=_from_iso(row.created_at),
        expires_at=_from_iso(row.expires_at),
        attempts=row.attempts,
        consumed=bool(row.consumed),
    )


def _row_to_student(row) -> Student:
    return Student(id=row.id, school_id=row.school_id, user_id=row.user_id, name=row.name)
