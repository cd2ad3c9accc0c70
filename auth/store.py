"""
auth/store.py -- SQLAlchemy Core schema and the credential store.

Pattern: Repository + Data Mapper. UserStore is the repository for accounts;
_row_to_user is the mapper. Coordinators never touch SQL directly. The token
ledgers in auth/ledger.py share this module's MetaData and engine so a login
can reset the failure counter and write both ledger rows in one transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The failure counter is never read-modified-written from Python. One UPDATE
  adds 1 and flips is_locked through a CASE expression, guarded by
  is_locked = 0. Whichever storage engine runs it serializes writers on the
  row (SQLite: database write lock, Postgres: row lock), so N concurrent bad
  passwords always add exactly N until the lock trips, after which the
  counter no longer moves.

Connection sharing:
  Mutating methods accept an optional `conn`. Without one they open and
  commit their own transaction; with one they join the caller's transaction
  (see use_connection()).

Timestamps:
  Stored as fixed-width ISO 8601 UTC strings (microsecond precision), so
  string comparison in SQL is chronological.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import NamedTuple

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.lockout import LockoutPolicy
from auth.models import User
from core.config import get_settings

logger = logging.getLogger("trustauth.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),  # login identifier, stored lowercased
    Column("hashed_password", Text, nullable=False),
    Column("full_name", String(255)),
    Column("phone", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_locked", Integer, nullable=False, server_default="0"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("password_changed_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("role_id", Integer, primary_key=True),  # role catalog lives outside this service
)

tokens = Table(
    "tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(1024), nullable=False, unique=True),
    Column("token_type", String(10), nullable=False),  # "access" | "refresh"
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("expired", Integer, nullable=False, server_default="0"),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

password_reset_tokens = Table(
    "password_reset_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),  # NULL = outstanding
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by the single writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_auth_engine(db_url: str | None = None) -> Engine:
    """Create the engine and make sure every auth table exists."""
    url = db_url or get_settings().database_url
    connect_args: dict = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(url, connect_args=connect_args)
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


@contextmanager
def use_connection(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Yield `conn` when the caller already holds a transaction, else a fresh one.

    A fresh transaction commits on clean exit and rolls back on exception.
    """
    if conn is not None:
        yield conn
        return
    with engine.begin() as own:
        yield own


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO string. Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class FailedLogin(NamedTuple):
    """Outcome of UserStore.record_failed_login."""

    attempts: int
    locked: bool
    locked_now: bool  # this call's UPDATE tripped the lock


class UserStore:
    """Credential store: account records and their security-relevant mutations.

    Usage:
        engine = create_auth_engine("sqlite:///:memory:")
        store = UserStore(engine)
        uid = store.create_user(User(username="alice", email="alice@x.com", hashed_password=...))
        store.record_failed_login(uid)
        store.close()
    """

    def __init__(self, engine: Engine, lockout: LockoutPolicy | None = None) -> None:
        self.engine = engine
        self.lockout = lockout or LockoutPolicy()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def create_user(self, user: User, conn: Connection | None = None) -> int:
        """Insert a new account plus its role ids and return the new ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers checking uniqueness first must still handle it: two
        concurrent registrations can both pass the pre-check.
        """
        with use_connection(self.engine, conn) as c:
            result = c.execute(
                users.insert().values(
                    username=user.username,
                    email=user.email.lower(),
                    hashed_password=user.hashed_password,
                    full_name=user.full_name,
                    phone=user.phone,
                    is_active=1 if user.is_active else 0,
                    is_locked=1 if user.is_locked else 0,
                    failed_login_attempts=user.failed_login_attempts,
                    created_at=to_iso(_utc_now()),
                )
            )
            user_id = result.inserted_primary_key[0]
            for role_id in sorted(set(user.role_ids)):
                c.execute(user_roles.insert().values(user_id=user_id, role_id=role_id))
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up an account by login identifier (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email.lower())).fetchone()
            return self._hydrate(conn, row)

    def get_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        """Read inside the caller's transaction when `conn` is given."""
        stmt = users.select().where(users.c.id == user_id)
        if conn is not None:
            return self._hydrate(conn, conn.execute(stmt).fetchone())
        with self.engine.connect() as c:
            return self._hydrate(c, c.execute(stmt).fetchone())

    def lock_for_update(self, user_id: int, conn: Connection) -> bool:
        """Hold the account row until `conn`'s transaction ends. False if the row is gone.

        Renders SELECT ... FOR UPDATE on servers with row locks. SQLite drops
        the clause; there the transaction's first write takes the database
        lock instead.
        """
        row = conn.execute(select(users.c.id).where(users.c.id == user_id).with_for_update()).fetchone()
        return row is not None

    def exists_by_username(self, username: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(users).where(users.c.username == username)).scalar()
        return (count or 0) > 0

    def exists_by_email(self, email: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(users).where(users.c.email == email.lower())
            ).scalar()
        return (count or 0) > 0

    def _hydrate(self, conn: Connection, row) -> User | None:
        if row is None:
            return None
        role_rows = conn.execute(
            select(user_roles.c.role_id).where(user_roles.c.user_id == row.id).order_by(user_roles.c.role_id)
        ).fetchall()
        return _row_to_user(row, [r.role_id for r in role_rows])

    # ------------------------------------------------------------------
    # Login outcomes
    # ------------------------------------------------------------------

    def record_failed_login(self, user_id: int, conn: Connection | None = None) -> FailedLogin:
        """Atomically count one failed password check; lock at the threshold.

        The result reflects the row inside the same transaction. A row that is
        already locked is not touched, so the counter stops at the threshold
        and `locked_now` is True for exactly one caller per lock.
        """
        new_count = users.c.failed_login_attempts + 1
        with use_connection(self.engine, conn) as c:
            result = c.execute(
                users.update()
                .where((users.c.id == user_id) & (users.c.is_locked == 0))
                .values(
                    failed_login_attempts=new_count,
                    is_locked=case((new_count >= self.lockout.threshold, 1), else_=users.c.is_locked),
                )
            )
            row = c.execute(
                select(users.c.failed_login_attempts, users.c.is_locked).where(users.c.id == user_id)
            ).fetchone()
        if row is None:
            return FailedLogin(0, False, False)
        counted = result.rowcount > 0
        return FailedLogin(
            attempts=row.failed_login_attempts,
            locked=bool(row.is_locked),
            locked_now=counted and self.lockout.should_lock(row.failed_login_attempts),
        )

    def record_successful_login(self, user_id: int, at: datetime, conn: Connection | None = None) -> bool:
        """Reset the failure counter to 0 and stamp last_login.

        Only matches an active, unlocked row. False means the account was
        locked or deactivated after the caller's checks, and the login must
        not complete.
        """
        with use_connection(self.engine, conn) as c:
            result = c.execute(
                users.update()
                .where((users.c.id == user_id) & (users.c.is_active == 1) & (users.c.is_locked == 0))
                .values(failed_login_attempts=0, last_login=to_iso(at))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Administrative / recovery mutations
    # ------------------------------------------------------------------

    def update_password(self, user_id: int, hashed_password: str, conn: Connection | None = None) -> bool:
        """Store a new hash. Also clears the failure counter and the lock.

        Used by password reset, where a consumed reset token proves ownership
        of the account.
        """
        with use_connection(self.engine, conn) as c:
            result = c.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(
                    hashed_password=hashed_password,
                    password_changed_at=to_iso(_utc_now()),
                    failed_login_attempts=0,
                    is_locked=0,
                )
            )
        return result.rowcount > 0

    def unlock_user(self, user_id: int) -> bool:
        """Explicit administrative unlock. The lock never expires on its own."""
        with use_connection(self.engine) as c:
            result = c.execute(users.update().where(users.c.id == user_id).values(is_locked=0, failed_login_attempts=0))
        return result.rowcount > 0

    def set_active(self, user_id: int, active: bool) -> bool:
        with use_connection(self.engine) as c:
            result = c.execute(users.update().where(users.c.id == user_id).values(is_active=1 if active else 0))
        return result.rowcount > 0

    def ping(self) -> bool:
        """Connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, role_ids: list[int]) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        full_name=row.full_name,
        phone=row.phone,
        is_active=bool(row.is_active),
        is_locked=bool(row.is_locked),
        failed_login_attempts=row.failed_login_attempts,
        last_login=parse_iso(row.last_login),
        created_at=parse_iso(row.created_at),
        role_ids=role_ids,
    )
