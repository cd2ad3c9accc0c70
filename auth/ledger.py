"""
auth/ledger.py -- Persisted records of issued bearer tokens and reset tokens.

TokenLedger: one row per access/refresh token handed to a client. A token
that is not in the ledger is never honoured, which is what makes logout and
refresh-driven revocation possible for otherwise stateless JWTs.

ResetTokenLedger: one row per password reset request. "Outstanding" means
used_at IS NULL; superseding and consuming both stamp used_at.

Both classes share the engine and MetaData from auth/store.py and accept an
optional `conn` on writes so coordinators can group them with credential
updates in one transaction.

Monotonic flags: revoke() only ever sets revoked/expired to 1 and is guarded
by revoked = 0, so a second revoke is a no-op that reports False.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from auth.models import IssuedToken, PasswordResetRequest, TokenKind
from auth.store import parse_iso, password_reset_tokens, to_iso, tokens, use_connection

logger = logging.getLogger("trustauth.auth.ledger")


class TokenLedger:
    """Repository for IssuedToken rows."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def save(self, record: IssuedToken, now: datetime, conn: Connection | None = None) -> int:
        """Insert a ledger row and return its ID. The token string must be unique."""
        with use_connection(self.engine, conn) as c:
            result = c.execute(
                tokens.insert().values(
                    token=record.token,
                    token_type=record.kind.value,
                    user_id=record.user_id,
                    revoked=1 if record.revoked else 0,
                    expired=1 if record.expired else 0,
                    expires_at=to_iso(record.expires_at),
                    created_at=to_iso(now),
                )
            )
        return result.inserted_primary_key[0]

    def find(self, token: str, kind: TokenKind) -> IssuedToken | None:
        """Look up a row by exact token string and kind."""
        with self.engine.connect() as conn:
            row = conn.execute(
                tokens.select().where((tokens.c.token == token) & (tokens.c.token_type == kind.value))
            ).fetchone()
        return _row_to_issued(row) if row is not None else None

    def revoke(self, token: str, kind: TokenKind, conn: Connection | None = None) -> bool:
        """Flip revoked+expired on one row. Returns False if missing or already revoked."""
        with use_connection(self.engine, conn) as c:
            result = c.execute(
                tokens.update()
                .where((tokens.c.token == token) & (tokens.c.token_type == kind.value) & (tokens.c.revoked == 0))
                .values(revoked=1, expired=1)
            )
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: int, kind: TokenKind, conn: Connection | None = None) -> int:
        """Revoke every still-live row of `kind` for a user. Returns the number flipped."""
        with use_connection(self.engine, conn) as c:
            result = c.execute(
                tokens.update()
                .where(
                    (tokens.c.user_id == user_id)
                    & (tokens.c.token_type == kind.value)
                    & (tokens.c.revoked == 0)
                    & (tokens.c.expired == 0)
                )
                .values(revoked=1, expired=1)
            )
        return result.rowcount

    def mark_expired(self, now: datetime) -> int:
        """Housekeeping: set the cached expired flag on rows past their expiry.

        Purely a cache refresh -- validation never depends on it.
        """
        with use_connection(self.engine) as c:
            result = c.execute(
                tokens.update().where((tokens.c.expired == 0) & (tokens.c.expires_at <= to_iso(now))).values(expired=1)
            )
        return result.rowcount


class ResetTokenLedger:
    """Repository for PasswordResetRequest rows."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def save(self, request: PasswordResetRequest, now: datetime, conn: Connection | None = None) -> int:
        with use_connection(self.engine, conn) as c:
            result = c.execute(
                password_reset_tokens.insert().values(
                    token=request.token,
                    user_id=request.user_id,
                    expires_at=to_iso(request.expires_at),
                    used_at=None,
                    created_at=to_iso(now),
                )
            )
        return result.inserted_primary_key[0]

    def find_valid(self, token: str, now: datetime, conn: Connection | None = None) -> PasswordResetRequest | None:
        """Return the row only if it is unused and unexpired at `now`."""
        stmt = password_reset_tokens.select().where(password_reset_tokens.c.token == token)
        if conn is not None:
            row = conn.execute(stmt).fetchone()
        else:
            with self.engine.connect() as c:
                row = c.execute(stmt).fetchone()
        if row is None:
            return None
        request = _row_to_reset(row)
        return request if request.is_valid(now) else None

    def mark_used(self, token: str, now: datetime, conn: Connection | None = None) -> bool:
        """Consume a token. Guarded by used_at IS NULL; False means someone else got there first."""
        with use_connection(self.engine, conn) as c:
            result = c.execute(
                password_reset_tokens.update()
                .where((password_reset_tokens.c.token == token) & password_reset_tokens.c.used_at.is_(None))
                .values(used_at=to_iso(now))
            )
        return result.rowcount > 0

    def invalidate_for_user(self, user_id: int, now: datetime, conn: Connection | None = None) -> int:
        """Stamp used_at on every outstanding token for a user. Returns the count."""
        with use_connection(self.engine, conn) as c:
            result = c.execute(
                password_reset_tokens.update()
                .where((password_reset_tokens.c.user_id == user_id) & password_reset_tokens.c.used_at.is_(None))
                .values(used_at=to_iso(now))
            )
        return result.rowcount

    def count_outstanding(self, user_id: int, now: datetime) -> int:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(password_reset_tokens.c.id).where(
                    (password_reset_tokens.c.user_id == user_id)
                    & password_reset_tokens.c.used_at.is_(None)
                    & (password_reset_tokens.c.expires_at > to_iso(now))
                )
            ).fetchall()
        return len(rows)

    def delete_spent(self, now: datetime) -> int:
        """Housekeeping: drop rows that are both used and past expiry."""
        with use_connection(self.engine) as c:
            result = c.execute(
                password_reset_tokens.delete().where(
                    password_reset_tokens.c.used_at.is_not(None) & (password_reset_tokens.c.expires_at < to_iso(now))
                )
            )
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_issued(row) -> IssuedToken:
    return IssuedToken(
        id=row.id,
        token=row.token,
        kind=TokenKind(row.token_type),
        user_id=row.user_id,
        revoked=bool(row.revoked),
        expired=bool(row.expired),
        expires_at=parse_iso(row.expires_at),
        created_at=parse_iso(row.created_at),
    )


def _row_to_reset(row) -> PasswordResetRequest:
    return PasswordResetRequest(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        expires_at=parse_iso(row.expires_at),
        used_at=parse_iso(row.used_at),
        created_at=parse_iso(row.created_at),
    )
