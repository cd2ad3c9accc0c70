"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores and coordinators do the work. The only behaviour here
is the usability predicates, because they are the invariants every caller
must evaluate the same way.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TokenKind(str, Enum):
    """Kind of a ledgered bearer token. Also carried as the `kind` JWT claim."""

    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class User:
    """A local account. email is the login identifier; username is display/unique handle.

    is_locked flips to True once failed_login_attempts reaches the lockout
    threshold and stays True until an explicit unlock or a successful
    password reset. Login is refused while is_active is False or is_locked is
    True, whatever the password.
    """

    username: str
    email: str
    id: int | None = None
    hashed_password: str | None = None
    full_name: str | None = None
    phone: str | None = None
    is_active: bool = True
    is_locked: bool = False
    failed_login_attempts: int = 0
    last_login: datetime | None = None
    created_at: datetime | None = None
    role_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class AuthPrincipal:
    """Narrow view of a User for access-control consumers.

    Exposes only what an authorization layer needs to decide whether the
    identity may act at all. Mutable profile attributes stay on User.
    """

    id: int
    is_enabled: bool
    is_non_locked: bool
    credential_digest: str | None

    @classmethod
    def from_user(cls, user: User) -> AuthPrincipal:
        return cls(
            id=user.id,
            is_enabled=user.is_active,
            is_non_locked=not user.is_locked,
            credential_digest=user.hashed_password,
        )


@dataclass
class IssuedToken:
    """Ledger row for an access or refresh token handed to a client.

    revoked and expired only ever move False -> True. expired is a cached
    flag; is_usable() always re-checks expires_at against the supplied clock.
    """

    token: str
    kind: TokenKind
    user_id: int
    expires_at: datetime
    id: int | None = None
    revoked: bool = False
    expired: bool = False
    created_at: datetime | None = None

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and not self.expired and now < self.expires_at


@dataclass
class PasswordResetRequest:
    """Single-use password reset token.

    used_at is stamped both when the token is consumed and when a newer
    request supersedes it, so "used_at is None" means outstanding.
    """

    token: str
    user_id: int
    expires_at: datetime
    id: int | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None

    def is_valid(self, now: datetime) -> bool:
        return self.used_at is None and now < self.expires_at


@dataclass
class LoginResult:
    """Everything a successful login returns to the HTTP layer."""

    user: User
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class RefreshResult:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
