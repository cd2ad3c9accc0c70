"""
auth/service.py -- Login, refresh, registration, bearer resolution and logout.

AuthenticationCoordinator owns every path that hands a token to a client or
accepts one back. LogoutCoordinator owns revocation at logout.

Invariants kept here:
  - Lock and active checks run before bcrypt, so a locked account costs no
    hashing work and answers in the same time whatever the password.
  - Unknown email and wrong password raise the same InvalidCredentialsError,
    and the unknown path still burns one bcrypt comparison [C1].
  - Tokens are returned only after the counter reset and both ledger rows are
    committed in one transaction. If the commit fails the minted strings are
    dropped and the client gets a generic 500 (TokenPersistenceError).
  - Logout's refresh-token cleanup is best effort: any failure there is
    logged and swallowed, access-token revocation is never blocked by it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    AccountInactiveError,
    AccountLockedError,
    DuplicateAccountError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    TokenError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenPersistenceError,
    TokenSignatureInvalidError,
    ValidationError,
)
from auth.ledger import TokenLedger
from auth.models import IssuedToken, LoginResult, RefreshResult, TokenKind, User
from auth.policy import MinimumLengthPolicy, PasswordPolicy
from auth.store import UserStore
from auth.tokens import Clock, TokenIssuer, hash_password, utc_now, verify_dummy_password, verify_password

logger = logging.getLogger("trustauth.auth.service")


def _parse_subject(subject: str | None) -> int | None:
    """Account ids are integers; anything else in `sub` is not ours."""
    if subject is None:
        return None
    try:
        return int(subject)
    except ValueError:
        return None


class AuthenticationCoordinator:
    """Register, log in, refresh and resolve bearer tokens.

    Usage:
        coordinator = AuthenticationCoordinator(users=store, ledger=ledger, issuer=issuer)
        result = coordinator.authenticate("alice@x.com", "correct123")
        user = coordinator.resolve_principal(result.access_token)
    """

    def __init__(
        self,
        users: UserStore,
        ledger: TokenLedger,
        issuer: TokenIssuer,
        clock: Clock = utc_now,
        password_policy: PasswordPolicy | None = None,
    ) -> None:
        self.users = users
        self.ledger = ledger
        self.issuer = issuer
        self.clock = clock
        self.password_policy = password_policy or MinimumLengthPolicy()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        full_name: str | None = None,
        role_ids: Iterable[int] = (),
        phone: str | None = None,
    ) -> User:
        """Create an active, unlocked account and return it as stored."""
        roles = sorted(set(role_ids))
        if not roles:
            raise ValidationError("At least one role must be assigned.")
        self.password_policy.check(password)
        if self.users.exists_by_username(username):
            raise DuplicateAccountError("Username already exists.")
        if self.users.exists_by_email(email):
            raise DuplicateAccountError("Email already exists.")

        user = User(
            username=username,
            email=email.lower(),
            hashed_password=hash_password(password),
            full_name=full_name,
            phone=phone,
            role_ids=roles,
        )
        try:
            user_id = self.users.create_user(user)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same name/email.
            raise DuplicateAccountError() from exc
        logger.info("Registered user %s", user_id)
        return self.users.get_by_id(user_id)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> LoginResult:
        """Verify credentials and issue an access/refresh pair.

        Raises InvalidCredentialsError, AccountInactiveError, AccountLockedError
        or TokenPersistenceError.
        """
        user = self.users.get_by_email(email)
        if user is None:
            verify_dummy_password(password)  # [C1]
            logger.info("Login failed: unknown account")
            raise InvalidCredentialsError()

        if not user.is_active:
            logger.info("Login refused for inactive user %s", user.id)
            raise AccountInactiveError()
        if user.is_locked:
            logger.info("Login refused for locked user %s", user.id)
            raise AccountLockedError()

        if not verify_password(password, user.hashed_password):
            outcome = self.users.record_failed_login(user.id)
            if outcome.locked_now:
                logger.warning("User %s locked after %d failed login attempts", user.id, outcome.attempts)
            elif outcome.locked:
                logger.info("Login failed for user %s (already locked)", user.id)
            else:
                logger.info(
                    "Login failed for user %s (attempt %d, %d remaining)",
                    user.id,
                    outcome.attempts,
                    self.users.lockout.remaining_attempts(outcome.attempts),
                )
            raise InvalidCredentialsError()

        return self._start_session(user)

    def _start_session(self, user: User) -> LoginResult:
        now = self.clock().replace(microsecond=0)
        subject = str(user.id)
        access = self.issuer.mint(TokenKind.ACCESS, subject, issued_at=now)
        refresh = self.issuer.mint(TokenKind.REFRESH, subject, issued_at=now)

        try:
            with self.users.engine.begin() as conn:
                if not self.users.record_successful_login(user.id, now, conn=conn):
                    # Changed between the checks above and this write; report the current state.
                    current = self.users.get_by_id(user.id, conn=conn)
                    if current is None or not current.is_active:
                        raise AccountInactiveError()
                    raise AccountLockedError()
                self.ledger.save(self._record(access, TokenKind.ACCESS, user.id, now), now, conn=conn)
                self.ledger.save(self._record(refresh, TokenKind.REFRESH, user.id, now), now, conn=conn)
        except SQLAlchemyError as exc:
            logger.exception("Could not persist issued tokens for user %s", user.id)
            raise TokenPersistenceError() from exc

        user.failed_login_attempts = 0
        user.last_login = now
        logger.info("User %s logged in", user.id)
        return LoginResult(
            user=user,
            access_token=access,
            refresh_token=refresh,
            expires_in=self.issuer.access_lifetime_seconds(),
        )

    def _record(self, token: str, kind: TokenKind, user_id: int, issued_at) -> IssuedToken:
        return IssuedToken(
            token=token,
            kind=kind,
            user_id=user_id,
            expires_at=self.issuer.expires_at(kind, issued_at),
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> RefreshResult:
        """Exchange a live refresh token for a new access token.

        The refresh token itself is kept and returned unchanged. Every access
        token the user still holds is revoked, so at most one access token per
        user is live after a refresh. All failures collapse into
        InvalidRefreshTokenError.
        """
        try:
            claims = self.issuer.validate(refresh_token, expected_kind=TokenKind.REFRESH)
        except TokenError as exc:
            raise InvalidRefreshTokenError() from exc

        user_id = _parse_subject(claims.get("sub"))
        user = self.users.get_by_id(user_id) if user_id is not None else None
        if user is None or not user.is_active or user.is_locked:
            raise InvalidRefreshTokenError()

        record = self.ledger.find(refresh_token, TokenKind.REFRESH)
        if record is None or record.user_id != user.id or not record.is_usable(self.clock()):
            raise InvalidRefreshTokenError()

        now = self.clock().replace(microsecond=0)
        access = self.issuer.mint(TokenKind.ACCESS, str(user.id), issued_at=now)
        try:
            with self.users.engine.begin() as conn:
                revoked = self.ledger.revoke_all_for_user(user.id, TokenKind.ACCESS, conn=conn)
                self.ledger.save(self._record(access, TokenKind.ACCESS, user.id, now), now, conn=conn)
        except SQLAlchemyError as exc:
            logger.exception("Could not persist refreshed access token for user %s", user.id)
            raise TokenPersistenceError() from exc

        logger.info("User %s refreshed access token (%d revoked)", user.id, revoked)
        return RefreshResult(
            access_token=access,
            refresh_token=refresh_token,
            expires_in=self.issuer.access_lifetime_seconds(),
        )

    # ------------------------------------------------------------------
    # Bearer resolution
    # ------------------------------------------------------------------

    def resolve_principal(self, access_token: str) -> User:
        """Return the account behind a usable access token.

        Signature, expiry and kind are checked cryptographically first, then
        the ledger decides revocation. A token missing from the ledger is
        reported exactly like an expired one.
        """
        claims = self.issuer.validate(access_token, expected_kind=TokenKind.ACCESS)
        record = self.ledger.find(access_token, TokenKind.ACCESS)
        if record is None:
            raise TokenNotFoundError()
        if not record.is_usable(self.clock()):
            raise TokenExpiredError()
        if _parse_subject(claims.get("sub")) != record.user_id:
            raise TokenSignatureInvalidError()

        user = self.users.get_by_id(record.user_id)
        if user is None:
            raise TokenNotFoundError()
        if not user.is_active:
            raise AccountInactiveError()
        if user.is_locked:
            raise AccountLockedError()
        return user


class LogoutCoordinator:
    """Revoke the caller's access token and, best effort, its refresh token."""

    def __init__(self, users: UserStore, ledger: TokenLedger, issuer: TokenIssuer) -> None:
        self.users = users
        self.ledger = ledger
        self.issuer = issuer

    def logout(self, access_token: str | None, refresh_token: str | None = None) -> None:
        """Never raises for token problems. Calling it twice is harmless.

        Storage failures on the access-token path do propagate: reporting a
        successful logout while the token stays live would be worse than a 500.
        """
        if access_token:
            record = self.ledger.find(access_token, TokenKind.ACCESS)
            if record is not None and not record.revoked:
                if self.ledger.revoke(access_token, TokenKind.ACCESS):
                    logger.info("Access token revoked for user %s", record.user_id)

        if refresh_token:
            try:
                self._revoke_refresh(refresh_token)
            except Exception as exc:  # best effort by contract -- log and move on
                logger.warning("Refresh token not revoked during logout: %s", exc.__class__.__name__)

    def _revoke_refresh(self, refresh_token: str) -> None:
        user_id = _parse_subject(self.issuer.peek_subject(refresh_token))
        if user_id is None:
            raise TokenSignatureInvalidError()
        user = self.users.get_by_id(user_id)
        if user is None:
            raise TokenNotFoundError()
        self.issuer.validate(refresh_token, expected_subject=str(user.id), expected_kind=TokenKind.REFRESH)

        record = self.ledger.find(refresh_token, TokenKind.REFRESH)
        if record is not None and record.user_id == user.id and not record.revoked:
            self.ledger.revoke(refresh_token, TokenKind.REFRESH)
            logger.info("Refresh token revoked for user %s", user.id)
