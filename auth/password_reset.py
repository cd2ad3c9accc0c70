"""
auth/password_reset.py -- Password reset token lifecycle.

States: ISSUED -> CONSUMED (terminal), or ISSUED -> EXPIRED by time alone.
Superseding is done by stamping used_at on every outstanding row for the
user before a new one is written, inside a transaction that first locks the
account row, so at most one live token exists per account at any moment.

A consumed token proves control of the mailbox, so completing a reset also
clears the failure counter and the lock. When built with a TokenLedger the
coordinator additionally revokes every bearer token the user still holds:
whoever knew the old password may also hold a session.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta

from auth.errors import AccountNotFoundError, PasswordMismatchError, ResetTokenInvalidError
from auth.ledger import ResetTokenLedger, TokenLedger
from auth.models import PasswordResetRequest, TokenKind
from auth.notify import LoggingNotificationSender, NotificationSender, redact_email
from auth.policy import MinimumLengthPolicy, PasswordPolicy
from auth.store import UserStore
from auth.tokens import Clock, generate_reset_token, hash_password, utc_now

logger = logging.getLogger("trustauth.auth.password_reset")

DEFAULT_TOKEN_LIFETIME = timedelta(hours=24)


class PasswordResetCoordinator:
    """Issue, check and consume password reset tokens."""

    def __init__(
        self,
        users: UserStore,
        resets: ResetTokenLedger,
        notifier: NotificationSender | None = None,
        clock: Clock = utc_now,
        token_source: Callable[[], str] = generate_reset_token,
        token_lifetime: timedelta = DEFAULT_TOKEN_LIFETIME,
        frontend_url: str = "http://localhost:4200",
        password_policy: PasswordPolicy | None = None,
        token_ledger: TokenLedger | None = None,
    ) -> None:
        self.users = users
        self.resets = resets
        self.notifier = notifier or LoggingNotificationSender()
        self.clock = clock
        self.token_source = token_source
        self.token_lifetime = token_lifetime
        self.frontend_url = frontend_url.rstrip("/")
        self.password_policy = password_policy or MinimumLengthPolicy()
        self.token_ledger = token_ledger

    def reset_url(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password/{token}"

    def request_reset(self, email: str) -> PasswordResetRequest:
        """Issue a fresh token for an active account and notify its owner.

        Raises AccountNotFoundError for unknown and for inactive accounts
        alike. The HTTP layer decides whether that difference is shown.
        """
        user = self.users.get_by_email(email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive account")
            raise AccountNotFoundError()

        now = self.clock()
        request = PasswordResetRequest(
            token=self.token_source(),
            user_id=user.id,
            expires_at=now + self.token_lifetime,
        )
        with self.users.engine.begin() as conn:
            if not self.users.lock_for_update(user.id, conn):
                raise AccountNotFoundError()
            superseded = self.resets.invalidate_for_user(user.id, now, conn=conn)
            request.id = self.resets.save(request, now, conn=conn)
        request.created_at = now

        logger.info("Password reset issued for user %s (%d superseded)", user.id, superseded)
        self.notifier.send_password_reset(user.email, request.token, self.reset_url(request.token))
        return request

    def reset_password(self, token: str, new_password: str, confirm_password: str) -> None:
        """Consume a token and store the new password.

        Raises PasswordMismatchError, ValidationError (policy) or
        ResetTokenInvalidError (unknown, expired, used, or the account is gone
        or inactive).
        """
        if new_password != confirm_password:
            raise PasswordMismatchError()
        self.password_policy.check(new_password)

        now = self.clock()
        request = self.resets.find_valid(token, now)
        if request is None:
            raise ResetTokenInvalidError()
        user = self.users.get_by_id(request.user_id)
        if user is None or not user.is_active:
            # Indistinguishable from an unknown token.
            raise ResetTokenInvalidError()

        hashed = hash_password(new_password)
        with self.users.engine.begin() as conn:
            if not self.resets.mark_used(token, now, conn=conn):
                # A concurrent reset consumed it between lookup and write.
                raise ResetTokenInvalidError()
            self.users.update_password(user.id, hashed, conn=conn)
            self.resets.invalidate_for_user(user.id, now, conn=conn)
            if self.token_ledger is not None:
                for kind in TokenKind:
                    self.token_ledger.revoke_all_for_user(user.id, kind, conn=conn)

        logger.info("Password reset completed for %s", redact_email(user.email))

    def validate_token(self, token: str) -> bool:
        """Side-effect-free check for pre-flight UI use."""
        return self.resets.find_valid(token, self.clock()) is not None

    def purge_spent(self) -> int:
        removed = self.resets.delete_spent(self.clock())
        if removed:
            logger.info("Purged %d spent password reset tokens", removed)
        return removed
