"""
auth/errors.py -- Exception taxonomy for the authentication core.

Every failure a caller can recover from is an AuthError subclass carrying a
stable error_code and the HTTP status the API layer should answer with. The
core raises; api/main.py owns the single handler that renders the envelope.

Enumeration hygiene: TokenNotFoundError shares error_code with
TokenExpiredError, and ResetTokenInvalidError covers not-found, expired and
already-used alike. Callers must not be able to tell those cases apart.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for authentication-core exceptions mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "validation_error"
    message: str = "Request could not be processed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)
        self.detail = detail


# ---------------------------------------------------------------------------
# Credentials and account state
# ---------------------------------------------------------------------------


class InvalidCredentialsError(AuthError):
    status_code = 401
    error_code = "invalid_credentials"
    message = "Invalid email or password."


class AccountLockedError(AuthError):
    status_code = 423
    error_code = "account_locked"
    message = "Account is locked after too many failed login attempts."


class AccountInactiveError(AuthError):
    status_code = 403
    error_code = "account_inactive"
    message = "Account is disabled."


class AccountNotFoundError(AuthError):
    status_code = 404
    error_code = "not_found"
    message = "Account not found."


class DuplicateAccountError(AuthError):
    status_code = 409
    error_code = "conflict"
    message = "An account with that username or email already exists."


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    """Any bearer-token rejection (401)."""

    status_code = 401
    error_code = "token_invalid"
    message = "Token is invalid."


class TokenExpiredError(TokenError):
    error_code = "token_expired"
    message = "Token has expired."


class TokenNotFoundError(TokenExpiredError):
    """No ledger record for an otherwise well-formed token. Reported as expired."""


class TokenSignatureInvalidError(TokenError):
    error_code = "token_signature_invalid"
    message = "Token signature is invalid."


class SubjectMismatchError(TokenError):
    error_code = "token_subject_mismatch"
    message = "Token does not belong to this subject."


class InvalidRefreshTokenError(TokenError):
    error_code = "invalid_refresh_token"
    message = "Refresh token is invalid or expired."


# ---------------------------------------------------------------------------
# Password reset and input validation
# ---------------------------------------------------------------------------


class ValidationError(AuthError):
    status_code = 400
    error_code = "validation_error"
    message = "Request validation failed."


class PasswordMismatchError(ValidationError):
    error_code = "password_mismatch"
    message = "New password and confirm password do not match."


class ResetTokenInvalidError(AuthError):
    status_code = 400
    error_code = "reset_token_invalid"
    message = "Invalid or expired password reset token."


# ---------------------------------------------------------------------------
# Server side
# ---------------------------------------------------------------------------


class TokenPersistenceError(AuthError):
    """Issued tokens could not be recorded. Never carries the underlying cause."""

    status_code = 500
    error_code = "internal_error"
    message = "An unexpected error occurred."
