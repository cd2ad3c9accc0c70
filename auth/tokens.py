"""
auth/tokens.py -- JWT issuance/validation, password hashing, reset token generation.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry only the stable account id
       (`sub`), the token `kind` (access | refresh), `iat`, `exp` and a random
       `jti`. Mutable attributes (email, name, lock state) are never embedded;
       they are re-read from the store when needed. The `kind` claim is signed,
       so a refresh token cannot pass where an access token is expected even if
       a ledger lookup by string happened to match.

       Expiry is checked against the injected clock, not python-jose's wall
       clock (verify_exp is disabled and re-done here). That keeps the
       authoritative "now < exp" comparison testable and consistent with the
       ledger's own clock.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization so response time does not reveal whether an
       email is registered [C1].

  Reset tokens: secrets.token_urlsafe(32) -- 256 bits from the OS CSPRNG,
       URL-safe so they can be embedded in a reset link as-is.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.errors import SubjectMismatchError, TokenExpiredError, TokenSignatureInvalidError
from auth.models import TokenKind
from core.config import Settings, get_settings

logger = logging.getLogger("trustauth.auth.tokens")

_settings = get_settings()

_ALGORITHM = "HS256"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: timezone-aware UTC now."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


_BCRYPT_MAX_BYTES = 72


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes, and newer releases refuse longer
    input outright, so both hashing and verification truncate explicitly.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(_encode(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch rather than a 500.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. verify_password() runs against it whenever the
# email is unknown [C1].
_DUMMY_HASH: str = hash_password("trustauth_timing_dummy")


def verify_dummy_password(plain: str) -> None:
    """Burn one bcrypt comparison. Used on the unknown-account path [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Reset token generation
# ---------------------------------------------------------------------------


def generate_reset_token() -> str:
    """32 random bytes, base64url without padding (43 chars)."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# JWT issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints and validates signed bearer tokens for both token kinds.

    Usage:
        issuer = TokenIssuer.from_settings(get_settings())
        token = issuer.mint(TokenKind.ACCESS, "42")
        claims = issuer.validate(token, expected_subject="42", expected_kind=TokenKind.ACCESS)
    """

    def __init__(
        self,
        secret_key: str,
        access_lifetime_seconds: int,
        refresh_lifetime_seconds: int,
        clock: Clock = utc_now,
    ) -> None:
        self._secret_key = secret_key
        self._lifetimes = {
            TokenKind.ACCESS: access_lifetime_seconds,
            TokenKind.REFRESH: refresh_lifetime_seconds,
        }
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utc_now) -> TokenIssuer:
        return cls(
            settings.secret_key,
            settings.access_token_expire_seconds,
            settings.refresh_token_expire_seconds,
            clock=clock,
        )

    def access_lifetime_seconds(self) -> int:
        return self.lifetime_for(TokenKind.ACCESS)

    def refresh_lifetime_seconds(self) -> int:
        return self.lifetime_for(TokenKind.REFRESH)

    def lifetime_for(self, kind: TokenKind) -> int:
        return self._lifetimes[kind]

    def expires_at(self, kind: TokenKind, issued_at: datetime, lifetime: int | None = None) -> datetime:
        """Absolute expiry for a token of `kind` minted at `issued_at`."""
        seconds = lifetime if lifetime is not None else self.lifetime_for(kind)
        return issued_at.replace(microsecond=0) + timedelta(seconds=seconds)

    def mint(
        self,
        kind: TokenKind,
        subject: str,
        lifetime: int | None = None,
        issued_at: datetime | None = None,
    ) -> str:
        """Encode a signed JWT for `subject`.

        issued_at is truncated to whole seconds so the `exp` claim and the
        ledger row built from expires_at(kind, issued_at) agree exactly.
        """
        issued = (issued_at or self._clock()).replace(microsecond=0)
        payload = {
            "sub": str(subject),
            "kind": kind.value,
            "iat": int(issued.timestamp()),
            "exp": int(self.expires_at(kind, issued, lifetime).timestamp()),
            "jti": secrets.token_hex(8),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def validate(
        self,
        token: str,
        expected_subject: str | None = None,
        expected_kind: TokenKind | None = None,
    ) -> dict:
        """Verify signature, expiry, kind and subject. Returns the claims dict.

        Raises:
            TokenSignatureInvalidError: bad signature or any malformed token.
            TokenExpiredError:          now >= exp.
            SubjectMismatchError:       wrong subject, or wrong kind for this use.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise TokenSignatureInvalidError() from exc

        exp = claims.get("exp")
        if not isinstance(exp, int) or "sub" not in claims or "kind" not in claims:
            raise TokenSignatureInvalidError()
        if self._clock() >= datetime.fromtimestamp(exp, tz=timezone.utc):
            raise TokenExpiredError()
        if expected_kind is not None and claims["kind"] != expected_kind.value:
            raise SubjectMismatchError("Token kind is not accepted here.")
        if expected_subject is not None and claims["sub"] != str(expected_subject):
            raise SubjectMismatchError()
        return claims

    @staticmethod
    def peek_subject(token: str) -> str | None:
        """Return the unverified `sub` claim, or None if the token cannot be parsed.

        Only for choosing which account to validate against -- never trust the
        result without a following validate() call.
        """
        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError:
            return None
        sub = claims.get("sub")
        return sub if isinstance(sub, str) else None
