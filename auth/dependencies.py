"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one credential transport exists: the Authorization: Bearer <token>
header carrying an access token. The token string is opaque to clients.

bearer_token() is the soft extractor (returns None if the header is absent).
get_current_user() resolves the token through AuthenticationCoordinator and
lets its AuthError subclasses propagate -- api/main.py maps them to 401/403/423
with the same envelope as every other error.
get_current_principal() narrows the result to AuthPrincipal for consumers
that make access-control decisions.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import AuthPrincipal, User
from auth.service import AuthenticationCoordinator

_BEARER_PREFIX = "Bearer "


def bearer_token(request: Request) -> str | None:
    """Return the raw token from the Authorization header, or None."""
    header = request.headers.get("Authorization", "")
    if header.startswith(_BEARER_PREFIX):
        token = header[len(_BEARER_PREFIX) :].strip()
        return token or None
    return None


def get_current_user(request: Request) -> User:
    """Require a usable access token. Raises HTTP 401 if none was sent.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    coordinator: AuthenticationCoordinator = request.app.state.auth
    return coordinator.resolve_principal(token)


def get_current_principal(user: User = Depends(get_current_user)) -> AuthPrincipal:
    return AuthPrincipal.from_user(user)
