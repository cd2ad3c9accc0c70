"""
api/routes/v1/auth.py -- Registration, login, refresh, logout and identity endpoints.

Routes:
  POST /api/v1/auth/register       -- create an account; 201
  POST /api/v1/auth/login          -- email/password login; returns user + token pair
  POST /api/v1/auth/refresh-token  -- exchange a refresh token for a new access token
  POST /api/v1/auth/logout         -- revoke the Bearer access token (+ refresh token from body)
  GET  /api/v1/auth/current-user   -- identity behind the Bearer token

Security:
  [H2] POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  [C1] AuthenticationCoordinator.authenticate() equalizes timing for unknown
       emails -- never inline a store lookup + verify_password() here.
  [M5] Cache-Control: no-store on every response that carries tokens.

Errors raised by the coordinators are AuthError subclasses; api/main.py maps
them to status codes and the shared error envelope. Routes never build error
bodies themselves.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenPair,
    UserSummary,
)
from auth.dependencies import bearer_token, get_current_user
from auth.models import User
from auth.service import AuthenticationCoordinator, LogoutCoordinator
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST /auth/register:      public
# - POST /auth/login:         public, rate-limited
# - POST /auth/refresh-token: public -- the refresh token is the credential
# - POST /auth/logout:        public -- revocation needs only the token strings themselves
# - GET  /auth/current-user:  requires a usable access token (get_current_user)
router = APIRouter()


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an active account with the given role ids."""
    auth: AuthenticationCoordinator = request.app.state.auth
    user = auth.register(
        username=body.username,
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        role_ids=body.role_ids,
        phone=body.phone,
    )
    return RegisterResponse.from_user(user)


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_rate_limit)  # [H2]
def login(request: Request, response: Response, body: LoginRequest) -> LoginResponse:
    """Authenticate with email and password; return the user and a Bearer token pair.

    Unknown email and wrong password produce the same invalid_credentials
    error. Locked and inactive accounts are refused before the password is
    checked.
    """
    _no_store(response)
    auth: AuthenticationCoordinator = request.app.state.auth
    result = auth.authenticate(body.email, body.password)
    return LoginResponse(user=UserSummary.from_user(result.user), tokens=TokenPair.from_result(result))


@router.post("/auth/refresh-token", response_model=TokenPair)
def refresh_token(request: Request, response: Response, body: RefreshRequest) -> TokenPair:
    """Issue a new access token. The refresh token in the response is the one sent."""
    _no_store(response)
    auth: AuthenticationCoordinator = request.app.state.auth
    return TokenPair.from_result(auth.refresh(body.refresh_token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[LogoutRequest] = None) -> MessageResponse:
    """Revoke the access token from the Authorization header.

    Always answers 200 for token problems (missing, unknown, already revoked).
    The refresh token, when supplied, is revoked best effort.
    """
    coordinator: LogoutCoordinator = request.app.state.logout
    coordinator.logout(bearer_token(request), body.refresh_token if body else None)
    return MessageResponse(message="Logged out successfully.")


@router.get("/auth/current-user", response_model=UserSummary)
def current_user(user: User = Depends(get_current_user)) -> UserSummary:
    """Return the account behind the Bearer token."""
    return UserSummary.from_user(user)
