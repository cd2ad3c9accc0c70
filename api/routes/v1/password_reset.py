"""
api/routes/v1/password_reset.py -- Password reset endpoints.

Routes:
  POST /api/v1/auth/password-reset/request           -- email a reset link; 202
  POST /api/v1/auth/password-reset/reset             -- consume a token, set a new password
  GET  /api/v1/auth/password-reset/validate/{token}  -- pre-flight check for the reset form

Enumeration: /request answers 202 with the same body whether or not the
email belongs to an active account. The coordinator still distinguishes the
cases internally (and logs them); the difference stops here.
"""

from fastapi import APIRouter, Request

from api.limiter import limiter
from api.models import MessageResponse, PasswordResetBody, PasswordResetRequestBody, ResetTokenValidity
from auth.errors import AccountNotFoundError
from auth.password_reset import PasswordResetCoordinator
from core.config import get_settings

_settings = get_settings()

_REQUEST_ACK = "If an active account exists for that email, a reset link has been sent."

router = APIRouter()


@router.post("/auth/password-reset/request", response_model=MessageResponse, status_code=202)
@limiter.limit(_settings.reset_rate_limit)
def request_password_reset(request: Request, body: PasswordResetRequestBody) -> MessageResponse:
    resets: PasswordResetCoordinator = request.app.state.password_reset
    try:
        resets.request_reset(body.email)
    except AccountNotFoundError:
        pass  # uniform response; see module docstring
    return MessageResponse(message=_REQUEST_ACK)


@router.post("/auth/password-reset/reset", response_model=MessageResponse)
def reset_password(request: Request, body: PasswordResetBody) -> MessageResponse:
    resets: PasswordResetCoordinator = request.app.state.password_reset
    resets.reset_password(body.token, body.new_password, body.confirm_password)
    return MessageResponse(message="Password reset successfully.")


@router.get("/auth/password-reset/validate/{token}", response_model=ResetTokenValidity)
def validate_reset_token(request: Request, token: str) -> ResetTokenValidity:
    resets: PasswordResetCoordinator = request.app.state.password_reset
    return ResetTokenValidity(valid=resets.validate_token(token))
