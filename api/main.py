"""
api/main.py -- FastAPI application entry point for TrustAuth.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware    -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan builds the stores and coordinators once, parks them on app.state
(routes read them from there), starts the housekeeping task, and tears
everything down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.password_reset import router as password_reset_router
from auth.errors import AuthError
from auth.ledger import ResetTokenLedger, TokenLedger
from auth.lockout import LockoutPolicy
from auth.password_reset import PasswordResetCoordinator
from auth.policy import MinimumLengthPolicy
from auth.service import AuthenticationCoordinator, LogoutCoordinator
from auth.store import UserStore, create_auth_engine
from auth.tokens import TokenIssuer, utc_now
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("trustauth.api")

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, settings: Settings, db_url: str | None = None) -> None:
    """Construct stores and coordinators and attach them to app.state.

    Shared by the real lifespan and the test fixtures, so tests exercise the
    same wiring with a different database URL.
    """
    engine = create_auth_engine(db_url or settings.database_url)
    users = UserStore(engine, LockoutPolicy(settings.lockout_threshold))
    ledger = TokenLedger(engine)
    resets = ResetTokenLedger(engine)
    issuer = TokenIssuer.from_settings(settings, clock=utc_now)
    policy = MinimumLengthPolicy(settings.password_min_length)

    app.state.user_store = users
    app.state.token_ledger = ledger
    app.state.reset_ledger = resets
    app.state.issuer = issuer
    app.state.auth = AuthenticationCoordinator(users=users, ledger=ledger, issuer=issuer, password_policy=policy)
    app.state.logout = LogoutCoordinator(users=users, ledger=ledger, issuer=issuer)
    app.state.password_reset = PasswordResetCoordinator(
        users=users,
        resets=resets,
        token_lifetime=timedelta(hours=settings.reset_token_expire_hours),
        frontend_url=settings.frontend_url,
        password_policy=policy,
        token_ledger=ledger,
    )


# ---------------------------------------------------------------------------
# Background housekeeping task
# ---------------------------------------------------------------------------


def run_housekeeping(app: FastAPI) -> tuple[int, int]:
    """One housekeeping pass. Returns (reset tokens purged, ledger rows flagged expired)."""
    purged = app.state.password_reset.purge_spent()
    flagged = app.state.token_ledger.mark_expired(utc_now())
    return purged, flagged


async def _housekeeping_loop(app: FastAPI, interval: int) -> None:
    """Purge spent reset tokens and refresh the ledger's expired flags.

    Correctness never depends on this loop -- validation always compares
    expiry live. The blocking DB work runs in a worker thread so the event
    loop keeps serving requests. CancelledError from task.cancel() during
    shutdown propagates out of asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            purged, flagged = await asyncio.to_thread(run_housekeeping, app)
            logger.info("Housekeeping: %d reset tokens purged, %d ledger rows expired", purged, flagged)
        except SQLAlchemyError:
            logger.exception("Housekeeping pass failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    settings = get_settings()
    logger.info("TrustAuth API starting up")
    build_services(app, settings)
    logger.info(
        "Auth initialized (access=%ss refresh=%ss lockout=%d)",
        settings.access_token_expire_seconds,
        settings.refresh_token_expire_seconds,
        settings.lockout_threshold,
    )
    app.state.housekeeping_task = asyncio.create_task(
        _housekeeping_loop(app, settings.housekeeping_interval_seconds)
    )

    yield

    app.state.housekeeping_task.cancel()
    app.state.user_store.close()
    logger.info("TrustAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TrustAuth API",
    description="Token-based authentication: login, refresh, logout, password reset and account lockout.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(password_reset_router, prefix="/api/v1", tags=["Password reset"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth core's exception taxonomy onto HTTP.

    500-class AuthErrors (TokenPersistenceError) carry no internal detail; the
    cause was already logged where it was raised.
    """
    headers = {"Cache-Control": "no-store"}
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.error_code, message=exc.message, detail=exc.detail)
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or path params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit applied -- health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    try:
        request.app.state.user_store.ping()
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
