"""
api/main.py -- FastAPI application entry point for Folio.

Exposes the authentication and session lifecycle over HTTP: login (v1 and
v2), registration, refresh rotation, logout, MFA and password reset.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, services, admin bootstrap, purge task) and
shutdown (cancel purge task, close DB connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.mfa import router as mfa_router
from api.routes.v1.users import router as users_router
from auth.attempts import LoginAttemptTracker
from auth.blacklist import TokenBlacklist
from auth.crypto import SecretCipher
from auth.email import Mailer
from auth.errors import AccountLocked, AuthError
from auth.mfa import MfaService
from auth.password_reset import PasswordResetService
from auth.recaptcha import RecaptchaVerifier
from auth.service import AuthService, ensure_admin
from auth.store import UserStore
from cache.store import ExpiringStore
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
logger = logging.getLogger("folio.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_auth_state(
    app: FastAPI,
    user_store: UserStore,
    kv_store: ExpiringStore,
    mailer: Mailer,
    settings: Settings | None = None,
) -> None:
    """Build the auth services on top of the given stores and attach them to app.state.

    Shared by the real lifespan and the test lifespan so both wire services
    identically; only the stores and the mail transport differ.
    """
    settings = settings or get_settings()
    blacklist = TokenBlacklist(kv_store)
    mfa_service = MfaService(
        user_store,
        kv_store,
        SecretCipher(settings.mfa_encryption_key, settings.secret_key),
        mailer,
        issuer=settings.totp_issuer,
        digits=settings.totp_digits,
        period_seconds=settings.totp_period_seconds,
        email_otp_length=settings.email_otp_length,
        email_otp_expire_minutes=settings.email_otp_expire_minutes,
    )
    app.state.user_store = user_store
    app.state.kv_store = kv_store
    app.state.mailer = mailer
    app.state.mfa_service = mfa_service
    app.state.auth_service = AuthService(
        user_store,
        blacklist,
        LoginAttemptTracker(
            kv_store,
            max_attempts=settings.login_max_attempts,
            window_minutes=settings.login_attempt_window_minutes,
            lockout_base_minutes=settings.login_lockout_base_minutes,
        ),
        mfa_service,
        mailer,
        RecaptchaVerifier(
            settings.recaptcha_secret_key,
            settings.recaptcha_enabled,
            settings.recaptcha_score_threshold,
        ),
        access_expire_seconds=settings.access_token_expire_seconds,
        refresh_expire_seconds=settings.refresh_token_expire_seconds,
        refresh_reuse_grace_seconds=settings.refresh_reuse_grace_seconds,
    )
    app.state.password_reset = PasswordResetService(user_store, mailer)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


def purge_expired(user_store: UserStore, kv_store: ExpiringStore) -> dict[str, int]:
    """Delete expired refresh tokens, reset tokens and expiring-store entries."""
    return {
        "refresh_tokens": user_store.purge_expired_refresh_tokens(),
        "reset_tokens": user_store.purge_expired_reset_tokens(),
        "kv_entries": kv_store.purge_expired(),
    }


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired server-side token state every hour.

    Runs as a background asyncio task started in lifespan startup. The
    while-True loop is intentional: asyncio.sleep yields to the event loop so
    other coroutines run freely between iterations. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        counts = await asyncio.to_thread(purge_expired, app.state.user_store, app.state.kv_store)
        logger.info("Purged expired entries: %s", counts)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Pattern: asynccontextmanager lifespan. Everything before yield runs on
    startup; everything after yield runs on shutdown.

    Startup order matters:
      1. Stores first -- every service holds a reference to them.
      2. Services second -- routes read them from app.state.
      3. Admin bootstrap -- needs the user store and the password policy.
      4. Purge task last -- references both stores.
    """
    settings = get_settings()
    logger.info("Folio API starting up")
    user_store = UserStore(settings.database_url)
    kv_store = ExpiringStore(settings.cache_path)
    init_auth_state(app, user_store, kv_store, Mailer.from_settings(settings), settings)
    ensure_admin(user_store, settings.admin_email, settings.admin_password, settings.admin_name)
    logger.info("Auth initialized (users=%s)", user_store.has_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    kv_store.close()
    user_store.close()
    logger.info("Folio API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Folio API",
    description="Authentication and session service for the Folio blog/portfolio backend.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette (FastAPI's foundation) wraps middleware in reverse registration
# order at the ASGI level, but add_middleware() calls are applied outermost-
# first from the caller's perspective. Register in the order you want the
# request to encounter them: TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
# ---------------------------------------------------------------------------


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
app.include_router(mfa_router, prefix="/api/v1", tags=["MFA"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render domain auth failures raised by the services.

    Messages are the generic class-level ones, so an InvalidCredentials
    response is byte-identical for unknown and known emails.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail)
        ).model_dump(),
    )
    if isinstance(exc, AccountLocked):
        response.headers["Retry-After"] = str(exc.retry_after_minutes * 60)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    slowapi stores this on the exception as exc.retry_after (int seconds).
    """
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
    """Return 422 with structured error when request body or query params fail validation."""
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
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail. When detail is already a structured dict, use it directly as the
    error field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. Token storage failures therefore surface as a plain 500
    and are never retried or healed silently.
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
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
