"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/login                     -- password login; access cookie or MFA challenge
  POST /api/v1/auth/login/v2                  -- password login; access + refresh cookies
  POST /api/v1/auth/register                  -- create viewer account; 201 + cookies
  POST /api/v1/auth/refresh                   -- rotate refresh_token cookie
  POST /api/v1/auth/logout                    -- revoke tokens, clear cookies; always 204
  GET  /api/v1/auth/verify                    -- reflect the current principal
  POST /api/v1/auth/password-reset/request    -- always 200
  GET  /api/v1/auth/password-reset/validate   -- {valid}
  POST /api/v1/auth/password-reset/confirm    -- 200 or 400

Security:
  [H2] login / register / refresh / reset are rate-limited per IP (settings).
  [C1] credential checks go through AuthService, which uses authenticate_user()
       for timing equalization -- never inline a user lookup here.
  [M5] Cache-Control: no-store on every response that carries a token.
  Domain failures are raised as AuthError subclasses and rendered by the
  handler in api/main.py; routes only build success bodies.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    SessionResponse,
    ValidResponse,
    VerifyResponse,
)
from auth.cookies import REFRESH_TOKEN_COOKIE, clear_auth_cookies, set_access_cookie, set_session_cookies
from auth.dependencies import extract_access_token, try_get_principal
from auth.errors import InvalidOrExpiredToken
from auth.models import LoginResult, Principal
from auth.password_reset import PasswordResetService
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("folio.api.auth")

_settings = get_settings()

# Auth policy:
# - POST /auth/login, /auth/login/v2, /auth/register:  public
# - POST /auth/refresh:                                  public, needs refresh_token cookie
# - POST /auth/logout:                                   public -- clearing cookies needs no prior auth
# - GET  /auth/verify:                                   soft auth ({valid: false} without a principal)
# - /auth/password-reset/*:                              public
router = APIRouter()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def session_response(
    result: LoginResult,
    remember_me: bool = False,
    status_code: int = 200,
    access_only: bool = False,
) -> JSONResponse:
    """Render a LoginResult and bind its tokens to cookies.

    An MFA challenge sets no cookies: no session exists yet.
    """
    resp = JSONResponse(
        status_code=status_code,
        content=SessionResponse.from_result(result).model_dump(mode="json", exclude_none=True),
    )
    if not result.mfa_required:
        if access_only:
            set_access_cookie(resp, result.tokens.access_token)
        else:
            set_session_cookies(resp, result.tokens.access_token, result.tokens.refresh_token, remember_me)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Login / register
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=SessionResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the access_token cookie.

    Returns the same generic error for unknown email, wrong password and
    inactive account ("bad_credentials"). With MFA active the body carries
    mfa_required=true and an mfa_token instead of a session.
    """
    service: AuthService = request.app.state.auth_service
    result = service.login(body.email, body.password, _client_ip(request), body.recaptcha_token)
    return session_response(result, access_only=True)


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/login/v2", response_model=SessionResponse)
def login_v2(request: Request, body: LoginRequest) -> JSONResponse:
    """Like /auth/login, but always issues an access + refresh cookie pair."""
    service: AuthService = request.app.state.auth_service
    result = service.login_with_refresh(body.email, body.password, _client_ip(request), body.recaptcha_token)
    return session_response(result, remember_me=body.remember_me)


@limiter.limit(_settings.register_rate_limit)  # [H2]
@router.post("/auth/register", response_model=SessionResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a viewer account and start a session for it."""
    service: AuthService = request.app.state.auth_service
    result = service.register(body.name, body.email, body.password, _client_ip(request), body.recaptcha_token)
    return session_response(result, status_code=201)


# ---------------------------------------------------------------------------
# Refresh / logout / verify
# ---------------------------------------------------------------------------


@limiter.limit(_settings.refresh_rate_limit)  # [H2]
@router.post("/auth/refresh", response_model=SessionResponse)
def refresh(request: Request) -> JSONResponse:
    """Rotate the refresh_token cookie and mint a new access token.

    A missing or blank cookie is a 400 and leaves the client's cookies alone.
    A rotated refresh cookie is always written with the remember-me lifetime.
    """
    raw = (request.cookies.get(REFRESH_TOKEN_COOKIE) or "").strip()
    if not raw:
        logger.info("Refresh without refresh_token cookie from %s", _client_ip(request) or "unknown")
        raise HTTPException(
            status_code=400,
            detail={"code": "missing_refresh_token", "message": "Refresh token is required."},
        )
    service: AuthService = request.app.state.auth_service
    result = service.refresh(raw)
    return session_response(result, remember_me=True)


@router.post("/auth/logout", status_code=204)
def logout(request: Request) -> Response:
    """Revoke whatever tokens the request carries and clear both cookies.

    Always 204: logging out without a session, or with an already-invalid
    one, is not an error.
    """
    service: AuthService = request.app.state.auth_service
    service.logout(request.cookies.get(REFRESH_TOKEN_COOKIE), extract_access_token(request))
    resp = Response(status_code=204)
    clear_auth_cookies(resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/verify", response_model=VerifyResponse, response_model_exclude_none=True)
def verify(principal: Principal | None = Depends(try_get_principal)) -> VerifyResponse:
    """Reflect the authenticated principal back for client-side session checks."""
    return VerifyResponse(**AuthService.verify(principal))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(_settings.password_reset_rate_limit)  # [H2]
@router.post("/auth/password-reset/request", response_model=MessageResponse)
def request_password_reset(request: Request, body: PasswordResetRequest) -> MessageResponse:
    """Send a reset link if the account exists. The response never says whether it does."""
    resets: PasswordResetService = request.app.state.password_reset
    resets.request(body.email)
    return MessageResponse(message="If an account exists for that email, a reset link has been sent.")


@router.get("/auth/password-reset/validate", response_model=ValidResponse)
def validate_password_reset(request: Request, token: str = "") -> ValidResponse:
    resets: PasswordResetService = request.app.state.password_reset
    return ValidResponse(valid=resets.validate(token))


@limiter.limit(_settings.password_reset_rate_limit)  # [H2]
@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirm) -> MessageResponse:
    """Set a new password from a reset link. Signs the user out everywhere."""
    resets: PasswordResetService = request.app.state.password_reset
    try:
        resets.reset(body.token, body.new_password)
    except InvalidOrExpiredToken as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_reset_token", "message": exc.message},
        ) from exc
    return MessageResponse(message="Password has been reset.")
