"""
api/routes/v1/mfa.py -- Multi-factor authentication REST endpoints.

Routes:
  POST   /api/v1/mfa/setup           -- start TOTP enrolment or enable email OTP (auth)
  POST   /api/v1/mfa/verify-setup    -- confirm the first TOTP code (auth)
  POST   /api/v1/mfa/verify          -- complete an MFA login with the challenge token (public)
  POST   /api/v1/mfa/send-email-otp  -- mail a login code for a challenge token (public)
  DELETE /api/v1/mfa/disable         -- remove every MFA method (auth)
  GET    /api/v1/mfa/status          -- enabled flag and verified methods (auth)

The two public routes authenticate with the mfa_token from the login
response instead of a session. /mfa/verify is the only place an MFA user
obtains session cookies.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    MessageResponse,
    MfaLoginVerifyRequest,
    MfaSendOtpRequest,
    MfaSetupRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaVerifySetupRequest,
    MfaVerifySetupResponse,
    SessionResponse,
)
from api.routes.v1.auth import session_response
from auth.dependencies import get_current_principal
from auth.errors import InvalidCode
from auth.mfa import MfaService
from auth.models import MfaMethod, Principal, User
from auth.service import AuthService
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - POST   /mfa/setup, /mfa/verify-setup:  requires auth (get_current_principal)
# - DELETE /mfa/disable, GET /mfa/status:  requires auth (get_current_principal)
# - POST   /mfa/verify, /mfa/send-email-otp: public -- guarded by the mfa_token
router = APIRouter()


def _load_user(request: Request, principal: Principal) -> User:
    user = request.app.state.user_store.get_by_id(principal.id)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


# ---------------------------------------------------------------------------
# Enrolment (authenticated)
# ---------------------------------------------------------------------------


@router.post("/mfa/setup", response_model=MfaSetupResponse)
def setup(
    request: Request,
    body: MfaSetupRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Start TOTP enrolment (returns secret, otpauth URI and QR code) or enable email OTP."""
    mfa: MfaService = request.app.state.mfa_service
    user = _load_user(request, principal)
    if body.method is MfaMethod.TOTP:
        enrollment = mfa.setup_totp(user)
        payload = MfaSetupResponse(
            method=MfaMethod.TOTP,
            secret=enrollment.secret,
            provisioning_uri=enrollment.provisioning_uri,
            qr_code_data_uri=enrollment.qr_code_data_uri,
            enabled=False,
        )
    else:
        mfa.enable_email(user)
        payload = MfaSetupResponse(method=MfaMethod.EMAIL, enabled=True)
    resp = JSONResponse(content=payload.model_dump(mode="json"))
    resp.headers["Cache-Control"] = "no-store"  # the TOTP secret is in the body
    return resp


@router.post("/mfa/verify-setup", response_model=MfaVerifySetupResponse)
def verify_setup(
    request: Request,
    body: MfaVerifySetupRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Confirm a pending TOTP enrolment. 400 {verified: false} on a wrong code."""
    if body.method is not MfaMethod.TOTP:
        raise HTTPException(
            status_code=400,
            detail={"code": "validation_error", "message": "Only TOTP setup requires verification."},
        )
    mfa: MfaService = request.app.state.mfa_service
    try:
        mfa.verify_setup(principal.id, body.code)
    except InvalidCode:
        return JSONResponse(status_code=400, content=MfaVerifySetupResponse(verified=False).model_dump())
    return JSONResponse(content=MfaVerifySetupResponse(verified=True).model_dump())


@router.delete("/mfa/disable", status_code=204)
def disable(request: Request, principal: Principal = Depends(get_current_principal)) -> Response:
    mfa: MfaService = request.app.state.mfa_service
    mfa.disable(principal.id)
    return Response(status_code=204)


@router.get("/mfa/status", response_model=MfaStatusResponse)
def status(request: Request, principal: Principal = Depends(get_current_principal)) -> MfaStatusResponse:
    mfa: MfaService = request.app.state.mfa_service
    result = mfa.status(_load_user(request, principal))
    return MfaStatusResponse(
        mfa_enabled=result.mfa_enabled,
        methods=result.methods,
        preferred_method=result.preferred_method,
    )


# ---------------------------------------------------------------------------
# Login completion (public, mfa_token)
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] bounds code guessing per IP
@router.post("/mfa/verify", response_model=SessionResponse)
def verify(request: Request, body: MfaLoginVerifyRequest) -> JSONResponse:
    """Exchange the challenge token and a correct code for session cookies."""
    service: AuthService = request.app.state.auth_service
    client_ip = request.client.host if request.client else None
    result = service.complete_mfa_login(body.mfa_token, body.code, body.method, client_ip)
    return session_response(result, remember_me=body.remember_me)


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/mfa/send-email-otp", response_model=MessageResponse)
def send_email_otp(request: Request, body: MfaSendOtpRequest) -> MessageResponse:
    service: AuthService = request.app.state.auth_service
    service.send_email_otp(body.mfa_token)
    return MessageResponse(message="Verification code sent.")
