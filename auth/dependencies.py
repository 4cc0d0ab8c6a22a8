"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the browser login flows.
  2. Authorization: Bearer <token> header -- API clients using JWTs.

Both converge on a Principal(id, email, role) after the token is decoded,
checked against the blacklist and matched to an active user. Route handlers
receive the Principal as an explicit parameter; nothing reads identity from
request-global state afterwards.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_principal() and raises HTTP 403 if not admin.

Layer rule: no imports from api/ or cache/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.cookies import ACCESS_TOKEN_COOKIE
from auth.models import Principal, Role


def extract_access_token(request: Request) -> str | None:
    """Return the raw access JWT from the cookie, else the Bearer header."""
    token: str | None = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_principal(request: Request) -> Principal | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the Principal on success, None on any failure. Never raises --
    callers that need a hard 401 should use get_current_principal().

    An MFA challenge token is never accepted here: decode_access_token()
    pins typ="access".
    """
    token = extract_access_token(request)
    if not token:
        return None
    return request.app.state.auth_service.principal_from_token(token)


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    if principal.role is not Role.ADMIN:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return principal
