"""
auth/cookies.py -- Session cookie helpers.

Two cookies carry the session:
  access_token  -- path /api so every API route receives it; max_age matches
                   the access JWT lifetime.
  refresh_token -- path scoped to the auth route group so it is only ever
                   sent to /refresh and /logout; 7 days with remember-me,
                   24 hours without.

Both are httponly (JS cannot read them), samesite="strict" (never sent on
cross-site requests) and secure unless SECURE_COOKIES=false for local HTTP.
Clearing re-sends each cookie empty with max_age=0 and the SAME path --
a browser only drops a cookie whose path matches the one it stored.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from starlette.responses import Response

from core.config import get_settings

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"

REMEMBER_ME_SECONDS = 7 * 24 * 3600
DEFAULT_REFRESH_SECONDS = 24 * 3600

_settings = get_settings()


def _write(response: Response, name: str, value: str, path: str, max_age: int) -> None:
    response.set_cookie(
        name,
        value=value,
        max_age=max_age,
        path=path,
        domain=_settings.cookie_domain or None,
        secure=_settings.secure_cookies,
        httponly=True,
        samesite="strict",
    )


def set_access_cookie(response: Response, token: str) -> None:
    _write(
        response,
        ACCESS_TOKEN_COOKIE,
        token,
        _settings.access_cookie_path,
        _settings.access_token_expire_seconds,
    )


def set_refresh_cookie(response: Response, token: str, remember_me: bool) -> None:
    # A 24h persistent cookie, not a session cookie, when remember_me is off:
    # the refresh token has to survive page reloads and browser restarts.
    max_age = REMEMBER_ME_SECONDS if remember_me else DEFAULT_REFRESH_SECONDS
    _write(response, REFRESH_TOKEN_COOKIE, token, _settings.refresh_cookie_path, max_age)


def set_session_cookies(response: Response, access_token: str, refresh_token: str | None, remember_me: bool) -> None:
    set_access_cookie(response, access_token)
    if refresh_token:
        set_refresh_cookie(response, refresh_token, remember_me)


def clear_auth_cookies(response: Response) -> None:
    """Expire both session cookies unconditionally."""
    _write(response, ACCESS_TOKEN_COOKIE, "", _settings.access_cookie_path, 0)
    _write(response, REFRESH_TOKEN_COOKIE, "", _settings.refresh_cookie_path, 0)
