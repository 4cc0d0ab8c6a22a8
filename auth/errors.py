"""
auth/errors.py -- Domain exceptions for the authentication flows.

Services raise these; api/main.py maps every AuthError subclass onto the
uniform ErrorResponse envelope using status_code / code / message. Route
handlers therefore never build auth error bodies by hand.

Messages are deliberately generic. InvalidCredentials in particular is raised
for unknown email, wrong password and inactive account alike so a caller
cannot tell which one happened.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations


class AuthError(Exception):
    status_code: int = 401
    code: str = "unauthorized"
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "bad_credentials"
    message = "Invalid email or password."


class InvalidOrExpiredToken(AuthError):
    """Unknown, expired, revoked or already-consumed token (refresh or MFA)."""

    code = "invalid_token"
    message = "Invalid or expired token."


class InvalidCode(AuthError):
    code = "invalid_code"
    message = "Invalid verification code."


class AccountInactive(AuthError):
    code = "account_inactive"
    message = "Account is not active."


class AccountLocked(AuthError):
    status_code = 429
    code = "account_locked"
    message = "Too many failed login attempts. Try again later."

    def __init__(self, retry_after_minutes: int) -> None:
        super().__init__(detail=f"retry_after_minutes={retry_after_minutes}")
        self.retry_after_minutes = retry_after_minutes


class RecaptchaFailed(AuthError):
    status_code = 400
    code = "recaptcha_failed"
    message = "reCAPTCHA verification failed."


class EmailAlreadyRegistered(AuthError):
    status_code = 409
    code = "conflict"
    message = "An account with that email already exists."


class WeakPassword(AuthError):
    status_code = 400
    code = "weak_password"
    message = "Password must be 12-128 characters with upper, lower, digit and special characters."
