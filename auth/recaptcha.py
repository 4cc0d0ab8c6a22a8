"""
auth/recaptcha.py -- Google reCAPTCHA v3 verification for login and register.

Disabled unless RECAPTCHA_ENABLED=true and RECAPTCHA_SECRET_KEY is set; then
every login/register must carry a token whose siteverify response is
successful, matches the expected action, and scores at or above
RECAPTCHA_SCORE_THRESHOLD.

Fail-closed: a network error or unparseable response rejects the request.
"""

from __future__ import annotations

import logging

import requests

from auth.errors import RecaptchaFailed

logger = logging.getLogger("folio.recaptcha")

VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"

# Module-level session for connection pooling; siteverify never redirects.
_session = requests.Session()
_session.max_redirects = 0


class RecaptchaVerifier:
    def __init__(self, secret_key: str, enabled: bool, score_threshold: float = 0.5) -> None:
        self.secret_key = secret_key
        self.enabled = enabled and bool(secret_key)
        self.score_threshold = score_threshold

    def verify(self, token: str | None, action: str) -> None:
        """Raise RecaptchaFailed unless the token passes. No-op when disabled."""
        if not self.enabled:
            return
        if not token:
            logger.warning("reCAPTCHA token missing for action '%s'", action)
            raise RecaptchaFailed()
        try:
            resp = _session.post(
                VERIFY_URL,
                data={"secret": self.secret_key, "response": token},
                timeout=5,
            )
            resp.raise_for_status()
            result = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("reCAPTCHA verification error for action '%s': %s", action, exc)
            raise RecaptchaFailed("reCAPTCHA verification unavailable. Please try again later.") from exc

        if not result.get("success"):
            logger.warning("reCAPTCHA failed for action '%s': %s", action, result.get("error-codes"))
            raise RecaptchaFailed()
        if result.get("action") and result["action"] != action:
            logger.warning("reCAPTCHA action mismatch: expected '%s', got '%s'", action, result["action"])
            raise RecaptchaFailed()
        score = float(result.get("score", 0.0))
        if score < self.score_threshold:
            logger.warning("reCAPTCHA score too low for action '%s': %.2f", action, score)
            raise RecaptchaFailed()
