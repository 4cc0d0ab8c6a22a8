"""
auth/password_reset.py -- Password reset by emailed single-use link.

request()  always looks successful to the caller, whether or not the email
           belongs to an account, so the endpoint cannot be used to check
           for registered addresses. At most MAX_TOKENS_PER_HOUR tokens are
           issued per user per hour; extra requests are silently dropped.
validate() tells the reset page whether to show the form.
reset()    enforces the password policy, consumes the token with a
           conditional UPDATE, re-hashes the password and revokes every
           refresh token the user holds.

Only SHA-256(token) is stored; the plaintext only ever exists in the email.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timedelta, timezone

from auth.email import Mailer
from auth.errors import InvalidOrExpiredToken, WeakPassword
from auth.store import UserStore
from auth.tokens import generate_opaque_token, hash_password, hash_token, is_strong_password, mask_email

logger = logging.getLogger("folio.auth.password_reset")

TOKEN_VALIDITY = timedelta(hours=1)
MAX_TOKENS_PER_HOUR = 3
_TOKEN_BYTES = 32


class PasswordResetService:
    def __init__(self, store: UserStore, mailer: Mailer) -> None:
        self.store = store
        self.mailer = mailer

    def request(self, email: str) -> None:
        try:
            self._request(email)
        except Exception as exc:
            logger.warning("Password reset request for %s failed: %s", mask_email(email), exc)

    def _request(self, email: str) -> None:
        user = self.store.get_by_email(email)
        if user is None or not user.is_active:
            logger.debug("Password reset requested for unknown or inactive %s", mask_email(email))
            return
        now = datetime.now(timezone.utc)
        if self.store.count_recent_reset_tokens(user.id, now - timedelta(hours=1)) >= MAX_TOKENS_PER_HOUR:
            logger.warning("Password reset rate limit exceeded for %s", mask_email(user.email))
            return
        raw = generate_opaque_token(_TOKEN_BYTES)
        self.store.create_reset_token(user.id, hash_token(raw), now + TOKEN_VALIDITY)
        self.mailer.send_password_reset(user.email, user.name, raw)
        logger.info("Password reset email sent to %s", mask_email(user.email))

    def validate(self, token: str) -> bool:
        if not token:
            return False
        return self.store.get_valid_reset_token(hash_token(token)) is not None

    def reset(self, token: str, new_password: str) -> None:
        """Set a new password. Raises WeakPassword or InvalidOrExpiredToken."""
        if not is_strong_password(new_password):
            raise WeakPassword()
        record = self.store.get_valid_reset_token(hash_token(token)) if token else None
        if record is None or not self.store.claim_reset_token(record.id):
            raise InvalidOrExpiredToken("Invalid or expired reset token.")
        user = self.store.get_by_id(record.user_id)
        if user is None:
            raise InvalidOrExpiredToken("Invalid or expired reset token.")

        self.store.update_user(user.id, hashed_password=hash_password(new_password))
        revoked = self.store.revoke_all_refresh_tokens(user.id)
        logger.info("Password reset for user %s; revoked %d refresh token(s)", user.id, revoked)
        try:
            self.mailer.send_password_changed(user.email, user.name)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("Password-changed notice to %s failed: %s", mask_email(user.email), exc)
