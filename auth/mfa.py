"""
auth/mfa.py -- Multi-factor authentication: TOTP and email one-time codes.

Methods:
  TOTP  -- authenticator-app codes (pyotp, RFC 6238). setup_totp() stores an
           encrypted, UNVERIFIED secret and returns the provisioning URI
           with a QR code (qrcode) for it. The method only becomes active
           after verify_setup() sees one correct code, which proves the
           user's app holds the same secret. Re-running setup on an active
           TOTP method stages the new secret; the old one keeps gating
           logins until the new one is confirmed.
  EMAIL -- numeric codes mailed on demand. Enabling needs no confirmation
           step because the account email is already the login identifier.

Email OTP codes sit in the expiring store under mfa:email-otp:<user id> and
are deleted on first successful use. delete() reports whether this caller
removed the live entry, so one code cannot be redeemed twice concurrently.

Challenge tokens (the state between password and code) are issued and
consumed by auth/service.py; this module only answers "is this code right".
"""

from __future__ import annotations

import base64
import hmac
import io
import logging
import secrets
from dataclasses import dataclass, field

import pyotp
import qrcode

from auth.crypto import SecretCipher, SecretDecryptionError
from auth.email import Mailer
from auth.errors import InvalidCode
from auth.models import MfaConfig, MfaMethod, User
from auth.store import UserStore
from cache.store import ExpiringStore

logger = logging.getLogger("folio.auth.mfa")

_EMAIL_OTP_PREFIX = "mfa:email-otp:"


def qr_code_data_uri(text: str) -> str:
    """Render text as a QR code PNG and return it as a data: URI."""
    buffer = io.BytesIO()
    qrcode.make(text).save(buffer)
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


@dataclass(frozen=True)
class TotpEnrollment:
    secret: str
    provisioning_uri: str
    qr_code_data_uri: str
    method: MfaMethod = MfaMethod.TOTP


@dataclass(frozen=True)
class MfaStatus:
    mfa_enabled: bool
    methods: list[MfaMethod] = field(default_factory=list)
    preferred_method: MfaMethod | None = None


class MfaService:
    def __init__(
        self,
        store: UserStore,
        cache: ExpiringStore,
        cipher: SecretCipher,
        mailer: Mailer,
        issuer: str = "Folio",
        digits: int = 6,
        period_seconds: int = 30,
        email_otp_length: int = 6,
        email_otp_expire_minutes: int = 10,
    ) -> None:
        self.store = store
        self.cache = cache
        self.cipher = cipher
        self.mailer = mailer
        self.issuer = issuer
        self.digits = digits
        self.period_seconds = period_seconds
        self.email_otp_length = email_otp_length
        self.email_otp_expire_minutes = email_otp_expire_minutes

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=self.digits, interval=self.period_seconds, issuer=self.issuer)

    def setup_totp(self, user: User) -> TotpEnrollment:
        """Generate a fresh TOTP secret and store it unverified.

        With no verified TOTP config the new secret replaces whatever was
        there. With a verified one, the new secret is staged next to it and
        only replaces it in verify_setup().
        """
        secret = pyotp.random_base32()
        encrypted = self.cipher.encrypt(secret)
        current = self.store.get_mfa_config(user.id, MfaMethod.TOTP)
        if current is not None and current.verified:
            self.store.set_pending_totp_secret(current.id, encrypted)
        else:
            self.store.save_mfa_config(
                MfaConfig(user_id=user.id, method=MfaMethod.TOTP, secret_encrypted=encrypted, verified=False)
            )
        uri = self._totp(secret).provisioning_uri(name=user.email, issuer_name=self.issuer)
        logger.info("TOTP setup started for user %s", user.id)
        return TotpEnrollment(secret=secret, provisioning_uri=uri, qr_code_data_uri=qr_code_data_uri(uri))

    def _check_totp(self, config: MfaConfig, code: str, pending: bool = False) -> bool:
        encrypted = config.pending_secret_encrypted if pending else config.secret_encrypted
        if not encrypted:
            return False
        try:
            secret = self.cipher.decrypt(encrypted)
        except SecretDecryptionError:
            logger.error("TOTP secret for user %s cannot be decrypted", config.user_id)
            return False
        # valid_window=1 accepts the previous and next period for clock drift.
        return self._totp(secret).verify(code, valid_window=1)

    def verify_setup(self, user_id: int, code: str) -> None:
        """Confirm a pending TOTP enrolment. Raises InvalidCode on mismatch."""
        config = self.store.get_mfa_config(user_id, MfaMethod.TOTP)
        if config is None:
            raise InvalidCode("No TOTP setup in progress.")
        if config.pending_secret_encrypted:
            if not self._check_totp(config, code, pending=True):
                raise InvalidCode()
            self.store.promote_pending_totp_secret(config.id)
            logger.info("TOTP secret replaced for user %s", user_id)
            return
        if config.verified:
            return
        if not self._check_totp(config, code):
            raise InvalidCode()
        self.store.mark_mfa_verified(config.id)
        self.store.update_user(user_id, mfa_enabled=True, mfa_preferred_method=MfaMethod.TOTP)
        logger.info("TOTP enabled for user %s", user_id)

    def verify_totp(self, user_id: int, code: str) -> bool:
        config = self.store.get_mfa_config(user_id, MfaMethod.TOTP)
        if config is None or not config.verified:
            return False
        return self._check_totp(config, code)

    # ------------------------------------------------------------------
    # Email OTP
    # ------------------------------------------------------------------

    def enable_email(self, user: User) -> None:
        self.store.save_mfa_config(MfaConfig(user_id=user.id, method=MfaMethod.EMAIL, verified=True))
        fields: dict = {"mfa_enabled": True}
        if user.mfa_preferred_method is None:
            fields["mfa_preferred_method"] = MfaMethod.EMAIL
        self.store.update_user(user.id, **fields)
        logger.info("Email OTP enabled for user %s", user.id)

    def _generate_otp(self) -> str:
        return f"{secrets.randbelow(10**self.email_otp_length):0{self.email_otp_length}d}"

    def send_email_otp(self, user: User) -> None:
        """Issue a new code (replacing any outstanding one) and mail it."""
        code = self._generate_otp()
        self.cache.set(_EMAIL_OTP_PREFIX + str(user.id), code, ttl=self.email_otp_expire_minutes * 60)
        self.mailer.send_otp(user.email, user.name, code, self.email_otp_expire_minutes)
        logger.debug("Email OTP issued for user %s", user.id)

    def verify_email_otp(self, user_id: int, code: str) -> bool:
        config = self.store.get_mfa_config(user_id, MfaMethod.EMAIL)
        if config is None or not config.verified:
            return False
        key = _EMAIL_OTP_PREFIX + str(user_id)
        stored = self.cache.get(key)
        if stored is None or not hmac.compare_digest(stored.encode(), code.encode()):
            return False
        return self.cache.delete(key)

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def verify_code(self, user_id: int, method: MfaMethod, code: str) -> bool:
        if method is MfaMethod.TOTP:
            return self.verify_totp(user_id, code)
        if method is MfaMethod.EMAIL:
            return self.verify_email_otp(user_id, code)
        raise ValueError(f"Unsupported MFA method: {method!r}")

    def active_methods(self, user_id: int) -> list[MfaMethod]:
        return [c.method for c in self.store.list_mfa_configs(user_id) if c.verified]

    def disable(self, user_id: int) -> None:
        self.store.delete_mfa_configs(user_id)
        self.cache.delete(_EMAIL_OTP_PREFIX + str(user_id))
        self.store.update_user(user_id, mfa_enabled=False, mfa_preferred_method=None)
        logger.info("MFA disabled for user %s", user_id)

    def status(self, user: User) -> MfaStatus:
        return MfaStatus(
            mfa_enabled=user.mfa_enabled,
            methods=self.active_methods(user.id),
            preferred_method=user.mfa_preferred_method,
        )
