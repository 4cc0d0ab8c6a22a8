"""
auth/service.py -- AuthService: the session lifecycle orchestrator.

Sequences the leaf components into the public operations:

  login               reCAPTCHA -> lockout -> credentials -> MFA gate -> access token
  login_with_refresh  same, but the session is an access + refresh pair
  register            reCAPTCHA -> policy -> create viewer -> pair
  refresh             rotate the refresh token, mint a fresh access token
  complete_mfa_login  challenge token + code -> pair
  send_email_otp      challenge token -> mail a one-time code
  logout              revoke refresh token, blacklist access jti
  verify              reflect a Principal back to the caller

MFA gate: a user with at least one verified MFA method never receives a
session from the password step. They get a short-lived typ="mfa" JWT whose
jti is consumed by complete_mfa_login(), so one challenge yields at most one
session.

Refresh rotation: claim_refresh_token() is a conditional UPDATE; only the
caller that flips revoked 0 -> 1 goes on to issue a new pair. A token that
is presented more than refresh_reuse_grace_seconds after it was revoked is
treated as stolen and every refresh token of its owner is revoked. Inside
the grace period the caller is a concurrent refresh that lost the race
(two tabs, a retried request), so it is rejected without touching the
winner's new token.

Wrong MFA codes count against the same per-account lockout as wrong
passwords, keyed by the account email.

Route handlers are sync ``def`` so FastAPI runs these blocking calls
(bcrypt, SQLAlchemy, SMTP) in its thread pool.

Layer rule: no imports from api/. Cookies are the route layer's concern.
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.attempts import LoginAttemptTracker
from auth.blacklist import TokenBlacklist
from auth.email import Mailer
from auth.errors import (
    AccountInactive,
    AccountLocked,
    EmailAlreadyRegistered,
    InvalidCode,
    InvalidCredentials,
    InvalidOrExpiredToken,
    WeakPassword,
)
from auth.mfa import MfaService
from auth.models import LoginResult, MfaMethod, Principal, RefreshToken, Role, TokenPair, User
from auth.recaptcha import RecaptchaVerifier
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    create_access_token,
    create_mfa_token,
    decode_access_token,
    decode_mfa_token,
    generate_opaque_token,
    hash_password,
    hash_token,
    is_strong_password,
    mask_email,
    remaining_lifetime,
)

logger = logging.getLogger("folio.auth.service")


class AuthService:
    def __init__(
        self,
        store: UserStore,
        blacklist: TokenBlacklist,
        attempts: LoginAttemptTracker,
        mfa: MfaService,
        mailer: Mailer,
        recaptcha: RecaptchaVerifier,
        access_expire_seconds: int,
        refresh_expire_seconds: int,
        refresh_reuse_grace_seconds: int = 10,
    ) -> None:
        self.store = store
        self.blacklist = blacklist
        self.attempts = attempts
        self.mfa = mfa
        self.mailer = mailer
        self.recaptcha = recaptcha
        self.access_expire_seconds = access_expire_seconds
        self.refresh_expire_seconds = refresh_expire_seconds
        self.refresh_reuse_grace_seconds = refresh_reuse_grace_seconds

    # ------------------------------------------------------------------
    # Token issuing
    # ------------------------------------------------------------------

    def _access_token(self, user: User) -> str:
        return create_access_token(user.id, user.email, user.role, self.access_expire_seconds)

    def _issue_pair(self, user: User) -> TokenPair:
        """Mint an access token and a new refresh token.

        A user holds one live refresh token at a time: create_refresh_token()
        revokes every earlier token in the same transaction.
        """
        raw = generate_opaque_token()
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.refresh_expire_seconds)
        self.store.create_refresh_token(user.id, hash_token(raw), expires_at)
        return TokenPair(
            access_token=self._access_token(user),
            refresh_token=raw,
            expires_in=self.access_expire_seconds,
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def _check_credentials(self, email: str, password: str, client_ip: str | None) -> User:
        """Lockout check, password check and attempt bookkeeping.

        Unknown email, wrong password and inactive account all count as a
        failed attempt and raise the same InvalidCredentials.
        """
        if self.attempts.is_locked(email):
            raise AccountLocked(self.attempts.remaining_lockout_minutes(email))

        user = authenticate_user(self.store, email, password)
        if user is None:
            self.attempts.record_failure(email, client_ip)
            remaining = self.attempts.remaining_attempts(email)
            logger.info("Failed login for %s from %s", mask_email(email), client_ip or "unknown")
            raise InvalidCredentials(detail=f"remaining_attempts={remaining}")

        self.attempts.clear(email)
        return user

    def _mfa_challenge(self, user: User) -> LoginResult | None:
        if not user.mfa_enabled:
            return None
        methods = self.mfa.active_methods(user.id)
        if not methods:
            return None
        logger.info("MFA challenge issued for user %s", user.id)
        return LoginResult(user=user, mfa_token=create_mfa_token(user.id), mfa_methods=methods)

    def login(
        self,
        email: str,
        password: str,
        client_ip: str | None = None,
        recaptcha_token: str | None = None,
    ) -> LoginResult:
        """Password login issuing an access token only (no refresh token)."""
        self.recaptcha.verify(recaptcha_token, "login")
        user = self._check_credentials(email, password, client_ip)
        challenge = self._mfa_challenge(user)
        if challenge is not None:
            return challenge
        self.store.update_last_login(user.id)
        logger.info("User %s logged in from %s", user.id, client_ip or "unknown")
        tokens = TokenPair(
            access_token=self._access_token(user),
            refresh_token=None,
            expires_in=self.access_expire_seconds,
        )
        return LoginResult(user=user, tokens=tokens)

    def login_with_refresh(
        self,
        email: str,
        password: str,
        client_ip: str | None = None,
        recaptcha_token: str | None = None,
    ) -> LoginResult:
        self.recaptcha.verify(recaptcha_token, "login")
        user = self._check_credentials(email, password, client_ip)
        challenge = self._mfa_challenge(user)
        if challenge is not None:
            return challenge
        self.store.update_last_login(user.id)
        logger.info("User %s logged in (v2) from %s", user.id, client_ip or "unknown")
        return LoginResult(user=user, tokens=self._issue_pair(user))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        email: str,
        password: str,
        client_ip: str | None = None,
        recaptcha_token: str | None = None,
    ) -> LoginResult:
        self.recaptcha.verify(recaptcha_token, "register")
        if not is_strong_password(password):
            raise WeakPassword()
        email = email.strip().lower()
        if self.store.email_exists(email):
            raise EmailAlreadyRegistered()
        try:
            user_id = self.store.create_user(
                User(email=email, name=name.strip(), role=Role.VIEWER, hashed_password=hash_password(password))
            )
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same email.
            raise EmailAlreadyRegistered() from exc

        user = self.store.get_by_id(user_id)
        logger.info("Registered user %s (%s) from %s", user_id, mask_email(email), client_ip or "unknown")
        try:
            self.mailer.send_welcome(user.email, user.name)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("Welcome email to %s failed: %s", mask_email(email), exc)
        self.store.update_last_login(user.id)
        return LoginResult(user=user, tokens=self._issue_pair(user))

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _revoked_before_grace(self, record: RefreshToken) -> bool:
        if record.revoked_at is None:
            return True
        revoked_at = datetime.fromisoformat(record.revoked_at)
        return datetime.now(timezone.utc) - revoked_at >= timedelta(seconds=self.refresh_reuse_grace_seconds)

    def refresh(self, raw_token: str) -> LoginResult:
        """Rotate a refresh token and return a new access + refresh pair.

        Raises:
            InvalidOrExpiredToken: unknown, expired, revoked, or lost the race.
            AccountInactive:       the owner has been deactivated.
        """
        token_hash = hash_token(raw_token)
        if not self.store.claim_refresh_token(token_hash):
            record = self.store.get_refresh_token(token_hash)
            if record is not None and record.revoked and self._revoked_before_grace(record):
                revoked = self.store.revoke_all_refresh_tokens(record.user_id)
                logger.warning(
                    "Revoked refresh token reused for user %s; revoked %d active token(s)",
                    record.user_id,
                    revoked,
                )
            raise InvalidOrExpiredToken()

        record = self.store.get_refresh_token(token_hash)
        user = self.store.get_by_id(record.user_id) if record is not None else None
        if user is None:
            raise InvalidOrExpiredToken()
        if not user.is_active:
            raise AccountInactive()
        logger.debug("Refresh token rotated for user %s", user.id)
        return LoginResult(user=user, tokens=self._issue_pair(user))

    # ------------------------------------------------------------------
    # MFA completion
    # ------------------------------------------------------------------

    def _resolve_challenge(self, mfa_token: str) -> tuple[dict, User]:
        payload = decode_mfa_token(mfa_token)
        if payload is None or self.blacklist.is_revoked(payload["jti"]):
            raise InvalidOrExpiredToken()
        user = self.store.get_by_id(payload["user_id"])
        if user is None:
            raise InvalidOrExpiredToken()
        if not user.is_active:
            raise AccountInactive()
        return payload, user

    def resolve_mfa_token_user(self, mfa_token: str) -> User:
        return self._resolve_challenge(mfa_token)[1]

    def send_email_otp(self, mfa_token: str) -> None:
        _, user = self._resolve_challenge(mfa_token)
        if MfaMethod.EMAIL not in self.mfa.active_methods(user.id):
            raise InvalidCode("Email verification is not enabled for this account.")
        self.mfa.send_email_otp(user)

    def complete_mfa_login(
        self,
        mfa_token: str,
        code: str,
        method: MfaMethod,
        client_ip: str | None = None,
    ) -> LoginResult:
        """Exchange a challenge token and a correct code for a session.

        A wrong code leaves the challenge usable until it expires; a correct
        one consumes it, so a replayed challenge fails with
        InvalidOrExpiredToken. Wrong codes are recorded as failed attempts,
        and a locked account is refused before the code is checked.
        """
        payload, user = self._resolve_challenge(mfa_token)
        if self.attempts.is_locked(user.email):
            raise AccountLocked(self.attempts.remaining_lockout_minutes(user.email))
        if not self.mfa.verify_code(user.id, method, code):
            self.attempts.record_failure(user.email, client_ip)
            logger.info("Invalid %s code for user %s from %s", method.value, user.id, client_ip or "unknown")
            raise InvalidCode(detail=f"remaining_attempts={self.attempts.remaining_attempts(user.email)}")
        if not self.blacklist.consume(payload["jti"], remaining_lifetime(payload)):
            raise InvalidOrExpiredToken()
        self.attempts.clear(user.email)
        self.store.update_last_login(user.id)
        logger.info("MFA login completed for user %s via %s", user.id, method.value)
        return LoginResult(user=user, tokens=self._issue_pair(user))

    # ------------------------------------------------------------------
    # Logout / verify
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str | None, access_token: str | None) -> None:
        """Revoke whatever session material was presented. Never raises for bad tokens."""
        if refresh_token:
            self.store.revoke_refresh_token(hash_token(refresh_token))
        if access_token:
            payload = decode_access_token(access_token)
            if payload is not None:
                self.blacklist.revoke(payload["jti"], remaining_lifetime(payload))
        logger.debug("Logout processed")

    def principal_from_token(self, access_token: str) -> Principal | None:
        """Resolve an access JWT to an active Principal, or None."""
        payload = decode_access_token(access_token)
        if payload is None or self.blacklist.is_revoked(payload["jti"]):
            return None
        user = self.store.get_by_id(payload["user_id"])
        if user is None or not user.is_active:
            return None
        return Principal(id=user.id, email=user.email, role=user.role)

    @staticmethod
    def verify(principal: Principal | None) -> dict:
        if principal is None:
            return {"valid": False}
        return {"valid": True, "username": principal.email, "roles": [principal.role.value]}


def ensure_admin(store: UserStore, email: str, password: str, name: str = "Administrator") -> int | None:
    """Create the configured admin account if it does not exist yet.

    Returns the new user ID, or None when nothing was created (not
    configured, weak password, or the account already exists).
    """
    if not email or not password:
        logger.debug("Admin bootstrap skipped: ADMIN_EMAIL / ADMIN_PASSWORD not set")
        return None
    if not is_strong_password(password):
        logger.warning("ADMIN_PASSWORD does not meet the password policy; admin not created")
        return None
    if store.email_exists(email):
        logger.debug("Admin account already exists: %s", mask_email(email))
        return None
    try:
        user_id = store.create_user(
            User(email=email, name=name, role=Role.ADMIN, hashed_password=hash_password(password))
        )
    except IntegrityError:
        return None
    logger.info("Admin account created: %s", mask_email(email))
    return user_id
