"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Folio happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing,
       token hashing and the derived MFA encryption key all rely on it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("folio.config")

_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    app_url: str = "http://localhost:8000"

    database_url: str = f"sqlite:///{_ROOT / 'auth' / 'folio_auth.db'}"
    cache_path: str = str(_ROOT / "cache" / "folio_cache.db")

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "folio"
    jwt_audience: str = "folio-api"
    access_token_expire_seconds: int = 86400
    refresh_token_expire_seconds: int = 7 * 86400
    # A revoked refresh token presented within this window is a lost race,
    # not reuse, and does not revoke the owner's other tokens.
    refresh_reuse_grace_seconds: int = 10
    mfa_token_expire_seconds: int = 300

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = True
    cookie_domain: str = ""
    access_cookie_path: str = "/api"
    refresh_cookie_path: str = "/api/v1/auth"

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    totp_issuer: str = "Folio"
    totp_digits: int = 6
    totp_period_seconds: int = 30
    email_otp_length: int = 6
    email_otp_expire_minutes: int = 10
    # Fernet key for TOTP secrets at rest. Empty = derived from SECRET_KEY.
    mfa_encryption_key: str = ""

    # ------------------------------------------------------------------
    # Brute-force protection
    # ------------------------------------------------------------------

    login_rate_limit: str = "5/minute"
    register_rate_limit: str = "5/minute"
    refresh_rate_limit: str = "30/minute"
    password_reset_rate_limit: str = "3/minute"
    login_max_attempts: int = 5
    login_attempt_window_minutes: int = 15
    login_lockout_base_minutes: int = 5

    # ------------------------------------------------------------------
    # reCAPTCHA v3 (disabled unless enabled and a secret is set)
    # ------------------------------------------------------------------

    recaptcha_enabled: bool = False
    recaptcha_secret_key: str = ""
    recaptcha_score_threshold: float = 0.5

    # ------------------------------------------------------------------
    # Email (empty smtp_host = log messages instead of sending)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from: str = "no-reply@localhost"

    # ------------------------------------------------------------------
    # Admin bootstrap (main.py create-admin / startup)
    # ------------------------------------------------------------------

    admin_email: str = ""
    admin_password: str = ""
    admin_name: str = "Administrator"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
