"""
auth/tokens.py -- JWT, password hashing, and opaque token utilities.

Security design decisions:
  JWT: python-jose with HS256. Two token types share the signing key and are
       told apart by the "typ" claim:
         access -- user_id, role, sub=email, jti; authorises API requests.
         mfa    -- user_id, jti; only accepted by the MFA completion routes.
       Every token carries iss/aud, and decoding pins both plus the expected
       typ, so an MFA challenge token can never pass as an access token.
       Decoders return None on any failure -- the caller decides the error.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email exists [C1].

  Refresh / reset tokens: secrets.token_urlsafe gives high-entropy opaque
       values. Only SHA-256(token) is persisted, so a leaked database does not
       yield usable tokens. bcrypt's slowness is unnecessary for 512-bit
       random values and would make O(1) lookup impossible.

  SECRET_KEY: sourced from core.config.get_settings(), validated at startup.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("folio.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_TOKEN_TYPE = "access"
MFA_TOKEN_TYPE = "mfa"

# Password policy: 12-128 chars, at least one lower, upper, digit and special.
PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_LENGTH = 128

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. PASSWORD_MAX_LENGTH keeps
    typical inputs near that bound; the API layer enforces it.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def is_strong_password(plain: str) -> bool:
    if not PASSWORD_MIN_LENGTH <= len(plain) <= PASSWORD_MAX_LENGTH:
        return False
    return (
        any(c.islower() for c in plain)
        and any(c.isupper() for c in plain)
        and any(c.isdigit() for c in plain)
        and any(not c.isalnum() for c in plain)
    )


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("folio_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(claims: dict, expire_seconds: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        **claims,
        "jti": uuid.uuid4().hex,
        "iss": _settings.jwt_issuer,
        "aud": _settings.jwt_audience,
        "iat": now,
        "exp": now + timedelta(seconds=expire_seconds),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def _decode(token: str, token_type: str) -> dict | None:
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            audience=_settings.jwt_audience,
            issuer=_settings.jwt_issuer,
        )
    except JWTError as exc:
        logger.debug("JWT rejected (%s): %s", token_type, exc)
        return None
    if payload.get("typ") != token_type or "user_id" not in payload or "jti" not in payload:
        return None
    return payload


def create_access_token(user_id: int, email: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed access JWT.

    Args:
        user_id:        Numeric user ID stored in the DB.
        email:          Stored as the JWT subject claim.
        role:           Role value ("admin", "dev", "editor", "viewer").
        expire_seconds: Lifetime override; 0 uses ACCESS_TOKEN_EXPIRE_SECONDS.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    role_value = getattr(role, "value", role)
    return _encode({"typ": ACCESS_TOKEN_TYPE, "sub": email, "user_id": user_id, "role": role_value}, duration)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access JWT. Returns the payload or None."""
    payload = _decode(token, ACCESS_TOKEN_TYPE)
    if payload is None or "role" not in payload:
        return None
    return payload


def create_mfa_token(user_id: int) -> str:
    """Encode the short-lived challenge token issued between password and MFA code."""
    return _encode({"typ": MFA_TOKEN_TYPE, "user_id": user_id}, _settings.mfa_token_expire_seconds)


def decode_mfa_token(token: str) -> dict | None:
    return _decode(token, MFA_TOKEN_TYPE)


def remaining_lifetime(payload: dict) -> int:
    """Seconds until a decoded token's exp claim, never negative."""
    exp = payload.get("exp")
    if exp is None:
        return 0
    return max(0, int(exp - datetime.now(timezone.utc).timestamp()))


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure (including inactive).
    """
    user = store.get_by_email(email)
    if user is None or not user.hashed_password:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Opaque tokens (refresh, password reset)
# ---------------------------------------------------------------------------


def generate_opaque_token(nbytes: int = 64) -> str:
    """Return a URL-safe random token with nbytes of entropy."""
    return secrets.token_urlsafe(nbytes)


def hash_token(raw_token: str) -> str:
    """Return SHA-256(raw_token) as hex, the form persisted in the DB."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def mask_email(email: str | None) -> str:
    """Shorten an email for log lines: 'alice@example.com' -> 'ali***@example.com'."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:3]}***@{domain}"
