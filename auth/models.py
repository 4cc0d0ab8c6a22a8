"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, services and routes do the work. The only function here is
scope_for(), which is a pure mapping from role to visibility scope.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    """Closed set of account roles. Stored lower-case in the users table."""

    ADMIN = "admin"
    DEV = "dev"
    EDITOR = "editor"
    VIEWER = "viewer"


class MfaMethod(str, Enum):
    TOTP = "TOTP"
    EMAIL = "EMAIL"


@dataclass
class User:
    """An account in Folio.

    email is stored lower-cased and is the login identifier. Accounts are
    never deleted; is_active=False is the soft-delete state and blocks login,
    refresh and bearer authentication.
    """

    email: str
    name: str
    role: Role = Role.VIEWER
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    mfa_enabled: bool = False
    mfa_preferred_method: MfaMethod | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass
class RefreshToken:
    """Server-side record of an opaque refresh token.

    token_hash is SHA-256 of the raw token. The raw value only exists in the
    response body and the refresh_token cookie.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    revoked: bool = False
    revoked_at: str | None = None
    created_at: str | None = None


@dataclass
class MfaConfig:
    """One MFA method configured for a user.

    secret_encrypted holds the Fernet-encrypted TOTP secret and is None for
    EMAIL. verified stays False for TOTP until verify_setup() succeeds.

    pending_secret_encrypted holds a replacement TOTP secret while the user
    re-enrols. The verified secret keeps working until the new one is confirmed.
    """

    user_id: int
    method: MfaMethod
    id: int | None = None
    secret_encrypted: str | None = None
    verified: bool = False
    pending_secret_encrypted: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class PasswordResetToken:
    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    used: bool = False
    created_at: str | None = None


@dataclass(frozen=True)
class Principal:
    """The resolved identity of an authenticated request.

    Passed explicitly into every authenticated operation instead of being
    read from request-global state.
    """

    id: int
    email: str
    role: Role


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str | None
    expires_in: int


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a password login.

    Exactly one of tokens / mfa_token is set. mfa_token means credentials
    were valid but the session is withheld until the MFA challenge passes.
    """

    user: User
    tokens: TokenPair | None = None
    mfa_token: str | None = None
    mfa_methods: list[MfaMethod] = field(default_factory=list)

    @property
    def mfa_required(self) -> bool:
        return self.mfa_token is not None


@dataclass(frozen=True)
class Scope:
    """Row visibility for role-scoped queries. owner_id None means all rows."""

    owner_id: int | None

    @property
    def is_global(self) -> bool:
        return self.owner_id is None


def scope_for(role: Role, user_id: int) -> Scope:
    """Return the visibility scope for a role.

    Admins see every record; dev, editor and viewer accounts see only the
    records they own.
    """
    if role is Role.ADMIN:
        return Scope(owner_id=None)
    if role in (Role.DEV, Role.EDITOR, Role.VIEWER):
        return Scope(owner_id=user_id)
    raise ValueError(f"Unknown role: {role!r}")
