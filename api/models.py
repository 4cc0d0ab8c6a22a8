"""
API request and response models for the Folio auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request fields are snake_case; the camelCase spellings used by the browser
client (rememberMe, mfaToken, recaptchaToken) are accepted as aliases.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from auth.models import LoginResult, MfaMethod, Role, User
from auth.tokens import PASSWORD_MAX_LENGTH

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login and /auth/login/v2."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    remember_me: bool = Field(default=False, validation_alias=AliasChoices("remember_me", "rememberMe"))
    recaptcha_token: Optional[str] = Field(
        default=None,
        max_length=4096,
        validation_alias=AliasChoices("recaptcha_token", "recaptchaToken"),
    )


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Password strength is checked by the service so the error carries the
    weak_password code rather than a generic validation_error.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    recaptcha_token: Optional[str] = Field(
        default=None,
        max_length=4096,
        validation_alias=AliasChoices("recaptcha_token", "recaptchaToken"),
    )


class PasswordResetRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)


class PasswordResetConfirm(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(
        min_length=1,
        max_length=PASSWORD_MAX_LENGTH,
        validation_alias=AliasChoices("new_password", "newPassword"),
    )


class MfaSetupRequest(BaseModel):
    method: MfaMethod


class MfaVerifySetupRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=6, max_length=8, pattern=r"^[0-9]+$")
    method: MfaMethod = MfaMethod.TOTP


class MfaLoginVerifyRequest(BaseModel):
    """Request body for POST /api/v1/mfa/verify (public, uses the challenge token)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    mfa_token: str = Field(min_length=1, max_length=4096, validation_alias=AliasChoices("mfa_token", "mfaToken"))
    code: str = Field(min_length=6, max_length=8, pattern=r"^[0-9]+$")
    method: MfaMethod = MfaMethod.TOTP
    remember_me: bool = Field(default=False, validation_alias=AliasChoices("remember_me", "rememberMe"))


class MfaSendOtpRequest(BaseModel):
    mfa_token: str = Field(min_length=1, max_length=4096, validation_alias=AliasChoices("mfa_token", "mfaToken"))


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. All fields optional."""

    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    """Body returned by every call that starts or continues a session.

    A completed session carries access_token (and refresh_token for the
    refresh-capable flows). An MFA challenge carries only mfa_required,
    mfa_token and mfa_methods, with no usable session token.
    """

    model_config = ConfigDict(frozen=True)

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int = 0
    email: str
    name: str
    role: Optional[str] = None
    mfa_required: bool = False
    mfa_token: Optional[str] = None
    mfa_methods: list[MfaMethod] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: LoginResult) -> "SessionResponse":
        if result.mfa_required:
            return cls(
                email=result.user.email,
                name=result.user.name,
                mfa_required=True,
                mfa_token=result.mfa_token,
                mfa_methods=result.mfa_methods,
            )
        return cls(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.expires_in,
            email=result.user.email,
            name=result.user.name,
            role=result.user.role.value,
        )


class VerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    username: Optional[str] = None
    roles: Optional[list[str]] = None


class ValidResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class MfaSetupResponse(BaseModel):
    """Response for POST /api/v1/mfa/setup.

    secret, provisioning_uri and qr_code_data_uri (a PNG data: URI of the
    provisioning URI) are only set for TOTP. For EMAIL the method is active
    immediately.
    """

    model_config = ConfigDict(frozen=True)

    method: MfaMethod
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    qr_code_data_uri: Optional[str] = None
    enabled: bool = False


class MfaVerifySetupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    verified: bool


class MfaStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    mfa_enabled: bool
    methods: list[MfaMethod]
    preferred_method: Optional[MfaMethod] = None


class UserResponse(BaseModel):
    """User account details. hashed_password is never included."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: str
    is_active: bool
    mfa_enabled: bool
    created_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role.value,
            is_active=user.is_active,
            mfa_enabled=user.mfa_enabled,
            created_at=user.created_at or "",
            last_login=user.last_login,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
