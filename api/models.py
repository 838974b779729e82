"""
API request and response models for the Tetris API REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain. Real
# validation is the verification email.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt only looks at the first 72 bytes; 128 characters bounds hashing cost.
PASSWORD_MIN = 8
PASSWORD_MAX = 128


def _check_password_strength(value: str) -> str:
    if not any(c.isalpha() for c in value) or not any(c.isdigit() for c in value):
        raise ValueError("Password must contain at least one letter and one digit.")
    return value


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user_id: int


class LoginRequest(BaseModel):
    """Request body for POST /auth/login.

    No strength rules here: an old password that predates the current policy
    must still be able to log in.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class TokenResponse(BaseModel):
    """Response for login and refresh. The same tokens are also set as cookies."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class CsrfTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    csrf_token: str


# ---------------------------------------------------------------------------
# Email verification and password reset
# ---------------------------------------------------------------------------


class EmailRequest(BaseModel):
    """Request body for POST /auth/resend-verification and /auth/forgot-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _check_password_strength(value)


# ---------------------------------------------------------------------------
# Two-factor authentication
# ---------------------------------------------------------------------------


class TwoFactorCodeRequest(BaseModel):
    """Request body for POST /auth/2fa/enable and /auth/2fa/verify.

    verify also accepts an 8-character backup code, so the length bounds
    cover both forms. The exact format is checked in the service.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=6, max_length=8)


class TwoFactorSetupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: str
    otpauth_url: str


class TwoFactorEnabledResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    backup_codes: list[str]


class TwoFactorVerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    used_backup_code: bool = False


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class OAuthProviderInfo(BaseModel):
    """Single entry in the GET /auth/providers response."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str
    login_url: str


# ---------------------------------------------------------------------------
# Profile, audit and administration
# ---------------------------------------------------------------------------


class MeResponse(BaseModel):
    """Current user's profile. Secrets and one-time tokens are never included."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    roles: list[str]
    is_active: bool
    is_email_verified: bool
    two_factor_enabled: bool
    provider: str
    last_login_at: Optional[datetime]
    created_at: Optional[datetime]


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    resource: str
    details: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    success: bool
    created_at: Optional[datetime]


class UserPatch(BaseModel):
    """Request body for PATCH /admin/users/{user_id}. All fields optional."""

    roles: Optional[list[Role]] = Field(default=None, min_length=1)
    is_active: Optional[bool] = None


class PermissionRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    resource: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9_.-]+$")
    action: str = Field(min_length=1, max_length=50, pattern=r"^[a-z0-9_.-]+$")


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource: str
    action: str
    changed: bool


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Structured error payload nested inside ErrorResponse."""

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope: {"error": {"code", "message", "detail"}}."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health.

    status is "ok" when every component is "up", "degraded" otherwise.
    """

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
