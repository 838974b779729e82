"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, services and routes do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"
    SUPER_ADMIN = "SUPER_ADMIN"


class AuthProvider(str, Enum):
    LOCAL = "LOCAL"
    GOOGLE = "GOOGLE"
    GITHUB = "GITHUB"


class AuditAction(str, Enum):
    """Action tags written to the audit log."""

    USER_REGISTERED = "USER_REGISTERED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    LOGOUT = "LOGOUT"
    TOKENS_REVOKED = "TOKENS_REVOKED"
    TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    VERIFICATION_RESENT = "VERIFICATION_RESENT"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET = "PASSWORD_RESET"
    TWO_FACTOR_ENABLED = "2FA_ENABLED"
    TWO_FACTOR_DISABLED = "2FA_DISABLED"
    OAUTH_REGISTERED = "OAUTH_REGISTERED"
    OAUTH_LINKED = "OAUTH_LINKED"
    USER_UPDATED = "USER_UPDATED"
    PERMISSION_GRANTED = "PERMISSION_GRANTED"
    PERMISSION_REVOKED = "PERMISSION_REVOKED"


@dataclass
class User:
    """An identity record.

    email is always stored lower-cased; the UNIQUE constraint on it is
    therefore case-insensitive in effect.

    hashed_password is None for OAuth-only users (they have no local password).
    provider / provider_id record the last linked OAuth identity; LOCAL users
    have provider_id None.

    two_factor_secret is stored as soon as setup starts, but 2FA only counts
    once two_factor_enabled is set by a confirmed code.
    """

    email: str
    id: int | None = None
    hashed_password: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    roles: list[str] = field(default_factory=lambda: [Role.USER.value])
    is_active: bool = True
    is_email_verified: bool = False
    email_verification_token: str | None = None
    email_verification_expires: datetime | None = None
    password_reset_token: str | None = None
    password_reset_expires: datetime | None = None
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    two_factor_secret: str | None = None
    two_factor_enabled: bool = False
    two_factor_backup_codes: list[str] = field(default_factory=list)  # bcrypt hashes
    provider: str = AuthProvider.LOCAL.value
    provider_id: str | None = None
    last_login_at: datetime | None = None
    last_login_ip: str | None = None
    last_login_user_agent: str | None = None
    created_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class RefreshToken:
    """A persisted refresh token.

    token_hash is HMAC-SHA256(SECRET_KEY, signed_token). The signed token
    itself only exists in the client's cookie. token_family is shared by every
    token rotated from the same login.

    user is populated by TokenService.validate_refresh() so the refresh route
    does not need a second lookup.
    """

    user_id: int
    token_hash: str
    token_family: str
    expires_at: datetime
    id: int | None = None
    is_revoked: bool = False
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None
    user: User | None = None


@dataclass
class AuditLogEntry:
    """One append-only security event. Never updated or deleted."""

    action: str
    resource: str = "auth"
    id: int | None = None
    user_id: int | None = None
    details: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    success: bool = True
    created_at: datetime | None = None


@dataclass(frozen=True)
class Permission:
    """An ABAC grant: user_id may perform action on resource."""

    user_id: int
    resource: str
    action: str


@dataclass(frozen=True)
class TokenPair:
    """Result of TokenService.issue() / rotate().

    expires_in is the access-token lifetime in seconds.
    """

    access_token: str
    refresh_token: str
    token_family: str
    expires_in: int
    token_type: str = "Bearer"
