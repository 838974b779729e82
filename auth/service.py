"""
auth/service.py -- Account and session orchestration.

AuthService coordinates the credential store, the token service and the audit
log for every account operation. It is constructed once per app (see the
lifespan in api/main.py) with its collaborators passed in explicitly.

Account states:
  Unverified --verify_email--> Active <--lockout / expiry--> Locked
  Active --admin deactivation--> Disabled

Security:
  [C1] validate_credentials() runs bcrypt even for unknown emails.
  [E1] request_password_reset() answers identically whether or not the email
       exists. resend_verification() does reveal existence (404) -- kept as-is
       pending a product decision.
  [L1] Five consecutive failures lock the account for 30 minutes. The counter
       increment and the lock are one transaction in the store.
  [R1] A password reset revokes every refresh token the user holds.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth import twofactor
from auth.audit import AuditLog
from auth.errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from auth.models import AuditAction, AuthProvider, RefreshToken, Role, TokenPair, User
from auth.store import AuthStore
from auth.token_service import TokenService
from auth.tokens import burn_password_check, generate_secure_token, hash_password, verify_password
from core.config import Settings

logger = logging.getLogger("tetris.auth")

RESET_REQUESTED_MESSAGE = "If the email exists, a reset link has been sent"


_ADMIN_ROLES = frozenset({Role.ADMIN.value, Role.SUPER_ADMIN.value})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_admin(user: User) -> bool:
    return bool(_ADMIN_ROLES & set(user.roles))


class AuthService:
    """Usage:
    service = AuthService(store, TokenService(store, audit, settings), audit, settings)
    user = service.validate_credentials("alice@example.com", "Passw0rd!")
    tokens = service.login(user, "203.0.113.7", "Mozilla/5.0")
    """

    def __init__(self, store: AuthStore, tokens: TokenService, audit: AuditLog, settings: Settings) -> None:
        self._store = store
        self._tokens = tokens
        self._audit = audit
        self._settings = settings

    # ==================================================================
    # Registration & login
    # ==================================================================

    def register(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> dict:
        """Create an unverified local account. No session tokens are issued."""
        email = email.strip().lower()
        if self._store.get_by_email(email) is not None:
            raise ConflictError("Email already registered")

        token = generate_secure_token()
        user = User(
            email=email,
            hashed_password=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            email_verification_token=token,
            email_verification_expires=_utcnow() + timedelta(hours=self._settings.email_verification_ttl_hours),
        )
        try:
            user_id = self._store.create_user(user)
        except IntegrityError as exc:
            raise ConflictError("Email already registered") from exc

        self._audit.record(AuditAction.USER_REGISTERED, user_id=user_id)
        # Stand-in for email delivery.
        logger.debug("Verification token for %s: %s", email, token)
        return {
            "message": "Registration successful. Please check your email to verify your account.",
            "user_id": user_id,
        }

    def validate_credentials(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> User | None:
        """Check email/password, maintaining the lockout counter.

        Returns the User on success and None on bad credentials. Raises
        UnauthorizedError while the account is locked, whatever the password.
        """
        user = self._store.get_by_email(email.strip())
        if user is None:
            burn_password_check(password)  # [C1]
            self._audit.record(
                AuditAction.LOGIN_FAILED,
                details=f"Failed login attempt for email: {email}",
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
            return None

        now = _utcnow()
        if user.is_locked(now):
            self._audit.record(
                AuditAction.LOGIN_FAILED,
                user_id=user.id,
                details="Login attempt while account locked",
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
            raise UnauthorizedError(f"Account is locked until {user.locked_until.isoformat()}", code="account_locked")

        if user.hashed_password is None:
            burn_password_check(password)
            valid = False
        else:
            valid = verify_password(password, user.hashed_password)

        if not valid:
            max_attempts = self._settings.max_failed_logins
            attempts, locked_now = self._store.record_failed_login(
                user.id, max_attempts, now + timedelta(minutes=self._settings.lockout_minutes)
            )
            self._audit.record(
                AuditAction.LOGIN_FAILED,
                user_id=user.id,
                details=f"Failed login attempt ({attempts}/{max_attempts})",
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
            )
            if locked_now:
                logger.warning("Account %s locked after %d failed logins", user.id, attempts)
                self._audit.record(
                    AuditAction.ACCOUNT_LOCKED,
                    user_id=user.id,
                    details=f"Locked for {self._settings.lockout_minutes} minutes",
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=False,
                )
            return None

        if user.failed_login_attempts or user.locked_until is not None:
            self._store.clear_failed_logins(user.id)
            user.failed_login_attempts = 0
            user.locked_until = None
        return user

    def login(self, user: User, ip_address: str | None, user_agent: str | None) -> TokenPair:
        """Open a session for an already-authenticated user (password or OAuth)."""
        self._ensure_can_sign_in(user)
        tokens = self._tokens.issue(user, ip_address, user_agent)
        self._store.update_last_login(user.id, ip_address, user_agent)
        self._audit.record(
            AuditAction.LOGIN_SUCCESS,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return tokens

    def _ensure_can_sign_in(self, user: User) -> None:
        if not user.is_email_verified:
            raise UnauthorizedError("Please verify your email first", code="email_not_verified")
        if not user.is_active:
            raise UnauthorizedError("Account is inactive", code="account_inactive")
        if user.is_locked(_utcnow()):
            raise UnauthorizedError(f"Account is locked until {user.locked_until.isoformat()}", code="account_locked")

    # ==================================================================
    # Token management
    # ==================================================================

    def refresh(self, record: RefreshToken, ip_address: str | None, user_agent: str | None) -> TokenPair:
        """Rotate a refresh token already checked by TokenService.validate_refresh()."""
        return self._tokens.rotate(record, ip_address, user_agent)

    def logout(self, user_id: int, raw_refresh_token: str | None = None) -> dict:
        if raw_refresh_token:
            self._tokens.revoke(user_id, raw_refresh_token)
        else:
            self._tokens.revoke_all(user_id)
        self._audit.record(AuditAction.LOGOUT, user_id=user_id)
        return {"message": "Logout successful"}

    def revoke_all_tokens(self, user_id: int) -> dict:
        count = self._tokens.revoke_all(user_id)
        self._audit.record(AuditAction.TOKENS_REVOKED, user_id=user_id, details=f"All tokens revoked ({count})")
        return {"message": "All tokens revoked successfully"}

    # ==================================================================
    # Email verification
    # ==================================================================

    def verify_email(self, token: str) -> dict:
        user = self._store.get_by_verification_token(token) if token else None
        if user is None or user.email_verification_expires is None or user.email_verification_expires < _utcnow():
            raise BadRequestError("Invalid or expired verification token")

        self._store.update_user(
            user.id,
            is_email_verified=True,
            email_verification_token=None,
            email_verification_expires=None,
        )
        self._audit.record(AuditAction.EMAIL_VERIFIED, user_id=user.id)
        return {"message": "Email verified successfully"}

    def resend_verification(self, email: str) -> dict:
        user = self._store.get_by_email(email.strip())
        if user is None:
            raise NotFoundError("User not found")
        if user.is_email_verified:
            raise BadRequestError("Email already verified")

        token = generate_secure_token()
        self._store.update_user(
            user.id,
            email_verification_token=token,
            email_verification_expires=_utcnow() + timedelta(hours=self._settings.email_verification_ttl_hours),
        )
        self._audit.record(AuditAction.VERIFICATION_RESENT, user_id=user.id)
        logger.debug("Verification token for %s: %s", user.email, token)
        return {"message": "Verification email sent"}

    # ==================================================================
    # Password reset
    # ==================================================================

    def request_password_reset(self, email: str) -> dict:
        """Store a one-hour reset token if the account exists. [E1]"""
        user = self._store.get_by_email(email.strip())
        if user is None:
            return {"message": RESET_REQUESTED_MESSAGE}

        token = generate_secure_token()
        # Overwrites any earlier token: only the newest link works.
        self._store.update_user(
            user.id,
            password_reset_token=token,
            password_reset_expires=_utcnow() + timedelta(minutes=self._settings.password_reset_ttl_minutes),
        )
        self._audit.record(AuditAction.PASSWORD_RESET_REQUESTED, user_id=user.id)
        logger.debug("Password reset token for %s: %s", user.email, token)
        return {"message": RESET_REQUESTED_MESSAGE}

    def reset_password(self, token: str, new_password: str) -> dict:
        user = self._store.get_by_reset_token(token) if token else None
        if user is None or user.password_reset_expires is None or user.password_reset_expires < _utcnow():
            raise BadRequestError("Invalid or expired reset token")

        self._store.update_user(
            user.id,
            hashed_password=hash_password(new_password),
            password_reset_token=None,
            password_reset_expires=None,
        )
        self.revoke_all_tokens(user.id)  # [R1]
        self._audit.record(AuditAction.PASSWORD_RESET, user_id=user.id)
        return {"message": "Password reset successfully"}

    # ==================================================================
    # Two-factor authentication
    # ==================================================================

    def generate_2fa_secret(self, user_id: int) -> dict:
        """Start 2FA setup. The secret is stored but not active until enable_2fa()."""
        user = self.get_user(user_id)
        if user.two_factor_enabled:
            raise BadRequestError("2FA is already enabled")

        secret = twofactor.generate_secret()
        self._store.update_user(user_id, two_factor_secret=secret)
        return {
            "secret": secret,
            "otpauth_url": twofactor.provisioning_uri(secret, user.email, self._settings.two_factor_issuer),
        }

    def enable_2fa(self, user_id: int, code: str) -> dict:
        """Confirm setup with a TOTP code and hand out backup codes (shown once)."""
        user = self._store.get_by_id(user_id)
        if user is None or not user.two_factor_secret:
            raise BadRequestError("2FA setup not initiated")
        if user.two_factor_enabled:
            raise BadRequestError("2FA is already enabled")
        if not twofactor.verify_totp(user.two_factor_secret, code.strip(), self._settings.two_factor_window):
            raise BadRequestError("Invalid 2FA token")

        backup_codes = twofactor.generate_backup_codes(self._settings.backup_code_count)
        hashed = [hash_password(c, rounds=self._settings.backup_code_rounds) for c in backup_codes]
        self._store.update_user(user_id, two_factor_enabled=True, two_factor_backup_codes=hashed)
        self._audit.record(AuditAction.TWO_FACTOR_ENABLED, user_id=user_id)
        return {"message": "2FA enabled successfully", "backup_codes": backup_codes}

    def verify_2fa(self, user_id: int, code: str) -> dict:
        """Check a TOTP code, falling back to the backup codes.

        A wrong code is a normal outcome and returns {"valid": False}. Only
        configuration problems (2FA off, malformed code) raise.
        """
        user = self._store.get_by_id(user_id)
        if user is None or not user.two_factor_enabled or not user.two_factor_secret:
            raise BadRequestError("2FA not enabled")
        code = code.strip().lower()
        if not twofactor.is_well_formed(code):
            raise BadRequestError("Malformed 2FA code")

        if twofactor.verify_totp(user.two_factor_secret, code, self._settings.two_factor_window):
            return {"valid": True}

        stored = user.two_factor_backup_codes
        for i, hashed in enumerate(stored):
            if verify_password(code, hashed):
                remaining = stored[:i] + stored[i + 1 :]
                if self._store.consume_backup_code(user_id, stored, remaining):
                    logger.info("Backup code used for user %s (%d left)", user_id, len(remaining))
                    return {"valid": True, "used_backup_code": True}
                # Lost the race: the same code was spent by a concurrent request.
                break
        return {"valid": False}

    def disable_2fa(self, user_id: int) -> dict:
        user = self.get_user(user_id)
        if not user.two_factor_enabled:
            raise BadRequestError("2FA not enabled")
        self._store.update_user(
            user_id,
            two_factor_enabled=False,
            two_factor_secret=None,
            two_factor_backup_codes=None,
        )
        self._audit.record(AuditAction.TWO_FACTOR_DISABLED, user_id=user_id)
        return {"message": "2FA disabled successfully"}

    # ==================================================================
    # OAuth
    # ==================================================================

    def find_or_create_oauth_user(
        self,
        email: str,
        provider_id: str,
        provider: AuthProvider | str,
        name: str | None = None,
    ) -> User:
        """Resolve an OAuth identity to a local account, creating or linking as needed.

        The provider has already confirmed the email (see auth/oauth.py [H1]),
        so new and newly linked accounts are marked verified.
        """
        provider = provider.value if isinstance(provider, AuthProvider) else provider
        email = email.strip().lower()
        user = self._store.find_oauth_candidate(email, provider, provider_id)

        if user is None:
            first_name, _, last_name = (name or "").strip().partition(" ")
            user_id = self._store.create_user(
                User(
                    email=email,
                    provider=provider,
                    provider_id=provider_id,
                    first_name=first_name or None,
                    last_name=last_name or None,
                    is_email_verified=True,
                )
            )
            self._audit.record(AuditAction.OAUTH_REGISTERED, user_id=user_id, details=f"Provider: {provider}")
            return self._store.get_by_id(user_id)

        if not user.provider_id or user.provider != provider:
            self._store.update_user(
                user.id,
                provider=provider,
                provider_id=provider_id,
                is_email_verified=True,
                email_verification_token=None,
                email_verification_expires=None,
            )
            self._audit.record(AuditAction.OAUTH_LINKED, user_id=user.id, details=f"Provider: {provider}")
            return self._store.get_by_id(user.id)

        return user

    # ==================================================================
    # Profile and administration
    # ==================================================================

    def get_user(self, user_id: int) -> User:
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def permissions_for(self, user_id: int) -> set[tuple[str, str]]:
        return {(p.resource, p.action) for p in self._store.get_permissions(user_id)}

    def update_user(
        self,
        actor: User,
        user_id: int,
        roles: list[str] | None = None,
        is_active: bool | None = None,
    ) -> User:
        """Change a user's roles or active flag. Admin only.

        [M4] Prevents self-deactivation and deactivating the last active
        admin. Deactivation revokes every refresh token the user holds.
        """
        target = self.get_user(user_id)
        updates: dict = {}

        if roles is not None:
            valid = {r.value for r in Role}
            unknown = set(roles) - valid
            if unknown:
                raise BadRequestError(f"Unknown roles: {sorted(unknown)}")
            updates["roles"] = sorted(set(roles))

        if is_active is not None:
            if not is_active and target.id == actor.id:
                raise BadRequestError("You cannot deactivate your own account.", code="self_deactivation")
            if not is_active and _is_admin(target) and self._count_active_admins() <= 1:
                raise BadRequestError("Cannot deactivate the last active admin account.", code="last_admin")
            updates["is_active"] = is_active

        if not updates:
            raise BadRequestError("No fields to update.", code="no_changes")

        self._store.update_user(user_id, **updates)
        if updates.get("is_active") is False:
            self._tokens.revoke_all(user_id)
        self._audit.record(
            AuditAction.USER_UPDATED,
            resource="user",
            user_id=user_id,
            details=f"Updated by {actor.id}: {', '.join(sorted(updates))}",
        )
        return self.get_user(user_id)

    def _count_active_admins(self) -> int:
        return self._store.count_active_with_roles(sorted(_ADMIN_ROLES))

    def grant_permission(self, actor: User, user_id: int, resource: str, action: str) -> bool:
        self.get_user(user_id)
        granted = self._store.grant_permission(user_id, resource, action)
        if granted:
            self._audit.record(
                AuditAction.PERMISSION_GRANTED,
                resource="permission",
                user_id=user_id,
                details=f"{resource}:{action} granted by {actor.id}",
            )
        return granted

    def revoke_permission(self, actor: User, user_id: int, resource: str, action: str) -> bool:
        self.get_user(user_id)
        revoked = self._store.revoke_permission(user_id, resource, action)
        if revoked:
            self._audit.record(
                AuditAction.PERMISSION_REVOKED,
                resource="permission",
                user_id=user_id,
                details=f"{resource}:{action} revoked by {actor.id}",
            )
        return revoked
