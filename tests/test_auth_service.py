"""
tests/test_auth_service.py -- Unit tests for AuthService.

Covers registration, credential validation and lockout, email verification,
password reset, two-factor authentication, OAuth account resolution and the
administration operations. Everything runs against a real in-memory store;
only the clock-dependent lockout expiry is simulated by editing locked_until.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

import pyotp
import pytest

from auth.errors import BadRequestError, ConflictError, NotFoundError, UnauthorizedError
from auth.models import AuditAction, AuthProvider
from auth.service import RESET_REQUESTED_MESSAGE
from auth.tokens import verify_password

PASSWORD = "Passw0rd!"


def _actions(audit, user_id: int) -> list[str]:
    return [e.action for e in audit.for_user(user_id, limit=200)]


class TestRegister:
    def test_register_creates_unverified_user(self, auth_service, store, audit) -> None:
        result = auth_service.register("Alice@Example.com", PASSWORD, "Alice", "Liddell")

        user = store.get_by_id(result["user_id"])
        assert user.email == "alice@example.com"
        assert not user.is_email_verified
        assert user.email_verification_token is not None
        assert len(user.email_verification_token) == 64
        assert verify_password(PASSWORD, user.hashed_password)
        assert user.roles == ["USER"]
        assert AuditAction.USER_REGISTERED.value in _actions(audit, user.id)

    def test_register_issues_no_tokens(self, auth_service, store) -> None:
        result = auth_service.register("alice@example.com", PASSWORD)
        assert store.list_refresh_tokens(result["user_id"]) == []
        assert "access_token" not in result

    def test_duplicate_email_conflicts(self, auth_service) -> None:
        auth_service.register("alice@example.com", PASSWORD)
        with pytest.raises(ConflictError):
            auth_service.register("ALICE@example.com", PASSWORD)


class TestValidateCredentials:
    def test_correct_password_returns_user(self, auth_service, user_factory) -> None:
        user = user_factory()
        assert auth_service.validate_credentials(user.email, PASSWORD).id == user.id

    def test_unknown_email_fails_closed(self, auth_service) -> None:
        assert auth_service.validate_credentials("nobody@example.com", PASSWORD) is None

    def test_wrong_password_increments_counter(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        assert auth_service.validate_credentials(user.email, "wrong-password1") is None
        assert store.get_by_id(user.id).failed_login_attempts == 1

    def test_success_resets_counter(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        for _ in range(3):
            auth_service.validate_credentials(user.email, "wrong-password1")
        auth_service.validate_credentials(user.email, PASSWORD)
        assert store.get_by_id(user.id).failed_login_attempts == 0

    def test_oauth_only_account_has_no_password(self, auth_service, user_factory) -> None:
        user = user_factory(password=None, provider="GITHUB", provider_id="42")
        assert auth_service.validate_credentials(user.email, PASSWORD) is None


class TestLockout:
    """Five consecutive failures lock the account for 30 minutes."""

    def test_fifth_failure_locks(self, auth_service, store, audit, user_factory) -> None:
        user = user_factory()
        for _ in range(5):
            assert auth_service.validate_credentials(user.email, "wrong-password1") is None

        locked = store.get_by_id(user.id)
        assert locked.failed_login_attempts == 5
        assert locked.locked_until is not None
        remaining = locked.locked_until - datetime.now(timezone.utc)
        assert timedelta(minutes=29) < remaining <= timedelta(minutes=30)
        assert AuditAction.ACCOUNT_LOCKED.value in _actions(audit, user.id)

    def test_sixth_attempt_rejected_even_with_correct_password(self, auth_service, user_factory) -> None:
        user = user_factory()
        for _ in range(5):
            auth_service.validate_credentials(user.email, "wrong-password1")

        with pytest.raises(UnauthorizedError) as exc_info:
            auth_service.validate_credentials(user.email, PASSWORD)
        assert exc_info.value.message.startswith("Account is locked until ")
        assert exc_info.value.code == "account_locked"

    def test_correct_password_after_expiry_succeeds(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        for _ in range(5):
            auth_service.validate_credentials(user.email, "wrong-password1")
        store.update_user(user.id, locked_until=datetime.now(timezone.utc) - timedelta(seconds=1))

        assert auth_service.validate_credentials(user.email, PASSWORD) is not None
        cleared = store.get_by_id(user.id)
        assert cleared.failed_login_attempts == 0
        assert cleared.locked_until is None

    def test_failures_are_counted_in_audit(self, auth_service, audit, user_factory) -> None:
        user = user_factory()
        for _ in range(3):
            auth_service.validate_credentials(user.email, "wrong-password1")
        assert audit.failed_login_count(user.id) == 3


class TestLogin:
    def test_unverified_user_cannot_log_in(self, auth_service, user_factory) -> None:
        user = user_factory(verified=False)
        validated = auth_service.validate_credentials(user.email, PASSWORD)
        with pytest.raises(UnauthorizedError) as exc_info:
            auth_service.login(validated, None, None)
        assert exc_info.value.message == "Please verify your email first"

    def test_inactive_user_cannot_log_in(self, auth_service, user_factory) -> None:
        user = user_factory(active=False)
        with pytest.raises(UnauthorizedError):
            auth_service.login(user, None, None)

    def test_login_records_metadata(self, auth_service, store, audit, user_factory) -> None:
        user = user_factory()
        pair = auth_service.login(user, "203.0.113.7", "pytest")

        assert pair.access_token and pair.refresh_token
        stored = store.get_by_id(user.id)
        assert stored.last_login_ip == "203.0.113.7"
        assert stored.last_login_user_agent == "pytest"
        assert stored.last_login_at is not None
        assert AuditAction.LOGIN_SUCCESS.value in _actions(audit, user.id)

    def test_logout_revokes_only_presented_token(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        a = auth_service.login(user, None, None)
        auth_service.login(user, None, None)

        assert auth_service.logout(user.id, a.refresh_token) == {"message": "Logout successful"}
        revoked = [row.is_revoked for row in store.list_refresh_tokens(user.id)]
        assert sorted(revoked) == [False, True]

    def test_revoke_all_tokens(self, auth_service, store, audit, user_factory) -> None:
        user = user_factory()
        auth_service.login(user, None, None)
        auth_service.login(user, None, None)

        auth_service.revoke_all_tokens(user.id)
        assert all(row.is_revoked for row in store.list_refresh_tokens(user.id))
        assert AuditAction.TOKENS_REVOKED.value in _actions(audit, user.id)


class TestEmailVerification:
    def test_verify_email(self, auth_service, store) -> None:
        user_id = auth_service.register("alice@example.com", PASSWORD)["user_id"]
        token = store.get_by_id(user_id).email_verification_token

        assert auth_service.verify_email(token) == {"message": "Email verified successfully"}
        verified = store.get_by_id(user_id)
        assert verified.is_email_verified
        assert verified.email_verification_token is None

    def test_token_is_single_use(self, auth_service, store) -> None:
        user_id = auth_service.register("alice@example.com", PASSWORD)["user_id"]
        token = store.get_by_id(user_id).email_verification_token
        auth_service.verify_email(token)
        with pytest.raises(BadRequestError):
            auth_service.verify_email(token)

    def test_expired_token_rejected(self, auth_service, store) -> None:
        user_id = auth_service.register("alice@example.com", PASSWORD)["user_id"]
        token = store.get_by_id(user_id).email_verification_token
        store.update_user(user_id, email_verification_expires=datetime.now(timezone.utc) - timedelta(minutes=1))
        with pytest.raises(BadRequestError):
            auth_service.verify_email(token)

    def test_resend_unknown_email_is_not_found(self, auth_service) -> None:
        with pytest.raises(NotFoundError):
            auth_service.resend_verification("nobody@example.com")

    def test_resend_for_verified_user_rejected(self, auth_service, user_factory) -> None:
        user = user_factory()
        with pytest.raises(BadRequestError):
            auth_service.resend_verification(user.email)

    def test_resend_replaces_token(self, auth_service, store) -> None:
        user_id = auth_service.register("alice@example.com", PASSWORD)["user_id"]
        old = store.get_by_id(user_id).email_verification_token
        auth_service.resend_verification("alice@example.com")
        assert store.get_by_id(user_id).email_verification_token != old


class TestPasswordReset:
    def test_message_is_identical_for_unknown_email(self, auth_service, user_factory) -> None:
        user = user_factory()
        known = auth_service.request_password_reset(user.email)
        unknown = auth_service.request_password_reset("nobody@example.com")
        assert known == unknown == {"message": RESET_REQUESTED_MESSAGE}

    def test_new_request_overwrites_old_token(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        auth_service.request_password_reset(user.email)
        first = store.get_by_id(user.id).password_reset_token
        auth_service.request_password_reset(user.email)
        second = store.get_by_id(user.id).password_reset_token

        assert first != second
        with pytest.raises(BadRequestError):
            auth_service.reset_password(first, "N3wPassword!")

    def test_reset_changes_password_and_revokes_sessions(
        self, auth_service, token_service, store, audit, user_factory
    ) -> None:
        user = user_factory()
        before = auth_service.login(user, None, None)
        auth_service.request_password_reset(user.email)
        token = store.get_by_id(user.id).password_reset_token

        auth_service.reset_password(token, "N3wPassword!")

        updated = store.get_by_id(user.id)
        assert verify_password("N3wPassword!", updated.hashed_password)
        assert updated.password_reset_token is None
        with pytest.raises(UnauthorizedError):
            token_service.validate_refresh(before.refresh_token)
        assert AuditAction.PASSWORD_RESET.value in _actions(audit, user.id)

    def test_expired_reset_token_rejected(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        auth_service.request_password_reset(user.email)
        token = store.get_by_id(user.id).password_reset_token
        store.update_user(user.id, password_reset_expires=datetime.now(timezone.utc) - timedelta(seconds=1))
        with pytest.raises(BadRequestError):
            auth_service.reset_password(token, "N3wPassword!")


class TestTwoFactor:
    def _enable(self, auth_service, user) -> tuple[str, list[str]]:
        secret = auth_service.generate_2fa_secret(user.id)["secret"]
        result = auth_service.enable_2fa(user.id, pyotp.TOTP(secret).now())
        return secret, result["backup_codes"]

    def test_generate_returns_otpauth_uri(self, auth_service, user_factory) -> None:
        user = user_factory()
        result = auth_service.generate_2fa_secret(user.id)
        assert result["otpauth_url"].startswith("otpauth://totp/")
        assert "issuer=Tetris" in result["otpauth_url"]

    def test_enable_with_wrong_code_fails(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        secret = auth_service.generate_2fa_secret(user.id)["secret"]
        totp = pyotp.TOTP(secret)
        wrong = next(c for c in ("000000", "111111", "222222") if not totp.verify(c, valid_window=2))
        with pytest.raises(BadRequestError):
            auth_service.enable_2fa(user.id, wrong)
        assert not store.get_by_id(user.id).two_factor_enabled

    def test_enable_accepts_code_two_steps_old(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        secret = auth_service.generate_2fa_secret(user.id)["secret"]
        if time.time() % 30 > 27:
            time.sleep(4)
        auth_service.enable_2fa(user.id, pyotp.TOTP(secret).at(time.time() - 60))
        assert store.get_by_id(user.id).two_factor_enabled

    def test_enable_rejects_code_three_steps_old(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        secret = auth_service.generate_2fa_secret(user.id)["secret"]
        if time.time() % 30 > 27:
            time.sleep(4)
        totp = pyotp.TOTP(secret)
        now = time.time()
        stale = totp.at(now - 90)
        if stale in {totp.at(now + 30 * step) for step in range(-2, 3)}:
            pytest.skip("stale code collides with a code inside the window")
        with pytest.raises(BadRequestError):
            auth_service.enable_2fa(user.id, stale)
        assert not store.get_by_id(user.id).two_factor_enabled

    def test_enable_before_generate_fails(self, auth_service, user_factory) -> None:
        user = user_factory()
        with pytest.raises(BadRequestError):
            auth_service.enable_2fa(user.id, "123456")

    def test_enable_returns_ten_backup_codes(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        _, codes = self._enable(auth_service, user)

        assert len(codes) == 10
        assert all(len(c) == 8 for c in codes)
        stored = store.get_by_id(user.id)
        assert stored.two_factor_enabled
        assert codes[0] not in stored.two_factor_backup_codes

    def test_generate_when_enabled_fails(self, auth_service, user_factory) -> None:
        user = user_factory()
        self._enable(auth_service, user)
        with pytest.raises(BadRequestError):
            auth_service.generate_2fa_secret(user.id)

    def test_verify_current_totp(self, auth_service, user_factory) -> None:
        user = user_factory()
        secret, _ = self._enable(auth_service, user)
        assert auth_service.verify_2fa(user.id, pyotp.TOTP(secret).now()) == {"valid": True}

    def test_backup_code_works_exactly_once(self, auth_service, store, user_factory) -> None:
        user = user_factory()
        _, codes = self._enable(auth_service, user)

        assert auth_service.verify_2fa(user.id, codes[0]) == {"valid": True, "used_backup_code": True}
        assert auth_service.verify_2fa(user.id, codes[0]) == {"valid": False}
        assert len(store.get_by_id(user.id).two_factor_backup_codes) == 9

    def test_malformed_code_rejected(self, auth_service, user_factory) -> None:
        user = user_factory()
        self._enable(auth_service, user)
        with pytest.raises(BadRequestError):
            auth_service.verify_2fa(user.id, "12ab")

    def test_verify_without_2fa_fails(self, auth_service, user_factory) -> None:
        user = user_factory()
        with pytest.raises(BadRequestError):
            auth_service.verify_2fa(user.id, "123456")

    def test_disable_clears_secret_and_codes(self, auth_service, store, audit, user_factory) -> None:
        user = user_factory()
        self._enable(auth_service, user)
        auth_service.disable_2fa(user.id)

        stored = store.get_by_id(user.id)
        assert not stored.two_factor_enabled
        assert stored.two_factor_secret is None
        assert stored.two_factor_backup_codes == []
        assert AuditAction.TWO_FACTOR_DISABLED.value in _actions(audit, user.id)


class TestOAuthAccounts:
    def test_first_oauth_login_creates_verified_user(self, auth_service, audit) -> None:
        user = auth_service.find_or_create_oauth_user("New@Example.com", "g-123", AuthProvider.GOOGLE, "New Person")

        assert user.email == "new@example.com"
        assert user.is_email_verified
        assert user.hashed_password is None
        assert user.provider == "GOOGLE"
        assert user.first_name == "New"
        assert user.last_name == "Person"
        assert AuditAction.OAUTH_REGISTERED.value in _actions(audit, user.id)

    def test_existing_local_account_is_linked(self, auth_service, audit, user_factory) -> None:
        local = user_factory(verified=False)
        linked = auth_service.find_or_create_oauth_user(local.email, "gh-7", "GITHUB")

        assert linked.id == local.id
        assert linked.provider == "GITHUB"
        assert linked.provider_id == "gh-7"
        assert linked.is_email_verified
        assert linked.hashed_password == local.hashed_password
        assert AuditAction.OAUTH_LINKED.value in _actions(audit, local.id)

    def test_returning_user_matched_by_provider_id(self, auth_service) -> None:
        first = auth_service.find_or_create_oauth_user("old@example.com", "gh-7", "GITHUB")
        again = auth_service.find_or_create_oauth_user("renamed@example.com", "gh-7", "GITHUB")
        assert again.id == first.id

    def test_oauth_login_still_checks_active(self, auth_service, user_factory) -> None:
        user_factory(active=False, provider="GITHUB", provider_id="gh-7")
        user = auth_service.find_or_create_oauth_user("alice@example.com", "gh-7", "GITHUB")
        with pytest.raises(UnauthorizedError):
            auth_service.login(user, None, None)


class TestAdministration:
    def test_deactivation_revokes_tokens(self, auth_service, store, user_factory) -> None:
        admin = user_factory("admin@example.com", roles=["ADMIN"])
        user = user_factory()
        auth_service.login(user, None, None)

        updated = auth_service.update_user(admin, user.id, is_active=False)

        assert not updated.is_active
        assert all(row.is_revoked for row in store.list_refresh_tokens(user.id))

    def test_self_deactivation_blocked(self, auth_service, user_factory) -> None:
        admin = user_factory("admin@example.com", roles=["ADMIN"])
        with pytest.raises(BadRequestError) as exc_info:
            auth_service.update_user(admin, admin.id, is_active=False)
        assert exc_info.value.code == "self_deactivation"

    def test_last_admin_cannot_be_deactivated(self, auth_service, user_factory) -> None:
        moderator = user_factory("mod@example.com", roles=["MODERATOR"])
        admin = user_factory("admin@example.com", roles=["ADMIN"])
        with pytest.raises(BadRequestError) as exc_info:
            auth_service.update_user(moderator, admin.id, is_active=False)
        assert exc_info.value.code == "last_admin"

    def test_super_admin_counts_as_admin(self, auth_service, store, user_factory) -> None:
        root = user_factory("root@example.com", roles=["SUPER_ADMIN"])
        admin = user_factory("admin@example.com", roles=["ADMIN"])
        auth_service.update_user(root, admin.id, is_active=False)
        assert not store.get_by_id(admin.id).is_active

    def test_active_admin_count_matches_whole_role_names(self, store, user_factory) -> None:
        user_factory("root@example.com", roles=["SUPER_ADMIN"])
        user_factory("admin@example.com", roles=["USER", "ADMIN"])
        user_factory("gone@example.com", roles=["ADMIN"], active=False)
        user_factory("mod@example.com", roles=["MODERATOR"])

        assert store.count_active_with_roles(["ADMIN"]) == 1
        assert store.count_active_with_roles(["ADMIN", "SUPER_ADMIN"]) == 2

    def test_unknown_role_rejected(self, auth_service, user_factory) -> None:
        admin = user_factory("admin@example.com", roles=["ADMIN"])
        user = user_factory()
        with pytest.raises(BadRequestError):
            auth_service.update_user(admin, user.id, roles=["OWNER"])

    def test_grant_is_idempotent(self, auth_service, audit, user_factory) -> None:
        admin = user_factory("admin@example.com", roles=["ADMIN"])
        user = user_factory()

        assert auth_service.grant_permission(admin, user.id, "audit", "read") is True
        assert auth_service.grant_permission(admin, user.id, "audit", "read") is False
        assert auth_service.permissions_for(user.id) == {("audit", "read")}
        assert _actions(audit, user.id).count(AuditAction.PERMISSION_GRANTED.value) == 1

    def test_revoke_permission(self, auth_service, user_factory) -> None:
        admin = user_factory("admin@example.com", roles=["ADMIN"])
        user = user_factory()
        auth_service.grant_permission(admin, user.id, "audit", "read")

        assert auth_service.revoke_permission(admin, user.id, "audit", "read") is True
        assert auth_service.permissions_for(user.id) == set()

    def test_unknown_user_not_found(self, auth_service, user_factory) -> None:
        admin = user_factory("admin@example.com", roles=["ADMIN"])
        with pytest.raises(NotFoundError):
            auth_service.grant_permission(admin, 9999, "audit", "read")
