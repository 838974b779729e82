"""
auth/audit.py -- Append-only audit log of security-relevant events.

record() never raises. A failed audit write is logged locally and swallowed so
that logging a security event can never block the login, logout or reset it
describes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from auth.models import AuditAction, AuditLogEntry
from auth.store import AuthStore

logger = logging.getLogger("tetris.auth.audit")

# Fixed allow-list for the "security events" view.
SECURITY_ACTIONS: tuple[str, ...] = (
    AuditAction.LOGIN_FAILED.value,
    AuditAction.PASSWORD_RESET.value,
    AuditAction.TWO_FACTOR_ENABLED.value,
    AuditAction.TWO_FACTOR_DISABLED.value,
    AuditAction.TOKENS_REVOKED.value,
    AuditAction.ACCOUNT_LOCKED.value,
    AuditAction.TOKEN_REUSE_DETECTED.value,
)


class AuditLog:
    def __init__(self, store: AuthStore) -> None:
        self._store = store

    def record(
        self,
        action: AuditAction | str,
        resource: str = "auth",
        *,
        user_id: int | None = None,
        details: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        success: bool = True,
    ) -> None:
        entry = AuditLogEntry(
            action=action.value if isinstance(action, AuditAction) else action,
            resource=resource,
            user_id=user_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
        )
        try:
            self._store.add_audit_entry(entry)
        except Exception:
            logger.exception("Failed to write audit event %s for user %s", entry.action, user_id)

    def for_user(self, user_id: int, limit: int = 50, offset: int = 0) -> list[AuditLogEntry]:
        """Return a page of the user's events, newest first."""
        return self._store.list_audit_entries(user_id, limit=limit, offset=offset)

    def failed_login_count(self, user_id: int, hours: int = 24) -> int:
        """Count LOGIN_FAILED events for the user in the trailing window."""
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        return self._store.count_audit_entries(user_id, AuditAction.LOGIN_FAILED.value, since, success=False)

    def security_events(self, user_id: int, limit: int = 20) -> list[AuditLogEntry]:
        return self._store.list_audit_entries(user_id, limit=limit, actions=list(SECURITY_ACTIONS))
