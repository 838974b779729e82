"""
auth/token_service.py -- Access/refresh token pairs and refresh-token families.

Every login starts a token family (uuid4). Each refresh revokes the presented
token and issues a new one in the same family, so at most one token per family
is live at any time. Presenting a token that is already revoked means someone
replayed an old token: either the legitimate client or an attacker is holding
a stolen copy, and we cannot tell which. The whole family is revoked, which
bounds a stolen refresh token's usefulness to "until the next rotation" and
forces both parties back to the login screen.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError

from auth.audit import AuditLog
from auth.errors import UnauthorizedError
from auth.models import AuditAction, RefreshToken, TokenPair, User
from auth.store import AuthStore
from auth.tokens import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    hash_refresh_token,
)
from core.config import Settings

logger = logging.getLogger("tetris.auth.tokens")

TOKEN_REUSE_MESSAGE = "Refresh token revoked or invalid - possible token reuse detected"


class TokenService:
    def __init__(self, store: AuthStore, audit: AuditLog, settings: Settings) -> None:
        self._store = store
        self._audit = audit
        self._settings = settings

    # ------------------------------------------------------------------
    # Issue / rotate
    # ------------------------------------------------------------------

    def issue(self, user: User, ip_address: str | None, user_agent: str | None) -> TokenPair:
        """Start a new token family for a fresh login."""
        return self._mint(user, str(uuid.uuid4()), ip_address, user_agent)

    def rotate(self, old: RefreshToken, ip_address: str | None, user_agent: str | None) -> TokenPair:
        """Revoke old and issue its successor in the same family.

        The revoke is a compare-and-set. If it matches nothing, a concurrent
        request already rotated this token, so this one is a replay.
        """
        if not self._store.revoke_refresh_token_if_active(old.id):
            self._revoke_family(old.token_family, old.user_id, ip_address, user_agent)
            raise UnauthorizedError(TOKEN_REUSE_MESSAGE, code="token_reuse")

        user = self._store.get_by_id(old.user_id)
        if user is None or not user.is_active:
            raise UnauthorizedError("User not found or inactive")
        return self._mint(user, old.token_family, ip_address, user_agent)

    def _mint(self, user: User, family: str, ip_address: str | None, user_agent: str | None) -> TokenPair:
        access = create_access_token(user.id, user.email, user.roles)
        refresh = create_refresh_token(user.id, user.email, user.roles, family)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self._settings.refresh_token_expire_seconds)
        self._store.add_refresh_token(
            RefreshToken(
                user_id=user.id,
                token_hash=hash_refresh_token(refresh),
                token_family=family,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            token_family=family,
            expires_in=self._settings.access_token_expire_seconds,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_refresh(
        self,
        raw_token: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> RefreshToken:
        """Return the live record for raw_token with its owning user attached.

        Raises UnauthorizedError for a bad signature, wrong token type, expired
        or unknown token, or an inactive owner. A missing or revoked record
        whose signed payload names a family triggers family-wide revocation and
        the distinct "token_reuse" code.
        """
        try:
            payload = decode_refresh_token(raw_token)
        except ExpiredSignatureError as exc:
            raise UnauthorizedError("Refresh token expired") from exc
        except JWTError as exc:
            raise UnauthorizedError("Invalid refresh token") from exc

        if payload.get("type") != "refresh":
            raise UnauthorizedError("Invalid token type")

        record = self._store.get_refresh_token(hash_refresh_token(raw_token))
        if record is None or record.is_revoked:
            family = payload.get("tokenFamily")
            if family:
                owner = record.user_id if record is not None else _subject(payload)
                self._revoke_family(family, owner, ip_address, user_agent)
            raise UnauthorizedError(TOKEN_REUSE_MESSAGE, code="token_reuse")

        if record.expires_at < datetime.now(timezone.utc):
            raise UnauthorizedError("Refresh token expired")

        user = self._store.get_by_id(record.user_id)
        if user is None or not user.is_active:
            raise UnauthorizedError("User not found or inactive")
        record.user = user
        return record

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, user_id: int, raw_token: str) -> int:
        """Revoke one of user_id's tokens. Returns the number of rows revoked."""
        return self._store.revoke_user_token(user_id, hash_refresh_token(raw_token))

    def revoke_all(self, user_id: int) -> int:
        return self._store.revoke_all_for_user(user_id)

    def _revoke_family(
        self,
        family: str,
        user_id: int | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        revoked = self._store.revoke_family(family)
        logger.warning("Refresh token reuse detected: family %s revoked (%d tokens)", family, revoked)
        self._audit.record(
            AuditAction.TOKEN_REUSE_DETECTED,
            user_id=user_id,
            details=f"Token family {family} revoked",
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
        )


def _subject(payload: dict) -> int | None:
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        return None
