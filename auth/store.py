"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh tokens are stored as HMAC hashes (token_hash), never as the signed
  token string the client holds.

Concurrency:
  Every mutation that reads-then-writes runs as a single conditional UPDATE
  (compare-and-set) or inside engine.begin(), so concurrent requests cannot
  under-count failed logins, double-spend a backup code or resurrect a revoked
  refresh token. Bulk revocations are idempotent: revoking twice is harmless.

Timestamps are ISO 8601 UTC strings with microsecond precision so that string
comparison in SQL matches chronological order.

DB path: auth/tetris_auth.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import AuditLogEntry, Permission, RefreshToken, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'tetris_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # always lower-cased
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("roles", Text, nullable=False, server_default='["USER"]'),  # JSON list
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("is_email_verified", Boolean, nullable=False, server_default="0"),
    Column("email_verification_token", String(64), index=True),
    Column("email_verification_expires", String(32)),
    Column("password_reset_token", String(64), index=True),
    Column("password_reset_expires", String(32)),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("two_factor_secret", String(64)),
    Column("two_factor_enabled", Boolean, nullable=False, server_default="0"),
    Column("two_factor_backup_codes", Text),  # JSON list of bcrypt hashes
    Column("provider", String(20), nullable=False, server_default="LOCAL"),
    Column("provider_id", String(255)),
    Column("last_login_at", String(32)),
    Column("last_login_ip", String(64)),
    Column("last_login_user_agent", Text),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("token_family", String(36), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("is_revoked", Boolean, nullable=False, server_default="0"),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),
    Column("action", String(50), nullable=False, index=True),
    Column("resource", String(50), nullable=False),
    Column("details", Text),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("success", Boolean, nullable=False),
    Column("created_at", String(32), nullable=False, index=True),
)

_user_permissions = Table(
    "user_permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("resource", String(50), nullable=False),
    Column("action", String(50), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "resource", "action", name="uq_user_permission"),
)

# Columns update_user() accepts. Anything else is a programming error.
_MUTABLE_USER_FIELDS = frozenset(
    {
        "hashed_password",
        "first_name",
        "last_name",
        "roles",
        "is_active",
        "is_email_verified",
        "email_verification_token",
        "email_verification_expires",
        "password_reset_token",
        "password_reset_expires",
        "failed_login_attempts",
        "locked_until",
        "two_factor_secret",
        "two_factor_enabled",
        "two_factor_backup_codes",
        "provider",
        "provider_id",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


def _encode_field(name: str, value):
    """Convert a domain value into its column representation."""
    if name in ("roles", "two_factor_backup_codes"):
        return json.dumps(list(value)) if value is not None else None
    if isinstance(value, datetime):
        return _to_iso(value)
    return value


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for User, RefreshToken, AuditLogEntry and Permission records.

    Usage:
        store = AuthStore()
        user_id = store.create_user(User(email="alice@example.com", hashed_password=hash_password("secret")))
        user = store.get_by_email("Alice@Example.com")
        store.close()
    """

    def __init__(self, db_url: str = "") -> None:
        db_url = db_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers treat that as a Conflict -- a concurrent registration may have
        won the race after the service's existence check.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.lower(),
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    roles=json.dumps(list(user.roles)),
                    is_active=user.is_active,
                    is_email_verified=user.is_email_verified,
                    email_verification_token=user.email_verification_token,
                    email_verification_expires=_to_iso(user.email_verification_expires),
                    two_factor_backup_codes=json.dumps(user.two_factor_backup_codes),
                    provider=user.provider,
                    provider_id=user.provider_id,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_oauth_candidate(self, email: str, provider: str, provider_id: str) -> User | None:
        """Return the user matching email OR the (provider, provider_id) pair.

        An exact provider identity match wins over an email match so a user
        who changed their provider email still lands on the same account.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(
                    (_users.c.email == email.lower())
                    | ((_users.c.provider == provider) & (_users.c.provider_id == provider_id))
                )
            ).fetchall()
        if not rows:
            return None
        for row in rows:
            if row.provider == provider and row.provider_id == provider_id:
                return _row_to_user(row)
        return _row_to_user(rows[0])

    def get_by_verification_token(self, token: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email_verification_token == token)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_reset_token(self, token: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.password_reset_token == token)).fetchone()
        return _row_to_user(row) if row is not None else None

    def count_active_with_roles(self, roles) -> int:
        """Count active users holding any of roles. Roles are matched as quoted JSON strings."""
        query = (
            select(func.count())
            .select_from(_users)
            .where(_users.c.is_active.is_(True))
            .where(or_(*(_users.c.roles.like(f'%"{role}"%') for role in roles)))
        )
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Values are passed in their domain form (datetime, list, bool); this
        method converts them for storage. Unknown field names raise ValueError
        rather than being silently ignored.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        values = {name: _encode_field(name, value) for name, value in fields.items()}
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def record_failed_login(self, user_id: int, max_attempts: int, lock_until: datetime) -> tuple[int, bool]:
        """Atomically increment the failed-login counter.

        When the post-increment count reaches max_attempts, locked_until is set
        to lock_until in the same transaction. Returns (attempts, locked_now).
        """
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=_users.c.failed_login_attempts + 1)
            )
            attempts = conn.execute(
                select(_users.c.failed_login_attempts).where(_users.c.id == user_id)
            ).scalar_one()
            locked_now = attempts >= max_attempts
            if locked_now:
                conn.execute(_users.update().where(_users.c.id == user_id).values(locked_until=_to_iso(lock_until)))
        return attempts, locked_now

    def clear_failed_logins(self, user_id: int) -> None:
        """Reset the failed-login counter and lift any lockout."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(failed_login_attempts=0, locked_until=None)
            )
            conn.commit()

    def update_last_login(self, user_id: int, ip_address: str | None, user_agent: str | None) -> None:
        """Stamp last-login metadata on every successful sign-in (password or OAuth)."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(last_login_at=_now_iso(), last_login_ip=ip_address, last_login_user_agent=user_agent)
            )
            conn.commit()

    def consume_backup_code(self, user_id: int, expected: list[str], remaining: list[str]) -> bool:
        """Replace the stored backup-code list only if it still equals expected.

        Compare-and-set: two requests racing to spend the same code both read
        the same list, but only the first UPDATE matches. Returns True for the
        winner.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.two_factor_backup_codes == json.dumps(expected)))
                .values(two_factor_backup_codes=json.dumps(remaining))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    token_family=token.token_family,
                    expires_at=_to_iso(token.expires_at),
                    is_revoked=False,
                    ip_address=token.ip_address,
                    user_agent=token.user_agent,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def revoke_refresh_token_if_active(self, token_id: int) -> bool:
        """Revoke one token, but only if it is still live.

        Returns False when another request already revoked it -- the caller
        treats that as a lost rotation race, i.e. reuse.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & (_refresh_tokens.c.is_revoked == False))  # noqa: E712
                .values(is_revoked=True)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_user_token(self, user_id: int, token_hash: str) -> int:
        """Revoke a single token. user_id is checked so one user cannot revoke another's."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.user_id == user_id))
                .values(is_revoked=True)
            )
            conn.commit()
        return result.rowcount

    def revoke_family(self, token_family: str) -> int:
        """Revoke every token descending from one login. Idempotent."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update().where(_refresh_tokens.c.token_family == token_family).values(is_revoked=True)
            )
            conn.commit()
        return result.rowcount

    def revoke_all_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update().where(_refresh_tokens.c.user_id == user_id).values(is_revoked=True)
            )
            conn.commit()
        return result.rowcount

    def list_refresh_tokens(self, user_id: int) -> list[RefreshToken]:
        """Return every token row for a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    # ------------------------------------------------------------------
    # Audit log (insert + read only -- there is no update or delete)
    # ------------------------------------------------------------------

    def add_audit_entry(self, entry: AuditLogEntry) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    user_id=entry.user_id,
                    action=entry.action,
                    resource=entry.resource,
                    details=entry.details,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    success=entry.success,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_audit_entries(
        self,
        user_id: int,
        limit: int = 50,
        offset: int = 0,
        actions: list[str] | None = None,
    ) -> list[AuditLogEntry]:
        """Return a user's audit entries, newest first, optionally filtered by action."""
        query = _audit_logs.select().where(_audit_logs.c.user_id == user_id)
        if actions is not None:
            query = query.where(_audit_logs.c.action.in_(actions))
        query = query.order_by(_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit_entry(r) for r in rows]

    def count_audit_entries(self, user_id: int, action: str, since: datetime, success: bool | None = None) -> int:
        query = (
            select(func.count())
            .select_from(_audit_logs)
            .where(
                (_audit_logs.c.user_id == user_id)
                & (_audit_logs.c.action == action)
                & (_audit_logs.c.created_at >= _to_iso(since))
            )
        )
        if success is not None:
            query = query.where(_audit_logs.c.success == success)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    # ------------------------------------------------------------------
    # Permissions (ABAC)
    # ------------------------------------------------------------------

    def grant_permission(self, user_id: int, resource: str, action: str) -> bool:
        """Grant a permission. Returns False if the user already had it."""
        if self.has_permission(user_id, resource, action):
            return False
        with self.engine.connect() as conn:
            conn.execute(
                _user_permissions.insert().values(
                    user_id=user_id, resource=resource, action=action, created_at=_now_iso()
                )
            )
            conn.commit()
        return True

    def revoke_permission(self, user_id: int, resource: str, action: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_permissions.delete().where(
                    (_user_permissions.c.user_id == user_id)
                    & (_user_permissions.c.resource == resource)
                    & (_user_permissions.c.action == action)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def has_permission(self, user_id: int, resource: str, action: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                _user_permissions.select().where(
                    (_user_permissions.c.user_id == user_id)
                    & (_user_permissions.c.resource == resource)
                    & (_user_permissions.c.action == action)
                )
            ).fetchone()
        return row is not None

    def get_permissions(self, user_id: int) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_permissions.select()
                .where(_user_permissions.c.user_id == user_id)
                .order_by(_user_permissions.c.resource, _user_permissions.c.action)
            ).fetchall()
        return [Permission(user_id=r.user_id, resource=r.resource, action=r.action) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        roles=json.loads(row.roles) if row.roles else [],
        is_active=bool(row.is_active),
        is_email_verified=bool(row.is_email_verified),
        email_verification_token=row.email_verification_token,
        email_verification_expires=_from_iso(row.email_verification_expires),
        password_reset_token=row.password_reset_token,
        password_reset_expires=_from_iso(row.password_reset_expires),
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=_from_iso(row.locked_until),
        two_factor_secret=row.two_factor_secret,
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_backup_codes=json.loads(row.two_factor_backup_codes) if row.two_factor_backup_codes else [],
        provider=row.provider,
        provider_id=row.provider_id,
        last_login_at=_from_iso(row.last_login_at),
        last_login_ip=row.last_login_ip,
        last_login_user_agent=row.last_login_user_agent,
        created_at=_from_iso(row.created_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        token_family=row.token_family,
        expires_at=_from_iso(row.expires_at),
        is_revoked=bool(row.is_revoked),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=_from_iso(row.created_at),
    )


def _row_to_audit_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        resource=row.resource,
        details=row.details,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        success=bool(row.success),
        created_at=_from_iso(row.created_at),
    )
