"""
auth/tokens.py -- JWT, password hashing, one-time token and cookie utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY,
       refresh tokens with REFRESH_SECRET_KEY, so a leaked access-token key
       alone cannot mint refresh tokens. Every token carries a `type` claim
       and a unique `jti` (two tokens minted in the same second for the same
       family must still differ, because the refresh hash column is UNIQUE).

  Passwords: bcrypt with a configurable cost factor (12 by default). The
       _DUMMY_HASH constant enables timing equalization so response time does
       not reveal whether an email is registered [C1].

  One-time tokens (email verification, password reset): hex SHA-256 digest of
       32 random bytes -- 256 bits of entropy, fixed 64-char width.

  Refresh-token storage: HMAC-SHA256(SECRET_KEY, signed_token). Deterministic,
       so lookup is O(1) by hash, and a stolen DB does not yield usable tokens.

  SECRET_KEY: sourced from core.config.get_settings(), validated at startup.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext.

    rounds defaults to Settings.bcrypt_rounds. Backup codes pass the cheaper
    Settings.backup_code_rounds. Inputs longer than 72 bytes are truncated by
    bcrypt; the API layer caps passwords at 128 characters.
    """
    salt = bcrypt.gensalt(rounds=rounds or _settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Always call verify_password() even when
# the email does not exist -- bcrypt's constant work factor equalizes timing.
_DUMMY_HASH: str = hash_password("tetris_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(claims: dict, secret: str, expire_seconds: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        **claims,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + timedelta(seconds=expire_seconds),
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def create_access_token(user_id: int, email: str, roles: list[str]) -> str:
    """Encode a short-lived access JWT (type="access")."""
    claims = {"sub": str(user_id), "email": email, "roles": list(roles), "type": "access"}
    return _encode(claims, _settings.secret_key, _settings.access_token_expire_seconds)


def create_refresh_token(user_id: int, email: str, roles: list[str], token_family: str) -> str:
    """Encode a long-lived refresh JWT (type="refresh") bound to a token family."""
    claims = {
        "sub": str(user_id),
        "email": email,
        "roles": list(roles),
        "type": "refresh",
        "tokenFamily": token_family,
    }
    return _encode(claims, _settings.refresh_secret_key, _settings.refresh_token_expire_seconds)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access JWT. Returns the payload dict or None on any failure.

    A refresh token presented here fails the type check even if both kinds are
    signed with the same key.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "access" or "sub" not in payload:
        return None
    return payload


def decode_refresh_token(token: str) -> dict:
    """Decode and verify a refresh JWT.

    Raises jose.JWTError (ExpiredSignatureError included) on a bad signature or
    expiry. The type check is left to the caller so it can report a distinct
    reason.
    """
    return jwt.decode(token, _settings.refresh_secret_key, algorithms=[_ALGORITHM])


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_secure_token() -> str:
    """Hex SHA-256 digest of 32 random bytes, used for email and reset links."""
    return hashlib.sha256(secrets.token_bytes(32)).hexdigest()


def hash_refresh_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, access_token: str, refresh_token: str) -> None:
    """Write both JWTs as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite="strict": never sent on cross-site requests.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches each JWT's expiry so cookie and token expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=access_token,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=_settings.access_token_expire_seconds,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=refresh_token,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=_settings.refresh_token_expire_seconds,
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)
