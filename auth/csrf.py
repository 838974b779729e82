"""
auth/csrf.py -- Double-submit CSRF token check.

GET /auth/csrf sets a `csrf_token` cookie that JavaScript can read. Every
non-safe request must echo that value in the X-CSRF-Token header. A cross-site
attacker can make the browser send the cookie but cannot read it to forge the
header.

OAuth redirect and callback paths are exempt: the provider's redirect back to
us is a top-level GET with no header, and authlib's state parameter already
protects that round trip.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
EXEMPT_PREFIXES: tuple[str, ...] = (
    "/auth/google",
    "/auth/github",
)


def generate_csrf_token() -> str:
    """Hex SHA-256 of 32 random bytes."""
    return hashlib.sha256(secrets.token_bytes(32)).hexdigest()


def requires_csrf(method: str, path: str) -> bool:
    return method.upper() not in SAFE_METHODS and not path.startswith(EXEMPT_PREFIXES)


def is_valid_csrf(header_token: str | None, cookie_token: str | None) -> bool:
    if not header_token or not cookie_token:
        return False
    return hmac.compare_digest(header_token, cookie_token)


def set_csrf_cookie(response, token: str, secure: bool) -> None:
    response.set_cookie(
        CSRF_COOKIE,
        value=token,
        httponly=False,  # the SPA reads it to fill the header
        samesite="strict",
        secure=secure,
        max_age=24 * 60 * 60,
    )
