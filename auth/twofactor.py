"""
auth/twofactor.py -- TOTP and backup-code primitives (pyotp).

Codes are RFC 6238 TOTP: 6 digits, 30-second step, SHA-1, which is what
Google Authenticator, Authy and 1Password expect from an otpauth:// URI.
"""

from __future__ import annotations

import re
import secrets

import pyotp

_TOTP_RE = re.compile(r"^\d{6}$")
_BACKUP_RE = re.compile(r"^[0-9a-f]{8}$")


def generate_secret() -> str:
    """Return a new random base32 secret (160 bits)."""
    return pyotp.random_base32(length=32)


def provisioning_uri(secret: str, email: str, issuer: str) -> str:
    """Return the otpauth:// URI an authenticator app scans as a QR code."""
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)


def verify_totp(secret: str, code: str, window: int) -> bool:
    """Validate code against secret, accepting +/- window time steps of clock skew."""
    if not _TOTP_RE.match(code):
        return False
    return pyotp.TOTP(secret).verify(code, valid_window=window)


def generate_backup_codes(count: int) -> list[str]:
    """Return count single-use codes, each 8 lowercase hex characters."""
    return [secrets.token_hex(4) for _ in range(count)]


def is_well_formed(code: str) -> bool:
    """True for a 6-digit TOTP code or an 8-hex-char backup code."""
    return bool(_TOTP_RE.match(code) or _BACKUP_RE.match(code))
