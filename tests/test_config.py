"""
tests/test_config.py -- Unit tests for Settings validation.

Settings are built directly (not through get_settings()) so each test sees
only the values it passes. _env_file=None keeps a developer's .env out of it.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

KEY = "k" * 32


class TestSecretKeyPolicy:
    def test_debug_generates_key(self) -> None:
        settings = Settings(_env_file=None, debug=True, secret_key="")
        assert len(settings.secret_key) >= 32

    def test_production_requires_key(self) -> None:
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(_env_file=None, debug=False, secret_key="")

    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32 characters"):
            Settings(_env_file=None, debug=True, secret_key="too-short")

    def test_refresh_key_falls_back_to_secret_key(self) -> None:
        settings = Settings(_env_file=None, secret_key=KEY)
        assert settings.refresh_secret_key == KEY

    def test_short_refresh_key_rejected(self) -> None:
        with pytest.raises(ValidationError, match="REFRESH_SECRET_KEY"):
            Settings(_env_file=None, secret_key=KEY, refresh_secret_key="short")


class TestDefaults:
    def test_token_lifetimes(self) -> None:
        settings = Settings(_env_file=None, secret_key=KEY, bcrypt_rounds=12)
        assert settings.access_token_expire_seconds == 15 * 60
        assert settings.refresh_token_expire_seconds == 7 * 24 * 60 * 60
        assert settings.bcrypt_rounds == 12

    def test_bcrypt_rounds_bounds(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, secret_key=KEY, bcrypt_rounds=3)
