"""
tests/test_oauth.py -- Unit tests for OAuth profile extraction.

The authlib client is replaced with a small fake so no network call is made.
Coroutines are driven with asyncio.run().
"""

from __future__ import annotations

import asyncio

import pytest

from auth.oauth import GitHubProvider, GoogleProvider, OAuthProfileError, build_oauth_providers
from core.config import Settings


class _FakeResponse:
    def __init__(self, payload) -> None:
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self._payload


class _FakeGitHubClient:
    def __init__(self, user: dict, emails: list[dict]) -> None:
        self._responses = {"user": user, "user/emails": emails}

    async def get(self, path: str, token=None) -> _FakeResponse:
        return _FakeResponse(self._responses[path])


class TestGoogle:
    def test_verified_userinfo(self) -> None:
        token = {"userinfo": {"email": "a@example.com", "email_verified": True, "sub": "109", "name": "A"}}
        profile = asyncio.run(GoogleProvider(client=None)._profile_from_token(token))
        assert (profile.email, profile.provider_id, profile.name) == ("a@example.com", "109", "A")

    @pytest.mark.parametrize(
        "userinfo",
        [
            {"email": "a@example.com", "sub": "109"},
            {"email": "a@example.com", "email_verified": False, "sub": "109"},
            {"email_verified": True, "sub": "109"},
        ],
    )
    def test_rejected_userinfo(self, userinfo: dict) -> None:
        with pytest.raises(OAuthProfileError):
            asyncio.run(GoogleProvider(client=None)._profile_from_token({"userinfo": userinfo}))


class TestGitHub:
    def test_primary_verified_email(self) -> None:
        client = _FakeGitHubClient(
            {"id": 583231, "login": "octocat", "name": None},
            [
                {"email": "old@example.com", "primary": False, "verified": True},
                {"email": "octo@example.com", "primary": True, "verified": True},
            ],
        )
        profile = asyncio.run(GitHubProvider(client)._profile_from_token({}))
        assert profile.email == "octo@example.com"
        assert profile.provider_id == "583231"
        assert profile.name == "octocat"

    def test_unverified_primary_rejected(self) -> None:
        client = _FakeGitHubClient(
            {"id": 1, "login": "x"},
            [{"email": "x@example.com", "primary": True, "verified": False}],
        )
        with pytest.raises(OAuthProfileError):
            asyncio.run(GitHubProvider(client)._profile_from_token({}))


class TestRegistry:
    def test_only_configured_providers_are_built(self) -> None:
        settings = Settings(_env_file=None, secret_key="k" * 32, github_client_id="id", github_client_secret="secret")
        providers = build_oauth_providers(settings)
        assert list(providers) == ["github"]
        assert isinstance(providers["github"], GitHubProvider)

    def test_none_configured(self) -> None:
        assert build_oauth_providers(Settings(_env_file=None, secret_key="k" * 32)) == {}
