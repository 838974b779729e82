"""
auth/oauth.py -- OAuth providers on top of the authlib Starlette client.

Each provider is an OAuthProvider with two capabilities:
  authorize_redirect(request, redirect_uri) -- send the browser to the provider.
  exchange_code_for_profile(request)        -- trade the callback's code for a
                                               normalized OAuthProfile.

The orchestrator only ever sees OAuthProfile(email, provider_id, name), so it
treats Google and GitHub identically in find_or_create_oauth_user().

Only providers with both client ID and secret configured are built.

Security notes:
  [H1] Email verification at the provider is mandatory. exchange_code_for_profile()
       raises OAuthProfileError if the provider does not confirm the email is
       verified. OAuth-sourced emails are then trusted without our own
       confirmation flow, so this check is what makes that safe.

  The OAuth state parameter (CSRF protection for the redirect round trip) is
  handled by authlib via Starlette SessionMiddleware.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from authlib.integrations.starlette_client import OAuth

from auth.models import AuthProvider
from core.config import Settings

logger = logging.getLogger("tetris.auth.oauth")


class OAuthProfileError(ValueError):
    """The provider's response cannot be turned into a trusted profile."""


@dataclass(frozen=True)
class OAuthProfile:
    email: str
    provider_id: str
    name: str | None = None


class OAuthProvider:
    """Base class. Subclasses set name/provider and implement _profile_from_token()."""

    name: str = ""
    label: str = ""
    provider: AuthProvider = AuthProvider.LOCAL

    def __init__(self, client) -> None:
        self._client = client

    async def authorize_redirect(self, request, redirect_uri: str):
        return await self._client.authorize_redirect(request, redirect_uri)

    async def exchange_code_for_profile(self, request) -> OAuthProfile:
        """Exchange the authorization code on request for a verified profile.

        Raises authlib's OAuthError if the exchange fails and OAuthProfileError
        if the provider's data is unusable.
        """
        token = await self._client.authorize_access_token(request)
        return await self._profile_from_token(token)

    async def _profile_from_token(self, token: dict) -> OAuthProfile:
        raise NotImplementedError


class GoogleProvider(OAuthProvider):
    """Google via OIDC discovery. The id_token's userinfo carries everything."""

    name = "google"
    label = "Google"
    provider = AuthProvider.GOOGLE

    async def _profile_from_token(self, token: dict) -> OAuthProfile:
        userinfo = token.get("userinfo")
        if not userinfo:
            raise OAuthProfileError("google OAuth: no userinfo in token response")

        # [H1] Some providers omit email_verified entirely -- treat that as unverified.
        if not userinfo.get("email_verified", False):
            raise OAuthProfileError("google OAuth: email is not verified")

        email = userinfo.get("email")
        subject_id = userinfo.get("sub")
        if not email or not subject_id:
            raise OAuthProfileError("google OAuth: missing email or sub claim in userinfo")

        return OAuthProfile(email=email, provider_id=str(subject_id), name=userinfo.get("name"))


class GitHubProvider(OAuthProvider):
    """GitHub with static endpoints.

    GitHub does not include the email in the access token. Two API calls are
    required: GET /user for the stable numeric ID and display name, and
    GET /user/emails for the primary verified address.
    """

    name = "github"
    label = "GitHub"
    provider = AuthProvider.GITHUB

    async def _profile_from_token(self, token: dict) -> OAuthProfile:
        resp = await self._client.get("user", token=token)
        resp.raise_for_status()
        profile = resp.json()

        emails_resp = await self._client.get("user/emails", token=token)
        emails_resp.raise_for_status()

        # [H1] Only the entry with both primary=true AND verified=true is accepted.
        email = next(
            (e["email"] for e in emails_resp.json() if e.get("primary") and e.get("verified")),
            None,
        )
        if not email:
            raise OAuthProfileError(
                "GitHub OAuth: no primary verified email found. "
                "The user must verify their email address on GitHub before logging in."
            )

        return OAuthProfile(
            email=email,
            provider_id=str(profile["id"]),
            name=profile.get("name") or profile.get("login"),
        )


def build_oauth_providers(settings: Settings, registry: OAuth | None = None) -> dict[str, OAuthProvider]:
    """Register every configured provider with authlib and wrap it.

    Returns {provider name: OAuthProvider}. Called once from the app lifespan.
    """
    registry = registry or OAuth()
    providers: dict[str, OAuthProvider] = {}

    if settings.google_client_id and settings.google_client_secret:
        registry.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        providers["google"] = GoogleProvider(registry.create_client("google"))
        logger.info("Google OAuth provider registered")

    if settings.github_client_id and settings.github_client_secret:
        registry.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        providers["github"] = GitHubProvider(registry.create_client("github"))
        logger.info("GitHub OAuth provider registered")

    return providers
