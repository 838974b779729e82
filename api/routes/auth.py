"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  GET  /auth/csrf                  -- issue the double-submit CSRF cookie
  POST /auth/register              -- create an unverified local account
  POST /auth/login                 -- password login; sets access/refresh cookies
  POST /auth/refresh               -- rotate the refresh token (cookie or Bearer)
  POST /auth/logout                -- revoke the presented refresh token, clear cookies
  POST /auth/revoke-all            -- revoke every refresh token of the current user
  GET  /auth/verify-email?token=   -- confirm an email address
  POST /auth/resend-verification   -- new verification token (404 for unknown email)
  POST /auth/forgot-password       -- request a reset token (generic answer)
  POST /auth/reset-password        -- set a new password, revoke all sessions
  POST /auth/2fa/generate|enable|verify|disable
  GET  /auth/providers             -- configured OAuth providers (public)
  GET  /auth/me                    -- current user profile
  GET  /auth/me/audit-logs         -- current user's audit trail
  GET  /auth/me/security-events    -- current user's security-relevant events
  GET  /auth/{provider}            -- start an OAuth login
  GET  /auth/{provider}/callback   -- finish an OAuth login, redirect to the frontend

Security:
  [H2] Per-route fixed-window limits via rate_limited(); slowapi's default
       limit covers everything else.
  [C1] validate_credentials() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.

The OAuth routes are registered last so that /auth/{provider} never shadows
the fixed GET paths above it.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.models import (
    AuditEntryResponse,
    CsrfTokenResponse,
    EmailRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorEnabledResponse,
    TwoFactorSetupResponse,
    TwoFactorVerifyResponse,
)
from auth.csrf import generate_csrf_token, set_csrf_cookie
from auth.dependencies import client_ip, get_current_user, get_refresh_record, rate_limited, user_agent
from auth.errors import AuthError, UnauthorizedError
from auth.models import AuditLogEntry, RefreshToken, TokenPair, User
from auth.oauth import OAuthProfileError
from auth.service import AuthService
from auth.tokens import REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies

logger = logging.getLogger("tetris.api.auth")

# Auth policy:
# - csrf, register, login, refresh, verify-email, resend-verification,
#   forgot-password, reset-password, providers, OAuth:  public
# - logout, revoke-all, 2fa/*, me, me/*:               requires auth (get_current_user)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _token_response(tokens: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        content=TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
        ).model_dump()
    )
    set_auth_cookies(resp, tokens.access_token, tokens.refresh_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def audit_to_response(entry: AuditLogEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        action=entry.action,
        resource=entry.resource,
        details=entry.details,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        success=entry.success,
        created_at=entry.created_at,
    )


def user_to_me(user: User) -> MeResponse:
    return MeResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        roles=user.roles,
        is_active=user.is_active,
        is_email_verified=user.is_email_verified,
        two_factor_enabled=user.two_factor_enabled,
        provider=user.provider,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------


@router.get("/auth/csrf", response_model=CsrfTokenResponse)
def csrf_token(request: Request) -> JSONResponse:
    """Issue a fresh CSRF token, both in the body and as the csrf_token cookie."""
    token = generate_csrf_token()
    resp = JSONResponse(content=CsrfTokenResponse(csrf_token=token).model_dump())
    set_csrf_cookie(resp, token, secure=request.app.state.settings.secure_cookies)
    return resp


# ---------------------------------------------------------------------------
# Registration, login and session tokens
# ---------------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=RegisterResponse,
    status_code=201,
    dependencies=[Depends(rate_limited("register"))],
)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    result = _service(request).register(body.email, body.password, body.first_name, body.last_name)
    return RegisterResponse(**result)


@router.post("/auth/login", response_model=TokenResponse, dependencies=[Depends(rate_limited("login"))])
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set both token cookies.

    Wrong email and wrong password produce the same error so the response
    does not reveal which accounts exist.
    """
    service = _service(request)
    ip, ua = client_ip(request), user_agent(request)
    user = service.validate_credentials(body.email, body.password, ip, ua)
    if user is None:
        raise UnauthorizedError("Invalid credentials", code="bad_credentials")
    return _token_response(service.login(user, ip, ua))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, record: RefreshToken = Depends(get_refresh_record)) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token stops working."""
    tokens = _service(request).refresh(record, client_ip(request), user_agent(request))
    return _token_response(tokens)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Revoke the refresh token in the cookie (or all of them if none) and clear cookies."""
    result = _service(request).logout(current_user.id, request.cookies.get(REFRESH_COOKIE))
    resp = JSONResponse(content=result)
    clear_auth_cookies(resp)
    return resp


@router.post("/auth/revoke-all", response_model=MessageResponse)
def revoke_all(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Sign the current user out of every device."""
    resp = JSONResponse(content=_service(request).revoke_all_tokens(current_user.id))
    clear_auth_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Email verification and password reset
# ---------------------------------------------------------------------------


@router.get(
    "/auth/verify-email",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limited("verify_email"))],
)
def verify_email(request: Request, token: str = Query(default="", max_length=128)) -> MessageResponse:
    return MessageResponse(**_service(request).verify_email(token))


@router.post(
    "/auth/resend-verification",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limited("resend_verification"))],
)
def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    return MessageResponse(**_service(request).resend_verification(body.email))


@router.post(
    "/auth/forgot-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limited("forgot_password"))],
)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    """Always 200 with the same message, whether or not the email is registered."""
    return MessageResponse(**_service(request).request_password_reset(body.email))


@router.post(
    "/auth/reset-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limited("reset_password"))],
)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    return MessageResponse(**_service(request).reset_password(body.token, body.new_password))


# ---------------------------------------------------------------------------
# Two-factor authentication (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/2fa/generate", response_model=TwoFactorSetupResponse)
def generate_2fa(request: Request, current_user: User = Depends(get_current_user)) -> TwoFactorSetupResponse:
    return TwoFactorSetupResponse(**_service(request).generate_2fa_secret(current_user.id))


@router.post("/auth/2fa/enable", response_model=TwoFactorEnabledResponse)
def enable_2fa(
    request: Request,
    body: TwoFactorCodeRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Confirm 2FA setup. The backup codes in this response are never shown again."""
    result = _service(request).enable_2fa(current_user.id, body.token)
    resp = JSONResponse(content=TwoFactorEnabledResponse(**result).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/2fa/verify", response_model=TwoFactorVerifyResponse)
def verify_2fa(
    request: Request,
    body: TwoFactorCodeRequest,
    current_user: User = Depends(get_current_user),
) -> TwoFactorVerifyResponse:
    return TwoFactorVerifyResponse(**_service(request).verify_2fa(current_user.id, body.token))


@router.post("/auth/2fa/disable", response_model=MessageResponse)
def disable_2fa(request: Request, current_user: User = Depends(get_current_user)) -> MessageResponse:
    return MessageResponse(**_service(request).disable_2fa(current_user.id))


# ---------------------------------------------------------------------------
# Profile and audit trail (authenticated)
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Empty when no OAuth credentials are set.
    """
    return [
        OAuthProviderInfo(name=name, label=provider.label, login_url=f"/auth/{name}")
        for name, provider in request.app.state.oauth_providers.items()
    ]


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    return user_to_me(current_user)


@router.get("/auth/me/audit-logs", response_model=list[AuditEntryResponse])
def my_audit_logs(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    current_user: User = Depends(get_current_user),
) -> list[AuditEntryResponse]:
    entries = request.app.state.audit.for_user(current_user.id, limit=limit, offset=offset)
    return [audit_to_response(e) for e in entries]


@router.get("/auth/me/security-events", response_model=list[AuditEntryResponse])
def my_security_events(
    request: Request,
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
) -> list[AuditEntryResponse]:
    entries = request.app.state.audit.security_events(current_user.id, limit=limit)
    return [audit_to_response(e) for e in entries]


# ---------------------------------------------------------------------------
# OAuth (registered last -- see module docstring)
# ---------------------------------------------------------------------------


def _oauth_failed(request: Request) -> RedirectResponse:
    frontend = request.app.state.settings.frontend_url.rstrip("/")
    return RedirectResponse(f"{frontend}/login?error=oauth_failed", status_code=302)


@router.get("/auth/{provider}", include_in_schema=False)
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the configured providers, so a
    crafted name cannot produce a redirect to an arbitrary URL.
    """
    oauth_provider = request.app.state.oauth_providers.get(provider)
    if oauth_provider is None:
        return _oauth_failed(request)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await oauth_provider.authorize_redirect(request, redirect_uri)


@router.get("/auth/{provider}/callback", include_in_schema=False, name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the OAuth flow, set the token cookies and hand off to the frontend.

    Flow:
      1. Exchange the code for a verified profile (authlib checks the state).
      2. Find, link or create the local account.
      3. Apply the same verified/active/lockout checks as password login.
      4. Redirect to {FRONTEND_URL}/auth/callback?token=<access token>.
    Every failure redirects to {FRONTEND_URL}/login?error=oauth_failed.
    """
    oauth_provider = request.app.state.oauth_providers.get(provider)
    if oauth_provider is None:
        return _oauth_failed(request)

    service = _service(request)
    ip, ua = client_ip(request), user_agent(request)
    try:
        profile = await oauth_provider.exchange_code_for_profile(request)
    except (OAuthError, httpx.HTTPError):
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _oauth_failed(request)
    except OAuthProfileError as exc:
        logger.warning("OAuth login rejected for provider %r: %s", provider, exc)
        return _oauth_failed(request)

    try:
        user = await run_in_threadpool(
            service.find_or_create_oauth_user,
            profile.email,
            profile.provider_id,
            oauth_provider.provider,
            profile.name,
        )
        tokens = await run_in_threadpool(service.login, user, ip, ua)
    except AuthError as exc:
        logger.warning("OAuth login refused for %s: %s", profile.email, exc.message)
        return _oauth_failed(request)

    frontend = request.app.state.settings.frontend_url.rstrip("/")
    resp = RedirectResponse(f"{frontend}/auth/callback?{urlencode({'token': tokens.access_token})}", status_code=302)
    set_auth_cookies(resp, tokens.access_token, tokens.refresh_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
