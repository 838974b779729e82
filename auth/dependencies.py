"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens are accepted from two places, checked in priority order:
  1. JWT cookie ("access_token") -- set by login, refresh and OAuth callbacks.
  2. Authorization: Bearer <token> header -- API clients holding the JSON body.

Refresh tokens follow the same order with the "refresh_token" cookie.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises UnauthorizedError if unauthenticated.
require_policy(name) wraps get_current_user() and raises ForbiddenError when
the named policy in auth/authorization.py does not admit the user.
rate_limited(scope) applies the per-route fixed-window limit for scope.

Every service is read from request.app.state, where the lifespan in
api/main.py puts it.
"""

from __future__ import annotations

import math
import time

from fastapi import Request
from slowapi.util import get_remote_address

from auth.authorization import ROUTE_POLICIES, is_authorized
from auth.errors import ForbiddenError, RateLimitedError, UnauthorizedError
from auth.models import RefreshToken, User
from auth.ratelimit import RouteLimit
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE, decode_access_token


def client_ip(request: Request) -> str:
    """Best-effort client address for audit rows and last-login metadata.

    Forwarding headers are client-controlled, so rate limiting keys on the
    socket address instead (see rate_limited()).
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP", "")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def user_agent(request: Request) -> str | None:
    return request.headers.get("User-Agent")


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via cookie or Bearer access token.

    Returns the active User on success, None on any failure. Never raises.
    """
    token = request.cookies.get(ACCESS_COOKIE) or _bearer_token(request)
    if not token:
        return None

    payload = decode_access_token(token)
    if not payload:
        return None
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        return None

    user = request.app.state.store.get_by_id(user_id)
    if user and user.is_active:
        return user
    return None


def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise UnauthorizedError("Authentication required.")
    return user


def get_refresh_record(request: Request) -> RefreshToken:
    """Resolve the presented refresh token to its live store record.

    Reuse of a rotated token revokes the whole family before this raises
    (see TokenService.validate_refresh).
    """
    raw = request.cookies.get(REFRESH_COOKIE) or _bearer_token(request)
    if not raw:
        raise UnauthorizedError("Refresh token required.")
    return request.app.state.token_service.validate_refresh(raw, client_ip(request), user_agent(request))


def require_policy(name: str):
    """Build a dependency enforcing ROUTE_POLICIES[name].

        @router.patch("/admin/users/{user_id}")
        def route(actor: User = Depends(require_policy("admin.users.update"))): ...
    """
    policy = ROUTE_POLICIES[name]

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        granted: set[tuple[str, str]] = set()
        if policy.permissions:
            granted = request.app.state.auth_service.permissions_for(user.id)
        if not is_authorized(user, policy, granted):
            raise ForbiddenError("Insufficient permissions.")
        return user

    return dependency


def rate_limited(scope: str):
    """Build a dependency that counts one hit for scope per socket address.

    The limit string comes from Settings.<scope>_rate_limit ("5/minute").
    """

    def dependency(request: Request) -> None:
        settings = request.app.state.settings
        if not settings.rate_limit_enabled:
            return
        route_limit = RouteLimit.parse(getattr(settings, f"{scope}_rate_limit"))
        limiter = request.app.state.rate_limiter
        key = f"{scope}:{get_remote_address(request)}"
        if limiter.is_rate_limited(key, route_limit.limit, route_limit.window_seconds):
            status = limiter.get_remaining(key, route_limit.limit)
            retry_after = max(1, math.ceil(status.reset - time.time()))
            raise RateLimitedError(retry_after=retry_after)

    return dependency
