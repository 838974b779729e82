"""
api/main.py -- FastAPI application entry point for the Tetris API.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests           -- method, path, status, latency, client
  2. csrf_protect           -- double-submit token check on non-safe methods
  3. SessionMiddleware      -- authlib keeps the OAuth state here
  4. SlowAPIMiddleware      -- default per-client limit from api.limiter
  5. CORSMiddleware         -- CORS headers for allowed browser origins
  6. TrustedHostMiddleware  -- rejects requests with unexpected Host headers

Lifespan builds the store and services into app.state on startup and closes
the store on shutdown. Tests call configure_services() directly with their
own store and counter storage.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.admin import router as admin_router
from api.routes.auth import router as auth_router
from auth.audit import AuditLog
from auth.csrf import CSRF_COOKIE, CSRF_HEADER, is_valid_csrf, requires_csrf
from auth.errors import AuthError, RateLimitedError
from auth.oauth import build_oauth_providers
from auth.ratelimit import RateLimitService
from auth.service import AuthService
from auth.store import AuthStore
from auth.token_service import TokenService
from core.config import Settings, get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tetris.api")

_settings = get_settings()
if _settings.debug:
    logging.getLogger("tetris").setLevel(logging.DEBUG)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def configure_services(
    app: FastAPI,
    settings: Settings,
    store: AuthStore | None = None,
    rate_limiter: RateLimitService | None = None,
) -> None:
    """Build every service and attach it to app.state.

    Dependency order: store -> audit -> tokens -> orchestrator. The rate
    limiter and OAuth providers depend only on settings.
    """
    store = store or AuthStore(settings.database_url)
    audit = AuditLog(store)
    token_service = TokenService(store, audit, settings)

    app.state.settings = settings
    app.state.store = store
    app.state.audit = audit
    app.state.token_service = token_service
    app.state.auth_service = AuthService(store, token_service, audit, settings)
    app.state.rate_limiter = rate_limiter or RateLimitService.from_uri(settings.rate_limit_storage_uri)
    app.state.oauth_providers = build_oauth_providers(settings)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Everything before yield runs on startup; everything after on shutdown."""
    logger.info("Tetris API starting up")
    configure_services(app, _settings)
    logger.info(
        "Auth initialized (oauth providers: %s, rate limiting: %s)",
        ", ".join(app.state.oauth_providers) or "none",
        "on" if _settings.rate_limit_enabled else "off",
    )

    yield

    app.state.store.close()
    logger.info("Tetris API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Tetris API",
    description="Accounts, sessions and security events for the Tetris game.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each add_middleware() call wraps everything registered before it, so the
# last one added is the first to see a request. @app.middleware("http")
# functions below are added after these and therefore sit outside them.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", CSRF_HEADER],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib stores the OAuth state value in the session between the
# authorization redirect and the callback.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.secure_cookies)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


# ---------------------------------------------------------------------------
# CSRF middleware
#
# Non-safe methods must echo the csrf_token cookie in X-CSRF-Token. OAuth
# redirect/callback paths are exempt (see auth/csrf.py).
# ---------------------------------------------------------------------------


@app.middleware("http")
async def csrf_protect(request: Request, call_next):
    if _settings.csrf_enabled and requires_csrf(request.method, request.url.path):
        if not is_valid_csrf(request.headers.get(CSRF_HEADER), request.cookies.get(CSRF_COOKIE)):
            logger.warning(
                "CSRF check failed: %s %s from %s",
                request.method,
                request.url.path,
                request.client.host if request.client else "unknown",
            )
            return _error(403, "csrf_invalid", "Invalid or missing CSRF token.")
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])
app.include_router(admin_router, tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map domain exceptions from auth/ onto their HTTP status and code."""
    response = _error(exc.status_code, exc.code, exc.message)
    if isinstance(exc, RateLimitedError):
        response.headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code == 401:
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when the slowapi default limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Not rate limited -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@limiter.exempt
@app.get("/health", tags=["Health"], response_model=HealthResponse)
def health(request: Request) -> JSONResponse:
    """Report liveness plus the database and rate-limit storage status."""
    components = {
        "database": _probe("database", request.app.state.store.ping),
        "rate_limit_storage": _probe("rate-limit storage", request.app.state.rate_limiter.check),
    }
    healthy = all(v == "up" for v in components.values())
    body = HealthResponse(status="ok" if healthy else "degraded", version=VERSION, components=components)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())


def _probe(name: str, check) -> str:
    try:
        return "up" if check() else "down"
    except Exception:
        logger.exception("Health check failed for %s", name)
        return "down"
