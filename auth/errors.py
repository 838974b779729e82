"""
auth/errors.py -- Domain exceptions raised by the auth services.

The services never import FastAPI. They raise these instead and the API layer
maps them onto HTTP responses in one exception handler (api/main.py), using
status_code and code from the exception class.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for expected, client-facing auth failures."""

    status_code: int = 400
    code: str = "auth_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class BadRequestError(AuthError):
    status_code = 400
    code = "bad_request"


class UnauthorizedError(AuthError):
    status_code = 401
    code = "unauthorized"


class ForbiddenError(AuthError):
    status_code = 403
    code = "forbidden"


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"


class ConflictError(AuthError):
    status_code = 409
    code = "conflict"


class RateLimitedError(AuthError):
    """Raised when a fixed-window counter is over its limit.

    retry_after is the number of seconds until the window resets.
    """

    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "Too many requests.", *, retry_after: int = 60) -> None:
        super().__init__(message)
        self.retry_after = retry_after
