"""
api/limiter.py -- Shared slowapi rate limiter instance.

Mounted once in api/main.py through SlowAPIMiddleware. The default limit
applies to every route per client address; the tighter per-route limits on
the auth endpoints are enforced separately by auth.dependencies.rate_limited().

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module would
get its own isolated counter and rate limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.default_rate_limit],
    storage_uri=_settings.rate_limit_storage_uri,
    enabled=_settings.rate_limit_enabled,
)
