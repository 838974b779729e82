"""
auth/ratelimit.py -- Fixed-window request counters.

Built on the storage layer of the `limits` package (the same backend slowapi
uses for the app-wide default limit), so one STORAGE URI selects in-memory
counters for development or Redis for a multi-process deployment.

Window semantics: the first hit on a key creates the counter and starts its
TTL; later hits only increment. The storage's incr() is atomic per key, which
is what makes concurrent requests count correctly.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from limits import parse
from limits.storage import Storage, storage_from_string

_PREFIX = "rate-limit"


@dataclass(frozen=True)
class RateLimitStatus:
    remaining: int
    reset: float  # epoch seconds when the current window ends


@dataclass(frozen=True)
class RouteLimit:
    """A per-route limit, parsed from a "5/minute" style setting."""

    limit: int
    window_seconds: int

    @classmethod
    def parse(cls, value: str) -> "RouteLimit":
        item = parse(value)
        return cls(limit=item.amount, window_seconds=item.get_expiry())


class RateLimitService:
    """Fixed-window counters keyed by an arbitrary string (IP, user id, composite).

    Usage:
        limiter = RateLimitService.from_uri("memory://")
        if limiter.is_rate_limited(f"login:{ip}", limit=10, window_seconds=60):
            ...
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    @classmethod
    def from_uri(cls, uri: str) -> "RateLimitService":
        return cls(storage_from_string(uri))

    @staticmethod
    def _key(key: str) -> str:
        return f"{_PREFIX}:{key}"

    def is_rate_limited(self, key: str, limit: int, window_seconds: int) -> bool:
        """Count one hit and return True if the window is now over limit."""
        current = self._storage.incr(self._key(key), window_seconds)
        return current > limit

    def get_remaining(self, key: str, limit: int) -> RateLimitStatus:
        storage_key = self._key(key)
        current = self._storage.get(storage_key)
        reset = self._storage.get_expiry(storage_key) if current else time.time()
        return RateLimitStatus(remaining=max(0, limit - current), reset=reset)

    def reset(self, key: str) -> None:
        """Clear a counter before its window would naturally expire."""
        self._storage.clear(self._key(key))

    def check(self) -> bool:
        """Return True if the backing storage is reachable."""
        return bool(self._storage.check())
