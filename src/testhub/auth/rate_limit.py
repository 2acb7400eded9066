"""Per-action, per-identifier attempt throttling.

Learn: Fixed-window counters keyed by (action, identifier), where the
identifier is usually the client IP. The first hit opens a window of
`window_seconds`; every hit inside it increments the counter, and once the
counter passes the limit further hits are refused until the window ends.
A bucket whose window has ended is replaced, not incremented.

Routes depend on the RateLimiter protocol, never on a concrete class. The
in-memory implementation is process-local and unsynchronized across
processes: fine for a single API instance, and the swap point for a
shared store when the API is scaled out.
"""

import time
from dataclasses import dataclass
from typing import Callable, Protocol

from testhub.config import settings


@dataclass(frozen=True)
class RatePolicy:
    action: str
    limit: int
    window_seconds: float


def login_policy() -> RatePolicy:
    return RatePolicy("login", settings.login_rate_limit, settings.rate_limit_window_seconds)


def forgot_password_policy() -> RatePolicy:
    return RatePolicy(
        "forgot", settings.forgot_password_rate_limit, settings.rate_limit_window_seconds
    )


class RateLimiter(Protocol):
    async def hit(self, policy: RatePolicy, identifier: str) -> bool:
        """Record an attempt. Returns False once the policy limit is exceeded."""
        ...


@dataclass
class _Bucket:
    count: int
    reset_at: float


class InMemoryRateLimiter:
    """Fixed-window limiter backed by a dict.

    `clock` is injectable so tests can move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}

    async def hit(self, policy: RatePolicy, identifier: str) -> bool:
        now = self._clock()
        key = f"{policy.action}:{identifier}"
        bucket = self._buckets.get(key)

        if bucket is None or bucket.reset_at <= now:
            self._buckets[key] = _Bucket(count=1, reset_at=now + policy.window_seconds)
            self._prune(now)
            return True

        bucket.count += 1
        return bucket.count <= policy.limit

    def _prune(self, now: float) -> None:
        """Drop expired buckets so the map doesn't grow without bound."""
        if len(self._buckets) < 10_000:
            return
        expired = [k for k, b in self._buckets.items() if b.reset_at <= now]
        for k in expired:
            del self._buckets[k]
