"""Per-client rate limiting with the Token Bucket algorithm.

Each client (remote address) gets its own bucket holding max_requests
tokens that refill evenly across window_seconds. Safe for concurrent
request tasks on one event loop.
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


class TokenBucket:
    """Token bucket rate limiter.

    Tokens regenerate at a fixed rate. Each request consumes tokens.
    If no tokens available, request is rate limited.

    Args:
        capacity: Maximum tokens in bucket
        refill_rate: Tokens added per second
        clock: Callable returning the current time in seconds
    """

    def __init__(self, capacity: float, refill_rate: float, clock: Callable[[], float] = time.time):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = capacity
        self._clock = clock
        self.last_refill = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1.0) -> bool:
        """Take tokens if available; False means rate limited."""
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def available(self) -> float:
        self._refill()
        return self.tokens

    def retry_after(self, tokens: float = 1.0) -> float:
        """Seconds until tokens would be available."""
        self._refill()
        missing = tokens - self.tokens
        if missing <= 0:
            return 0.0
        return missing / self.refill_rate


@dataclass
class RateLimitStatus:
    """Outcome of one rate limit check, in RateLimit-* header terms."""

    allowed: bool
    limit: int
    remaining: int
    reset_seconds: float
    retry_after: float = 0.0

    def headers(self) -> Dict[str, str]:
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(math.ceil(self.reset_seconds)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, math.ceil(self.retry_after)))
        return headers


class ClientRateLimiter:
    """Independent token buckets keyed by client id.

    Buckets idle for a whole window are full again, so they are dropped
    and recreated on the client's next request.

    Args:
        max_requests: Requests allowed per window (0 or None = no limit)
        window_seconds: Window length the budget refills over
        clock: Callable returning the current time in seconds
    """

    def __init__(
        self,
        max_requests: Optional[int] = 1000,
        window_seconds: float = 900.0,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests or 0
        self.window_seconds = window_seconds
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = asyncio.Lock()
        self._last_prune = clock()

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0 and self.window_seconds > 0

    def _bucket(self, client_id: str) -> TokenBucket:
        bucket = self._buckets.get(client_id)
        if bucket is None:
            bucket = TokenBucket(
                capacity=float(self.max_requests),
                refill_rate=self.max_requests / self.window_seconds,
                clock=self._clock,
            )
            self._buckets[client_id] = bucket
        return bucket

    def _prune_idle(self) -> None:
        """Drop buckets untouched for at least one window (at most once per window)."""
        now = self._clock()
        if now - self._last_prune < self.window_seconds:
            return
        self._last_prune = now
        idle = [cid for cid, b in self._buckets.items() if now - b.last_refill >= self.window_seconds]
        for client_id in idle:
            del self._buckets[client_id]

    async def acquire(self, client_id: str) -> RateLimitStatus:
        """Consume one request for client_id and report the remaining budget."""
        if not self.enabled:
            return RateLimitStatus(allowed=True, limit=0, remaining=0, reset_seconds=0.0)
        async with self._lock:
            self._prune_idle()
            bucket = self._bucket(client_id)
            allowed = bucket.consume(1.0)
            tokens = bucket.tokens
            return RateLimitStatus(
                allowed=allowed,
                limit=self.max_requests,
                remaining=int(tokens),
                reset_seconds=(bucket.capacity - tokens) / bucket.refill_rate,
                retry_after=0.0 if allowed else bucket.retry_after(1.0),
            )

    async def check(self, client_id: str) -> tuple[bool, float]:
        """Consume one request for client_id.

        Returns:
            (allowed, retry_after_seconds); retry_after is 0.0 when allowed
        """
        status = await self.acquire(client_id)
        return status.allowed, status.retry_after

    async def get_stats(self) -> dict:
        """Current limiter statistics (for monitoring)."""
        async with self._lock:
            return {
                "enabled": self.enabled,
                "max_requests": self.max_requests,
                "window_seconds": self.window_seconds,
                "tracked_clients": len(self._buckets),
            }
