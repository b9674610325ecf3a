import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from utils.logger import get_logger

logger = get_logger("rate_limiter")


@dataclass
class RateLimitConfig:
    """Rate limit configuration for an API endpoint"""

    requests_per_window: int
    window_seconds: float = 1.0
    burst_limit: Optional[int] = None  # Max burst if different from rate


@dataclass
class TokenBucket:
    """Token bucket for rate limiting"""

    capacity: float
    tokens: float
    refill_rate: float  # tokens per second
    last_refill: float = field(default_factory=time.monotonic)

    def refill(self):
        """Refill tokens based on elapsed time"""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: int = 1) -> bool:
        """Try to consume tokens, returns True if successful"""
        self.refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: int = 1) -> float:
        """Calculate how long to wait for tokens to be available"""
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        needed = tokens - self.tokens
        return needed / self.refill_rate


class RateLimiter:
    """Token-bucket limiter keyed by endpoint category.

    Each ledger client owns its own limiter; nothing here is process-global.
    """

    # Public mainnet allows ~40 req/10s per IP for most methods; Helius
    # free tier is 10 req/s.
    DEFAULT_LIMITS = {
        "solana_rpc": RateLimitConfig(requests_per_window=40, window_seconds=10, burst_limit=10),
        "helius_rpc": RateLimitConfig(requests_per_window=10, window_seconds=1),
    }

    def __init__(self, limits: Optional[Dict[str, RateLimitConfig]] = None):
        self.limits: Dict[str, RateLimitConfig] = dict(self.DEFAULT_LIMITS)
        if limits:
            self.limits.update(limits)
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_bucket(self, endpoint: str) -> TokenBucket:
        """Get or create a token bucket for an endpoint"""
        if endpoint not in self._buckets:
            config = self.limits.get(endpoint, RateLimitConfig(10, 1))
            capacity = config.burst_limit or config.requests_per_window
            refill_rate = config.requests_per_window / config.window_seconds
            self._buckets[endpoint] = TokenBucket(
                capacity=capacity, tokens=capacity, refill_rate=refill_rate
            )
        return self._buckets[endpoint]

    def _get_lock(self, endpoint: str) -> asyncio.Lock:
        """Get or create a lock for an endpoint"""
        if endpoint not in self._locks:
            self._locks[endpoint] = asyncio.Lock()
        return self._locks[endpoint]

    async def acquire(self, endpoint: str, tokens: int = 1) -> float:
        """
        Acquire rate limit permission. Returns wait time (0 if immediate).
        Blocks until permission is granted.
        """
        lock = self._get_lock(endpoint)
        async with lock:
            bucket = self._get_bucket(endpoint)
            wait_time = bucket.wait_time(tokens)

            if wait_time > 0:
                logger.debug(
                    "Rate limit wait", endpoint=endpoint, wait_seconds=wait_time
                )
                await asyncio.sleep(wait_time)
                bucket.refill()

            bucket.consume(tokens)
            return wait_time


def endpoint_for_url(url: str) -> str:
    """Determine rate limit endpoint category from an RPC URL"""
    if "helius" in (url or "").lower():
        return "helius_rpc"
    return "solana_rpc"


def limiter_for_rate(url: str, requests_per_second: float) -> RateLimiter:
    """Build a limiter whose bucket for ``url`` refills at ``requests_per_second``."""
    rps = max(0.1, float(requests_per_second))
    burst = max(1, int(round(rps)))
    return RateLimiter(
        {endpoint_for_url(url): RateLimitConfig(requests_per_window=burst, window_seconds=burst / rps)}
    )
