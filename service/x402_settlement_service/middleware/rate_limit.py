"""Rate limiting middleware."""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict

from fastapi import Request

from x402_settlement_service.core.errors import RateLimitExceeded


@dataclass
class RateLimitBucket:
    """Token bucket for rate limiting."""

    tokens: float = 0.0
    last_update: float = field(default_factory=time.monotonic)
    max_tokens: float = 120.0
    refill_rate: float = 120.0 / 60.0  # tokens per second

    def consume(self, tokens: int = 1) -> bool:
        """Try to consume tokens from the bucket.

        Returns True if tokens were consumed, False if rate limit exceeded.
        """
        now = time.monotonic()
        elapsed = now - self.last_update
        self.last_update = now

        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def time_until_available(self, tokens: int = 1) -> float:
        """Calculate time until the requested tokens will be available."""
        if self.tokens >= tokens:
            return 0.0
        needed = tokens - self.tokens
        return needed / self.refill_rate


class RateLimiter:
    """In-memory token bucket limiter keyed by client address.

    Buckets live in process memory, so each worker enforces its own budget.
    """

    def __init__(self, rpm: int = 120):
        """Initialize the rate limiter.

        Args:
            rpm: Requests per minute limit
        """
        self.rpm = rpm
        self.buckets: Dict[str, RateLimitBucket] = defaultdict(
            lambda: RateLimitBucket(
                tokens=float(rpm),
                max_tokens=float(rpm),
                refill_rate=float(rpm) / 60.0,
            )
        )

    def check(self, client_key: str) -> None:
        """Check if the request is within rate limits.

        Raises:
            RateLimitExceeded: If the client's bucket is empty
        """
        bucket = self.buckets[client_key]

        if not bucket.consume():
            retry_after = bucket.time_until_available()
            raise RateLimitExceeded(
                details={
                    "retry_after_seconds": round(retry_after, 2),
                    "limit_rpm": self.rpm,
                },
            )


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def check_rate_limit(request: Request) -> None:
    """Dependency applying the app's limiter to the calling client."""
    request.app.state.rate_limiter.check(client_key(request))
