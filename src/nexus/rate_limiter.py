"""
Nexus - Per-connection message rate limiting for the relay.

Token bucket: bursts up to ``burst`` messages are accepted, after which
tokens refill at ``messages_per_minute / 60`` per second. A rejected message
is answered with an error and is neither stored nor broadcast.

Limiting is off by default (``limits.rate_limit_per_minute = 0``).
"""

import logging
import time
from typing import Dict, Hashable

from .constants import RATE_LIMIT_MESSAGES_BURST, RATE_LIMIT_MESSAGES_PER_MINUTE

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket for one sender.

    Attributes:
        capacity: Maximum number of tokens in bucket
        refill_rate: Tokens added per second
        tokens: Current number of tokens
        last_refill: Monotonic timestamp of last refill
    """

    def __init__(self, capacity: int, refill_rate: float):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.last_refill = time.monotonic()

    def consume(self, tokens: int = 1) -> bool:
        """Consume tokens if available. Returns False when rate limited."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def reset(self) -> None:
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()


class RateLimiter:
    """Message rate limiter keyed by relay connection."""

    def __init__(
        self,
        messages_per_minute: int = RATE_LIMIT_MESSAGES_PER_MINUTE,
        burst: int = RATE_LIMIT_MESSAGES_BURST,
    ):
        """
        Initialize rate limiter.

        Args:
            messages_per_minute: Sustained messages per minute per connection;
                0 disables limiting
            burst: Maximum burst size
        """
        self.messages_per_minute = messages_per_minute
        self.burst = max(1, burst)
        self.buckets: Dict[Hashable, TokenBucket] = {}

        if self.enabled:
            logger.info(f"Rate limiter initialized: {messages_per_minute} msg/min, burst {self.burst}")
        else:
            logger.info("Rate limiting disabled")

    @property
    def enabled(self) -> bool:
        return self.messages_per_minute > 0

    def check_message(self, key: Hashable) -> bool:
        """
        Check whether one more message from ``key`` is allowed.

        Returns:
            True if allowed, False if rate limited
        """
        if not self.enabled:
            return True

        bucket = self.buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(self.burst, self.messages_per_minute / 60.0)
            self.buckets[key] = bucket

        if bucket.consume():
            return True

        logger.warning(f"Message rate limit exceeded for: {key}")
        return False

    def remove(self, key: Hashable) -> None:
        """Forget the bucket of a closed connection."""
        self.buckets.pop(key, None)
