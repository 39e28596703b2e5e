"""Rate Limiter - Token bucket per subscription.

Bounds the outbound request rate to each subscriber. Capacity is the
configured burst size; tokens refill continuously at
requests_per_minute / 60 per second. Refill is computed lazily from the
elapsed time on each acquire.

Features:
- Per-subscription policies (falls back to a default policy)
- Non-blocking try_acquire
- Retry-after hint for deferral
- Thread-safe implementation (refill + decrement happen under one lock)

Usage:
    limiter = RateLimiter(logger)
    limiter.configure("sub-123", RateLimitPolicy(requests_per_minute=120, burst_size=5))

    if not limiter.try_acquire("sub-123"):
        defer_for(limiter.retry_after("sub-123"))
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from hookrelay_protocols import ClockProtocol, LoggerProtocol, RateLimitPolicy
from hookrelay_shared import SystemClock, resolve_logger


@dataclass
class TokenBucket:
    """Token state for one subscription.

    Invariant: 0 <= tokens <= capacity.
    """
    capacity: float
    refill_rate: float
    tokens: float
    last_refill: float

    @classmethod
    def full(cls, policy: RateLimitPolicy, now: float) -> "TokenBucket":
        return cls(
            capacity=float(policy.burst_size),
            refill_rate=policy.refill_rate,
            tokens=float(policy.burst_size),
            last_refill=now,
        )

    def refill(self, now: float) -> None:
        """Add tokens for the time elapsed since the last refill."""
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
            self.last_refill = now

    def try_consume(self, now: float) -> bool:
        """Refill, then take one token if at least one is available."""
        self.refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def time_until_available(self, now: float) -> float:
        """Seconds until one full token is available (0 if available now)."""
        self.refill(now)
        if self.tokens >= 1.0:
            return 0.0
        if self.refill_rate <= 0:
            return float("inf")
        return (1.0 - self.tokens) / self.refill_rate


class RateLimiter:
    """Token bucket rate limiter keyed by subscription id.

    A rejected acquire never mutates the token count, and two concurrent
    callers can never both take the last token.
    """

    def __init__(
        self,
        logger: Optional[LoggerProtocol] = None,
        default_policy: Optional[RateLimitPolicy] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """Initialize rate limiter.

        Args:
            logger: Optional logger
            default_policy: Policy for subscriptions without their own
            clock: Time source (wall clock by default)
        """
        self._logger = resolve_logger(logger, "rate_limiter")
        self._default_policy = default_policy or RateLimitPolicy()
        self._clock = clock or SystemClock()

        self._policies: Dict[str, RateLimitPolicy] = {}
        self._buckets: Dict[str, TokenBucket] = {}

        self._lock = threading.RLock()

    def configure(self, subscription_id: str, policy: Optional[RateLimitPolicy]) -> None:
        """Set (or clear) the policy for a subscription.

        An unchanged policy keeps the current bucket. A changed policy
        rebuilds it, carrying over tokens clamped to the new capacity.
        """
        with self._lock:
            effective = policy or self._default_policy
            if self._policies.get(subscription_id) == effective:
                return
            self._policies[subscription_id] = effective

            bucket = self._buckets.get(subscription_id)
            if bucket is not None:
                now = self._clock.time()
                bucket.refill(now)
                bucket.capacity = float(effective.burst_size)
                bucket.refill_rate = effective.refill_rate
                bucket.tokens = min(bucket.tokens, bucket.capacity)

        self._logger.debug(
            "rate_limit_configured",
            subscription_id=subscription_id,
            requests_per_minute=effective.requests_per_minute,
            burst_size=effective.burst_size,
        )

    def get_policy(self, subscription_id: str) -> RateLimitPolicy:
        with self._lock:
            return self._policies.get(subscription_id, self._default_policy)

    def _bucket(self, subscription_id: str, now: float) -> TokenBucket:
        bucket = self._buckets.get(subscription_id)
        if bucket is None:
            bucket = TokenBucket.full(self.get_policy(subscription_id), now)
            self._buckets[subscription_id] = bucket
        return bucket

    def try_acquire(self, subscription_id: str) -> bool:
        """Take one token for a subscription without blocking.

        Returns:
            True if the request may proceed now
        """
        now = self._clock.time()
        with self._lock:
            allowed = self._bucket(subscription_id, now).try_consume(now)

        if not allowed:
            self._logger.debug("rate_limit_exceeded", subscription_id=subscription_id)
        return allowed

    def retry_after(self, subscription_id: str) -> float:
        """Seconds until the next token becomes available."""
        now = self._clock.time()
        with self._lock:
            return self._bucket(subscription_id, now).time_until_available(now)

    def available_tokens(self, subscription_id: str) -> float:
        """Current token count after a lazy refill."""
        now = self._clock.time()
        with self._lock:
            bucket = self._bucket(subscription_id, now)
            bucket.refill(now)
            return bucket.tokens

    def get_usage(self, subscription_id: str) -> Dict[str, Any]:
        """Snapshot of bucket state for operational tooling."""
        now = self._clock.time()
        with self._lock:
            bucket = self._bucket(subscription_id, now)
            bucket.refill(now)
            return {
                "subscription_id": subscription_id,
                "capacity": bucket.capacity,
                "available_tokens": bucket.tokens,
                "refill_rate_per_second": bucket.refill_rate,
            }

    def reset(self, subscription_id: str) -> bool:
        """Drop bucket state for a subscription (it restarts full)."""
        with self._lock:
            removed = self._buckets.pop(subscription_id, None) is not None

        if removed:
            self._logger.info("rate_limit_reset", subscription_id=subscription_id)
        return removed

    def forget(self, subscription_id: str) -> None:
        """Drop policy and bucket for a deleted subscription."""
        with self._lock:
            self._policies.pop(subscription_id, None)
            self._buckets.pop(subscription_id, None)
