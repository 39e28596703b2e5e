"""Runtime settings for webhook delivery.

Values come from HOOKRELAY_* environment variables (or a .env file). Every
component also takes explicit constructor arguments, so settings are only
read at wiring time.
"""

from functools import lru_cache
from typing import Any, Iterable, List

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hookrelay_protocols import BackoffStrategy, RateLimitPolicy, RetryPolicy, Subscription

from hookrelay.subscriptions import LEASE_MARGIN_SECONDS


class Settings(BaseSettings):
    """Delivery subsystem settings."""

    model_config = SettingsConfigDict(
        env_prefix="HOOKRELAY_",
        env_file=".env",
        extra="ignore",
    )

    # =========================================================================
    # SWEEP WORKERS
    # =========================================================================
    sweep_interval_seconds: float = Field(default=5.0, gt=0, le=3600)
    sweep_batch_limit: int = Field(default=100, ge=1, le=10000)
    sweep_workers: int = Field(default=1, ge=1, le=64)
    max_concurrent_deliveries: int = Field(default=10, ge=1, le=1000)
    lease_seconds: float = Field(default=120.0, gt=0, le=3600)
    shutdown_grace_seconds: float = Field(default=60.0, ge=0, le=3600)

    # =========================================================================
    # RETRIES AND THROTTLING
    # =========================================================================
    default_max_retries: int = Field(default=3, ge=0, le=100)
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_seconds: float = Field(default=60.0, gt=0)
    max_delay_seconds: float = Field(default=3600.0, gt=0)
    jitter_fraction: float = Field(default=0.1, ge=0, le=1)
    throttle_delay_seconds: float = Field(default=5.0, gt=0, le=3600)
    inactive_recheck_seconds: float = Field(default=300.0, gt=0)

    # =========================================================================
    # RATE LIMITING AND CIRCUIT BREAKER
    # =========================================================================
    default_requests_per_minute: float = Field(default=60.0, gt=0)
    default_burst_size: int = Field(default=10, ge=1)
    circuit_breaker_enabled: bool = True
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_timeout_seconds: float = Field(default=300.0, gt=0)

    # =========================================================================
    # HTTP DELIVERY
    # =========================================================================
    default_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    payload_size_limit: int = Field(default=1_048_576, ge=1)
    signature_header: str = "X-Webhook-Signature"
    user_agent: str = "HookRelay/1.0"

    # =========================================================================
    # URL POLICY
    # =========================================================================
    require_https: bool = False
    allowed_domains: List[str] = Field(default_factory=list)
    blocked_domains: List[str] = Field(default_factory=list)

    # =========================================================================
    # LOGGING
    # =========================================================================
    log_level: str = "INFO"
    log_json: bool = True

    @model_validator(mode="after")
    def _check_delays(self) -> "Settings":
        if self.base_delay_seconds > self.max_delay_seconds:
            raise ValueError("base_delay_seconds must not exceed max_delay_seconds")
        return self

    @model_validator(mode="after")
    def _check_lease(self) -> "Settings":
        if self.default_timeout_seconds + LEASE_MARGIN_SECONDS > self.lease_seconds:
            raise ValueError(
                f"default_timeout_seconds must leave {LEASE_MARGIN_SECONDS:g}s of lease_seconds to spare"
            )
        return self

    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            strategy=self.backoff_strategy,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            jitter_fraction=self.jitter_fraction,
        )

    def default_rate_limit(self) -> RateLimitPolicy:
        return RateLimitPolicy(
            requests_per_minute=self.default_requests_per_minute,
            burst_size=self.default_burst_size,
        )

    def build_subscription(
        self,
        id: str,
        url: str,
        secret: str,
        event_types: Iterable[str],
        **overrides: Any,
    ) -> Subscription:
        """Subscription with timeout, retry and rate-limit defaults filled in."""
        fields = {
            "timeout_seconds": self.default_timeout_seconds,
            "max_retries": self.default_max_retries,
            "rate_limit": self.default_rate_limit(),
            "retry_policy": self.default_retry_policy(),
        }
        fields.update(overrides)
        return Subscription(id=id, url=url, secret=secret, event_types=frozenset(event_types), **fields)


@lru_cache
def get_settings() -> Settings:
    """Cached settings accessor."""
    return Settings()
