"""HookRelay - reliable webhook delivery.

At-least-once delivery of domain events to subscriber endpoints with
signed payloads, per-subscription rate limiting, bounded retries with
backoff, and a queryable dead-letter state.

Components (leaves first):
- signing.SignatureEngine: HMAC sign/verify
- filters.FilterEvaluator: per-event-type payload predicates
- rate_limiter.RateLimiter: per-subscription token buckets
- executor.DeliveryExecutor: one HTTP attempt, classified
- scheduler.RetryScheduler: backoff, throttles, dead letters, sweeps
- dispatcher.DeliveryDispatcher: event -> queued deliveries
- service.WebhookDeliveryService: wiring and operational surface
"""

from hookrelay.circuit_breaker import CircuitBreaker
from hookrelay.dispatcher import DeliveryDispatcher
from hookrelay.executor import DeliveryExecutor, classify_response, parse_retry_after
from hookrelay.filters import FilterEvaluator, compile_filter_rules
from hookrelay.health import ComponentHealth, ComponentStatus, HealthChecker, HealthCheckResult
from hookrelay.rate_limiter import RateLimiter, TokenBucket
from hookrelay.scheduler import DrainReport, RetryScheduler, base_backoff, compute_backoff
from hookrelay.service import TEST_EVENT_TYPE, WebhookDeliveryService
from hookrelay.settings import Settings, get_settings
from hookrelay.signing import SignatureEngine, sign, verify
from hookrelay.store import InMemoryDeliveryStore, InMemoryRetryQueue
from hookrelay.subscriptions import (
    ConfigurationIssue,
    InMemorySubscriptionSource,
    PreparedSubscription,
    SubscriptionCatalog,
    UrlPolicy,
    validate_url,
)
from hookrelay.worker import SweepWorker

__all__ = [
    # Service
    "WebhookDeliveryService",
    "TEST_EVENT_TYPE",
    "Settings",
    "get_settings",
    # Components
    "CircuitBreaker",
    "DeliveryDispatcher",
    "DeliveryExecutor",
    "FilterEvaluator",
    "RateLimiter",
    "RetryScheduler",
    "SignatureEngine",
    "SweepWorker",
    "TokenBucket",
    # Stores
    "InMemoryDeliveryStore",
    "InMemoryRetryQueue",
    "InMemorySubscriptionSource",
    # Subscriptions
    "ConfigurationIssue",
    "PreparedSubscription",
    "SubscriptionCatalog",
    "UrlPolicy",
    "validate_url",
    # Health
    "ComponentHealth",
    "ComponentStatus",
    "HealthChecker",
    "HealthCheckResult",
    # Functions
    "base_backoff",
    "classify_response",
    "compile_filter_rules",
    "compute_backoff",
    "parse_retry_after",
    "sign",
    "verify",
    # Reports
    "DrainReport",
]
