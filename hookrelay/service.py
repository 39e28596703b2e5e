"""Webhook Delivery Service - wiring and operational surface.

Builds every delivery component from Settings and exposes what event
producers and operational tooling use:

    service = WebhookDeliveryService.from_settings(subscription_source)
    await service.start()

    result = await service.dispatch(event)          # producers
    attempts = await service.list_attempts(dlv_id)  # operators
    await service.retry_now(dlv_id)

    await service.stop()
"""

from __future__ import annotations

import random
from typing import Any, Dict, List, Optional

import httpx

from hookrelay_protocols import (
    AttemptOutcome,
    ClockProtocol,
    ConfigurationError,
    Delivery,
    DeliveryAttempt,
    DeliveryNotFoundError,
    DeliveryState,
    DeliveryStoreProtocol,
    DispatchResult,
    Event,
    LoggerProtocol,
    OutcomeKind,
    SubscriptionSourceProtocol,
)
from hookrelay_shared import (
    SystemClock,
    UUIDGenerator,
    configure_logging,
    derive_delivery_id,
    resolve_logger,
)

from hookrelay.circuit_breaker import CircuitBreaker
from hookrelay.dispatcher import DeliveryDispatcher
from hookrelay.executor import DeliveryExecutor
from hookrelay.health import HealthChecker, HealthCheckResult
from hookrelay.rate_limiter import RateLimiter
from hookrelay.scheduler import DrainReport, RetryScheduler
from hookrelay.settings import Settings, get_settings
from hookrelay.signing import SignatureEngine
from hookrelay.store import InMemoryDeliveryStore, InMemoryRetryQueue
from hookrelay.subscriptions import ConfigurationIssue, SubscriptionCatalog, UrlPolicy
from hookrelay.worker import SweepWorker

TEST_EVENT_TYPE = "webhook.test"


class WebhookDeliveryService:
    """Reliable webhook delivery with retries, throttling and dead letters."""

    def __init__(
        self,
        source: SubscriptionSourceProtocol,
        settings: Optional[Settings] = None,
        *,
        store: Optional[DeliveryStoreProtocol] = None,
        queue: Optional[InMemoryRetryQueue] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[ClockProtocol] = None,
        logger: Optional[LoggerProtocol] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize service.

        Args:
            source: Subscription registration collaborator (read path)
            settings: Settings (defaults to get_settings())
            store: Delivery store (in-memory by default)
            queue: Retry queue (in-memory by default)
            http_client: Shared httpx client; created lazily if None
            clock: Time source
            logger: Optional logger
            rng: Random source for backoff jitter
        """
        self.settings = settings or get_settings()
        self._clock = clock or SystemClock()
        self._logger = resolve_logger(logger, "webhook_delivery_service")
        self._ids = UUIDGenerator()
        s = self.settings

        self.store = store or InMemoryDeliveryStore()
        self.queue = queue or InMemoryRetryQueue()
        self.signer = SignatureEngine()
        self.catalog = SubscriptionCatalog(
            source,
            url_policy=UrlPolicy(
                require_https=s.require_https,
                allowed_domains=tuple(s.allowed_domains),
                blocked_domains=tuple(s.blocked_domains),
            ),
            logger=logger,
            lease_seconds=s.lease_seconds,
        )
        self.rate_limiter = RateLimiter(
            logger=logger, default_policy=s.default_rate_limit(), clock=self._clock,
        )
        self.circuit_breaker = CircuitBreaker(
            threshold=s.circuit_breaker_threshold,
            timeout_seconds=s.circuit_breaker_timeout_seconds,
            enabled=s.circuit_breaker_enabled,
            clock=self._clock,
            logger=logger,
        )
        self.executor = DeliveryExecutor(
            self.store,
            signer=self.signer,
            http_client=http_client,
            clock=self._clock,
            logger=logger,
            signature_header=s.signature_header,
            user_agent=s.user_agent,
            payload_size_limit=s.payload_size_limit,
        )
        self.scheduler = RetryScheduler(
            self.store,
            self.queue,
            self.executor,
            self.catalog,
            rate_limiter=self.rate_limiter,
            circuit_breaker=self.circuit_breaker,
            clock=self._clock,
            logger=logger,
            default_retry_policy=s.default_retry_policy(),
            throttle_delay_seconds=s.throttle_delay_seconds,
            lease_seconds=s.lease_seconds,
            inactive_recheck_seconds=s.inactive_recheck_seconds,
            max_concurrency=s.max_concurrent_deliveries,
            rng=rng,
        )
        self.dispatcher = DeliveryDispatcher(
            self.catalog, self.store, self.scheduler, clock=self._clock, logger=logger,
        )
        self.worker = SweepWorker(
            self.scheduler,
            interval_seconds=s.sweep_interval_seconds,
            batch_limit=s.sweep_batch_limit,
            workers=s.sweep_workers,
            shutdown_grace_seconds=s.shutdown_grace_seconds,
            logger=logger,
        )
        self.health = HealthChecker(
            self.signer, self.store, self.queue, worker=self.worker, clock=self._clock,
        )

    @classmethod
    def from_settings(
        cls,
        source: SubscriptionSourceProtocol,
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ) -> "WebhookDeliveryService":
        """Configure logging from settings, then build the service."""
        settings = settings or get_settings()
        configure_logging(settings.log_level, json_output=settings.log_json)
        return cls(source, settings, **kwargs)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Start the background sweep workers."""
        await self.worker.start()

    async def stop(self) -> None:
        """Stop sweeping, letting in-flight attempts finish within the grace period."""
        await self.worker.stop()

    async def aclose(self) -> None:
        """Stop workers and release the HTTP client."""
        await self.stop()
        await self.executor.aclose()

    async def __aenter__(self) -> "WebhookDeliveryService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # =========================================================================
    # PRODUCERS
    # =========================================================================

    async def dispatch(self, event: Event) -> DispatchResult:
        """Enqueue an event for every matching subscription (no network I/O)."""
        return await self.dispatcher.dispatch(event)

    async def summarize(self, result: DispatchResult) -> DispatchResult:
        """Current delivered / failed / retry_scheduled view of a dispatch."""
        return await self.dispatcher.summarize(result)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def drain_due(self, limit: Optional[int] = None) -> DrainReport:
        """Run one sweep (for external job runners)."""
        return await self.scheduler.drain_due(limit or self.settings.sweep_batch_limit)

    async def get_delivery(self, delivery_id: str) -> Delivery:
        delivery = await self.store.get_delivery(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    async def get_delivery_state(self, delivery_id: str) -> DeliveryState:
        return (await self.get_delivery(delivery_id)).state

    async def list_attempts(self, delivery_id: str) -> List[DeliveryAttempt]:
        """Attempt history in recorded order."""
        return await self.store.list_attempts(delivery_id)

    async def retry_now(self, delivery_id: str) -> Delivery:
        return await self.scheduler.retry_now(delivery_id)

    async def cancel(self, delivery_id: str) -> Delivery:
        return await self.scheduler.cancel(delivery_id)

    async def list_dead_letters(self, limit: int = 100) -> List[Delivery]:
        return await self.store.list_by_state(DeliveryState.DEAD_LETTERED, limit)

    async def queue_size(self) -> int:
        return await self.queue.size()

    def configuration_errors(self, subscription_id: Optional[str] = None) -> List[ConfigurationIssue]:
        return self.catalog.configuration_errors(subscription_id)

    async def send_test_event(self, subscription_id: str) -> AttemptOutcome:
        """Send a synthetic webhook.test event to one subscription right now.

        Bypasses the queue, rate limiter and circuit breaker, and records
        nothing: it is a connectivity check, not a delivery.

        Raises:
            ConfigurationError: unknown subscription or invalid configuration
        """
        prepared = await self.catalog.get(subscription_id)
        if prepared is None:
            raise ConfigurationError("Unknown subscription", subscription_id=subscription_id)
        if not prepared.usable:
            raise ConfigurationError(prepared.error or "Invalid subscription", subscription_id=subscription_id)

        event = Event(
            id=self._ids.generate_prefixed("evt_test"),
            type=TEST_EVENT_TYPE,
            payload={
                "message": "This is a test webhook event",
                "subscription_id": subscription_id,
            },
            created_at=self._clock.now(),
        )
        outcome = await self.executor.send(
            prepared.subscription, event, derive_delivery_id(event.id, subscription_id), 1,
        )
        self._logger.info(
            "test_event_sent",
            subscription_id=subscription_id,
            outcome=outcome.kind.value,
            status_code=outcome.status_code,
        )
        return outcome

    async def delivery_stats(self) -> Dict[str, Any]:
        """Aggregate counts over deliveries and attempts."""
        by_state = await self.store.count_by_state()
        attempts = await self.store.all_attempts()

        by_outcome = {kind.value: 0 for kind in OutcomeKind}
        for attempt in attempts:
            by_outcome[attempt.outcome.value] += 1

        finished = (
            by_state[DeliveryState.SUCCEEDED]
            + by_state[DeliveryState.PERMANENTLY_FAILED]
            + by_state[DeliveryState.DEAD_LETTERED]
        )
        latencies = [a.latency_ms for a in attempts if a.outcome != OutcomeKind.THROTTLED]

        return {
            "deliveries": sum(by_state.values()),
            "by_state": {state.value: count for state, count in by_state.items()},
            "attempts": len(attempts),
            "attempts_by_outcome": by_outcome,
            "success_rate": (by_state[DeliveryState.SUCCEEDED] / finished) if finished else 0.0,
            "average_latency_ms": (sum(latencies) / len(latencies)) if latencies else 0.0,
            "queue_size": await self.queue.size(),
            "open_circuits": len(self.circuit_breaker.open_circuits()),
        }

    async def health_check(self) -> HealthCheckResult:
        return await self.health.check()
