"""Retry Scheduler - timing and bookkeeping of delivery attempts.

Owns the retry queue. Every HTTP call, first attempts included, originates
from drain_due(): the dispatcher only enqueues attempt 1 as immediately
eligible.

Outcome handling (schedule_next):
- success / permanent_failure: finalize, remove the queue entry
- retryable_failure: dead-letter once attempt_number >= max_retries,
  otherwise back off and enqueue attempt_number + 1
- throttled (HTTP 429): re-enqueue the same attempt number after
  Retry-After (or the fixed throttle delay); no budget consumed

Local deferrals (rate limiter empty, circuit open, subscription inactive)
happen before the attempt starts: no state change, no attempt record, no
budget consumed.

A delivery whose attempt is still running in this process is never started
again, even if its lease expired in the meantime. Subscription timeouts are
kept below the lease at configuration time, so another process can only
reclaim an entry whose owner stopped.

Backoff (before jitter):
- exponential: min(max_delay, base_delay * 2 ** (n - 1))
- linear:      min(max_delay, base_delay * n)
- fixed:       min(max_delay, base_delay)
Jitter adds a uniform random value in [0, backoff * jitter_fraction].
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set

from hookrelay_protocols import (
    AttemptOutcome,
    BackoffStrategy,
    ClockProtocol,
    Delivery,
    DeliveryNotFoundError,
    DeliveryState,
    DeliveryStateError,
    DeliveryStoreProtocol,
    LoggerProtocol,
    OutcomeKind,
    RetryPolicy,
    RetryQueueEntry,
    Subscription,
    SubscriptionSourceError,
)
from hookrelay_shared import SystemClock, UUIDGenerator, resolve_logger

from hookrelay import metrics
from hookrelay.circuit_breaker import CircuitBreaker
from hookrelay.executor import DeliveryExecutor
from hookrelay.rate_limiter import RateLimiter
from hookrelay.store import InMemoryRetryQueue
from hookrelay.subscriptions import SubscriptionCatalog


# =============================================================================
# BACKOFF
# =============================================================================

def base_backoff(policy: RetryPolicy, attempt_number: int) -> float:
    """Delay after a failed attempt, ignoring jitter.

    Non-decreasing in attempt_number and never above max_delay_seconds.
    """
    n = max(1, attempt_number)
    if policy.strategy == BackoffStrategy.LINEAR:
        delay = policy.base_delay_seconds * n
    elif policy.strategy == BackoffStrategy.FIXED:
        delay = policy.base_delay_seconds
    else:
        # Cap the exponent so huge attempt numbers cannot overflow a float.
        delay = policy.base_delay_seconds * (2 ** min(n - 1, 64))
    return min(policy.max_delay_seconds, delay)


def compute_backoff(
    policy: RetryPolicy,
    attempt_number: int,
    rng: Optional[random.Random] = None,
) -> float:
    """Backoff with jitter in [0, backoff * jitter_fraction] added."""
    delay = base_backoff(policy, attempt_number)
    if policy.jitter_fraction > 0:
        delay += (rng or random).uniform(0, delay * policy.jitter_fraction)
    return delay


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True)
class SchedulePlan:
    """What happens to a delivery after one attempt."""
    target: DeliveryState
    next_attempt_number: int
    eligible_at: Optional[datetime] = None
    backoff_seconds: float = 0.0
    consumes_budget: bool = True


@dataclass
class DrainReport:
    """Counters for one drain_due() sweep."""
    claimed: int = 0
    succeeded: int = 0
    permanently_failed: int = 0
    retry_scheduled: int = 0
    dead_lettered: int = 0
    throttled: int = 0
    deferred: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


_STATE_COUNTERS = {
    DeliveryState.SUCCEEDED: "succeeded",
    DeliveryState.PERMANENTLY_FAILED: "permanently_failed",
    DeliveryState.PENDING_RETRY: "retry_scheduled",
    DeliveryState.DEAD_LETTERED: "dead_lettered",
}


class RetryScheduler:
    """Schedules, executes and finalizes delivery attempts."""

    def __init__(
        self,
        store: DeliveryStoreProtocol,
        queue: InMemoryRetryQueue,
        executor: DeliveryExecutor,
        catalog: SubscriptionCatalog,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        clock: Optional[ClockProtocol] = None,
        logger: Optional[LoggerProtocol] = None,
        default_retry_policy: Optional[RetryPolicy] = None,
        throttle_delay_seconds: float = 5.0,
        lease_seconds: float = 120.0,
        inactive_recheck_seconds: float = 300.0,
        max_concurrency: int = 10,
        rng: Optional[random.Random] = None,
    ):
        """Initialize scheduler.

        Args:
            store: Delivery records and attempt history
            queue: Retry queue with leased claims
            executor: Performs HTTP attempts
            catalog: Validated subscription view
            rate_limiter: Per-subscription token buckets (None disables)
            circuit_breaker: Per-subscription breaker (None disables)
            clock: Time source
            logger: Optional logger
            default_retry_policy: Used when a subscription has none
            throttle_delay_seconds: Fixed deferral after a throttle
            lease_seconds: How long a claimed entry stays invisible
            inactive_recheck_seconds: Deferral for inactive subscriptions
            max_concurrency: Parallel attempts within one drain
            rng: Random source for jitter
        """
        self._store = store
        self._queue = queue
        self._executor = executor
        self._catalog = catalog
        self._rate_limiter = rate_limiter
        self._circuit_breaker = circuit_breaker
        self._clock = clock or SystemClock()
        self._logger = resolve_logger(logger, "retry_scheduler")
        self._default_retry_policy = default_retry_policy or RetryPolicy()
        self._throttle_delay = throttle_delay_seconds
        self._lease_seconds = lease_seconds
        self._inactive_recheck = inactive_recheck_seconds
        self._max_concurrency = max_concurrency
        self._rng = rng or random.Random()
        self._worker_id = UUIDGenerator().generate_prefixed("sweep")
        self._executing: Set[str] = set()

    def retry_policy_for(self, subscription: Subscription) -> RetryPolicy:
        return subscription.retry_policy or self._default_retry_policy

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    async def schedule_initial(self, delivery: Delivery) -> RetryQueueEntry:
        """Enqueue attempt 1 as immediately eligible."""
        now = self._clock.now()
        entry = RetryQueueEntry(
            delivery_id=delivery.delivery_id,
            subscription_id=delivery.subscription_id,
            event_id=delivery.event.id,
            attempt_number=1,
            eligible_at=now,
        )
        await self._queue.upsert(entry)
        await self._store.update_fields(delivery.delivery_id, next_attempt_at=now, updated_at=now)
        metrics.queue_depth_observed(await self._queue.size())
        return entry

    def plan(
        self,
        subscription: Subscription,
        attempt_number: int,
        outcome: AttemptOutcome,
    ) -> SchedulePlan:
        """Decide the next state for a delivery from an attempt outcome."""
        now = self._clock.now()
        policy = self.retry_policy_for(subscription)

        if outcome.kind == OutcomeKind.SUCCESS:
            return SchedulePlan(DeliveryState.SUCCEEDED, attempt_number)
        if outcome.kind == OutcomeKind.PERMANENT_FAILURE:
            return SchedulePlan(DeliveryState.PERMANENTLY_FAILED, attempt_number)
        if outcome.kind == OutcomeKind.THROTTLED:
            delay = outcome.retry_after_seconds
            if delay is None:
                delay = self._throttle_delay
            delay = min(delay, policy.max_delay_seconds)
            return SchedulePlan(
                target=DeliveryState.PENDING_RETRY,
                next_attempt_number=attempt_number,
                eligible_at=now + timedelta(seconds=delay),
                backoff_seconds=delay,
                consumes_budget=False,
            )

        if attempt_number >= subscription.max_retries:
            return SchedulePlan(DeliveryState.DEAD_LETTERED, attempt_number)
        backoff = compute_backoff(policy, attempt_number, self._rng)
        return SchedulePlan(
            target=DeliveryState.PENDING_RETRY,
            next_attempt_number=attempt_number + 1,
            eligible_at=now + timedelta(seconds=backoff),
            backoff_seconds=backoff,
        )

    async def schedule_next(
        self,
        delivery: Delivery,
        subscription: Subscription,
        attempt_number: int,
        outcome: AttemptOutcome,
        plan: Optional[SchedulePlan] = None,
    ) -> DeliveryState:
        """Apply an attempt outcome to an in-flight delivery.

        Returns:
            The delivery's new state
        """
        plan = plan or self.plan(subscription, attempt_number, outcome)
        now = self._clock.now()
        changes: Dict[str, Any] = {
            "updated_at": now,
            "next_attempt_at": plan.eligible_at,
            "last_status_code": outcome.status_code,
            "last_error": None if outcome.is_success else outcome.detail,
        }
        if plan.consumes_budget:
            changes["attempts_made"] = attempt_number
        else:
            changes["throttle_count"] = delivery.throttle_count + 1

        updated = await self._store.transition(
            delivery.delivery_id, (DeliveryState.IN_FLIGHT,), plan.target, **changes,
        )

        if plan.target.is_terminal:
            await self._queue.remove(delivery.delivery_id)
        else:
            await self._queue.upsert(RetryQueueEntry(
                delivery_id=delivery.delivery_id,
                subscription_id=subscription.id,
                event_id=delivery.event.id,
                attempt_number=plan.next_attempt_number,
                eligible_at=plan.eligible_at or now,
                backoff_seconds=plan.backoff_seconds,
            ))

        self._record_circuit(subscription.id, outcome)
        self._log_transition(updated, attempt_number, outcome, plan)
        return updated.state

    def _record_circuit(self, subscription_id: str, outcome: AttemptOutcome) -> None:
        if self._circuit_breaker is None:
            return
        if outcome.kind == OutcomeKind.RETRYABLE_FAILURE:
            self._circuit_breaker.record_failure(subscription_id)
        elif outcome.kind in (OutcomeKind.SUCCESS, OutcomeKind.PERMANENT_FAILURE):
            self._circuit_breaker.record_success(subscription_id)
        else:
            self._circuit_breaker.release_trial(subscription_id)

    def _log_transition(
        self,
        delivery: Delivery,
        attempt_number: int,
        outcome: AttemptOutcome,
        plan: SchedulePlan,
    ) -> None:
        context = dict(
            delivery_id=delivery.delivery_id,
            subscription_id=delivery.subscription_id,
            attempt=attempt_number,
            outcome=outcome.kind.value,
            state=delivery.state.value,
        )
        if delivery.state == DeliveryState.DEAD_LETTERED:
            metrics.dead_letter_recorded()
            self._logger.error("delivery_dead_lettered", error=delivery.last_error, **context)
        elif delivery.state == DeliveryState.PERMANENTLY_FAILED:
            self._logger.warning("delivery_permanently_failed", error=delivery.last_error, **context)
        elif delivery.state == DeliveryState.PENDING_RETRY:
            if outcome.is_throttle:
                metrics.throttle_recorded("http_429")
            self._logger.info(
                "delivery_retry_scheduled",
                next_attempt=plan.next_attempt_number,
                delay_seconds=round(plan.backoff_seconds, 3),
                **context,
            )
        else:
            self._logger.info("delivery_succeeded", **context)

    # =========================================================================
    # SWEEP
    # =========================================================================

    async def drain_due(self, limit: int = 100, worker_id: Optional[str] = None) -> DrainReport:
        """Claim up to `limit` due entries and execute them.

        Entries are leased to this worker, so concurrent sweeps never execute
        the same delivery twice.
        """
        owner = worker_id or self._worker_id
        report = DrainReport()
        entries = await self._queue.claim_due(
            self._clock.now(), limit, owner, self._lease_seconds,
        )
        report.claimed = len(entries)

        if entries:
            semaphore = asyncio.Semaphore(self._max_concurrency)

            async def run(entry: RetryQueueEntry) -> None:
                async with semaphore:
                    await self._process(entry, owner, report)

            await asyncio.gather(*(run(entry) for entry in entries))

            self._logger.debug("drain_completed", worker_id=owner, **report.to_dict())

        metrics.queue_depth_observed(await self._queue.size())
        return report

    async def _defer(
        self,
        entry: RetryQueueEntry,
        owner: str,
        seconds: float,
        reason: str,
    ) -> None:
        eligible_at = self._clock.now() + timedelta(seconds=seconds)
        await self._queue.release(entry.delivery_id, owner, eligible_at)
        await self._store.update_fields(entry.delivery_id, next_attempt_at=eligible_at)
        self._logger.debug(
            "delivery_deferred",
            delivery_id=entry.delivery_id,
            subscription_id=entry.subscription_id,
            reason=reason,
            delay_seconds=round(seconds, 3),
        )

    async def _process(self, entry: RetryQueueEntry, owner: str, report: DrainReport) -> None:
        if entry.delivery_id in self._executing:
            # Lease expired while the attempt is still running here.
            await self._queue.release(
                entry.delivery_id,
                owner,
                self._clock.now() + timedelta(seconds=self._lease_seconds),
            )
            self._logger.warning(
                "delivery_still_in_flight",
                delivery_id=entry.delivery_id,
                worker_id=owner,
            )
            report.skipped += 1
            return

        self._executing.add(entry.delivery_id)
        try:
            await self._process_claimed(entry, owner, report)
        finally:
            self._executing.discard(entry.delivery_id)

    def _forget_subscription(self, subscription_id: str) -> None:
        if self._rate_limiter is not None:
            self._rate_limiter.forget(subscription_id)
        if self._circuit_breaker is not None:
            self._circuit_breaker.forget(subscription_id)

    def _release_trial(self, subscription_id: str) -> None:
        if self._circuit_breaker is not None:
            self._circuit_breaker.release_trial(subscription_id)

    async def _process_claimed(self, entry: RetryQueueEntry, owner: str, report: DrainReport) -> None:
        delivery = await self._store.get_delivery(entry.delivery_id)
        if delivery is None or delivery.state.is_terminal:
            await self._queue.remove(entry.delivery_id)
            report.skipped += 1
            return

        try:
            prepared = await self._catalog.get(entry.subscription_id)
        except SubscriptionSourceError:
            await self._defer(entry, owner, self._throttle_delay, "subscription_source_error")
            report.deferred += 1
            return

        if prepared is None:
            self._forget_subscription(entry.subscription_id)
        if prepared is None or not prepared.subscription.active or not prepared.usable:
            await self._defer(entry, owner, self._inactive_recheck, "subscription_unavailable")
            report.deferred += 1
            return
        subscription = prepared.subscription

        if self._circuit_breaker is not None and not self._circuit_breaker.allow(subscription.id):
            wait = max(self._circuit_breaker.retry_after(subscription.id), self._throttle_delay)
            await self._defer(entry, owner, wait, "circuit_open")
            metrics.throttle_recorded("circuit_open")
            report.deferred += 1
            return

        if self._rate_limiter is not None:
            self._rate_limiter.configure(subscription.id, subscription.rate_limit)
            if not self._rate_limiter.try_acquire(subscription.id):
                self._release_trial(subscription.id)
                await self._defer(entry, owner, self._throttle_delay, "rate_limited")
                await self._store.update_fields(
                    entry.delivery_id, throttle_count=delivery.throttle_count + 1,
                )
                metrics.throttle_recorded("rate_limited")
                report.throttled += 1
                return

        attempt_number = delivery.attempts_made + 1
        if delivery.state == DeliveryState.IN_FLIGHT:
            # The lost attempt may have been recorded before its outcome was applied.
            history = await self._store.list_attempts(delivery.delivery_id)
            attempt_number = 1 + sum(1 for a in history if a.outcome != OutcomeKind.THROTTLED)
        if attempt_number != entry.attempt_number:
            self._logger.warning(
                "retry_entry_attempt_mismatch",
                delivery_id=delivery.delivery_id,
                entry_attempt=entry.attempt_number,
                expected_attempt=attempt_number,
            )

        if delivery.state == DeliveryState.IN_FLIGHT:
            # Previous owner's lease expired before it reported an outcome.
            self._logger.warning("delivery_lease_recovered", delivery_id=delivery.delivery_id)
        else:
            try:
                delivery = await self._store.transition(
                    delivery.delivery_id,
                    (DeliveryState.QUEUED, DeliveryState.PENDING_RETRY),
                    DeliveryState.IN_FLIGHT,
                    updated_at=self._clock.now(),
                )
            except (DeliveryStateError, DeliveryNotFoundError) as e:
                self._logger.warning(
                    "delivery_claim_conflict", delivery_id=entry.delivery_id, error=str(e),
                )
                self._release_trial(subscription.id)
                report.skipped += 1
                return

        planned: Dict[str, SchedulePlan] = {}

        def plan_next(outcome: AttemptOutcome) -> Optional[datetime]:
            planned["plan"] = self.plan(subscription, attempt_number, outcome)
            return planned["plan"].eligible_at

        try:
            outcome = await self._executor.execute(
                delivery,
                subscription,
                attempt_number,
                scheduled_at=entry.eligible_at,
                plan_next=plan_next,
            )
            state = await self.schedule_next(
                delivery, subscription, attempt_number, outcome, plan=planned.get("plan"),
            )
        except Exception as e:
            self._logger.exception(
                "delivery_processing_error",
                delivery_id=delivery.delivery_id,
                error=str(e),
            )
            await self._queue.release(
                entry.delivery_id,
                owner,
                self._clock.now() + timedelta(seconds=self._throttle_delay),
            )
            self._release_trial(subscription.id)
            report.errors += 1
            return

        if outcome.is_throttle:
            report.throttled += 1
        else:
            counter = _STATE_COUNTERS[state]
            setattr(report, counter, getattr(report, counter) + 1)

    # =========================================================================
    # OPERATOR ACTIONS
    # =========================================================================

    async def retry_now(self, delivery_id: str) -> Delivery:
        """Make a delivery eligible immediately, bypassing backoff.

        Queued and pending deliveries just move their entry to now.
        Dead-lettered and permanently failed deliveries get one more attempt
        as long as the attempt number stays within max_retries + 1.

        Raises:
            DeliveryNotFoundError: unknown delivery
            DeliveryStateError: delivery is in flight, succeeded, or has no
                attempt left
        """
        delivery = await self._store.get_delivery(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        now = self._clock.now()
        next_attempt = delivery.attempts_made + 1

        if delivery.state.is_schedulable:
            entry = await self._queue.get(delivery_id)
            if entry is None:
                entry = RetryQueueEntry(
                    delivery_id=delivery_id,
                    subscription_id=delivery.subscription_id,
                    event_id=delivery.event.id,
                    attempt_number=next_attempt,
                    eligible_at=now,
                )
            await self._queue.upsert(replace(entry, eligible_at=now))
            updated = await self._store.update_fields(delivery_id, next_attempt_at=now, updated_at=now)

        elif delivery.state in (DeliveryState.DEAD_LETTERED, DeliveryState.PERMANENTLY_FAILED):
            prepared = await self._catalog.get(delivery.subscription_id)
            if prepared is None:
                raise DeliveryStateError(delivery_id, "subscription no longer exists")
            if next_attempt > prepared.subscription.max_attempts:
                raise DeliveryStateError(
                    delivery_id,
                    f"attempt ceiling reached ({prepared.subscription.max_attempts} attempts)",
                )
            updated = await self._store.transition(
                delivery_id,
                (DeliveryState.DEAD_LETTERED, DeliveryState.PERMANENTLY_FAILED),
                DeliveryState.PENDING_RETRY,
                next_attempt_at=now,
                updated_at=now,
            )
            await self._queue.upsert(RetryQueueEntry(
                delivery_id=delivery_id,
                subscription_id=delivery.subscription_id,
                event_id=delivery.event.id,
                attempt_number=next_attempt,
                eligible_at=now,
            ))

        else:
            raise DeliveryStateError(delivery_id, f"cannot retry a delivery in state {delivery.state.value}")

        self._logger.info(
            "delivery_manual_retry",
            delivery_id=delivery_id,
            previous_state=delivery.state.value,
            attempt=next_attempt,
        )
        return updated

    async def cancel(self, delivery_id: str) -> Delivery:
        """Stop a delivery that is waiting in the queue.

        Only queued and pending deliveries can be cancelled; the queue entry
        is dropped and no further attempt is made.

        Raises:
            DeliveryNotFoundError: unknown delivery
            DeliveryStateError: delivery is in flight or already final
        """
        delivery = await self._store.get_delivery(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        if not delivery.state.is_schedulable:
            raise DeliveryStateError(delivery_id, f"cannot cancel a delivery in state {delivery.state.value}")

        now = self._clock.now()
        updated = await self._store.transition(
            delivery_id,
            (DeliveryState.QUEUED, DeliveryState.PENDING_RETRY),
            DeliveryState.CANCELLED,
            next_attempt_at=None,
            updated_at=now,
        )
        await self._queue.remove(delivery_id)
        metrics.queue_depth_observed(await self._queue.size())

        self._logger.info(
            "delivery_cancelled",
            delivery_id=delivery_id,
            previous_state=delivery.state.value,
            attempts_made=delivery.attempts_made,
        )
        return updated
