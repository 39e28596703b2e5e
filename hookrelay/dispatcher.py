"""Delivery Dispatcher - fan an event out to its subscriptions.

dispatch() never touches the network. For each active subscription of the
event type it evaluates filters, creates a delivery record with a derived
id (so re-dispatch is idempotent) and enqueues attempt 1 as immediately
eligible. The sweep performs the HTTP calls.
"""

from __future__ import annotations

from typing import Optional

from hookrelay_protocols import (
    ClockProtocol,
    Delivery,
    DeliveryState,
    DeliveryStoreProtocol,
    DispatchResult,
    DispatchStatus,
    Event,
    LoggerProtocol,
)
from hookrelay_shared import SystemClock, derive_delivery_id, resolve_logger

from hookrelay import metrics
from hookrelay.filters import FilterEvaluator
from hookrelay.scheduler import RetryScheduler
from hookrelay.subscriptions import SubscriptionCatalog


_SUMMARY = {
    DeliveryState.SUCCEEDED: DispatchStatus.DELIVERED,
    DeliveryState.PERMANENTLY_FAILED: DispatchStatus.FAILED,
    DeliveryState.DEAD_LETTERED: DispatchStatus.FAILED,
    DeliveryState.PENDING_RETRY: DispatchStatus.RETRY_SCHEDULED,
    DeliveryState.QUEUED: DispatchStatus.QUEUED,
    DeliveryState.IN_FLIGHT: DispatchStatus.QUEUED,
    DeliveryState.CANCELLED: DispatchStatus.CANCELLED,
}


class DeliveryDispatcher:
    """Turns events into queued deliveries."""

    def __init__(
        self,
        catalog: SubscriptionCatalog,
        store: DeliveryStoreProtocol,
        scheduler: RetryScheduler,
        evaluator: Optional[FilterEvaluator] = None,
        clock: Optional[ClockProtocol] = None,
        logger: Optional[LoggerProtocol] = None,
    ):
        self._catalog = catalog
        self._store = store
        self._scheduler = scheduler
        self._evaluator = evaluator or FilterEvaluator()
        self._clock = clock or SystemClock()
        self._logger = resolve_logger(logger, "delivery_dispatcher")

    async def dispatch(self, event: Event) -> DispatchResult:
        """Enqueue deliveries of an event to every matching subscription.

        Args:
            event: Fully formed event

        Returns:
            DispatchResult with queued / filtered / duplicate per subscription

        Raises:
            SubscriptionSourceError: subscriptions could not be read at all
        """
        result = DispatchResult(event_id=event.id)
        subscriptions = await self._catalog.active_for_event_type(event.type)

        for prepared in subscriptions:
            if not self._evaluator.matches(event, prepared.filters):
                result.record(prepared.id, DispatchStatus.FILTERED)
                metrics.dispatch_recorded(DispatchStatus.FILTERED)
                self._logger.debug(
                    "delivery_filtered", event_id=event.id, subscription_id=prepared.id,
                )
                continue

            now = self._clock.now()
            delivery = Delivery(
                delivery_id=derive_delivery_id(event.id, prepared.id),
                event=event,
                subscription_id=prepared.id,
                state=DeliveryState.QUEUED,
                created_at=now,
                updated_at=now,
                next_attempt_at=now,
            )
            if not await self._store.create_delivery(delivery):
                result.record(prepared.id, DispatchStatus.DUPLICATE, delivery.delivery_id)
                metrics.dispatch_recorded(DispatchStatus.DUPLICATE)
                continue

            await self._scheduler.schedule_initial(delivery)
            result.record(prepared.id, DispatchStatus.QUEUED, delivery.delivery_id)
            metrics.dispatch_recorded(DispatchStatus.QUEUED)

        self._logger.info(
            "event_dispatched",
            event_id=event.id,
            event_type=event.type,
            subscriptions=len(subscriptions),
            **result.counts(),
        )
        return result

    async def summarize(self, result: DispatchResult) -> DispatchResult:
        """Re-read delivery states into delivered / failed / retry_scheduled.

        Filtered entries are kept as they are. Useful after a drain to report
        what happened to a dispatched event.
        """
        summary = DispatchResult(event_id=result.event_id)
        for subscription_id, status in result.statuses.items():
            delivery_id = result.delivery_ids.get(subscription_id)
            delivery = await self._store.get_delivery(delivery_id) if delivery_id else None
            if delivery is None:
                summary.record(subscription_id, status, delivery_id)
                continue
            summary.record(subscription_id, _SUMMARY[delivery.state], delivery_id)
        return summary
