"""Protocol definitions - interfaces for dependency injection.

These are typing.Protocol classes for static type checking. The in-memory
implementations live in the hookrelay package; a persistent backend only
has to satisfy the same contracts (notably the leased claim on the queue).
"""

from datetime import datetime
from typing import Any, Collection, Dict, List, Optional, Protocol, runtime_checkable

from hookrelay_protocols.enums import DeliveryState
from hookrelay_protocols.types import (
    Delivery,
    DeliveryAttempt,
    RetryQueueEntry,
    Subscription,
)


# =============================================================================
# LOGGING
# =============================================================================

@runtime_checkable
class LoggerProtocol(Protocol):
    """Structured logging interface."""

    def info(self, message: str, **kwargs: Any) -> None: ...
    def debug(self, message: str, **kwargs: Any) -> None: ...
    def warning(self, message: str, **kwargs: Any) -> None: ...
    def error(self, message: str, **kwargs: Any) -> None: ...
    def exception(self, message: str, **kwargs: Any) -> None: ...
    def bind(self, **kwargs: Any) -> "LoggerProtocol": ...


# =============================================================================
# TIME
# =============================================================================

@runtime_checkable
class ClockProtocol(Protocol):
    """Injectable time source."""

    def time(self) -> float:
        """Seconds since the epoch."""
        ...

    def now(self) -> datetime:
        """Timezone-aware UTC datetime for the same instant as time()."""
        ...


# =============================================================================
# SUBSCRIPTION COLLABORATOR
# =============================================================================

@runtime_checkable
class SubscriptionSourceProtocol(Protocol):
    """Read path exposed by the subscription registration collaborator."""

    async def get_active_subscriptions_for_event_type(self, event_type: str) -> List[Subscription]:
        """Return active subscriptions whose event types cover event_type."""
        ...

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Return a subscription by id, active or not."""
        ...


# =============================================================================
# DELIVERY PERSISTENCE
# =============================================================================

@runtime_checkable
class DeliveryStoreProtocol(Protocol):
    """Delivery records and their append-only attempt history."""

    async def create_delivery(self, delivery: Delivery) -> bool:
        """Insert a delivery; return False if the id already exists."""
        ...

    async def get_delivery(self, delivery_id: str) -> Optional[Delivery]:
        ...

    async def transition(
        self,
        delivery_id: str,
        expected: Collection[DeliveryState],
        target: DeliveryState,
        **changes: Any,
    ) -> Delivery:
        """Atomically move a delivery from one of `expected` to `target`."""
        ...

    async def update_fields(self, delivery_id: str, **changes: Any) -> Delivery:
        """Update bookkeeping fields without changing state."""
        ...

    async def append_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        """Append an attempt record; returns it with its sequence assigned."""
        ...

    async def list_attempts(self, delivery_id: str) -> List[DeliveryAttempt]:
        ...

    async def list_by_state(self, state: DeliveryState, limit: int = 100) -> List[Delivery]:
        ...

    async def count_by_state(self) -> Dict[DeliveryState, int]:
        ...

    async def all_attempts(self) -> List[DeliveryAttempt]:
        """Every recorded attempt, for aggregate statistics."""
        ...


@runtime_checkable
class RetryQueueProtocol(Protocol):
    """Time-ordered queue of pending attempts with leased claims."""

    async def upsert(self, entry: RetryQueueEntry) -> None:
        """Insert or replace the entry for entry.delivery_id (clears any lease)."""
        ...

    async def remove(self, delivery_id: str) -> bool:
        ...

    async def get(self, delivery_id: str) -> Optional[RetryQueueEntry]:
        ...

    async def claim_due(
        self,
        now: datetime,
        limit: int,
        owner: str,
        lease_seconds: float,
    ) -> List[RetryQueueEntry]:
        """Lease up to `limit` entries eligible at `now` to `owner`.

        A claimed entry is invisible to other claimers until its lease
        expires or it is upserted/removed.
        """
        ...

    async def size(self) -> int:
        ...
