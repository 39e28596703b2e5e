"""In-memory delivery store and retry queue.

Both satisfy the protocols in hookrelay_protocols and guard their state with
an asyncio.Lock, so state-changing operations are atomic with respect to
concurrent sweep workers on the same event loop.

The retry queue hands out leases: a claimed entry is invisible to other
claimers until its lease expires (worker crash) or the owner upserts or
removes it.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Collection, Dict, List, Optional, Tuple

from hookrelay_protocols import (
    Delivery,
    DeliveryAttempt,
    DeliveryNotFoundError,
    DeliveryState,
    DeliveryStateError,
    OutcomeKind,
    RetryQueueEntry,
)


class InMemoryDeliveryStore:
    """Delivery records plus append-only attempt history.

    Returned Delivery objects are copies; callers change state only through
    transition() and update_fields().
    """

    def __init__(self) -> None:
        self._deliveries: Dict[str, Delivery] = {}
        self._attempts: Dict[str, List[DeliveryAttempt]] = {}
        self._lock = asyncio.Lock()

    async def create_delivery(self, delivery: Delivery) -> bool:
        async with self._lock:
            if delivery.delivery_id in self._deliveries:
                return False
            self._deliveries[delivery.delivery_id] = replace(delivery)
            self._attempts[delivery.delivery_id] = []
            return True

    async def get_delivery(self, delivery_id: str) -> Optional[Delivery]:
        async with self._lock:
            delivery = self._deliveries.get(delivery_id)
            return replace(delivery) if delivery else None

    async def transition(
        self,
        delivery_id: str,
        expected: Collection[DeliveryState],
        target: DeliveryState,
        **changes: Any,
    ) -> Delivery:
        """Compare-and-set the delivery state.

        Raises:
            DeliveryNotFoundError: unknown delivery
            DeliveryStateError: current state not in `expected`, or the
                state machine forbids current -> target
        """
        async with self._lock:
            delivery = self._deliveries.get(delivery_id)
            if delivery is None:
                raise DeliveryNotFoundError(delivery_id)
            if delivery.state not in expected:
                raise DeliveryStateError(
                    delivery_id,
                    f"expected one of {sorted(s.value for s in expected)}, found {delivery.state.value}",
                )
            if not delivery.state.can_transition_to(target):
                raise DeliveryStateError(
                    delivery_id,
                    f"illegal transition {delivery.state.value} -> {target.value}",
                )
            delivery.state = target
            for key, value in changes.items():
                setattr(delivery, key, value)
            return replace(delivery)

    async def update_fields(self, delivery_id: str, **changes: Any) -> Delivery:
        if "state" in changes:
            raise ValueError("Use transition() to change delivery state")
        async with self._lock:
            delivery = self._deliveries.get(delivery_id)
            if delivery is None:
                raise DeliveryNotFoundError(delivery_id)
            for key, value in changes.items():
                setattr(delivery, key, value)
            return replace(delivery)

    async def append_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        """Append an immutable attempt record.

        Attempt numbers must continue the budget sequence without gaps:
        every record (throttled ones included) carries the number of the
        next budget-consuming attempt.
        """
        async with self._lock:
            history = self._attempts.get(attempt.delivery_id)
            if history is None:
                raise DeliveryNotFoundError(attempt.delivery_id)
            consumed = sum(1 for a in history if a.outcome != OutcomeKind.THROTTLED)
            if attempt.attempt_number != consumed + 1:
                raise DeliveryStateError(
                    attempt.delivery_id,
                    f"attempt {attempt.attempt_number} out of sequence (expected {consumed + 1})",
                )
            recorded = replace(attempt, sequence=len(history) + 1)
            history.append(recorded)
            return recorded

    async def list_attempts(self, delivery_id: str) -> List[DeliveryAttempt]:
        async with self._lock:
            if delivery_id not in self._attempts:
                raise DeliveryNotFoundError(delivery_id)
            return list(self._attempts[delivery_id])

    async def list_by_state(self, state: DeliveryState, limit: int = 100) -> List[Delivery]:
        async with self._lock:
            matching = [replace(d) for d in self._deliveries.values() if d.state == state]
        matching.sort(key=lambda d: d.updated_at)
        return matching[:limit]

    async def count_by_state(self) -> Dict[DeliveryState, int]:
        async with self._lock:
            counts = {state: 0 for state in DeliveryState}
            for delivery in self._deliveries.values():
                counts[delivery.state] += 1
            return counts

    async def all_attempts(self) -> List[DeliveryAttempt]:
        async with self._lock:
            return [a for history in self._attempts.values() for a in history]


class InMemoryRetryQueue:
    """Time-ordered retry queue with leased claims.

    One authoritative entry per delivery id. The heap holds
    (eligible_at, tiebreak, delivery_id, version); stale heap items whose
    version no longer matches the live entry are skipped lazily.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[RetryQueueEntry, int]] = {}
        self._heap: List[Tuple[datetime, int, str, int]] = []
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    def _push(self, entry: RetryQueueEntry, at: datetime) -> None:
        version = next(self._counter)
        self._entries[entry.delivery_id] = (entry, version)
        heapq.heappush(self._heap, (at, version, entry.delivery_id, version))

    async def upsert(self, entry: RetryQueueEntry) -> None:
        async with self._lock:
            self._push(replace(entry, lease_owner=None, lease_expires_at=None), entry.eligible_at)

    async def remove(self, delivery_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(delivery_id, None) is not None

    async def get(self, delivery_id: str) -> Optional[RetryQueueEntry]:
        async with self._lock:
            current = self._entries.get(delivery_id)
            return replace(current[0]) if current else None

    async def claim_due(
        self,
        now: datetime,
        limit: int,
        owner: str,
        lease_seconds: float,
    ) -> List[RetryQueueEntry]:
        claimed: List[RetryQueueEntry] = []
        async with self._lock:
            while self._heap and len(claimed) < limit:
                at, _, delivery_id, version = self._heap[0]
                if at > now:
                    break
                heapq.heappop(self._heap)
                current = self._entries.get(delivery_id)
                if current is None or current[1] != version:
                    continue
                entry = current[0]
                if entry.is_leased(now):
                    continue
                expires = now + timedelta(seconds=lease_seconds)
                leased = replace(entry, lease_owner=owner, lease_expires_at=expires)
                # Re-surface after lease expiry in case the owner never reports back.
                self._push(leased, expires)
                claimed.append(replace(leased))
        return claimed

    async def release(self, delivery_id: str, owner: str, eligible_at: datetime) -> bool:
        """Give a claimed entry back unchanged apart from its eligible time."""
        async with self._lock:
            current = self._entries.get(delivery_id)
            if current is None or current[0].lease_owner != owner:
                return False
            self._push(
                replace(current[0], lease_owner=None, lease_expires_at=None, eligible_at=eligible_at),
                eligible_at,
            )
            return True

    async def size(self) -> int:
        async with self._lock:
            return len(self._entries)

    async def next_eligible_at(self) -> Optional[datetime]:
        async with self._lock:
            if not self._entries:
                return None
            return min(entry.eligible_at for entry, _ in self._entries.values())
