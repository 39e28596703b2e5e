"""Data model for webhook delivery.

Subscriptions are owned by the registration collaborator and are read-only
here. Events, deliveries, attempts and retry queue entries are owned by the
delivery subsystem for their full lifecycle.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from hookrelay_protocols.enums import (
    BackoffStrategy,
    DeliveryState,
    DispatchStatus,
    ErrorClass,
    OutcomeKind,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# SUBSCRIPTION CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class RateLimitPolicy:
    """Token bucket policy for one subscription.

    Attributes:
        requests_per_minute: Sustained outbound rate
        burst_size: Bucket capacity (requests allowed back to back)
    """
    requests_per_minute: float = 60.0
    burst_size: int = 10

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.requests_per_minute / 60.0


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff policy for retryable failures.

    Attributes:
        strategy: exponential (default), linear or fixed
        base_delay_seconds: First retry delay, and the linear increment
        max_delay_seconds: Upper bound for the computed delay
        jitter_fraction: Random extra delay in [0, delay * jitter_fraction]
    """
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 3600.0
    jitter_fraction: float = 0.1


@dataclass(frozen=True)
class Subscription:
    """A registered delivery target.

    Attributes:
        id: Opaque subscription identifier
        url: Absolute http(s) endpoint URL
        secret: Shared HMAC secret used to sign payloads
        event_types: Subscribed event types ("order.*" and "*" wildcards allowed)
        active: Inactive subscriptions receive nothing new
        headers: Custom headers added to every request
        timeout_seconds: Hard bound for each HTTP attempt
        max_retries: Retry budget for retryable failures
        filter_rules: event type -> field path -> predicate -> operand
        rate_limit: Outbound token bucket policy (None uses the default)
        retry_policy: Backoff policy (None uses the default)
    """
    id: str
    url: str
    secret: str
    event_types: FrozenSet[str]
    active: bool = True
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout_seconds: float = 30.0
    max_retries: int = 3
    filter_rules: Mapping[str, Mapping[str, Mapping[str, Any]]] = field(default_factory=dict)
    rate_limit: Optional[RateLimitPolicy] = None
    retry_policy: Optional[RetryPolicy] = None

    def __post_init__(self) -> None:
        if not isinstance(self.event_types, frozenset):
            object.__setattr__(self, "event_types", frozenset(self.event_types))

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this subscription wants an event type.

        Supports wildcards:
        - "order.*" matches "order.created", "order.paid"
        - "*" matches all events
        """
        for pattern in self.event_types:
            if pattern == "*" or pattern == event_type:
                return True
            if pattern.endswith(".*") and event_type.startswith(pattern[:-1]):
                return True
        return False

    @property
    def max_attempts(self) -> int:
        """Hard ceiling on attempt numbers, manual retries included."""
        return self.max_retries + 1

    def fingerprint(self) -> str:
        """Stable representation of the configuration that affects delivery."""
        return repr((
            self.url,
            sorted(self.event_types),
            self.active,
            sorted(self.headers.items()),
            self.timeout_seconds,
            self.max_retries,
            _freeze(self.filter_rules),
            self.rate_limit,
            self.retry_policy,
        ))


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return tuple(sorted((str(k), _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(_freeze(v) for v in value)
    return value


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class Event:
    """An immutable fact to be announced to subscribers.

    The payload is deep-copied on construction so later mutation of the
    caller's dict can never change what is delivered.
    """
    id: str
    type: str
    payload: Mapping[str, Any]
    created_at: datetime
    idempotency_key: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", copy.deepcopy(dict(self.payload)))
        if not self.idempotency_key:
            object.__setattr__(self, "idempotency_key", self.id)

    def to_wire(self) -> Dict[str, Any]:
        """Body sent to subscribers."""
        return {
            "id": self.id,
            "type": self.type,
            "data": copy.deepcopy(dict(self.payload)),
            "timestamp": self.created_at.isoformat(),
        }


# =============================================================================
# ATTEMPTS AND OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class AttemptOutcome:
    """Classified result of one HTTP attempt.

    Returned by the executor instead of raising; the scheduler decides what
    happens next from `kind` alone.
    """
    kind: OutcomeKind
    error_class: Optional[ErrorClass] = None
    status_code: Optional[int] = None
    detail: Optional[str] = None
    latency_ms: float = 0.0
    retry_after_seconds: Optional[float] = None

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def is_throttle(self) -> bool:
        return self.kind == OutcomeKind.THROTTLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "error_class": self.error_class.value if self.error_class else None,
            "status_code": self.status_code,
            "detail": self.detail,
            "latency_ms": self.latency_ms,
            "retry_after_seconds": self.retry_after_seconds,
        }


@dataclass(frozen=True)
class DeliveryAttempt:
    """One immutable record of one HTTP call for a delivery.

    `attempt_number` counts retry-budget slots; a throttled record (429)
    shares its number with the attempt that follows it. `sequence` is the
    strictly increasing position of the record in the delivery history.
    """
    delivery_id: str
    subscription_id: str
    event_id: str
    attempt_number: int
    scheduled_at: datetime
    executed_at: datetime
    outcome: OutcomeKind
    status_code: Optional[int] = None
    error_class: Optional[ErrorClass] = None
    error_detail: Optional[str] = None
    latency_ms: float = 0.0
    next_attempt_at: Optional[datetime] = None
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "subscription_id": self.subscription_id,
            "event_id": self.event_id,
            "attempt_number": self.attempt_number,
            "sequence": self.sequence,
            "scheduled_at": _iso(self.scheduled_at),
            "executed_at": _iso(self.executed_at),
            "outcome": self.outcome.value,
            "status_code": self.status_code,
            "error_class": self.error_class.value if self.error_class else None,
            "error_detail": self.error_detail,
            "latency_ms": self.latency_ms,
            "next_attempt_at": _iso(self.next_attempt_at),
        }


# =============================================================================
# DELIVERIES AND QUEUE
# =============================================================================

@dataclass
class Delivery:
    """The unit of work "this event must reach this subscription".

    Attributes:
        delivery_id: Deterministic id derived from event id + subscription id
        event: Event being delivered
        subscription_id: Target subscription
        state: Current DeliveryState
        attempts_made: Budget-consuming attempts recorded so far
        throttle_count: Deferrals that did not consume budget
        next_attempt_at: When the queued attempt becomes eligible
        last_error: Detail of the latest failure
    """
    delivery_id: str
    event: Event
    subscription_id: str
    state: DeliveryState
    created_at: datetime
    updated_at: datetime
    attempts_made: int = 0
    throttle_count: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivery_id": self.delivery_id,
            "event_id": self.event.id,
            "event_type": self.event.type,
            "subscription_id": self.subscription_id,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "throttle_count": self.throttle_count,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "next_attempt_at": _iso(self.next_attempt_at),
            "last_error": self.last_error,
            "last_status_code": self.last_status_code,
        }


@dataclass
class RetryQueueEntry:
    """A pending future attempt.

    A leased entry belongs to `lease_owner` until `lease_expires_at`; after
    that it becomes claimable again.
    """
    delivery_id: str
    subscription_id: str
    event_id: str
    attempt_number: int
    eligible_at: datetime
    backoff_seconds: float = 0.0
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    def is_leased(self, now: datetime) -> bool:
        return (
            self.lease_owner is not None
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )


# =============================================================================
# DISPATCH
# =============================================================================

@dataclass
class DispatchResult:
    """Per-subscription summary of one dispatch call."""
    event_id: str
    statuses: Dict[str, DispatchStatus] = field(default_factory=dict)
    delivery_ids: Dict[str, str] = field(default_factory=dict)

    def record(
        self,
        subscription_id: str,
        status: DispatchStatus,
        delivery_id: Optional[str] = None,
    ) -> None:
        self.statuses[subscription_id] = status
        if delivery_id:
            self.delivery_ids[subscription_id] = delivery_id

    def counts(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for status in self.statuses.values():
            totals[status.value] = totals.get(status.value, 0) + 1
        return totals

    def subscriptions_with(self, status: DispatchStatus) -> Iterable[str]:
        return [sub for sub, st in self.statuses.items() if st == status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "statuses": {k: v.value for k, v in self.statuses.items()},
            "delivery_ids": dict(self.delivery_ids),
            "counts": self.counts(),
        }
