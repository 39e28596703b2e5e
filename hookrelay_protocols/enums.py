"""Core enums for webhook delivery.

Pure value types shared by every layer. No behavior beyond small
classification helpers.
"""

from enum import Enum
from typing import Dict, FrozenSet


class DeliveryState(str, Enum):
    """Lifecycle state of a delivery (one event x one subscription)."""
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    PENDING_RETRY = "pending_retry"
    SUCCEEDED = "succeeded"
    PERMANENTLY_FAILED = "permanently_failed"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Terminal states never execute again without a manual retry."""
        return self in (
            DeliveryState.SUCCEEDED,
            DeliveryState.PERMANENTLY_FAILED,
            DeliveryState.DEAD_LETTERED,
            DeliveryState.CANCELLED,
        )

    @property
    def is_schedulable(self) -> bool:
        """States that own a retry queue entry."""
        return self in (DeliveryState.QUEUED, DeliveryState.PENDING_RETRY)

    def can_transition_to(self, target: "DeliveryState") -> bool:
        """Check the delivery state machine."""
        return target in _TRANSITIONS.get(self, frozenset())


# Manual retries re-open dead_lettered and permanently_failed deliveries.
# Operators may cancel a delivery only while it waits in the queue.
_TRANSITIONS: Dict[DeliveryState, FrozenSet[DeliveryState]] = {
    DeliveryState.QUEUED: frozenset({DeliveryState.IN_FLIGHT, DeliveryState.CANCELLED}),
    DeliveryState.IN_FLIGHT: frozenset({
        DeliveryState.SUCCEEDED,
        DeliveryState.PERMANENTLY_FAILED,
        DeliveryState.PENDING_RETRY,
        DeliveryState.DEAD_LETTERED,
    }),
    DeliveryState.PENDING_RETRY: frozenset({DeliveryState.IN_FLIGHT, DeliveryState.CANCELLED}),
    DeliveryState.DEAD_LETTERED: frozenset({DeliveryState.PENDING_RETRY}),
    DeliveryState.PERMANENTLY_FAILED: frozenset({DeliveryState.PENDING_RETRY}),
    DeliveryState.SUCCEEDED: frozenset(),
    DeliveryState.CANCELLED: frozenset(),
}


class OutcomeKind(str, Enum):
    """Classification of a single delivery attempt."""
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"
    THROTTLED = "throttled"


class ErrorClass(str, Enum):
    """Error taxonomy for failed or deferred attempts."""
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    THROTTLED = "throttled"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    SERIALIZATION_ERROR = "serialization_error"
    CONFIGURATION_ERROR = "configuration_error"


class DispatchStatus(str, Enum):
    """Per-subscription result of dispatching an event."""
    QUEUED = "queued"
    FILTERED = "filtered"
    DUPLICATE = "duplicate"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    CANCELLED = "cancelled"


class BackoffStrategy(str, Enum):
    """How the delay between retryable failures grows."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


class HealthStatus(str, Enum):
    """Health check status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
