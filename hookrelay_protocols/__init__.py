"""HookRelay Protocols Package - Core type contracts for all layers.

This package provides the canonical type definitions, protocols, and data
classes shared by the delivery subsystem. It sits at L0 and imports nothing
from the other hookrelay packages.

Package Structure:
    - enums.py: DeliveryState, OutcomeKind, ErrorClass, DispatchStatus, ...
    - types.py: Subscription, Event, Delivery, DeliveryAttempt, ...
    - protocols.py: LoggerProtocol, ClockProtocol, store and source protocols
    - errors.py: HookRelayError hierarchy
"""

from hookrelay_protocols.enums import (
    BackoffStrategy,
    DeliveryState,
    DispatchStatus,
    ErrorClass,
    HealthStatus,
    OutcomeKind,
)
from hookrelay_protocols.errors import (
    ConfigurationError,
    DeliveryNotFoundError,
    DeliveryStateError,
    HookRelayError,
    SubscriptionSourceError,
)
from hookrelay_protocols.protocols import (
    ClockProtocol,
    DeliveryStoreProtocol,
    LoggerProtocol,
    RetryQueueProtocol,
    SubscriptionSourceProtocol,
)
from hookrelay_protocols.types import (
    AttemptOutcome,
    Delivery,
    DeliveryAttempt,
    DispatchResult,
    Event,
    RateLimitPolicy,
    RetryPolicy,
    RetryQueueEntry,
    Subscription,
)

__all__ = [
    # Enums
    "BackoffStrategy",
    "DeliveryState",
    "DispatchStatus",
    "ErrorClass",
    "HealthStatus",
    "OutcomeKind",
    # Errors
    "ConfigurationError",
    "DeliveryNotFoundError",
    "DeliveryStateError",
    "HookRelayError",
    "SubscriptionSourceError",
    # Protocols
    "ClockProtocol",
    "DeliveryStoreProtocol",
    "LoggerProtocol",
    "RetryQueueProtocol",
    "SubscriptionSourceProtocol",
    # Types
    "AttemptOutcome",
    "Delivery",
    "DeliveryAttempt",
    "DispatchResult",
    "Event",
    "RateLimitPolicy",
    "RetryPolicy",
    "RetryQueueEntry",
    "Subscription",
]
