"""Exception hierarchy for the delivery subsystem.

Per-attempt HTTP failures are never raised; they are classified into an
AttemptOutcome by the executor. These exceptions cover configuration,
collaborator-boundary and operator-facing failures only.
"""

from typing import Optional


class HookRelayError(Exception):
    """Base class for all delivery subsystem errors."""


class ConfigurationError(HookRelayError):
    """Invalid subscription configuration (filter rule, URL, policy)."""

    def __init__(
        self,
        message: str,
        subscription_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ):
        self.subscription_id = subscription_id
        self.event_type = event_type
        super().__init__(message)


class SubscriptionSourceError(HookRelayError):
    """The subscription collaborator could not be read."""


class DeliveryNotFoundError(HookRelayError):
    """No delivery exists for the given id."""

    def __init__(self, delivery_id: str):
        self.delivery_id = delivery_id
        super().__init__(f"Delivery not found: {delivery_id}")


class DeliveryStateError(HookRelayError):
    """Illegal state transition or operation for the current state."""

    def __init__(self, delivery_id: str, message: str):
        self.delivery_id = delivery_id
        super().__init__(f"{delivery_id}: {message}")
