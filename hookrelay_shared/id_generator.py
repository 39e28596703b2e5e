"""ID generation.

Delivery ids are derived, not random: the same event dispatched twice to the
same subscription always maps to the same delivery id, which is what makes
re-dispatch idempotent.

Usage:
    from hookrelay_shared.id_generator import derive_delivery_id, UUIDGenerator

    delivery_id = derive_delivery_id("evt_1", "sub_1")  # "dlv_3f2a..."
    worker_id = UUIDGenerator().generate_prefixed("worker")
"""

from __future__ import annotations

import hashlib
from uuid import UUID, uuid4, uuid5

# Fixed namespace for deterministic ID generation
_TEST_NAMESPACE = UUID("12345678-1234-5678-1234-567812345678")


def derive_delivery_id(event_id: str, subscription_id: str) -> str:
    """Deterministic delivery id for an event x subscription pair.

    Args:
        event_id: Event identifier
        subscription_id: Subscription identifier

    Returns:
        "dlv_" followed by 32 hex chars of SHA-256 over both ids
    """
    digest = hashlib.sha256(
        f"{len(event_id)}:{event_id}|{subscription_id}".encode("utf-8")
    ).hexdigest()
    return f"dlv_{digest[:32]}"


class UUIDGenerator:
    """UUID-based ID generator.

    Thread-safe for concurrent usage.
    """

    def generate(self) -> str:
        """Generate a new random UUID string."""
        return str(uuid4())

    def generate_prefixed(self, prefix: str) -> str:
        """Generate a prefixed ID (e.g., "evt_550e8400-...")."""
        return f"{prefix}_{uuid4()}"


class DeterministicIdGenerator:
    """Deterministic ID generator for testing.

    Not thread-safe - use separate instances per thread in concurrent tests.
    """

    def __init__(self, seed: str = "test"):
        self._seed = seed
        self._counter = 0

    def generate(self) -> str:
        """Generate a deterministic UUID based on seed and counter."""
        self._counter += 1
        return str(uuid5(_TEST_NAMESPACE, f"{self._seed}:{self._counter}"))

    def generate_prefixed(self, prefix: str) -> str:
        return f"{prefix}_{self.generate()}"

    def reset(self) -> None:
        """Reset the counter to 0."""
        self._counter = 0
