"""Shared utilities for the HookRelay runtime.

This package provides common utilities that can be used by all layers
without creating circular dependencies. It sits at L0 alongside
hookrelay_protocols.

Exports:
- Logging: Logger, configure_logging, create_logger, resolve_logger
- Serialization: canonical_json, to_json, parse_datetime, utc_now
- IDs: derive_delivery_id, UUIDGenerator, DeterministicIdGenerator
- Time: SystemClock, ManualClock
"""

from hookrelay_shared.clock import ManualClock, SystemClock
from hookrelay_shared.id_generator import (
    DeterministicIdGenerator,
    UUIDGenerator,
    derive_delivery_id,
)
from hookrelay_shared.logging import (
    Logger,
    configure_logging,
    create_logger,
    resolve_logger,
)
from hookrelay_shared.serialization import (
    canonical_json,
    from_timestamp,
    parse_datetime,
    serialize_datetime,
    to_json,
    utc_now,
)

__all__ = [
    # Logging
    "Logger",
    "configure_logging",
    "create_logger",
    "resolve_logger",
    # Serialization
    "canonical_json",
    "from_timestamp",
    "parse_datetime",
    "serialize_datetime",
    "to_json",
    "utc_now",
    # IDs
    "derive_delivery_id",
    "DeterministicIdGenerator",
    "UUIDGenerator",
    # Time
    "ManualClock",
    "SystemClock",
]
