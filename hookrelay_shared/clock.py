"""Clock implementations satisfying ClockProtocol.

SystemClock is the production time source. ManualClock only moves when told
to, which keeps backoff, lease and token-bucket tests deterministic.
"""

import threading
import time
from datetime import datetime

from hookrelay_shared.serialization import from_timestamp


class SystemClock:
    """Wall-clock time."""

    def time(self) -> float:
        return time.time()

    def now(self) -> datetime:
        return from_timestamp(self.time())


class ManualClock:
    """Clock advanced explicitly by tests and simulations."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._lock = threading.Lock()

    def time(self) -> float:
        with self._lock:
            return self._now

    def now(self) -> datetime:
        return from_timestamp(self.time())

    def advance(self, seconds: float) -> None:
        """Move time forward; negative values are rejected."""
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._now += seconds

    def set(self, seconds: float) -> None:
        with self._lock:
            self._now = seconds
