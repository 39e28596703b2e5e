"""Per-subscription circuit breaker.

After `threshold` consecutive retryable failures the circuit opens for
`timeout_seconds`. While open, due deliveries for the subscription are
deferred like a throttle: no HTTP call, no retry budget consumed.

Once the cool-down passes the circuit is half-open: allow() admits a single
trial attempt and keeps refusing the rest until that attempt reports back.
A success closes the circuit, another failure reopens it immediately, and
release_trial() hands the slot back when the attempt never reached the
endpoint. An unreported trial expires after another `timeout_seconds`.
"""

import threading
from dataclasses import dataclass
from typing import Dict, Optional

from hookrelay_protocols import ClockProtocol, LoggerProtocol
from hookrelay_shared import SystemClock, resolve_logger


@dataclass
class CircuitState:
    consecutive_failures: int = 0
    open_until: Optional[float] = None
    trips: int = 0
    trial_expires_at: Optional[float] = None


class CircuitBreaker:
    """Tracks consecutive failures per subscription."""

    def __init__(
        self,
        threshold: int = 5,
        timeout_seconds: float = 300.0,
        enabled: bool = True,
        clock: Optional[ClockProtocol] = None,
        logger: Optional[LoggerProtocol] = None,
    ):
        self._threshold = threshold
        self._timeout = timeout_seconds
        self._enabled = enabled
        self._clock = clock or SystemClock()
        self._logger = resolve_logger(logger, "circuit_breaker")
        self._states: Dict[str, CircuitState] = {}
        self._lock = threading.Lock()

    def allow(self, subscription_id: str) -> bool:
        """Check whether an attempt may be made now.

        On a half-open circuit the first caller takes the trial slot.
        """
        if not self._enabled:
            return True
        now = self._clock.time()
        with self._lock:
            state = self._states.get(subscription_id)
            if state is None or state.open_until is None:
                return True
            if now < state.open_until:
                return False
            if state.trial_expires_at is not None and now < state.trial_expires_at:
                return False
            state.trial_expires_at = now + self._timeout

        self._logger.info("circuit_half_open", subscription_id=subscription_id)
        return True

    def retry_after(self, subscription_id: str) -> float:
        """Seconds until the cool-down of an open circuit ends."""
        if not self._enabled:
            return 0.0
        now = self._clock.time()
        with self._lock:
            state = self._states.get(subscription_id)
            if state is None or state.open_until is None:
                return 0.0
            return max(0.0, state.open_until - now)

    def record_success(self, subscription_id: str) -> None:
        with self._lock:
            state = self._states.pop(subscription_id, None)
        if state is not None and state.open_until is not None:
            self._logger.info("circuit_closed", subscription_id=subscription_id)

    def record_failure(self, subscription_id: str) -> bool:
        """Count a retryable failure.

        Returns:
            True if this failure opened the circuit
        """
        if not self._enabled:
            return False
        now = self._clock.time()
        with self._lock:
            state = self._states.setdefault(subscription_id, CircuitState())
            state.consecutive_failures += 1
            if state.consecutive_failures < self._threshold:
                return False
            state.open_until = now + self._timeout
            state.trial_expires_at = None
            state.trips += 1
            trips = state.trips

        self._logger.warning(
            "circuit_opened",
            subscription_id=subscription_id,
            threshold=self._threshold,
            timeout_seconds=self._timeout,
            trips=trips,
        )
        return True

    def release_trial(self, subscription_id: str) -> None:
        """Free the half-open slot without counting an outcome."""
        with self._lock:
            state = self._states.get(subscription_id)
            if state is not None:
                state.trial_expires_at = None

    def forget(self, subscription_id: str) -> None:
        """Drop all state for a deleted subscription."""
        with self._lock:
            self._states.pop(subscription_id, None)

    def is_open(self, subscription_id: str) -> bool:
        """True while the cool-down runs. Never takes the trial slot."""
        return self.retry_after(subscription_id) > 0.0

    def open_circuits(self) -> Dict[str, float]:
        """Subscription id -> seconds remaining, for open circuits only."""
        now = self._clock.time()
        with self._lock:
            return {
                sub_id: state.open_until - now
                for sub_id, state in self._states.items()
                if state.open_until is not None and state.open_until > now
            }
