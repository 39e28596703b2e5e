"""Health checks for the delivery subsystem.

Components:
- signing: sign/verify self-test over a fixed sample payload
- retry_queue: depth of the retry queue (degraded above a threshold)
- dead_letters: number of dead-lettered deliveries (degraded when any)
- sweep_worker: whether the background sweep is running
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from time import monotonic
from typing import Any, Dict, Optional

from hookrelay_protocols import (
    ClockProtocol,
    DeliveryState,
    DeliveryStoreProtocol,
    HealthStatus,
)
from hookrelay_shared import SystemClock

from hookrelay.signing import SignatureEngine
from hookrelay.store import InMemoryRetryQueue
from hookrelay.worker import SweepWorker

_SAMPLE_PAYLOAD = b'{"id":"health","type":"webhook.health","data":{}}'
_SAMPLE_SECRET = "hookrelay-health-check"


class ComponentStatus(str, Enum):
    """Individual component status values."""

    UP = "up"
    DOWN = "down"
    DEGRADED = "degraded"


@dataclass
class ComponentHealth:
    """Health status for an individual component."""

    status: ComponentStatus
    message: Optional[str] = None
    latency_ms: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": dict(self.details),
        }


@dataclass
class HealthCheckResult:
    """Complete health check result."""

    status: HealthStatus
    timestamp: datetime
    uptime_seconds: float
    components: Dict[str, ComponentHealth]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "uptime_seconds": self.uptime_seconds,
            "components": {name: c.to_dict() for name, c in self.components.items()},
        }


class HealthChecker:
    """Performs health checks on delivery components."""

    def __init__(
        self,
        signer: SignatureEngine,
        store: DeliveryStoreProtocol,
        queue: InMemoryRetryQueue,
        worker: Optional[SweepWorker] = None,
        clock: Optional[ClockProtocol] = None,
        *,
        queue_depth_warning: int = 10_000,
    ) -> None:
        """Initialize health checker.

        Args:
            signer: Signature engine to self-test
            store: Delivery store (dead-letter count)
            queue: Retry queue (depth)
            worker: Sweep worker, if one is wired
            clock: Time source for the result timestamp
            queue_depth_warning: Depth above which the queue is degraded
        """
        self.signer = signer
        self.store = store
        self.queue = queue
        self.worker = worker
        self.clock = clock or SystemClock()
        self.queue_depth_warning = queue_depth_warning
        self._start_time = monotonic()

    async def check(self) -> HealthCheckResult:
        """Check every component and derive the overall status."""
        components = {
            "signing": self._check_signing(),
            "retry_queue": await self._check_queue(),
            "dead_letters": await self._check_dead_letters(),
            "sweep_worker": self._check_worker(),
        }

        statuses = [comp.status for comp in components.values()]
        if any(s == ComponentStatus.DOWN for s in statuses):
            overall_status = HealthStatus.UNHEALTHY
        elif any(s == ComponentStatus.DEGRADED for s in statuses):
            overall_status = HealthStatus.DEGRADED
        else:
            overall_status = HealthStatus.HEALTHY

        return HealthCheckResult(
            status=overall_status,
            timestamp=self.clock.now(),
            uptime_seconds=monotonic() - self._start_time,
            components=components,
        )

    def _check_signing(self) -> ComponentHealth:
        start = monotonic()
        signature = self.signer.sign(_SAMPLE_PAYLOAD, _SAMPLE_SECRET)
        tampered = _SAMPLE_PAYLOAD[:-1] + b" "
        ok = (
            self.signer.verify(_SAMPLE_PAYLOAD, signature, _SAMPLE_SECRET)
            and not self.signer.verify(tampered, signature, _SAMPLE_SECRET)
        )
        return ComponentHealth(
            status=ComponentStatus.UP if ok else ComponentStatus.DOWN,
            message="Signature self-test passed" if ok else "Signature self-test failed",
            latency_ms=(monotonic() - start) * 1000,
            details={"algorithm": self.signer.algorithm},
        )

    async def _check_queue(self) -> ComponentHealth:
        depth = await self.queue.size()
        if depth > self.queue_depth_warning:
            return ComponentHealth(
                status=ComponentStatus.DEGRADED,
                message=f"Retry queue backlog ({depth} entries)",
                details={"depth": depth},
            )
        return ComponentHealth(
            status=ComponentStatus.UP,
            message="Retry queue operational",
            details={"depth": depth},
        )

    async def _check_dead_letters(self) -> ComponentHealth:
        counts = await self.store.count_by_state()
        dead = counts.get(DeliveryState.DEAD_LETTERED, 0)
        return ComponentHealth(
            status=ComponentStatus.DEGRADED if dead else ComponentStatus.UP,
            message=f"{dead} dead-lettered deliveries" if dead else "No dead letters",
            details={"count": dead},
        )

    def _check_worker(self) -> ComponentHealth:
        if self.worker is None:
            return ComponentHealth(
                status=ComponentStatus.DEGRADED,
                message="No sweep worker configured",
                details={"running": False},
            )
        running = self.worker.is_running
        return ComponentHealth(
            status=ComponentStatus.UP if running else ComponentStatus.DEGRADED,
            message="Sweep worker running" if running else "Sweep worker stopped",
            details={"running": running, "sweeps": self.worker.sweeps_completed},
        )
