"""Background sweep workers.

Each worker loops drain_due() on an interval. A sweep that fills its whole
batch runs again immediately; otherwise the worker sleeps until the next
interval or until stop is requested.

Shutdown is graceful: stop() ends the loops, lets the current sweeps (and
their in-flight HTTP attempts) finish for up to `shutdown_grace_seconds`,
then cancels whatever is left.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

from hookrelay_protocols import LoggerProtocol
from hookrelay_shared import resolve_logger

from hookrelay.scheduler import DrainReport, RetryScheduler


class SweepWorker:
    """Pool of interval-driven drain_due() loops."""

    def __init__(
        self,
        scheduler: RetryScheduler,
        interval_seconds: float = 5.0,
        batch_limit: int = 100,
        workers: int = 1,
        shutdown_grace_seconds: float = 60.0,
        logger: Optional[LoggerProtocol] = None,
    ):
        """Initialize worker pool.

        Args:
            scheduler: Scheduler whose queue is drained
            interval_seconds: Pause between sweeps that found spare capacity
            batch_limit: Entries claimed per sweep
            workers: Number of concurrent sweep loops
            shutdown_grace_seconds: How long stop() waits for running sweeps
            logger: Optional logger
        """
        self._scheduler = scheduler
        self._interval = interval_seconds
        self._batch_limit = batch_limit
        self._workers = workers
        self._grace = shutdown_grace_seconds
        self._logger = resolve_logger(logger, "sweep_worker")
        self._tasks: List[asyncio.Task] = []
        self._stopping: Optional[asyncio.Event] = None
        self._running = False
        self._sweeps = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def sweeps_completed(self) -> int:
        return self._sweeps

    async def start(self) -> None:
        """Start the sweep loops (no-op if already running)."""
        if self._running:
            return

        self._running = True
        self._stopping = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._loop(f"sweep-{index}"))
            for index in range(self._workers)
        ]
        self._logger.info(
            "sweep_workers_started",
            workers=self._workers,
            interval_seconds=self._interval,
            batch_limit=self._batch_limit,
        )

    async def stop(self) -> None:
        """Stop the loops, draining in-flight sweeps first."""
        if not self._running:
            return

        self._running = False
        if self._stopping is not None:
            self._stopping.set()

        tasks, self._tasks = self._tasks, []
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=self._grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if pending:
                self._logger.warning("sweep_workers_cancelled", pending=len(pending))

        self._logger.info("sweep_workers_stopped", sweeps=self._sweeps)

    async def run_once(self, worker_id: Optional[str] = None) -> DrainReport:
        """Perform a single sweep."""
        report = await self._scheduler.drain_due(self._batch_limit, worker_id=worker_id)
        self._sweeps += 1
        return report

    async def _loop(self, worker_id: str) -> None:
        """Background loop for one sweep worker."""
        stopping = self._stopping
        while stopping is not None and not stopping.is_set():
            try:
                report = await self.run_once(worker_id)
            except Exception as e:
                self._logger.exception("sweep_failed", worker_id=worker_id, error=str(e))
                report = None

            if report is not None and report.claimed >= self._batch_limit:
                continue

            try:
                await asyncio.wait_for(stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
