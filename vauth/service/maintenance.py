"""Scheduled expiry maintenance.

The scheduler owns one asyncio task that wakes every ``poll_interval`` seconds
and runs whichever of the two jobs is due:
- sweep: expire overdue ACTIVE tokens and sessions (every ``sweep_interval``)
- purge: delete EXPIRED tokens while auto-purge is on (every ``purge_interval``)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from vauth.logging import get_logger
from vauth.service.coordinator import LifecycleCoordinator, SweepReport

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60
DEFAULT_PURGE_INTERVAL_SECONDS = 10 * 60


@dataclass(frozen=True)
class TickResult:
    sweep: Optional[SweepReport] = None
    purged: Optional[int] = None


class MaintenanceScheduler:
    def __init__(
        self,
        coordinator: LifecycleCoordinator,
        *,
        sweep_interval: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        purge_interval: int = DEFAULT_PURGE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.coordinator = coordinator
        self.sweep_interval = sweep_interval
        self.purge_interval = purge_interval
        self.poll_interval = min(sweep_interval, purge_interval)
        self._clock = clock
        self._sleep = sleep
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_sweep: Optional[float] = None
        self._last_purge: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("maintenance_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "maintenance_started",
            sweep_interval=self.sweep_interval,
            purge_interval=self.purge_interval,
        )

    async def stop(self) -> None:
        """Stop the loop and wait for the task to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_stopped")

    def _due(self, last: Optional[float], interval: int, now: float) -> bool:
        return last is None or (now - last) >= interval

    async def tick(self) -> TickResult:
        """Run every job that is due at the current clock reading."""
        now = self._clock()
        sweep = None
        purged = None
        if self._due(self._last_sweep, self.sweep_interval, now):
            self._last_sweep = now
            sweep = await self.coordinator.run_sweep()
        if self.coordinator.auto_purge_enabled and self._due(
            self._last_purge, self.purge_interval, now
        ):
            self._last_purge = now
            purged = await self.coordinator.run_purge()
        return TickResult(sweep=sweep, purged=purged)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.tick()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        self.sweep_interval, self.poll_interval * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning("maintenance_backoff", backoff_seconds=backoff)
                    await self._sleep(backoff)
                    continue
            await self._sleep(self.poll_interval)
