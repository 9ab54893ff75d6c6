"""Recovery sweeper for crash recovery.

Runs as background task to:
- Re-arm resume timers of suspended executions (timers live in memory)
- Adopt executions left RUNNING by a dead worker and continue them
- Cancel executions suspended longer than the configured maximum
"""

import asyncio
import time
from typing import Callable, Dict, Optional

from core.config import Settings
from core.logging import get_logger
from services.execution.executor import WorkflowExecutor
from services.execution.models import ExecutionStatus
from services.execution.store import ExecutionStore
from services.execution.timers import Timer

logger = get_logger(__name__)


class RecoverySweeper:
    """Background task that keeps durable execution state and timers in sync."""

    def __init__(self, store: ExecutionStore, executor: WorkflowExecutor,
                 timer: Timer, settings: Settings,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.executor = executor
        self.timer = timer
        self.settings = settings
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the recovery sweeper background task."""
        if self._running:
            logger.warning("Recovery sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Recovery sweeper started",
                    stale_running_seconds=self.settings.stale_running_seconds,
                    sweep_interval=self.settings.recovery_sweep_interval)

    async def stop(self) -> None:
        """Stop the recovery sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Recovery sweeper stopped")

    async def _sweep_loop(self) -> None:
        """Main sweep loop - runs continuously."""
        while self._running:
            await asyncio.sleep(self.settings.recovery_sweep_interval)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))

    async def sweep_once(self) -> Dict[str, int]:
        """Single sweep: re-arm timers, expire long suspensions, recover stale runs."""
        stats = {"rearmed": 0, "expired": 0, "recovered": 0}
        now = self.clock()
        max_suspension = self.settings.max_suspension_seconds

        for execution in await self.store.list(statuses=[ExecutionStatus.SUSPENDED]):
            waits = execution.pending_waits()
            if max_suspension and waits and \
                    now - max(w.created_at for w in waits) > max_suspension:
                await self.executor.cancel(execution.id, reason="suspended longer than allowed")
                stats["expired"] += 1
                continue
            for wait in waits:
                if wait.fire_at is not None:
                    self.timer.schedule(execution.id, wait.node_id, wait.id, wait.fire_at)
                    stats["rearmed"] += 1

        stale_before = now - self.settings.stale_running_seconds
        stale = await self.store.list(statuses=[ExecutionStatus.RUNNING], updated_before=stale_before)
        for execution in stale:
            logger.warning("Found interrupted execution", execution_id=execution.id,
                           age_seconds=now - execution.updated_at)
            try:
                if await self.executor.recover(execution.id, stale_before) is not None:
                    stats["recovered"] += 1
            except Exception as e:
                logger.error("Failed to recover execution",
                             execution_id=execution.id, error=str(e))

        if any(stats.values()):
            logger.info("Recovery sweep finished", **stats)
        return stats

    async def scan_on_startup(self) -> Dict[str, int]:
        """Run one sweep before serving so timers lost in a restart fire again."""
        logger.info("Startup scan for suspended and interrupted executions")
        return await self.sweep_once()
