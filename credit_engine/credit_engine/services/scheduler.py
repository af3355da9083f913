"""Background scheduler for usage sync and auto top-up cycles.

Runs as an ``asyncio`` background task with one loop per job.  Each loop
runs its job, sleeps for the configured interval and repeats until
:meth:`CreditScheduler.stop` is called.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.exc import InterfaceError, OperationalError

from credit_engine.services.auto_replenish import AutoReplenishController
from credit_engine.services.sync_reconciler import UsageSyncReconciler

logger = logging.getLogger(__name__)


class CreditScheduler:
    """AsyncIO background tasks for the periodic credit jobs.

    Parameters
    ----------
    reconciler:
        Usage sync job, run every *sync_interval_seconds*.
    replenisher:
        Auto top-up job, run every *replenish_interval_seconds*.
    """

    def __init__(
        self,
        reconciler: UsageSyncReconciler,
        replenisher: AutoReplenishController,
        *,
        sync_interval_seconds: float = 3600.0,
        replenish_interval_seconds: float = 300.0,
    ) -> None:
        self._jobs: dict[str, tuple[Callable[[], Awaitable[Any]], float]] = {
            "usage_sync": (reconciler.sync_all, sync_interval_seconds),
            "auto_replenish": (replenisher.run_cycle, replenish_interval_seconds),
        }
        self._running = False
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        """Whether the scheduler loops are active."""
        return self._running

    async def start(self) -> None:
        """Start one background task per job."""
        if self._running:
            logger.warning("CreditScheduler already running; ignoring start()")
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_loop(name, job, interval), name=f"credit-scheduler-{name}")
            for name, (job, interval) in self._jobs.items()
        ]
        logger.info("CreditScheduler started jobs: %s", ", ".join(self._jobs))

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("CreditScheduler stopped")

    async def run_once(self, name: str) -> Any:
        """Run the job called *name* immediately, outside the loop."""
        job, _interval = self._jobs[name]
        return await job()

    async def _run_loop(self, name: str, job: Callable[[], Awaitable[Any]], interval: float) -> None:
        while self._running:
            try:
                result = await job()
                logger.debug("Scheduled job %s complete: %s", name, result)
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("CreditScheduler database error (job=%s): %s", name, exc, exc_info=True)
            except Exception as exc:
                logger.critical("CreditScheduler unexpected error (job=%s): %s", name, exc, exc_info=True)
                raise
            await asyncio.sleep(interval)
