"""APScheduler integration for the background sweeps.

Uses AsyncIOScheduler with two IntervalTriggers: the heartbeat evaluator and
the telemetry retention pruner. Each job allows a single running instance, so
a slow sweep delays the next one instead of overlapping it. Sweep failures are
logged and counted, never propagated to the scheduler.
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from typing import TypeVar

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from chief_monitor.config import Settings
from chief_monitor.engine.evaluator import SweepResult
from chief_monitor.observability.metrics import SWEEP_DURATION, SWEEPS_TOTAL
from chief_monitor.service import MonitorService

logger = logging.getLogger(__name__)

EVALUATOR_JOB_ID = "heartbeat_evaluator"
RETENTION_JOB_ID = "telemetry_retention"

T = TypeVar("T")


class SweepScheduler:
    """Owns the periodic sweeps for one service instance."""

    def __init__(
        self,
        service: MonitorService,
        *,
        evaluator_interval_seconds: int,
        retention_interval_seconds: int,
    ) -> None:
        self._service = service
        self._evaluator_interval_seconds = evaluator_interval_seconds
        self._retention_interval_seconds = retention_interval_seconds
        self._scheduler: AsyncIOScheduler | None = None
        self._inflight: set[asyncio.Task[object]] = set()

    @classmethod
    def from_settings(cls, service: MonitorService, settings: Settings) -> "SweepScheduler":
        return cls(
            service,
            evaluator_interval_seconds=settings.monitor_evaluator_interval_seconds,
            retention_interval_seconds=settings.monitor_retention_interval_seconds,
        )

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    async def _run_sweep(self, sweep: str, func: Callable[[], T]) -> T | None:
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        start = time.monotonic()
        try:
            result = await asyncio.to_thread(func)
        except Exception:
            SWEEPS_TOTAL.labels(sweep=sweep, status="error").inc()
            logger.exception("%s sweep failed", sweep.capitalize())
            return None
        finally:
            SWEEP_DURATION.labels(sweep=sweep).observe(time.monotonic() - start)
            if task is not None:
                self._inflight.discard(task)
        SWEEPS_TOTAL.labels(sweep=sweep, status="success").inc()
        return result

    async def run_evaluator(self) -> SweepResult | None:
        """One evaluator sweep. Returns None if the sweep failed."""
        return await self._run_sweep("evaluator", self._service.evaluate_checks)

    async def run_retention(self) -> int | None:
        """One retention sweep. Returns rows removed, or None if the sweep failed."""
        return await self._run_sweep("retention", self._service.prune_telemetry)

    def start(self) -> None:
        """Start both interval jobs. Must be called with a running event loop."""
        if self._scheduler is not None:
            return

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.run_evaluator,
            trigger=IntervalTrigger(seconds=self._evaluator_interval_seconds),
            id=EVALUATOR_JOB_ID,
            name="Heartbeat evaluator",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            self.run_retention,
            trigger=IntervalTrigger(seconds=self._retention_interval_seconds),
            id=RETENTION_JOB_ID,
            name="Telemetry retention",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Sweep scheduler started (evaluator every %ds, retention every %ds)",
            self._evaluator_interval_seconds,
            self._retention_interval_seconds,
        )

    async def stop(self) -> None:
        """Cancel both timers, then wait for any sweep that is already running to finish."""
        if self._scheduler is not None:
            with contextlib.suppress(Exception):
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sweep scheduler stopped")
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
