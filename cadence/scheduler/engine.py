"""SchedulerEngine — the fixed-interval worker loop and its lifecycle."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cadence.config import settings
from cadence.scheduler.executor import NotAutomatedError
from cadence.scheduler.models import RunType, utcnow
from cadence.scheduler.store import NotFoundError, ScheduleConflictError

if TYPE_CHECKING:
    from datetime import datetime

    from cadence.scheduler.executor import VerificationExecutor
    from cadence.scheduler.models import AutomatedVerification, VerificationResult
    from cadence.scheduler.occurrences import OccurrenceController
    from cadence.scheduler.store import VerificationStore

logger = logging.getLogger(__name__)

TICK_JOB_ID = "cadence-tick"


@dataclass
class TickReport:
    """What one pass of the worker loop did."""

    occurrences_created: int = 0
    verifications_run: int = 0
    conflicts: int = 0
    errors: int = 0


class SchedulerEngine:
    """Wakes on a fixed interval, fires due templates and runs due control tests.

    Ticks never overlap: APScheduler runs the tick job with
    ``max_instances=1`` and the tick body holds a lock, so a tick that
    outlives the interval simply delays the next one.

    Args:
        executor: VerificationExecutor used for every control test run.
        occurrences: OccurrenceController used to fire due templates.
        verification_store: VerificationStore scanned for due tests.
        tick_interval: Seconds between ticks (default from settings).
        batch_size: Maximum items of each kind per tick (default from settings).
        max_concurrency: Control tests executed in parallel within a tick.
    """

    def __init__(
        self,
        executor: VerificationExecutor,
        occurrences: OccurrenceController,
        verification_store: VerificationStore,
        tick_interval: float | None = None,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        self._executor = executor
        self._occurrences = occurrences
        self._verifications = verification_store
        self._tick_interval = tick_interval or settings.tick_interval_seconds
        self._batch_size = batch_size or settings.scan_batch_size
        self._max_concurrency = max_concurrency or settings.max_concurrent_checks
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._tick_lock = asyncio.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # -- Lifecycle -------------------------------------------------------------

    async def start(self, *, run_immediately: bool = True) -> None:
        """Register the tick job and start the scheduler."""
        job_kwargs: dict[str, Any] = {}
        if run_immediately:
            job_kwargs["next_run_time"] = utcnow()
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._tick_interval, timezone="UTC"),
            id=TICK_JOB_ID,
            name="scheduler tick",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True,
            **job_kwargs,
        )
        self._scheduler.start()
        self._running = True
        logger.info(
            "Scheduler started (interval=%ss, batch=%d, concurrency=%d)",
            self._tick_interval,
            self._batch_size,
            self._max_concurrency,
        )

    async def stop(self) -> None:
        """Stop scheduling ticks and wait for an in-flight tick to finish."""
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._running = False
        async with self._tick_lock:
            pass
        logger.info("Scheduler stopped")

    # -- Tick ------------------------------------------------------------------

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Run one full pass: fire due templates, then execute due control tests."""
        if self._tick_lock.locked():
            logger.warning("Previous tick still running; skipping this one")
            return TickReport()

        async with self._tick_lock:
            report = TickReport()
            try:
                templates = await self._occurrences.process_due(now, self._batch_size)
            except Exception:
                logger.exception("Recurring template pass failed")
                report.errors += 1
            else:
                report.occurrences_created = len(templates.created)
                report.conflicts += templates.conflicts
                report.errors += templates.errors

            try:
                await self._run_due_verifications(now, report)
            except Exception:
                logger.exception("Control test pass failed")
                report.errors += 1

            activity = (
                report.occurrences_created,
                report.verifications_run,
                report.conflicts,
                report.errors,
            )
            if any(activity):
                logger.info(
                    "Tick complete: %d occurrence(s), %d test(s), %d conflict(s), %d error(s)",
                    report.occurrences_created,
                    report.verifications_run,
                    report.conflicts,
                    report.errors,
                )
            return report

    async def _run_due_verifications(self, now: datetime | None, report: TickReport) -> None:
        due = await self._verifications.list_due_verifications(now or utcnow(), self._batch_size)
        if not due:
            logger.debug("No control tests due for execution")
            return

        logger.info("Found %d control test(s) due for execution", len(due))
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run_one(verification: AutomatedVerification) -> None:
            async with semaphore:
                try:
                    await self._executor.execute(verification, now=now)
                except ScheduleConflictError as exc:
                    logger.warning("Control test '%s' not recorded: %s", verification.name, exc)
                    report.conflicts += 1
                except Exception:
                    logger.exception(
                        "Failed to record control test '%s' (%s)",
                        verification.name,
                        verification.id,
                    )
                    report.errors += 1
                else:
                    report.verifications_run += 1

        await asyncio.gather(*(run_one(verification) for verification in due))

    # -- Control surface -------------------------------------------------------

    async def trigger_now(
        self, verification_id: str, performed_by: str | None = None
    ) -> VerificationResult:
        """Run a control test immediately, outside the regular tick."""
        verification = await self._verifications.get_verification(verification_id)
        if verification is None:
            msg = f"Control test not found: {verification_id}"
            raise NotFoundError(msg)
        if verification.automation_config is None and verification.config_error is None:
            msg = f"Control test {verification_id} has no automation config"
            raise NotAutomatedError(msg)
        return await self._executor.execute(
            verification, run_type=RunType.MANUAL, performed_by=performed_by
        )
