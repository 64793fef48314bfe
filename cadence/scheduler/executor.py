"""VerificationExecutor — runs one control test and records the outcome."""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import TYPE_CHECKING

from cadence.config import settings
from cadence.recurrence import next_due
from cadence.scheduler.models import (
    RunType,
    Verdict,
    VerificationResult,
    make_id,
    utcnow,
)
from cadence.scheduler.strategies import CheckExecutionError, CheckOutcome, CheckRunner

if TYPE_CHECKING:
    from datetime import datetime

    from cadence.scheduler.models import AutomatedVerification
    from cadence.scheduler.store import VerificationStore

logger = logging.getLogger(__name__)


class NotAutomatedError(ValueError):
    """Raised when a manual run is requested for a test with no automation config."""


class VerificationExecutor:
    """Executes automated control tests and advances their schedules.

    A strategy that cannot reach a verdict never escapes as an exception:
    it is recorded as a ``failed`` result carrying the error text, so one
    broken check cannot stall the rest of a tick.

    Args:
        store: VerificationStore for results and schedule updates.
        runner: CheckRunner dispatching configs to strategies (defaults to
            one backed by *store*'s integration lookup).
        default_frequency: Frequency used when a test has none (or an
            unrecognised one).
        honor_weekday_anchor: Passed through to the recurrence policy.
    """

    def __init__(
        self,
        store: VerificationStore,
        runner: CheckRunner | None = None,
        default_frequency: str | None = None,
        honor_weekday_anchor: bool | None = None,
    ) -> None:
        self._store = store
        self._runner = runner or CheckRunner(lookup=store.get_integration)
        self._default_frequency = default_frequency or settings.default_frequency
        self._honor_weekday_anchor = (
            settings.honor_weekday_anchor if honor_weekday_anchor is None else honor_weekday_anchor
        )

    async def execute(
        self,
        verification: AutomatedVerification,
        *,
        now: datetime | None = None,
        run_type: RunType = RunType.SCHEDULED,
        performed_by: str | None = None,
    ) -> VerificationResult:
        """Run *verification*'s check, then append the result and reschedule atomically.

        Raises ScheduleConflictError (from the store) if the test was
        rescheduled by someone else while the check was running.
        """
        logger.info(
            "Executing control test: '%s' (%s) type=%s run=%s",
            verification.name,
            verification.id,
            verification.automation_config.automation_type
            if verification.automation_config
            else None,
            run_type,
        )
        started = time.monotonic()
        outcome = await self._run_check(verification)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        now = now or utcnow()
        result = VerificationResult(
            id=make_id(),
            verification_id=verification.id,
            status=outcome.verdict,
            notes=outcome.notes,
            performed_at=now,
            performed_by=performed_by,
            run_type=run_type,
            error_message=outcome.error_message,
            raw_response=outcome.raw_response,
            execution_time_ms=elapsed_ms,
        )
        advanced = self.advance(verification, result.status, now)
        await self._store.record_result(
            advanced, result, expected_next_due=verification.next_due_at
        )

        if advanced.is_enabled:
            logger.info(
                "Control test '%s' completed with status %s (%dms); next due %s",
                verification.name,
                result.status,
                elapsed_ms,
                advanced.next_due_at.isoformat() if advanced.next_due_at else None,
            )
        else:
            logger.info(
                "Control test '%s' completed with status %s (%dms); schedule retired",
                verification.name,
                result.status,
                elapsed_ms,
            )
        return result

    def advance(
        self, verification: AutomatedVerification, verdict: Verdict, now: datetime
    ) -> AutomatedVerification:
        """Return a copy of *verification* with counters and next due date updated.

        ``skipped`` runs count towards ``run_count`` only; they are neither
        passes nor failures.
        """
        run_count = verification.run_count + 1
        rule = verification.recurrence_rule(self._default_frequency)
        next_due_at = next_due(
            rule,
            now,
            last_occurrence_at=now,
            occurrences_created=run_count,
            honor_weekday_anchor=self._honor_weekday_anchor,
        )
        return dataclasses.replace(
            verification,
            next_due_at=next_due_at,
            is_enabled=next_due_at is not None,
            last_run_at=now,
            last_run_status=str(verdict),
            run_count=run_count,
            pass_count=verification.pass_count + (verdict is Verdict.PASSED),
            fail_count=verification.fail_count + (verdict is Verdict.FAILED),
        )

    async def _run_check(self, verification: AutomatedVerification) -> CheckOutcome:
        config = verification.automation_config
        if config is None and verification.config_error is not None:
            logger.warning(
                "Control test '%s' (%s) has an invalid automation config: %s",
                verification.name,
                verification.id,
                verification.config_error,
            )
            return CheckOutcome(
                verdict=Verdict.FAILED,
                notes=f"Invalid automation config: {verification.config_error}",
                error_message=verification.config_error,
            )
        if config is None:
            return CheckOutcome(
                verdict=Verdict.FAILED,
                notes="No automation config found",
                error_message="Missing automation config",
            )
        try:
            return await self._runner.run(config, timeout=verification.timeout_seconds)
        except CheckExecutionError as exc:
            logger.warning(
                "Control test '%s' (%s) could not execute: %s",
                verification.name,
                verification.id,
                exc,
            )
            return CheckOutcome(
                verdict=Verdict.FAILED,
                notes=f"Test execution failed: {exc}",
                error_message=str(exc),
            )
        except Exception as exc:
            logger.exception(
                "Unexpected error executing control test '%s' (%s)",
                verification.name,
                verification.id,
            )
            return CheckOutcome(
                verdict=Verdict.FAILED,
                notes=f"Test execution failed: {exc}",
                error_message=f"{type(exc).__name__}: {exc}",
            )
