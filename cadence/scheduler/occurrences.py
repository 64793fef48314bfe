"""OccurrenceController — fire, skip, pause and resume recurring task templates."""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

from cadence.config import settings
from cadence.recurrence import InvalidRecurrenceRule, ensure_utc, first_due, is_due, next_due
from cadence.scheduler.models import ScheduledTemplate, TaskOccurrence, make_id, utcnow
from cadence.scheduler.store import NotFoundError, ScheduleConflictError

if TYPE_CHECKING:
    from datetime import datetime

    from cadence.recurrence import RecurrenceRule
    from cadence.scheduler.models import OccurrenceHistoryEntry
    from cadence.scheduler.store import TemplateStore

logger = logging.getLogger(__name__)


class NothingScheduledError(ValueError):
    """Raised when skipping a template that has no pending occurrence."""


@dataclasses.dataclass
class DueTemplatesRun:
    """What one pass over due templates did."""

    created: list[TaskOccurrence] = dataclasses.field(default_factory=list)
    conflicts: int = 0
    errors: int = 0


class OccurrenceController:
    """Turns due templates into concrete tasks and applies operator actions.

    Every schedule tick (fired or skipped) writes exactly one history entry
    in the same transaction that advances ``next_occurrence_at``.

    Args:
        store: TemplateStore for templates, occurrences and history.
        honor_weekday_anchor: Passed through to the recurrence policy.
    """

    def __init__(self, store: TemplateStore, honor_weekday_anchor: bool | None = None) -> None:
        self._store = store
        self._honor_weekday_anchor = (
            settings.honor_weekday_anchor if honor_weekday_anchor is None else honor_weekday_anchor
        )

    # -- Templates -------------------------------------------------------------

    async def create_template(
        self,
        title: str,
        rule: RecurrenceRule,
        *,
        start: datetime | None = None,
        description: str = "",
        task_type: str = "general",
        assignee_id: str | None = None,
        priority: str = "medium",
    ) -> ScheduledTemplate:
        """Persist a new template whose first occurrence is aligned to the rule's anchors."""
        if rule.every is not None:
            msg = "Recurring templates need a calendar pattern, not a sub-daily step"
            raise InvalidRecurrenceRule(msg)
        now = utcnow()
        template = ScheduledTemplate(
            id=make_id(),
            title=title,
            rule=rule,
            description=description,
            task_type=task_type,
            assignee_id=assignee_id,
            priority=priority,
            next_occurrence_at=first_due(rule, start or now),
            created_at=now,
        )
        return await self._store.add_template(template)

    # -- Firing ----------------------------------------------------------------

    async def create_occurrence(
        self, template: ScheduledTemplate, now: datetime | None = None
    ) -> TaskOccurrence | None:
        """Spawn the template's pending occurrence if it is due. Returns None otherwise."""
        now = now or utcnow()
        if not is_due(template, now):
            return None

        scheduled_at = template.next_occurrence_at
        occurrence = TaskOccurrence.from_template(template, due_at=scheduled_at)
        occurrences_created = template.occurrences_created + 1
        advanced = dataclasses.replace(
            template,
            occurrences_created=occurrences_created,
            last_occurrence_at=scheduled_at,
            next_occurrence_at=self._next(template, now, scheduled_at, occurrences_created),
            updated_at=now,
        )
        await self._store.record_tick(
            advanced,
            expected_next=scheduled_at,
            scheduled_at=scheduled_at,
            occurrence=occurrence,
        )
        logger.info(
            "Created occurrence %d of '%s' (%s) due %s",
            occurrences_created,
            template.title,
            template.id,
            scheduled_at.isoformat(),
        )
        return occurrence

    async def process_due(
        self, now: datetime | None = None, limit: int | None = None
    ) -> DueTemplatesRun:
        """Fire every due template. A failure on one template never blocks the others."""
        scan_at = now or utcnow()
        templates = await self._store.list_due_templates(scan_at, limit or settings.scan_batch_size)
        run = DueTemplatesRun()
        for template in templates:
            try:
                occurrence = await self.create_occurrence(template, now)
            except ScheduleConflictError as exc:
                logger.warning("Skipped template '%s': %s", template.title, exc)
                run.conflicts += 1
                continue
            except Exception:
                logger.exception(
                    "Failed to create occurrence for '%s' (%s)", template.title, template.id
                )
                run.errors += 1
                continue
            if occurrence is not None:
                run.created.append(occurrence)
        if run.created:
            logger.info("Created %d recurring task occurrence(s)", len(run.created))
        return run

    # -- Operator actions ------------------------------------------------------

    async def skip_next(
        self, template_id: str, reason: str | None = None, *, now: datetime | None = None
    ) -> ScheduledTemplate:
        """Advance past the pending occurrence without creating a task."""
        now = now or utcnow()
        template = await self._require(template_id)
        scheduled_at = template.next_occurrence_at
        if scheduled_at is None:
            msg = f"Template {template_id} has no pending occurrence to skip"
            raise NothingScheduledError(msg)

        advanced = dataclasses.replace(
            template,
            next_occurrence_at=self._next(
                template, now, scheduled_at, template.occurrences_created
            ),
            updated_at=now,
        )
        await self._store.record_tick(
            advanced,
            expected_next=scheduled_at,
            scheduled_at=scheduled_at,
            skip_reason=reason,
        )
        logger.info(
            "Skipped occurrence of '%s' (%s) scheduled for %s",
            template.title,
            template_id,
            scheduled_at.isoformat(),
        )
        return advanced

    async def pause(self, template_id: str) -> ScheduledTemplate:
        """Stop firing occurrences; the pending one is kept for resume."""
        if not await self._store.set_active(template_id, False, updated_at=utcnow()):
            msg = f"Recurring template not found: {template_id}"
            raise NotFoundError(msg)
        return await self._require(template_id)

    async def resume(
        self, template_id: str, resume_from: datetime | None = None
    ) -> ScheduledTemplate:
        """Start firing again, optionally restarting the series at *resume_from*.

        Without *resume_from* the pending occurrence is kept as-is and fires
        on the next tick if it is already past.
        """
        updated = await self._store.set_active(
            template_id,
            True,
            updated_at=utcnow(),
            next_occurrence_at=ensure_utc(resume_from) if resume_from is not None else None,
        )
        if not updated:
            msg = f"Recurring template not found: {template_id}"
            raise NotFoundError(msg)
        return await self._require(template_id)

    async def list_history(self, template_id: str) -> list[OccurrenceHistoryEntry]:
        await self._require(template_id)
        return await self._store.list_history(template_id)

    async def list_occurrences(self, template_id: str) -> list[TaskOccurrence]:
        await self._require(template_id)
        return await self._store.list_occurrences(template_id)

    # -- Internal --------------------------------------------------------------

    async def _require(self, template_id: str) -> ScheduledTemplate:
        template = await self._store.get_template(template_id)
        if template is None:
            msg = f"Recurring template not found: {template_id}"
            raise NotFoundError(msg)
        return template

    def _next(
        self,
        template: ScheduledTemplate,
        now: datetime,
        last: datetime,
        occurrences_created: int,
    ) -> datetime | None:
        return next_due(
            template.rule,
            now,
            last_occurrence_at=last,
            occurrences_created=occurrences_created,
            honor_weekday_anchor=self._honor_weekday_anchor,
        )
