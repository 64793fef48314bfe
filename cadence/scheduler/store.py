"""TemplateStore and VerificationStore — libsql persistence for schedulable work.

Both stores share one database.  Every write that touches a schedule and
its audit trail (occurrence + history, result + next due date) runs in a
single transaction, guarded by the due timestamp read at scan time so two
writers can never both advance the same schedule.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from cadence.db import get_connection, transaction
from cadence.scheduler.models import (
    TEST_TYPE_AUTOMATED,
    AutomatedVerification,
    Integration,
    OccurrenceHistoryEntry,
    ScheduledTemplate,
    TaskOccurrence,
    VerificationResult,
    _to_iso,
    make_id,
)

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS recurring_templates (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        task_type TEXT NOT NULL,
        assignee_id TEXT,
        priority TEXT NOT NULL,
        recurrence_pattern TEXT NOT NULL,
        recurrence_interval INTEGER NOT NULL DEFAULT 1 CHECK (recurrence_interval > 0),
        recurrence_day_of_week INTEGER,
        recurrence_day_of_month INTEGER,
        recurrence_month_of_year INTEGER,
        recurrence_end_at TEXT,
        recurrence_count INTEGER,
        next_occurrence_at TEXT,
        last_occurrence_at TEXT,
        occurrences_created INTEGER NOT NULL DEFAULT 0,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        parent_template_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        task_type TEXT NOT NULL,
        assignee_id TEXT,
        priority TEXT NOT NULL,
        due_at TEXT,
        status TEXT NOT NULL DEFAULT 'open',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS occurrence_history (
        id TEXT PRIMARY KEY,
        template_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        occurrence_id TEXT,
        scheduled_at TEXT,
        skipped INTEGER NOT NULL DEFAULT 0,
        skip_reason TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (template_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS control_tests (
        id TEXT PRIMARY KEY,
        control_id TEXT NOT NULL,
        name TEXT NOT NULL,
        test_type TEXT NOT NULL,
        automation_config TEXT,
        frequency TEXT,
        next_due_at TEXT,
        end_at TEXT,
        max_occurrences INTEGER,
        timeout_seconds REAL,
        is_enabled INTEGER NOT NULL DEFAULT 1,
        last_run_at TEXT,
        last_run_status TEXT,
        run_count INTEGER NOT NULL DEFAULT 0,
        pass_count INTEGER NOT NULL DEFAULT 0,
        fail_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS control_test_results (
        id TEXT PRIMARY KEY,
        control_test_id TEXT NOT NULL,
        performed_by TEXT,
        performed_at TEXT NOT NULL,
        status TEXT NOT NULL,
        notes TEXT NOT NULL DEFAULT '',
        evidence_ids TEXT NOT NULL DEFAULT '[]',
        run_type TEXT NOT NULL,
        error_message TEXT,
        raw_response TEXT,
        execution_time_ms INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS integrations (
        id TEXT PRIMARY KEY,
        integration_type TEXT NOT NULL,
        config TEXT NOT NULL DEFAULT '{}'
    )
    """,
)

_TEMPLATE_COLUMNS = """
    id, title, description, task_type, assignee_id, priority,
    recurrence_pattern, recurrence_interval, recurrence_day_of_week,
    recurrence_day_of_month, recurrence_month_of_year, recurrence_end_at,
    recurrence_count, next_occurrence_at, last_occurrence_at,
    occurrences_created, active, created_at, updated_at
"""

_TASK_COLUMNS = """
    id, parent_template_id, title, description, task_type, assignee_id,
    priority, due_at, status, created_at
"""

_HISTORY_COLUMNS = """
    id, template_id, sequence, occurrence_id, scheduled_at, skipped,
    skip_reason, created_at
"""

_TEST_COLUMNS = """
    id, control_id, name, test_type, automation_config, frequency,
    next_due_at, end_at, max_occurrences, timeout_seconds, is_enabled,
    last_run_at, last_run_status, run_count, pass_count, fail_count, created_at
"""

_RESULT_COLUMNS = """
    id, control_test_id, performed_by, performed_at, status, notes,
    evidence_ids, run_type, error_message, raw_response, execution_time_ms
"""


class NotFoundError(LookupError):
    """Raised when an operator action names a record that does not exist."""


class ScheduleConflictError(RuntimeError):
    """Raised when a schedule changed between scan and record.

    The enclosing transaction is rolled back, so nothing is written and the
    item is simply picked up again by the next scan.
    """


class _ScheduleStore:
    """Shared connection handling for the scheduler's stores.

    Subclasses are singletons accessed via ``get()``.  Pass an explicit
    *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    @classmethod
    def get(cls):  # noqa: ANN206
        """Return the shared store instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    async def _connect(self):  # noqa: ANN202
        db = await get_connection(local_path_override=self._db_path)
        if not self._initialised:
            try:
                for statement in _SCHEMA:
                    await db.execute(statement)
                await db.commit()
            except Exception:
                await db.close()
                raise
            self._initialised = True
        return db


class TemplateStore(_ScheduleStore):
    """Persists recurring task templates, their occurrences and history."""

    _instance: TemplateStore | None = None

    # -- Templates -------------------------------------------------------------

    async def add_template(self, template: ScheduledTemplate) -> ScheduledTemplate:
        """Insert a new template. Returns the same template object."""
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO recurring_templates ({_TEMPLATE_COLUMNS}) "
                f"VALUES ({', '.join('?' * 19)})",
                template.to_row(),
            )
            await db.commit()
            logger.info("Added recurring template: %s (%s)", template.title, template.id)
            return template
        finally:
            await db.close()

    async def get_template(self, template_id: str) -> ScheduledTemplate | None:
        """Fetch a template by ID, or None if not found."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_TEMPLATE_COLUMNS} FROM recurring_templates WHERE id = ?",
                (template_id,),
            )
            row = await cursor.fetchone()
            return ScheduledTemplate.from_row(row) if row else None
        finally:
            await db.close()

    async def save_template(self, template: ScheduledTemplate) -> bool:
        """Overwrite a template's mutable fields. Returns True if a row was updated."""
        row = template.to_row()
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                UPDATE recurring_templates SET
                    title = ?, description = ?, task_type = ?, assignee_id = ?,
                    priority = ?, recurrence_pattern = ?, recurrence_interval = ?,
                    recurrence_day_of_week = ?, recurrence_day_of_month = ?,
                    recurrence_month_of_year = ?, recurrence_end_at = ?,
                    recurrence_count = ?, next_occurrence_at = ?,
                    last_occurrence_at = ?, occurrences_created = ?, active = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (*row[1:17], row[18], row[0]),
            )
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    async def set_active(
        self,
        template_id: str,
        active: bool,
        *,
        updated_at: datetime,
        next_occurrence_at: datetime | None = None,
    ) -> bool:
        """Pause or resume a template, optionally moving its next occurrence.

        ``next_occurrence_at`` is only written when given, so pausing never
        loses the pending occurrence.
        """
        db = await self._connect()
        try:
            if next_occurrence_at is None:
                cursor = await db.execute(
                    "UPDATE recurring_templates SET active = ?, updated_at = ? WHERE id = ?",
                    (int(active), _to_iso(updated_at), template_id),
                )
            else:
                cursor = await db.execute(
                    """
                    UPDATE recurring_templates
                    SET active = ?, next_occurrence_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (int(active), _to_iso(next_occurrence_at), _to_iso(updated_at), template_id),
                )
            await db.commit()
            updated = cursor.rowcount > 0
            if updated:
                logger.info("Template %s %s", template_id, "resumed" if active else "paused")
            return updated
        finally:
            await db.close()

    async def list_templates(self, *, active_only: bool = False) -> list[ScheduledTemplate]:
        db = await self._connect()
        try:
            sql = f"SELECT {_TEMPLATE_COLUMNS} FROM recurring_templates"
            if active_only:
                sql += " WHERE active = 1"
            cursor = await db.execute(sql + " ORDER BY title ASC")
            rows = await cursor.fetchall()
            return [ScheduledTemplate.from_row(row) for row in rows]
        finally:
            await db.close()

    async def list_due_templates(self, now: datetime, limit: int) -> list[ScheduledTemplate]:
        """Return active templates whose next occurrence has come due, oldest first."""
        ts = _to_iso(now)
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"""
                SELECT {_TEMPLATE_COLUMNS} FROM recurring_templates
                WHERE active = 1
                  AND next_occurrence_at IS NOT NULL
                  AND next_occurrence_at <= ?
                  AND (recurrence_end_at IS NULL OR recurrence_end_at >= ?)
                  AND (recurrence_count IS NULL OR occurrences_created < recurrence_count)
                ORDER BY next_occurrence_at ASC
                LIMIT ?
                """,
                (ts, ts, limit),
            )
            rows = await cursor.fetchall()
            return [ScheduledTemplate.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Ticks -----------------------------------------------------------------

    async def record_tick(
        self,
        template: ScheduledTemplate,
        *,
        expected_next: datetime | None,
        scheduled_at: datetime | None,
        occurrence: TaskOccurrence | None = None,
        skip_reason: str | None = None,
    ) -> OccurrenceHistoryEntry:
        """Persist one schedule tick atomically.

        Saves *template* (already advanced by the caller), inserts
        *occurrence* when one fired, and appends the history entry with the
        next sequence number.  Raises ScheduleConflictError when the stored
        ``next_occurrence_at`` no longer equals *expected_next*.
        """
        row = template.to_row()
        db = await self._connect()
        try:
            async with transaction(db):
                cursor = await db.execute(
                    """
                    UPDATE recurring_templates SET
                        next_occurrence_at = ?, last_occurrence_at = ?,
                        occurrences_created = ?, updated_at = ?
                    WHERE id = ? AND next_occurrence_at IS ?
                    """,
                    (row[13], row[14], row[15], row[18], template.id, _to_iso(expected_next)),
                )
                if cursor.rowcount == 0:
                    msg = f"Template {template.id} changed since it was read"
                    raise ScheduleConflictError(msg)

                if occurrence is not None:
                    await db.execute(
                        f"INSERT INTO tasks ({_TASK_COLUMNS}) VALUES ({', '.join('?' * 10)})",
                        occurrence.to_row(),
                    )

                cursor = await db.execute(
                    "SELECT COALESCE(MAX(sequence), 0) + 1 FROM occurrence_history "
                    "WHERE template_id = ?",
                    (template.id,),
                )
                (sequence,) = await cursor.fetchone()
                entry = OccurrenceHistoryEntry(
                    id=make_id(),
                    template_id=template.id,
                    sequence=sequence,
                    scheduled_at=scheduled_at,
                    occurrence_id=occurrence.id if occurrence is not None else None,
                    skipped=occurrence is None,
                    skip_reason=skip_reason,
                )
                await db.execute(
                    f"INSERT INTO occurrence_history ({_HISTORY_COLUMNS}) "
                    f"VALUES ({', '.join('?' * 8)})",
                    entry.to_row(),
                )
            return entry
        finally:
            await db.close()

    async def list_history(self, template_id: str, limit: int = 100) -> list[OccurrenceHistoryEntry]:
        """Return a template's history entries, newest first."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"""
                SELECT {_HISTORY_COLUMNS} FROM occurrence_history
                WHERE template_id = ?
                ORDER BY sequence DESC
                LIMIT ?
                """,
                (template_id, limit),
            )
            rows = await cursor.fetchall()
            return [OccurrenceHistoryEntry.from_row(row) for row in rows]
        finally:
            await db.close()

    async def list_occurrences(self, template_id: str, limit: int = 100) -> list[TaskOccurrence]:
        """Return concrete tasks spawned by a template, most recent due date first."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"""
                SELECT {_TASK_COLUMNS} FROM tasks
                WHERE parent_template_id = ?
                ORDER BY due_at DESC
                LIMIT ?
                """,
                (template_id, limit),
            )
            rows = await cursor.fetchall()
            return [TaskOccurrence.from_row(row) for row in rows]
        finally:
            await db.close()


class VerificationStore(_ScheduleStore):
    """Persists automated control tests, their results and connector configs."""

    _instance: VerificationStore | None = None

    # -- Verifications ---------------------------------------------------------

    async def add_verification(self, verification: AutomatedVerification) -> AutomatedVerification:
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO control_tests ({_TEST_COLUMNS}) VALUES ({', '.join('?' * 17)})",
                verification.to_row(),
            )
            await db.commit()
            logger.info("Added control test: %s (%s)", verification.name, verification.id)
            return verification
        finally:
            await db.close()

    async def get_verification(self, verification_id: str) -> AutomatedVerification | None:
        """Fetch a control test by ID, or None if not found."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_TEST_COLUMNS} FROM control_tests WHERE id = ?",
                (verification_id,),
            )
            row = await cursor.fetchone()
            return AutomatedVerification.from_row(row) if row else None
        finally:
            await db.close()

    async def save_verification(self, verification: AutomatedVerification) -> bool:
        """Overwrite a control test's fields. Returns True if a row was updated."""
        row = verification.to_row()
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                UPDATE control_tests SET
                    control_id = ?, name = ?, test_type = ?, automation_config = ?,
                    frequency = ?, next_due_at = ?, end_at = ?, max_occurrences = ?,
                    timeout_seconds = ?, is_enabled = ?, last_run_at = ?,
                    last_run_status = ?, run_count = ?, pass_count = ?, fail_count = ?
                WHERE id = ?
                """,
                (*row[1:16], row[0]),
            )
            await db.commit()
            return cursor.rowcount > 0
        finally:
            await db.close()

    async def list_due_verifications(
        self, now: datetime, limit: int
    ) -> list[AutomatedVerification]:
        """Return automated tests that are due, never-run ones first.

        At most *limit* rows are returned; anything beyond it waits for the
        next scan.
        """
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"""
                SELECT {_TEST_COLUMNS} FROM control_tests
                WHERE test_type = ?
                  AND automation_config IS NOT NULL
                  AND is_enabled = 1
                  AND (next_due_at IS NULL OR next_due_at <= ?)
                ORDER BY next_due_at ASC NULLS FIRST, created_at ASC
                LIMIT ?
                """,
                (TEST_TYPE_AUTOMATED, _to_iso(now), limit),
            )
            rows = await cursor.fetchall()
            return [AutomatedVerification.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Results ---------------------------------------------------------------

    async def record_result(
        self,
        verification: AutomatedVerification,
        result: VerificationResult,
        *,
        expected_next_due: datetime | None,
    ) -> None:
        """Append *result* and save the advanced schedule in one transaction.

        *verification* carries the already-updated counters and next due
        date.  Raises ScheduleConflictError when the stored ``next_due_at``
        no longer equals *expected_next_due*.
        """
        row = verification.to_row()
        db = await self._connect()
        try:
            async with transaction(db):
                cursor = await db.execute(
                    """
                    UPDATE control_tests SET
                        next_due_at = ?, is_enabled = ?, last_run_at = ?,
                        last_run_status = ?, run_count = ?, pass_count = ?, fail_count = ?
                    WHERE id = ? AND next_due_at IS ?
                    """,
                    (row[6], *row[10:16], verification.id, _to_iso(expected_next_due)),
                )
                if cursor.rowcount == 0:
                    msg = f"Control test {verification.id} changed since it was read"
                    raise ScheduleConflictError(msg)
                await db.execute(
                    f"INSERT INTO control_test_results ({_RESULT_COLUMNS}) "
                    f"VALUES ({', '.join('?' * 11)})",
                    result.to_row(),
                )
        finally:
            await db.close()

    async def list_results(
        self, verification_id: str, limit: int = 100
    ) -> list[VerificationResult]:
        """Return a control test's results, newest first."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"""
                SELECT {_RESULT_COLUMNS} FROM control_test_results
                WHERE control_test_id = ?
                ORDER BY performed_at DESC
                LIMIT ?
                """,
                (verification_id, limit),
            )
            rows = await cursor.fetchall()
            return [VerificationResult.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Integrations ----------------------------------------------------------

    async def add_integration(self, integration: Integration) -> Integration:
        db = await self._connect()
        try:
            await db.execute(
                "INSERT INTO integrations (id, integration_type, config) VALUES (?, ?, ?)",
                (integration.id, integration.integration_type, json.dumps(integration.config)),
            )
            await db.commit()
            return integration
        finally:
            await db.close()

    async def get_integration(self, integration_id: str) -> Integration | None:
        """Fetch a connector's stored configuration, or None if not found."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT id, integration_type, config FROM integrations WHERE id = ?",
                (integration_id,),
            )
            row = await cursor.fetchone()
            if not row:
                return None
            return Integration(id=row[0], integration_type=row[1], config=json.loads(row[2]))
        finally:
            await db.close()
