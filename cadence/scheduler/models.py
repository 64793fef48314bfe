"""Scheduler data models — templates, occurrences, verifications and results."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from cadence.recurrence import RecurrenceRule, ensure_utc, rule_from_frequency


class Verdict(StrEnum):
    """Semantic outcome of a verification check."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunType(StrEnum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


TEST_TYPE_AUTOMATED = "automated"
TEST_TYPE_MANUAL = "manual"

DEFAULT_EXPECTED_STATUS_CODES = (200, 201, 204)


def make_id() -> str:
    """Generate a new record ID."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


def _to_iso(value: datetime | None) -> str | None:
    """Fixed-width UTC text so lexical order in SQL matches time order."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


# -- Automation config ---------------------------------------------------------


class HttpCheck(BaseModel):
    """Probe an HTTP endpoint and compare status (and optionally a JSON value)."""

    automation_type: Literal["http"] = "http"
    endpoint: str
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    expected_status_codes: list[int] = Field(
        default_factory=lambda: list(DEFAULT_EXPECTED_STATUS_CODES)
    )
    validation_path: str | None = None
    expected_value: Any = None


class IntegrationCheck(BaseModel):
    """Delegate the check to a named third-party connector."""

    automation_type: Literal["integration"] = "integration"
    integration_id: str
    integration_config: dict[str, Any] = Field(default_factory=dict)


AutomationConfig = Annotated[HttpCheck | IntegrationCheck, Field(discriminator="automation_type")]

_automation_config_adapter: TypeAdapter[HttpCheck | IntegrationCheck] = TypeAdapter(
    AutomationConfig
)


def load_automation_config(raw: str | bytes | dict[str, Any]) -> HttpCheck | IntegrationCheck:
    """Parse a stored automation config (JSON text or dict) into its variant."""
    if isinstance(raw, dict):
        return _automation_config_adapter.validate_python(raw)
    return _automation_config_adapter.validate_json(raw)


def dump_automation_config(config: HttpCheck | IntegrationCheck) -> str:
    return config.model_dump_json()


# -- Recurring task templates --------------------------------------------------


@dataclass
class ScheduledTemplate:
    """A recurring task template that spawns concrete occurrences.

    Attributes:
        id: Unique identifier (UUID hex).
        title: Title copied onto every occurrence.
        rule: The recurrence rule driving the schedule.
        description: Description copied onto every occurrence.
        task_type: Free-form task category (e.g. ``"review"``).
        assignee_id: Who each occurrence is assigned to.
        priority: Priority copied onto every occurrence.
        next_occurrence_at: When the next occurrence is due (None = nothing pending).
        last_occurrence_at: Scheduled time of the most recent fired occurrence.
        occurrences_created: Number of occurrences fired (skips excluded).
        active: False while paused.
    """

    id: str
    title: str
    rule: RecurrenceRule
    description: str = ""
    task_type: str = "general"
    assignee_id: str | None = None
    priority: str = "medium"
    next_occurrence_at: datetime | None = None
    last_occurrence_at: datetime | None = None
    occurrences_created: int = 0
    active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = utcnow()
        if self.updated_at is None:
            self.updated_at = self.created_at

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``recurring_templates`` column order."""
        rule = self.rule
        return (
            self.id,
            self.title,
            self.description,
            self.task_type,
            self.assignee_id,
            self.priority,
            str(rule.pattern),
            rule.interval,
            rule.anchor_day_of_week,
            rule.anchor_day_of_month,
            rule.anchor_month_of_year,
            _to_iso(rule.end_at),
            rule.max_occurrences,
            _to_iso(self.next_occurrence_at),
            _to_iso(self.last_occurrence_at),
            self.occurrences_created,
            int(self.active),
            _to_iso(self.created_at),
            _to_iso(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> ScheduledTemplate:
        rule = RecurrenceRule(
            pattern=row[6],
            interval=row[7] or 1,
            anchor_day_of_week=row[8],
            anchor_day_of_month=row[9],
            anchor_month_of_year=row[10],
            end_at=_from_iso(row[11]),
            max_occurrences=row[12],
        )
        return cls(
            id=row[0],
            title=row[1],
            description=row[2] or "",
            task_type=row[3],
            assignee_id=row[4],
            priority=row[5],
            rule=rule,
            next_occurrence_at=_from_iso(row[13]),
            last_occurrence_at=_from_iso(row[14]),
            occurrences_created=row[15] or 0,
            active=bool(row[16]),
            created_at=_from_iso(row[17]),
            updated_at=_from_iso(row[18]),
        )


@dataclass
class TaskOccurrence:
    """One concrete task spawned from a template."""

    id: str
    parent_template_id: str
    title: str
    due_at: datetime | None
    description: str = ""
    task_type: str = "general"
    assignee_id: str | None = None
    priority: str = "medium"
    status: str = "open"
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = utcnow()

    @classmethod
    def from_template(cls, template: ScheduledTemplate, due_at: datetime | None) -> TaskOccurrence:
        return cls(
            id=make_id(),
            parent_template_id=template.id,
            title=template.title,
            description=template.description,
            task_type=template.task_type,
            assignee_id=template.assignee_id,
            priority=template.priority,
            due_at=due_at,
        )

    def to_row(self) -> tuple:
        return (
            self.id,
            self.parent_template_id,
            self.title,
            self.description,
            self.task_type,
            self.assignee_id,
            self.priority,
            _to_iso(self.due_at),
            self.status,
            _to_iso(self.created_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> TaskOccurrence:
        return cls(
            id=row[0],
            parent_template_id=row[1],
            title=row[2],
            description=row[3] or "",
            task_type=row[4],
            assignee_id=row[5],
            priority=row[6],
            due_at=_from_iso(row[7]),
            status=row[8],
            created_at=_from_iso(row[9]),
        )


@dataclass(frozen=True)
class OccurrenceHistoryEntry:
    """Audit record written once per schedule tick, fired or skipped."""

    id: str
    template_id: str
    sequence: int
    scheduled_at: datetime | None
    occurrence_id: str | None = None
    skipped: bool = False
    skip_reason: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_row(self) -> tuple:
        return (
            self.id,
            self.template_id,
            self.sequence,
            self.occurrence_id,
            _to_iso(self.scheduled_at),
            int(self.skipped),
            self.skip_reason,
            _to_iso(self.created_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> OccurrenceHistoryEntry:
        return cls(
            id=row[0],
            template_id=row[1],
            sequence=row[2],
            occurrence_id=row[3],
            scheduled_at=_from_iso(row[4]),
            skipped=bool(row[5]),
            skip_reason=row[6],
            created_at=_from_iso(row[7]),
        )


# -- Automated control tests ---------------------------------------------------


@dataclass
class AutomatedVerification:
    """A control test the worker runs on a schedule.

    ``frequency`` is a loose string (``"daily"``, ``"Monthly"``, ``"annually"``);
    ``end_at`` and ``max_occurrences`` bound the series the same way they bound
    recurring templates.  ``is_enabled`` turns false once the series is retired.

    A stored config that no longer validates loads as ``automation_config=None``
    with the stored text in ``automation_config_raw`` and the validation message
    in ``config_error``, so one bad row cannot break a scan.
    """

    id: str
    control_id: str
    name: str
    test_type: str = TEST_TYPE_AUTOMATED
    automation_config: HttpCheck | IntegrationCheck | None = None
    frequency: str | None = None
    next_due_at: datetime | None = None
    end_at: datetime | None = None
    max_occurrences: int | None = None
    timeout_seconds: float | None = None
    is_enabled: bool = True
    last_run_at: datetime | None = None
    last_run_status: str | None = None
    run_count: int = 0
    pass_count: int = 0
    fail_count: int = 0
    created_at: datetime | None = None
    automation_config_raw: str | None = field(default=None, repr=False, compare=False)
    config_error: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = utcnow()

    @property
    def is_automated(self) -> bool:
        return self.test_type == TEST_TYPE_AUTOMATED

    def recurrence_rule(self, default_frequency: str = "weekly") -> RecurrenceRule:
        return rule_from_frequency(
            self.frequency,
            end_at=self.end_at,
            max_occurrences=self.max_occurrences,
            default=default_frequency,
        )

    def to_row(self) -> tuple:
        config = self.automation_config
        return (
            self.id,
            self.control_id,
            self.name,
            self.test_type,
            dump_automation_config(config) if config is not None else self.automation_config_raw,
            self.frequency,
            _to_iso(self.next_due_at),
            _to_iso(self.end_at),
            self.max_occurrences,
            self.timeout_seconds,
            int(self.is_enabled),
            _to_iso(self.last_run_at),
            self.last_run_status,
            self.run_count,
            self.pass_count,
            self.fail_count,
            _to_iso(self.created_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> AutomatedVerification:
        config, config_error = None, None
        if row[4]:
            try:
                config = load_automation_config(row[4])
            except ValidationError as exc:
                config_error = str(exc)
        return cls(
            id=row[0],
            control_id=row[1],
            name=row[2],
            test_type=row[3],
            automation_config=config,
            frequency=row[5],
            next_due_at=_from_iso(row[6]),
            end_at=_from_iso(row[7]),
            max_occurrences=row[8],
            timeout_seconds=row[9],
            is_enabled=bool(row[10]),
            last_run_at=_from_iso(row[11]),
            last_run_status=row[12],
            run_count=row[13] or 0,
            pass_count=row[14] or 0,
            fail_count=row[15] or 0,
            created_at=_from_iso(row[16]),
            automation_config_raw=row[4] if config_error is not None else None,
            config_error=config_error,
        )


@dataclass(frozen=True)
class VerificationResult:
    """Append-only outcome of one verification run."""

    id: str
    verification_id: str
    status: Verdict
    notes: str
    performed_at: datetime
    performed_by: str | None = None
    evidence_ids: tuple[str, ...] = ()
    run_type: RunType = RunType.SCHEDULED
    error_message: str | None = None
    raw_response: str | None = None
    execution_time_ms: int = 0

    def to_row(self) -> tuple:
        return (
            self.id,
            self.verification_id,
            self.performed_by,
            _to_iso(self.performed_at),
            str(self.status),
            self.notes,
            json.dumps(list(self.evidence_ids)),
            str(self.run_type),
            self.error_message,
            self.raw_response,
            self.execution_time_ms,
        )

    @classmethod
    def from_row(cls, row: tuple) -> VerificationResult:
        return cls(
            id=row[0],
            verification_id=row[1],
            performed_by=row[2],
            performed_at=_from_iso(row[3]),
            status=Verdict(row[4]),
            notes=row[5] or "",
            evidence_ids=tuple(json.loads(row[6] or "[]")),
            run_type=RunType(row[7]),
            error_message=row[8],
            raw_response=row[9],
            execution_time_ms=row[10] or 0,
        )


@dataclass
class Integration:
    """Stored connector configuration consulted by integration checks."""

    id: str
    integration_type: str
    config: dict[str, Any] = field(default_factory=dict)
