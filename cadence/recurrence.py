"""Recurrence policy — pure next-due calculation for recurring schedules.

Everything here is deterministic and free of I/O: the scheduler, the
occurrence controller and the verification executor all advance their
schedules through :func:`next_due`.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cadence.scheduler.models import ScheduledTemplate


class Pattern(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


_WEEKDAY_PATTERNS = frozenset({Pattern.WEEKLY, Pattern.BIWEEKLY})
_MONTH_STEPS = {Pattern.MONTHLY: 1, Pattern.QUARTERLY: 3, Pattern.YEARLY: 12}
_FREQUENCY_ALIASES = {"annually": Pattern.YEARLY, "annual": Pattern.YEARLY}
_SUB_DAILY_FREQUENCIES = {"hourly": timedelta(hours=1), "continuous": timedelta(minutes=5)}


class InvalidRecurrenceRule(ValueError):
    """Raised when a recurrence rule cannot describe a schedule."""


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class RecurrenceRule:
    """How often a schedule repeats and when it stops.

    Attributes:
        pattern: Base period (daily, weekly, biweekly, monthly, quarterly, yearly).
        interval: Multiplier on the base period; must be at least 1.
        anchor_day_of_week: 0 (Sunday) to 6 (Saturday), weekly patterns only.
        anchor_day_of_month: 1 to 31, monthly/quarterly/yearly patterns only.
        anchor_month_of_year: 1 to 12, yearly pattern only.
        end_at: No occurrences once the current time passes this instant.
        max_occurrences: No occurrences once this many have been created.
        every: Fixed sub-daily step that replaces the calendar period. Only
            verification frequencies (``hourly``, ``continuous``) set it.
    """

    pattern: Pattern
    interval: int = 1
    anchor_day_of_week: int | None = None
    anchor_day_of_month: int | None = None
    anchor_month_of_year: int | None = None
    end_at: datetime | None = None
    max_occurrences: int | None = None
    every: timedelta | None = None

    def __post_init__(self) -> None:
        try:
            pattern = Pattern(self.pattern)
        except ValueError:
            msg = f"Unknown recurrence pattern: {self.pattern!r}"
            raise InvalidRecurrenceRule(msg) from None
        object.__setattr__(self, "pattern", pattern)

        if not _is_int(self.interval) or self.interval < 1:
            msg = f"Recurrence interval must be a positive integer, got {self.interval!r}"
            raise InvalidRecurrenceRule(msg)

        # Anchors are only checked for the patterns that read them.
        if pattern in _WEEKDAY_PATTERNS:
            _check_range("anchor_day_of_week", self.anchor_day_of_week, 0, 6)
        if pattern in _MONTH_STEPS:
            _check_range("anchor_day_of_month", self.anchor_day_of_month, 1, 31)
        if pattern is Pattern.YEARLY:
            _check_range("anchor_month_of_year", self.anchor_month_of_year, 1, 12)

        if self.max_occurrences is not None and (
            not _is_int(self.max_occurrences) or self.max_occurrences < 1
        ):
            msg = f"max_occurrences must be a positive integer, got {self.max_occurrences!r}"
            raise InvalidRecurrenceRule(msg)

        if self.every is not None and (
            not isinstance(self.every, timedelta) or self.every <= timedelta(0)
        ):
            msg = f"every must be a positive timedelta, got {self.every!r}"
            raise InvalidRecurrenceRule(msg)

        if self.end_at is not None:
            object.__setattr__(self, "end_at", ensure_utc(self.end_at))

    @property
    def is_indefinite(self) -> bool:
        """True when neither an end date nor an occurrence cap is set."""
        return self.end_at is None and self.max_occurrences is None


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_range(name: str, value: int | None, low: int, high: int) -> None:
    if value is None:
        return
    if not _is_int(value) or not low <= value <= high:
        msg = f"{name} must be between {low} and {high}, got {value!r}"
        raise InvalidRecurrenceRule(msg)


# -- Calendar helpers ----------------------------------------------------------


def _sunday_based_weekday(value: datetime) -> int:
    """Weekday with 0 = Sunday, matching ``anchor_day_of_week``."""
    return (value.weekday() + 1) % 7


def _clamped_midnight(year: int, month: int, day: int) -> datetime:
    """Midnight UTC on *day*, falling back to the month's last day."""
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day, last_day), tzinfo=UTC)


def _add_months(base: datetime, months: int, day: int) -> datetime:
    index = base.year * 12 + (base.month - 1) + months
    year, month_index = divmod(index, 12)
    return _clamped_midnight(year, month_index + 1, day)


def _advance(rule: RecurrenceRule, base: datetime, *, honor_weekday_anchor: bool) -> datetime:
    interval = rule.interval
    pattern = rule.pattern

    if rule.every is not None:
        return base + rule.every * interval

    if pattern is Pattern.DAILY:
        return base + timedelta(days=interval)

    if pattern is Pattern.WEEKLY:
        if honor_weekday_anchor and rule.anchor_day_of_week is not None:
            days_until = (rule.anchor_day_of_week - _sunday_based_weekday(base)) % 7
            if days_until == 0:
                days_until = 7 * interval
            else:
                days_until += 7 * (interval - 1)
            target = base + timedelta(days=days_until)
            return datetime(target.year, target.month, target.day, tzinfo=UTC)
        return base + timedelta(weeks=interval)

    if pattern is Pattern.BIWEEKLY:
        return base + timedelta(weeks=2 * interval)

    day = rule.anchor_day_of_month or base.day
    if pattern is Pattern.YEARLY and rule.anchor_month_of_year is not None:
        return _clamped_midnight(base.year + interval, rule.anchor_month_of_year, day)
    return _add_months(base, _MONTH_STEPS[pattern] * interval, day)


# -- Policy --------------------------------------------------------------------


def is_exhausted(rule: RecurrenceRule, now: datetime, occurrences_created: int = 0) -> bool:
    """True once the end date has passed or the occurrence cap is reached."""
    if rule.end_at is not None and ensure_utc(now) > rule.end_at:
        return True
    return rule.max_occurrences is not None and occurrences_created >= rule.max_occurrences


def next_due(
    rule: RecurrenceRule,
    now: datetime,
    last_occurrence_at: datetime | None = None,
    occurrences_created: int = 0,
    *,
    honor_weekday_anchor: bool = False,
) -> datetime | None:
    """Return the next due instant after *last_occurrence_at*, or None when exhausted.

    Advances one period from *last_occurrence_at* (or *now* when the series
    has never fired).  Daily and weekly periods keep the time of day;
    month-based periods land on midnight UTC of the target date, clamping the
    day to the target month's length.  Weekly anchors are ignored unless
    *honor_weekday_anchor* is set, in which case the result also lands on
    midnight UTC.
    """
    now = ensure_utc(now)
    if is_exhausted(rule, now, occurrences_created):
        return None

    base = ensure_utc(last_occurrence_at) if last_occurrence_at is not None else now
    candidate = _advance(rule, base, honor_weekday_anchor=honor_weekday_anchor)
    if rule.end_at is not None and candidate > rule.end_at:
        return None
    return candidate


def first_due(rule: RecurrenceRule, start: datetime) -> datetime:
    """Align the first occurrence of a new series to its anchors, on or after *start*."""
    start = ensure_utc(start)

    if rule.pattern in _WEEKDAY_PATTERNS and rule.anchor_day_of_week is not None:
        days_until = (rule.anchor_day_of_week - _sunday_based_weekday(start)) % 7
        return start + timedelta(days=days_until)

    if rule.pattern is Pattern.YEARLY and (
        rule.anchor_month_of_year is not None or rule.anchor_day_of_month is not None
    ):
        month = rule.anchor_month_of_year or start.month
        day = rule.anchor_day_of_month or start.day
        candidate = _clamped_midnight(start.year, month, day)
        if candidate.date() < start.date():
            candidate = _clamped_midnight(start.year + 1, month, day)
        return start if candidate.date() == start.date() else candidate

    if rule.pattern in _MONTH_STEPS and rule.anchor_day_of_month is not None:
        day = rule.anchor_day_of_month
        candidate = _clamped_midnight(start.year, start.month, day)
        if candidate.date() < start.date():
            candidate = _add_months(start, 1, day)
        return start if candidate.date() == start.date() else candidate

    return start


def rule_from_frequency(
    frequency: str | None,
    *,
    end_at: datetime | None = None,
    max_occurrences: int | None = None,
    default: str = Pattern.WEEKLY,
) -> RecurrenceRule:
    """Build a rule from a loose frequency string such as ``"Monthly"``.

    ``hourly`` and ``continuous`` (every five minutes) become fixed sub-daily
    steps.  Unknown or missing frequencies fall back to *default*.
    """
    key = (frequency or "").strip().lower()
    if key in _SUB_DAILY_FREQUENCIES:
        return RecurrenceRule(
            pattern=Pattern.DAILY,
            every=_SUB_DAILY_FREQUENCIES[key],
            end_at=end_at,
            max_occurrences=max_occurrences,
        )
    try:
        pattern = Pattern(_FREQUENCY_ALIASES.get(key, key))
    except ValueError:
        pattern = Pattern(default)
    return RecurrenceRule(pattern=pattern, end_at=end_at, max_occurrences=max_occurrences)


def is_due(template: ScheduledTemplate, now: datetime) -> bool:
    """True when an active template's next occurrence has come due."""
    if not template.active or template.next_occurrence_at is None:
        return False
    now = ensure_utc(now)
    if now < ensure_utc(template.next_occurrence_at):
        return False
    return not is_exhausted(template.rule, now, template.occurrences_created)
