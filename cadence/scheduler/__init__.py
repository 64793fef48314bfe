"""Scheduled work — models, persistence, strategies, execution and the worker loop."""

from cadence.scheduler.engine import SchedulerEngine, TickReport
from cadence.scheduler.executor import NotAutomatedError, VerificationExecutor
from cadence.scheduler.models import (
    AutomatedVerification,
    HttpCheck,
    IntegrationCheck,
    OccurrenceHistoryEntry,
    ScheduledTemplate,
    TaskOccurrence,
    Verdict,
    VerificationResult,
)
from cadence.scheduler.occurrences import NothingScheduledError, OccurrenceController
from cadence.scheduler.store import (
    NotFoundError,
    ScheduleConflictError,
    TemplateStore,
    VerificationStore,
)
from cadence.scheduler.strategies import CheckExecutionError, CheckRunner, connectors

__all__ = [
    "AutomatedVerification",
    "CheckExecutionError",
    "CheckRunner",
    "HttpCheck",
    "IntegrationCheck",
    "NotAutomatedError",
    "NotFoundError",
    "NothingScheduledError",
    "OccurrenceController",
    "OccurrenceHistoryEntry",
    "ScheduleConflictError",
    "ScheduledTemplate",
    "SchedulerEngine",
    "TaskOccurrence",
    "TemplateStore",
    "TickReport",
    "Verdict",
    "VerificationExecutor",
    "VerificationResult",
    "VerificationStore",
    "connectors",
]
