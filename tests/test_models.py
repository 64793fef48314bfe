"""Tests for scheduler data models."""

import json
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from cadence.recurrence import RecurrenceRule
from cadence.scheduler.models import (
    AutomatedVerification,
    HttpCheck,
    IntegrationCheck,
    OccurrenceHistoryEntry,
    RunType,
    ScheduledTemplate,
    TaskOccurrence,
    Verdict,
    VerificationResult,
    _to_iso,
    dump_automation_config,
    load_automation_config,
    make_id,
)

# -- Automation config ---------------------------------------------------------


class TestAutomationConfig:
    def test_http_defaults(self):
        config = load_automation_config({"automation_type": "http", "endpoint": "https://x"})
        assert isinstance(config, HttpCheck)
        assert config.method == "GET"
        assert config.expected_status_codes == [200, 201, 204]
        assert config.headers == {}

    def test_integration_from_json_text(self):
        raw = json.dumps(
            {
                "automation_type": "integration",
                "integration_id": "int-1",
                "integration_config": {"rule": "mfa"},
            }
        )
        config = load_automation_config(raw)
        assert isinstance(config, IntegrationCheck)
        assert config.integration_config == {"rule": "mfa"}

    def test_dump_then_load_is_stable(self):
        config = HttpCheck(
            endpoint="https://api.example.com/health",
            method="POST",
            headers={"X-Token": "abc"},
            body={"ping": True},
            expected_status_codes=[200],
            validation_path="data.status",
            expected_value="ok",
        )
        text = dump_automation_config(config)
        assert dump_automation_config(load_automation_config(text)) == text

    def test_unknown_variant_rejected(self):
        with pytest.raises(ValidationError):
            load_automation_config({"automation_type": "ssh", "endpoint": "host"})

    def test_header_values_must_be_strings(self):
        with pytest.raises(ValidationError):
            HttpCheck(endpoint="https://x", headers={"X-Count": {"nested": 1}})


# -- Timestamps ----------------------------------------------------------------


def test_iso_text_sorts_like_time():
    early = _to_iso(datetime(2024, 1, 1, 9, tzinfo=UTC))
    later = _to_iso(datetime(2024, 1, 1, 9, 0, 0, 1, tzinfo=UTC))
    assert early < later
    assert len(early) == len(later)


def test_make_id_is_unique():
    assert make_id() != make_id()


# -- Row round trips -----------------------------------------------------------


class TestScheduledTemplate:
    def test_row_round_trip(self):
        rule = RecurrenceRule(
            pattern="monthly",
            interval=2,
            anchor_day_of_month=31,
            end_at=datetime(2025, 12, 31, tzinfo=UTC),
            max_occurrences=6,
        )
        template = ScheduledTemplate(
            id="t1",
            title="Quarterly access review",
            rule=rule,
            assignee_id="alice",
            next_occurrence_at=datetime(2024, 2, 29, tzinfo=UTC),
            occurrences_created=2,
            active=False,
        )
        restored = ScheduledTemplate.from_row(template.to_row())
        assert restored == template
        assert restored.rule.anchor_day_of_month == 31

    def test_updated_at_defaults_to_created_at(self):
        template = ScheduledTemplate(id="t1", title="x", rule=RecurrenceRule(pattern="daily"))
        assert template.updated_at == template.created_at


class TestTaskOccurrence:
    def test_copies_template_fields(self):
        template = ScheduledTemplate(
            id="t1",
            title="Review firewall rules",
            rule=RecurrenceRule(pattern="weekly"),
            description="Check inbound rules",
            task_type="review",
            assignee_id="bob",
            priority="high",
        )
        due = datetime(2024, 1, 1, tzinfo=UTC)
        occurrence = TaskOccurrence.from_template(template, due)
        assert occurrence.parent_template_id == "t1"
        assert occurrence.title == "Review firewall rules"
        assert occurrence.task_type == "review"
        assert occurrence.assignee_id == "bob"
        assert occurrence.priority == "high"
        assert occurrence.due_at == due
        assert occurrence.status == "open"
        assert TaskOccurrence.from_row(occurrence.to_row()) == occurrence


def test_history_entry_row_round_trip():
    entry = OccurrenceHistoryEntry(
        id="h1",
        template_id="t1",
        sequence=3,
        scheduled_at=datetime(2024, 1, 8, tzinfo=UTC),
        skipped=True,
        skip_reason="holiday",
    )
    assert OccurrenceHistoryEntry.from_row(entry.to_row()) == entry


class TestAutomatedVerification:
    def test_row_round_trip(self):
        verification = AutomatedVerification(
            id="v1",
            control_id="c1",
            name="MFA enforced",
            automation_config=IntegrationCheck(integration_id="int-1"),
            frequency="Monthly",
            next_due_at=datetime(2024, 3, 1, tzinfo=UTC),
            max_occurrences=12,
            timeout_seconds=10.0,
            run_count=3,
            pass_count=2,
            fail_count=1,
        )
        assert AutomatedVerification.from_row(verification.to_row()) == verification

    def test_without_config(self):
        verification = AutomatedVerification(id="v1", control_id="c1", name="Manual")
        restored = AutomatedVerification.from_row(verification.to_row())
        assert restored.automation_config is None

    def test_invalid_config_is_kept_not_raised(self):
        stored = AutomatedVerification(id="v1", control_id="c1", name="x").to_row()
        bad = json.dumps(
            {"automation_type": "http", "endpoint": "https://x", "headers": {"X-Retry": 3}}
        )
        row = (*stored[:4], bad, *stored[5:])

        verification = AutomatedVerification.from_row(row)

        assert verification.automation_config is None
        assert "X-Retry" in verification.config_error
        assert verification.to_row()[4] == bad

    def test_unparseable_config_is_kept(self):
        stored = AutomatedVerification(id="v1", control_id="c1", name="x").to_row()
        verification = AutomatedVerification.from_row((*stored[:4], "{not json", *stored[5:]))
        assert verification.automation_config is None
        assert verification.config_error

    def test_recurrence_rule_from_frequency(self):
        verification = AutomatedVerification(
            id="v1", control_id="c1", name="x", frequency="annually", max_occurrences=2
        )
        rule = verification.recurrence_rule()
        assert rule.pattern == "yearly"
        assert rule.max_occurrences == 2

    def test_is_automated(self):
        assert AutomatedVerification(id="v1", control_id="c1", name="x").is_automated
        assert not AutomatedVerification(
            id="v1", control_id="c1", name="x", test_type="manual"
        ).is_automated


def test_verification_result_row_round_trip():
    result = VerificationResult(
        id="r1",
        verification_id="v1",
        status=Verdict.FAILED,
        notes="HTTP GET returned unexpected status 500; expected one of [200]",
        performed_at=datetime(2024, 1, 1, tzinfo=UTC),
        evidence_ids=("e1", "e2"),
        run_type=RunType.MANUAL,
        error_message="HTTP GET returned unexpected status 500",
        raw_response="oops",
        execution_time_ms=42,
    )
    assert VerificationResult.from_row(result.to_row()) == result
