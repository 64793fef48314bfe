"""Tests for OccurrenceController — fire, skip, pause and resume templates."""

from datetime import UTC, datetime, timedelta

import pytest

from cadence.recurrence import InvalidRecurrenceRule, RecurrenceRule
from cadence.scheduler.models import ScheduledTemplate
from cadence.scheduler.occurrences import NothingScheduledError, OccurrenceController
from cadence.scheduler.store import NotFoundError, ScheduleConflictError, TemplateStore

pytestmark = pytest.mark.usefixtures("_no_turso")

MONDAY = datetime(2024, 1, 1, 9, tzinfo=UTC)


@pytest.fixture
def controller(template_store: TemplateStore) -> OccurrenceController:
    return OccurrenceController(template_store, honor_weekday_anchor=False)


async def _weekly(controller: OccurrenceController, **kwargs) -> ScheduledTemplate:
    rule = RecurrenceRule(pattern="weekly", **kwargs)
    return await controller.create_template(
        "Review admin accounts",
        rule,
        start=MONDAY,
        task_type="review",
        assignee_id="alice",
        priority="high",
    )


# -- create_template -----------------------------------------------------------


class TestCreateTemplate:
    async def test_persists_with_first_due(
        self, controller: OccurrenceController, template_store: TemplateStore
    ):
        template = await _weekly(controller)
        stored = await template_store.get_template(template.id)
        assert stored == template
        assert stored.next_occurrence_at == MONDAY
        assert stored.occurrences_created == 0

    async def test_rejects_sub_daily_step(self, controller: OccurrenceController):
        rule = RecurrenceRule(pattern="daily", every=timedelta(hours=1))
        with pytest.raises(InvalidRecurrenceRule):
            await controller.create_template("Too often", rule, start=MONDAY)

    async def test_aligns_to_weekday_anchor(self, controller: OccurrenceController):
        template = await _weekly(controller, anchor_day_of_week=3)  # Wednesday
        assert template.next_occurrence_at == datetime(2024, 1, 3, 9, tzinfo=UTC)


# -- create_occurrence ---------------------------------------------------------


class TestCreateOccurrence:
    async def test_fires_due_template(
        self, controller: OccurrenceController, template_store: TemplateStore
    ):
        template = await _weekly(controller)

        occurrence = await controller.create_occurrence(template, now=MONDAY)

        assert occurrence is not None
        assert occurrence.parent_template_id == template.id
        assert occurrence.title == "Review admin accounts"
        assert occurrence.assignee_id == "alice"
        assert occurrence.due_at == MONDAY
        stored = await template_store.get_template(template.id)
        assert stored.occurrences_created == 1
        assert stored.last_occurrence_at == MONDAY
        assert stored.next_occurrence_at == MONDAY + timedelta(weeks=1)
        history = await controller.list_history(template.id)
        assert len(history) == 1
        assert history[0].occurrence_id == occurrence.id
        assert history[0].scheduled_at == MONDAY

    async def test_not_due_writes_nothing(
        self, controller: OccurrenceController, template_store: TemplateStore
    ):
        template = await _weekly(controller)

        early = MONDAY - timedelta(seconds=1)
        assert await controller.create_occurrence(template, now=early) is None
        assert await controller.list_history(template.id) == []
        assert await controller.list_occurrences(template.id) == []

    async def test_late_fire_keeps_cadence(
        self, controller: OccurrenceController, template_store: TemplateStore
    ):
        template = await _weekly(controller)
        await controller.create_occurrence(template, now=MONDAY + timedelta(days=2))
        stored = await template_store.get_template(template.id)
        assert stored.next_occurrence_at == MONDAY + timedelta(weeks=1)

    async def test_final_occurrence_clears_next(
        self, controller: OccurrenceController, template_store: TemplateStore
    ):
        template = await _weekly(controller, max_occurrences=2)
        await controller.create_occurrence(template, now=MONDAY)
        template = await template_store.get_template(template.id)
        await controller.create_occurrence(template, now=template.next_occurrence_at)

        stored = await template_store.get_template(template.id)
        assert stored.occurrences_created == 2
        assert stored.next_occurrence_at is None
        assert await controller.create_occurrence(stored, now=MONDAY + timedelta(weeks=9)) is None

    async def test_stale_copy_conflicts(self, controller: OccurrenceController):
        template = await _weekly(controller)
        await controller.create_occurrence(template, now=MONDAY)

        with pytest.raises(ScheduleConflictError):
            await controller.create_occurrence(template, now=MONDAY)
        assert len(await controller.list_occurrences(template.id)) == 1


# -- process_due ---------------------------------------------------------------


class TestProcessDue:
    async def test_fires_all_due(self, controller: OccurrenceController):
        first = await _weekly(controller)
        second = await _weekly(controller)
        created = (await controller.process_due(MONDAY + timedelta(hours=1))).created
        assert {o.parent_template_id for o in created} == {first.id, second.id}

    async def test_one_failure_does_not_block_others(
        self,
        controller: OccurrenceController,
        template_store: TemplateStore,
        monkeypatch: pytest.MonkeyPatch,
    ):
        broken = await _weekly(controller)
        healthy = await _weekly(controller)
        original = template_store.record_tick

        async def flaky_record_tick(template, **kwargs):
            if template.id == broken.id:
                raise RuntimeError("disk full")
            return await original(template, **kwargs)

        monkeypatch.setattr(template_store, "record_tick", flaky_record_tick)

        run = await controller.process_due(MONDAY)

        assert [o.parent_template_id for o in run.created] == [healthy.id]
        assert run.errors == 1
        assert run.conflicts == 0

    async def test_conflicts_are_counted(
        self,
        controller: OccurrenceController,
        template_store: TemplateStore,
        monkeypatch: pytest.MonkeyPatch,
    ):
        await _weekly(controller)

        async def racing_record_tick(template, **kwargs):
            msg = f"Template {template.id} changed since it was read"
            raise ScheduleConflictError(msg)

        monkeypatch.setattr(template_store, "record_tick", racing_record_tick)

        run = await controller.process_due(MONDAY)

        assert run.created == []
        assert run.conflicts == 1
        assert run.errors == 0


# -- skip_next -----------------------------------------------------------------


class TestSkipNext:
    async def test_skip_twice_advances_two_periods(
        self, controller: OccurrenceController, template_store: TemplateStore
    ):
        template = await _weekly(controller)

        await controller.skip_next(template.id, "holiday", now=MONDAY)
        await controller.skip_next(template.id, now=MONDAY)

        stored = await template_store.get_template(template.id)
        assert stored.next_occurrence_at == MONDAY + timedelta(weeks=2)
        assert stored.occurrences_created == 0
        history = await controller.list_history(template.id)
        assert [h.sequence for h in history] == [2, 1]
        assert all(h.skipped and h.occurrence_id is None for h in history)
        assert history[1].skip_reason == "holiday"
        assert history[1].scheduled_at == MONDAY
        assert await controller.list_occurrences(template.id) == []

    async def test_skip_without_pending_occurrence(
        self, controller: OccurrenceController, template_store: TemplateStore
    ):
        template = await _weekly(controller)
        template.next_occurrence_at = None
        await template_store.save_template(template)

        with pytest.raises(NothingScheduledError):
            await controller.skip_next(template.id)

    async def test_skip_unknown_template(self, controller: OccurrenceController):
        with pytest.raises(NotFoundError):
            await controller.skip_next("ghost")


# -- pause / resume ------------------------------------------------------------


class TestPauseResume:
    async def test_paused_template_does_not_fire(self, controller: OccurrenceController):
        template = await _weekly(controller)
        paused = await controller.pause(template.id)

        assert not paused.active
        assert paused.next_occurrence_at == MONDAY
        assert (await controller.process_due(MONDAY + timedelta(days=3))).created == []

    async def test_resume_fires_overdue_occurrence(self, controller: OccurrenceController):
        template = await _weekly(controller)
        await controller.pause(template.id)

        resumed = await controller.resume(template.id)
        assert resumed.active
        assert resumed.next_occurrence_at == MONDAY

        created = (await controller.process_due(MONDAY + timedelta(days=3))).created
        assert len(created) == 1
        assert created[0].due_at == MONDAY

    async def test_resume_from_restarts_series(self, controller: OccurrenceController):
        template = await _weekly(controller)
        await controller.pause(template.id)
        restart = MONDAY + timedelta(weeks=4)

        resumed = await controller.resume(template.id, resume_from=restart)

        assert resumed.next_occurrence_at == restart
        assert (await controller.process_due(MONDAY + timedelta(weeks=2))).created == []

    async def test_unknown_template(self, controller: OccurrenceController):
        with pytest.raises(NotFoundError):
            await controller.pause("ghost")
        with pytest.raises(NotFoundError):
            await controller.resume("ghost")
        with pytest.raises(NotFoundError):
            await controller.list_history("ghost")
