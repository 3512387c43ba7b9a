"""Tests for cron parsing and schedule-trigger bookkeeping."""

import threading
from datetime import datetime

import pytest

from flowrunner.core.exceptions import SchedulingError
from flowrunner.core.scheduler import (
    TriggerScheduler, build_schedule_trigger_input, crontab_day_of_week, next_fire_time, validate_cron
)
from flowrunner.models.core import ScheduledTriggerJob

from conftest import edge, make_definition


def schedule_workflow(store, cron="0 * * * *", is_active=True):
    definition = make_definition(
        [
            {"id": "s", "type": "scheduleTrigger", "config": {"cron": cron}},
            {"id": "a", "type": "transform", "config": {"mode": "expression", "expression": "1"}},
        ],
        [edge("s", "a")]
    )
    return store.save_workflow("Scheduled", definition, is_active=is_active)


class TestCronParsing:
    """Test cases for cron expressions."""

    @pytest.mark.parametrize("expression", ["not-a-cron", "", "   ", "* * *", "61 * * * *", "* * * * * * *"])
    def test_invalid_expressions(self, expression):
        """Malformed expressions raise SchedulingError."""
        with pytest.raises(SchedulingError):
            validate_cron(expression)

    def test_invalid_timezone(self):
        """Unknown timezones are rejected."""
        with pytest.raises(SchedulingError):
            validate_cron("0 * * * *", "Mars/Olympus_Mons")

    def test_five_field_next_fire(self):
        """Standard crontab syntax."""
        assert next_fire_time("*/15 * * * *", now=datetime(2024, 1, 1, 8, 7)) == datetime(2024, 1, 1, 8, 15)

    def test_six_field_next_fire(self):
        """A leading seconds field is supported."""
        assert next_fire_time("30 0 9 * * *", now=datetime(2024, 1, 1, 8, 0)) == datetime(2024, 1, 1, 9, 0, 30)

    @pytest.mark.parametrize("expression,expected", [
        ("0 9 * * 1", datetime(2024, 1, 8, 9, 0)),
        ("0 9 * * 0", datetime(2024, 1, 7, 9, 0)),
        ("0 9 * * 7", datetime(2024, 1, 7, 9, 0)),
        ("0 9 * * 1-5", datetime(2024, 1, 8, 9, 0)),
        ("0 9 * * 5,6", datetime(2024, 1, 6, 9, 0)),
        ("0 9 * * MON", datetime(2024, 1, 8, 9, 0)),
        ("0 0 9 * * 0", datetime(2024, 1, 7, 9, 0)),
    ])
    def test_weekday_numbers_follow_crontab(self, expression, expected):
        """Weekday 0 and 7 are Sunday, 1 is Monday."""
        # Saturday 2024-01-06, midnight UTC
        assert next_fire_time(expression, now=datetime(2024, 1, 6, 0, 0)) == expected

    @pytest.mark.parametrize("field,expected", [
        ("*", "*"),
        ("0", "sun"),
        ("7", "sun"),
        ("1-5", "mon,tue,wed,thu,fri"),
        ("5-7", "sun,fri,sat"),
        ("*/2", "sun,tue,thu,sat"),
        ("1,3", "mon,wed"),
        ("sat,sun", "sun,sat"),
    ])
    def test_crontab_day_of_week(self, field, expected):
        """Crontab weekday fields are re-emitted as day names."""
        assert crontab_day_of_week(field) == expected

    @pytest.mark.parametrize("expression", ["0 9 * * 8", "0 9 * * 5-1", "0 9 * * */0", "0 9 * * funday"])
    def test_invalid_weekday(self, expression):
        """Out-of-range or reversed weekday fields are rejected."""
        with pytest.raises(SchedulingError):
            validate_cron(expression)

    def test_timezone_applied(self):
        """Fire times are computed in the schedule's timezone and returned in UTC."""
        fire_at = next_fire_time("0 9 * * *", "America/New_York", now=datetime(2024, 1, 15, 12, 0))
        assert fire_at == datetime(2024, 1, 15, 14, 0)

    def test_schedule_trigger_input(self):
        """Scheduled runs receive a descriptive trigger payload."""
        payload = build_schedule_trigger_input("wf:s", datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 9, 0, 1))
        assert payload == {
            "type": "schedule",
            "triggerId": "wf:s",
            "scheduledAt": "2024-01-01T09:00:00",
            "timestamp": "2024-01-01T09:00:01",
        }


class TestTriggerScheduler:
    """Test cases for TriggerScheduler."""

    def test_invalid_cron_creates_nothing(self, scheduler, store):
        """A rejected expression persists no job and installs nothing."""
        workflow = schedule_workflow(store)

        with pytest.raises(SchedulingError):
            scheduler.create_schedule("wf:bad", workflow.id, "not-a-cron")

        assert store.get_schedule_job("wf:bad") is None
        assert scheduler.list_schedules() == []
        assert not scheduler.has_job("wf:bad")

    def test_create_schedule(self, scheduler, store):
        """Creating a schedule persists it and installs the job."""
        workflow = schedule_workflow(store)

        job = scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")

        assert job.cron_expression == "*/5 * * * *"
        assert job.timezone == "UTC"
        assert job.paused is False
        assert job.next_fire_at is not None
        assert scheduler.has_job("t-1")

    def test_create_is_idempotent(self, scheduler, store):
        """Repeated creates for one trigger id replace the registration."""
        workflow = schedule_workflow(store)

        scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")
        scheduler.create_schedule("t-1", workflow.id, "0 12 * * *")

        jobs = scheduler.list_schedules(workflow.id)
        assert len(jobs) == 1
        assert jobs[0].cron_expression == "0 12 * * *"

    def test_pause_and_resume(self, scheduler, store):
        """Pause clears the next fire time; resume recomputes it. Both repeat safely."""
        workflow = schedule_workflow(store)
        scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")

        paused = scheduler.pause_schedule("t-1")
        assert paused.paused is True
        assert paused.next_fire_at is None
        assert not scheduler.has_job("t-1")
        assert scheduler.pause_schedule("t-1") == paused

        resumed = scheduler.resume_schedule("t-1")
        assert resumed.paused is False
        assert resumed.next_fire_at is not None
        assert scheduler.has_job("t-1")
        assert scheduler.resume_schedule("t-1").paused is False

    def test_create_keeps_paused_state(self, scheduler, store):
        """Re-registering a paused schedule keeps it paused."""
        workflow = schedule_workflow(store)
        scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")
        scheduler.pause_schedule("t-1")

        job = scheduler.create_schedule("t-1", workflow.id, "*/10 * * * *")

        assert job.paused is True
        assert not scheduler.has_job("t-1")

    def test_remove_schedule(self, scheduler, store):
        """Remove is a no-op the second time."""
        workflow = schedule_workflow(store)
        scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")

        assert scheduler.remove_schedule("t-1") is True
        assert scheduler.remove_schedule("t-1") is False
        assert scheduler.get_schedule("t-1") is None
        assert not scheduler.has_job("t-1")
        assert scheduler.pause_schedule("t-1") is None
        assert scheduler.resume_schedule("t-1") is None

    def test_update_schedule(self, scheduler, store):
        """Update changes the expression of an existing schedule only."""
        workflow = schedule_workflow(store)
        scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")

        updated = scheduler.update_schedule("t-1", cron_expression="0 0 * * *", timezone="Europe/Berlin")

        assert updated.cron_expression == "0 0 * * *"
        assert updated.timezone == "Europe/Berlin"
        with pytest.raises(SchedulingError):
            scheduler.update_schedule("missing", cron_expression="0 0 * * *")
        with pytest.raises(SchedulingError):
            scheduler.update_schedule("t-1", cron_expression="not-a-cron")
        assert scheduler.get_schedule("t-1").cron_expression == "0 0 * * *"

    def test_update_does_not_revive_removed_schedule(self, scheduler, store, monkeypatch):
        """A remove racing an update wins once the update releases the trigger."""
        workflow = schedule_workflow(store)
        scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")

        original_get = store.get_schedule_job
        remover = threading.Thread(target=scheduler.remove_schedule, args=("t-1",))

        def get_then_remove(trigger_id):
            job = original_get(trigger_id)
            if remover.ident is None:
                remover.start()
                # give the remover a chance to run before the update continues
                remover.join(timeout=0.2)
            return job

        monkeypatch.setattr(store, "get_schedule_job", get_then_remove)
        scheduler.update_schedule("t-1", cron_expression="0 0 * * *")
        remover.join()

        assert original_get("t-1") is None
        assert not scheduler.has_job("t-1")

    def test_workflow_pause_follows_activation(self, scheduler, store):
        """All schedules of a workflow pause and resume together."""
        workflow = schedule_workflow(store)
        scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")
        scheduler.create_schedule("t-2", workflow.id, "0 * * * *")

        scheduler.set_workflow_schedules_paused(workflow.id, paused=True)
        assert all(job.paused for job in scheduler.list_schedules(workflow.id))

        scheduler.set_workflow_schedules_paused(workflow.id, paused=False)
        assert not any(job.paused for job in scheduler.list_schedules(workflow.id))

    def test_concurrent_edits_stay_consistent(self, scheduler, store):
        """Concurrent pause/resume on one trigger never leaves mixed state."""
        workflow = schedule_workflow(store)
        scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")

        def toggle(pause):
            for _ in range(10):
                if pause:
                    scheduler.pause_schedule("t-1")
                else:
                    scheduler.resume_schedule("t-1")

        threads = [threading.Thread(target=toggle, args=(index % 2 == 0,)) for index in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        job = scheduler.get_schedule("t-1")
        if job.paused:
            assert job.next_fire_at is None
            assert not scheduler.has_job("t-1")
        else:
            assert job.next_fire_at is not None
            assert scheduler.has_job("t-1")

    def test_restore_schedules(self, store):
        """Persisted unpaused schedules are reinstalled on start."""
        workflow = schedule_workflow(store)
        store.save_schedule_job(ScheduledTriggerJob(
            trigger_id="live", workflow_id=workflow.id, cron_expression="*/5 * * * *"
        ))
        store.save_schedule_job(ScheduledTriggerJob(
            trigger_id="sleeping", workflow_id=workflow.id, cron_expression="*/5 * * * *", paused=True
        ))
        scheduler = TriggerScheduler(store, start_execution=lambda workflow_id, trigger_input: None)
        scheduler.start()
        try:
            assert scheduler.restore_schedules() == 1
            assert scheduler.has_job("live")
            assert not scheduler.has_job("sleeping")
            assert store.get_schedule_job("live").next_fire_at is not None
        finally:
            scheduler.shutdown()


class TestScheduleFiring:
    """Test cases for what happens when a job fires."""

    @pytest.fixture
    def started(self):
        return []

    @pytest.fixture
    def recording_scheduler(self, store, started):
        scheduler = TriggerScheduler(
            store, start_execution=lambda workflow_id, trigger_input: started.append((workflow_id, trigger_input))
        )
        scheduler.start()
        yield scheduler
        scheduler.shutdown()

    def test_fire_starts_execution(self, recording_scheduler, store, started):
        """An active workflow gets one execution with a schedule payload."""
        workflow = schedule_workflow(store, is_active=True)
        recording_scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")

        recording_scheduler._fire("t-1")

        assert len(started) == 1
        workflow_id, trigger_input = started[0]
        assert workflow_id == workflow.id
        assert trigger_input["type"] == "schedule"
        assert trigger_input["triggerId"] == "t-1"

    def test_fire_skips_inactive_workflow(self, recording_scheduler, store, started):
        """Inactive workflows are not started."""
        workflow = schedule_workflow(store, is_active=False)
        recording_scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")

        recording_scheduler._fire("t-1")

        assert started == []

    def test_fire_skips_paused_schedule(self, recording_scheduler, store, started):
        """A paused schedule that still fires once is ignored."""
        workflow = schedule_workflow(store, is_active=True)
        recording_scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")
        recording_scheduler.pause_schedule("t-1")

        recording_scheduler._fire("t-1")

        assert started == []

    def test_fire_runs_workflow(self, scheduler, engine, store):
        """Wired to the engine, a fire produces a finished execution."""
        workflow = schedule_workflow(store, is_active=True)
        scheduler.create_schedule("t-1", workflow.id, "*/5 * * * *")

        scheduler._fire("t-1")

        executions = store.list_executions(workflow.id)
        assert len(executions) == 1
        finished = engine.wait_for_execution(executions[0].id, timeout=15)
        assert finished.status.value == "success"
        assert finished.trigger_input["triggerId"] == "t-1"
