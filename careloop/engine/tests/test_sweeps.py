"""
Tests for the sweep scheduler: job intervals, job isolation and the
retention check.
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from careloop.engine.channels import DispatcherRegistry
from careloop.engine.engagement import EngagementService
from careloop.engine.models import Task, TaskPriority, TaskSource, TaskType
from careloop.engine.outbox import Outbox
from careloop.engine.programs import ProgramService
from careloop.engine.reminders import ReminderService
from careloop.engine.schedule import ScheduleMatcher
from careloop.engine.scheduler import RETENTION_TASK_TITLE, SweepScheduler
from careloop.engine.store import EngineStore
from careloop.engine.tasks import TaskService
from careloop.engine.tests.factories import (
    NOW,
    RecordingDispatcher,
    make_patient,
    make_program,
    no_sleep,
)


@pytest.fixture
def store():
    return EngineStore()


@pytest.fixture
def scheduler(store):
    registry = DispatcherRegistry(sleep=no_sleep)
    registry.register(RecordingDispatcher())
    matcher = ScheduleMatcher(store)
    tasks = TaskService(store)
    return SweepScheduler(
        store,
        ReminderService(store, matcher, Outbox(store, registry), tasks),
        tasks,
        ProgramService(store, matcher),
        EngagementService(store),
        tick_seconds=1,
        reminder_interval=300,
        escalation_interval=900,
        program_interval=3600,
    )


def _disengage(store, patient_id):
    for _ in range(2):
        store.save_task(Task(
            patient_id=patient_id, type=TaskType.MISSED_CHECKIN, created_at=NOW - timedelta(days=2),
        ))


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_forced_run_reports_every_job(self, store, scheduler):
        patient = make_patient(store)
        make_program(store, patient.id)

        report = await scheduler.run_once(NOW, force=True)

        assert report["reminders_sent"] == 1
        assert report["escalated"] == 0
        assert report["missed_checkins"] == 0
        assert report["programs"] == {"updated": 0, "completed": 0}
        assert report["retention_tasks"] == 0
        assert set(scheduler.last_run) == {"reminders", "escalation", "programs"}

    @pytest.mark.asyncio
    async def test_jobs_run_on_their_intervals(self, scheduler):
        await scheduler.run_once(NOW)

        assert await scheduler.run_once(NOW + timedelta(minutes=1)) == {}
        assert set(await scheduler.run_once(NOW + timedelta(minutes=5))) == {"reminders_sent"}
        assert set(await scheduler.run_once(NOW + timedelta(minutes=15))) == {
            "reminders_sent", "escalated", "missed_checkins",
        }

    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_others(self, store):
        reminders = MagicMock()
        reminders.process_reminders.side_effect = RuntimeError("boom")
        reminders.detect_missed_checkins.return_value = 0
        tasks = MagicMock()
        tasks.escalate_overdue.return_value = []
        programs = MagicMock()
        programs.update_program_days.return_value = {"updated": 0, "completed": 0}

        report = await SweepScheduler(store, reminders, tasks, programs).run_once(NOW, force=True)

        assert "reminders_sent" not in report
        assert report["escalated"] == 0
        assert report["retention_tasks"] == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler):
        await scheduler.start()
        assert scheduler.running is True
        await asyncio.sleep(0)
        await scheduler.stop()
        assert scheduler.running is False


class TestRetention:

    def test_high_risk_patient_gets_one_follow_up(self, store, scheduler):
        patient = make_patient(store)
        make_program(store, patient.id)
        _disengage(store, patient.id)

        assert scheduler.check_retention_risks(NOW) == 1
        assert scheduler.check_retention_risks(NOW + timedelta(hours=1)) == 0

        follow_ups = store.list_tasks(patient_id=patient.id, task_type=TaskType.FOLLOW_UP)
        assert len(follow_ups) == 1
        assert follow_ups[0].title == RETENTION_TASK_TITLE
        assert follow_ups[0].priority == TaskPriority.HIGH
        assert follow_ups[0].source == TaskSource.SYSTEM

    def test_patient_without_program_is_skipped(self, store, scheduler):
        patient = make_patient(store)
        _disengage(store, patient.id)
        assert scheduler.check_retention_risks(NOW) == 0

    def test_engaged_patient_is_skipped(self, store, scheduler):
        patient = make_patient(store)
        make_program(store, patient.id)
        assert scheduler.check_retention_risks(NOW) == 0
