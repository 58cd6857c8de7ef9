"""
Sweep Scheduler — background loop that runs the periodic engine jobs.

Jobs and default intervals:
  - reminders                     every 5 min   (ReminderService.process_reminders)
  - SLA escalation + missed check-ins every 15 min (TaskService / ReminderService)
  - program day counter + retention check  hourly  (ProgramService / EngagementService)

One tick loop wakes every ``tick_seconds`` and runs whichever jobs are
due.  A failing job is logged and does not stop the others.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from careloop import settings
from careloop.engine.engagement import EngagementService, EngagementStatus
from careloop.engine.models import TaskPriority, TaskSource, TaskStatus, TaskType
from careloop.engine.programs import ProgramService
from careloop.engine.reminders import ReminderService
from careloop.engine.store import EngineStore
from careloop.engine.tasks import TaskService

logger = logging.getLogger("engine.scheduler")

RETENTION_TASK_TITLE = "Patient retention risk"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SweepScheduler:
    """
    Usage:
        scheduler = SweepScheduler(store, reminders, tasks, programs, engagement)
        await scheduler.start()

    On shutdown:
        await scheduler.stop()

    Tests drive ``run_once(now)`` directly instead of the loop.
    """

    def __init__(
        self,
        store: EngineStore,
        reminders: ReminderService,
        tasks: TaskService,
        programs: ProgramService,
        engagement: EngagementService | None = None,
        tick_seconds: int = settings.SWEEP_TICK_SECONDS,
        reminder_interval: int = settings.REMINDER_INTERVAL_SECONDS,
        escalation_interval: int = settings.ESCALATION_INTERVAL_SECONDS,
        program_interval: int = settings.PROGRAM_UPDATE_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._reminders = reminders
        self._tasks = tasks
        self._programs = programs
        self._engagement = engagement
        self._tick = tick_seconds
        self._intervals = {
            "reminders": reminder_interval,
            "escalation": escalation_interval,
            "programs": program_interval,
        }
        self._last_run: dict[str, datetime] = {}
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_run(self) -> dict[str, str]:
        return {job: at.isoformat() for job, at in self._last_run.items()}

    async def start(self) -> None:
        if self._running:
            logger.warning("SweepScheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("SweepScheduler started (tick=%ds, intervals=%s)", self._tick, self._intervals)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("SweepScheduler stopped")

    # ── Jobs ──

    async def run_once(self, now: datetime | None = None, force: bool = False) -> dict[str, Any]:
        """Run every job that is due at ``now`` (all of them with ``force``)."""
        now = now or _now()
        report: dict[str, Any] = {}

        if force or self._due("reminders", now):
            try:
                report["reminders_sent"] = await self._reminders.process_reminders(now)
            except Exception as exc:
                logger.error("Reminder sweep failed: %s", exc, exc_info=True)
            self._last_run["reminders"] = now

        if force or self._due("escalation", now):
            try:
                report["escalated"] = len(self._tasks.escalate_overdue(now))
            except Exception as exc:
                logger.error("SLA escalation sweep failed: %s", exc, exc_info=True)
            try:
                report["missed_checkins"] = self._reminders.detect_missed_checkins(now)
            except Exception as exc:
                logger.error("Missed check-in sweep failed: %s", exc, exc_info=True)
            self._last_run["escalation"] = now

        if force or self._due("programs", now):
            try:
                report["programs"] = self._programs.update_program_days(now)
            except Exception as exc:
                logger.error("Program day update failed: %s", exc, exc_info=True)
            try:
                report["retention_tasks"] = self.check_retention_risks(now)
            except Exception as exc:
                logger.error("Retention check failed: %s", exc, exc_info=True)
            self._last_run["programs"] = now

        if report:
            logger.info("Sweep at %s: %s", now.isoformat(), report)
        return report

    def check_retention_risks(self, now: datetime | None = None) -> int:
        """Open a FOLLOW_UP for every HIGH_RISK patient that has none open."""
        if self._engagement is None:
            return 0
        now = now or _now()
        created = 0
        for patient in self._store.list_patients(active_only=True):
            if self._store.active_enrollment(patient.id) is None:
                continue
            engagement = self._engagement.calculate(patient.id, now)
            if engagement.status != EngagementStatus.HIGH_RISK:
                continue
            open_follow_ups = self._store.list_tasks(
                patient_id=patient.id,
                task_type=TaskType.FOLLOW_UP,
                statuses=[TaskStatus.OPEN, TaskStatus.IN_PROGRESS],
            )
            if any(t.title == RETENTION_TASK_TITLE for t in open_follow_ups):
                continue
            task = self._tasks.create_task(
                patient.id,
                TaskType.FOLLOW_UP,
                RETENTION_TASK_TITLE,
                priority=TaskPriority.HIGH,
                source=TaskSource.SYSTEM,
                description=(
                    f"Engagement score {engagement.score}/100. "
                    f"Factors: {', '.join(engagement.factors) or 'none'}"
                ),
                meta={"engagement_score": engagement.score},
                now=now,
            )
            if task.created_at == now:
                created += 1
                logger.warning("Retention risk for patient %s (score %d)", patient.id, engagement.score)
        return created

    # ── Internal ──

    def _due(self, job: str, now: datetime) -> bool:
        last = self._last_run.get(job)
        return last is None or (now - last).total_seconds() >= self._intervals[job]

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._tick)
                if not self._running:
                    break
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Sweep loop error: %s", exc, exc_info=True)
