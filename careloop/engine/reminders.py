"""
Reminder sweep and missed check-in detection.

process_reminders:
  For each active, unpaused patient with a phone and an ACTIVE program,
  every activity of today inside its STRICT window gets its prompt sent
  as a SYSTEM message, unless a same-type check-in already exists today
  or the same prompt was already sent today.  VISIT activities also open
  a VISIT_FOLLOWUP task due in 24h.

detect_missed_checkins:
  A SYSTEM reminder sent today more than 4h ago with no patient reply
  since → MISSED_CHECKIN task and a CHECKIN_MISSED CRM sync.  At most one
  open MISSED_CHECKIN task per patient per day.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from careloop.engine.crm import CrmNotifier, CrmTrigger
from careloop.engine.models import (
    CheckInType,
    MessageDirection,
    MessageSender,
    TaskPriority,
    TaskSource,
    TaskStatus,
    TaskType,
)
from careloop.engine.outbox import Outbox
from careloop.engine.schedule import MatchWindow, ScheduleMatcher, is_in_window, local_midnight
from careloop.engine.store import EngineStore
from careloop.engine.tasks import TaskService

logger = logging.getLogger("engine.reminders")

RESPONSE_WINDOW = timedelta(hours=4)
VISIT_FOLLOWUP_DUE = timedelta(hours=24)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ReminderService:
    def __init__(
        self,
        store: EngineStore,
        matcher: ScheduleMatcher,
        outbox: Outbox,
        tasks: TaskService,
        crm: CrmNotifier | None = None,
    ) -> None:
        self._store = store
        self._matcher = matcher
        self._outbox = outbox
        self._tasks = tasks
        self._crm = crm

    async def process_reminders(self, now: datetime | None = None) -> int:
        now = now or _now()
        sent = 0
        for patient in self._store.list_patients(active_only=True):
            if patient.automation_paused or not patient.phone:
                continue
            ctx = self._matcher.resolve(patient.id, now)
            if ctx is None or not ctx.activities:
                continue

            done = self._matcher.satisfied_types(patient.id, ctx.day_start)
            prompts_today = {
                m.content for m in self._store.list_messages(
                    patient.id, since=ctx.day_start, sender=MessageSender.SYSTEM,
                )
            }

            for activity in ctx.activities:
                if not is_in_window(activity, ctx.local_now, MatchWindow.STRICT):
                    continue
                if activity.type in done:
                    continue
                if not activity.prompt or activity.prompt in prompts_today:
                    logger.debug(
                        "Reminder for %s (%s) already sent today — skipping",
                        patient.id, activity.type.value,
                    )
                    continue

                try:
                    await self._outbox.send(patient, activity.prompt, MessageSender.SYSTEM, now=now)
                except Exception as exc:
                    logger.error("Failed to send reminder to %s: %s", patient.id, exc, exc_info=True)
                    continue
                prompts_today.add(activity.prompt)
                sent += 1
                logger.info(
                    "Reminder sent to %s (day %d, %s at %s)",
                    patient.id, ctx.current_day, activity.type.value, activity.time,
                )

                if activity.type == CheckInType.VISIT:
                    self._tasks.create_task(
                        patient.id,
                        TaskType.VISIT_FOLLOWUP,
                        f"Visit follow-up: {patient.full_name or patient.id}",
                        priority=TaskPriority.HIGH,
                        source=TaskSource.SYSTEM,
                        description=f'Reminder sent: "{activity.prompt}". Make sure the patient attends.',
                        due_at=now + VISIT_FOLLOWUP_DUE,
                        now=now,
                    )
        return sent

    def detect_missed_checkins(self, now: datetime | None = None) -> int:
        now = now or _now()
        created = 0
        for patient in self._store.list_patients(active_only=True):
            if patient.automation_paused:
                continue
            day_start = local_midnight(now, self._matcher.timezone_for(patient))
            reminders = [
                m for m in self._store.list_messages(
                    patient.id,
                    since=day_start,
                    direction=MessageDirection.OUTBOUND,
                    sender=MessageSender.SYSTEM,
                )
                if m.created_at <= now - RESPONSE_WINDOW
            ]
            if not reminders:
                continue
            reminder = max(reminders, key=lambda m: m.created_at)

            replies = self._store.list_messages(
                patient.id, since=reminder.created_at, direction=MessageDirection.INBOUND,
            )
            if any(m.created_at > reminder.created_at for m in replies):
                continue

            existing = self._store.list_tasks(
                patient_id=patient.id,
                task_type=TaskType.MISSED_CHECKIN,
                statuses=[TaskStatus.OPEN],
                since=day_start,
            )
            if existing:
                continue

            task = self._tasks.create_task(
                patient.id,
                TaskType.MISSED_CHECKIN,
                f"No response: {patient.full_name or patient.id}",
                priority=TaskPriority.MEDIUM,
                source=TaskSource.SYSTEM,
                description=(
                    f"No reply to the reminder for more than {int(RESPONSE_WINDOW.total_seconds() // 3600)} "
                    f'hours. Last reminder: "{reminder.content[:50]}"'
                ),
                meta={
                    "reminder_message_id": reminder.id,
                    "reminder_sent_at": reminder.created_at.isoformat(),
                },
                now=now,
            )
            if task.created_at != now:
                continue  # reused an open task from the previous day
            created += 1
            logger.warning("Missed check-in for patient %s — task created", patient.id)
            if self._crm:
                self._crm.fire(self._crm.sync_state(patient, CrmTrigger.CHECKIN_MISSED))
        return created
