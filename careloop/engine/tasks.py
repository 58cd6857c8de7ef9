"""
Task/SLA Engine — work items for care coordinators.

SLA deadlines are never stored; they are a pure function of priority and
created_at:

    HIGH   →  2h
    MEDIUM → 24h
    LOW    → 72h

A task is overdue when it is not DONE and its elapsed time (to resolved_at
for finished tasks, to now otherwise) exceeds the SLA.

Creating a task while an OPEN task of the same (patient, type) created in
the last 24h exists returns that task instead of a new one.  The
escalation sweep spawns at most one open system FOLLOW_UP per patient for
overdue HIGH tasks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from careloop.engine.errors import InvalidRequestError
from careloop.engine.models import (
    Alert,
    AlertLevel,
    AlertType,
    Task,
    TaskPriority,
    TaskSource,
    TaskStatus,
    TaskType,
    is_elevated,
    priority_rank,
)
from careloop.engine.store import EngineStore

logger = logging.getLogger("engine.tasks")

SLA_HOURS: dict[TaskPriority, int] = {
    TaskPriority.HIGH: 2,
    TaskPriority.MEDIUM: 24,
    TaskPriority.LOW: 72,
}

DEDUP_WINDOW = timedelta(hours=24)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SlaStatus:
    sla_hours: int
    deadline: datetime
    is_overdue: bool
    overdue_hours: float


def compute_sla(task: Task, now: datetime | None = None) -> SlaStatus:
    now = now or _now()
    sla_hours = SLA_HOURS[task.priority]
    deadline = task.created_at + timedelta(hours=sla_hours)
    end = task.resolved_at if task.status == TaskStatus.DONE and task.resolved_at else now
    elapsed_hours = (end - task.created_at).total_seconds() / 3600
    is_overdue = task.status != TaskStatus.DONE and elapsed_hours > sla_hours
    return SlaStatus(
        sla_hours=sla_hours,
        deadline=deadline,
        is_overdue=is_overdue,
        overdue_hours=round(max(0.0, elapsed_hours - sla_hours), 2) if is_overdue else 0.0,
    )


def task_view(task: Task, now: datetime | None = None) -> dict[str, Any]:
    """Task fields plus the computed SLA fields, JSON-ready."""
    sla = compute_sla(task, now)
    return {
        **task.model_dump(mode="json"),
        "sla_hours": sla.sla_hours,
        "sla_deadline": sla.deadline.isoformat(),
        "is_overdue": sla.is_overdue,
        "overdue_hours": sla.overdue_hours,
    }


def priority_for_level(level: AlertLevel) -> TaskPriority:
    # No tier above HIGH exists for tasks, so CRITICAL lands on HIGH too
    return TaskPriority.HIGH if is_elevated(level) else TaskPriority.MEDIUM


def task_type_for_alert(alert: Alert) -> TaskType:
    if is_elevated(alert.level):
        return TaskType.RISK_ALERT
    if alert.type == AlertType.MISSED_CHECKIN:
        return TaskType.MISSED_CHECKIN
    return TaskType.CUSTOM


class TaskService:
    def __init__(self, store: EngineStore) -> None:
        self._store = store

    # ── Creation ──

    def create_task(
        self,
        patient_id: str,
        task_type: TaskType,
        title: str,
        *,
        priority: TaskPriority = TaskPriority.MEDIUM,
        source: TaskSource = TaskSource.SYSTEM,
        description: str = "",
        alert_id: str | None = None,
        due_at: datetime | None = None,
        meta: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Task:
        """Create a task, or return the open same-type task from the last 24h."""
        now = now or _now()
        existing = self.find_recent_open(patient_id, task_type, now)
        if existing is not None:
            logger.info(
                "Task dedup: reusing open %s task %s for patient %s",
                task_type.value, existing.id, patient_id,
            )
            return existing

        task = Task(
            patient_id=patient_id,
            type=task_type,
            title=title,
            description=description,
            priority=priority,
            source=source,
            alert_id=alert_id,
            due_at=due_at,
            meta=meta or {},
            created_at=now,
        )
        self._store.save_task(task)
        logger.info(
            "Task %s created for patient %s (type=%s, priority=%s, source=%s)",
            task.id, patient_id, task_type.value, priority.value, source.value,
        )
        return task

    def create_from_alert(self, alert: Alert, now: datetime | None = None) -> Task:
        return self.create_task(
            alert.patient_id,
            task_type_for_alert(alert),
            alert.title or f"Alert: {alert.type.value}",
            priority=priority_for_level(alert.level),
            source=TaskSource.SYSTEM,
            description=alert.description,
            alert_id=alert.id,
            now=now,
        )

    def find_recent_open(self, patient_id: str, task_type: TaskType, now: datetime) -> Optional[Task]:
        candidates = self._store.list_tasks(
            patient_id=patient_id,
            task_type=task_type,
            statuses=[TaskStatus.OPEN],
            since=now - DEDUP_WINDOW,
        )
        if not candidates:
            return None
        return max(candidates, key=lambda t: t.created_at)

    # ── Updates ──

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        priority: TaskPriority | None = None,
        assigned_to: str | None = None,
        now: datetime | None = None,
    ) -> Task:
        now = now or _now()
        task = self._store.get_task(task_id)

        if status is not None and status != task.status:
            if task.status in (TaskStatus.DONE, TaskStatus.CANCELLED) and status == TaskStatus.IN_PROGRESS:
                raise InvalidRequestError(f"Task {task_id} is {task.status.value} and cannot be restarted")
            task.status = status
            if status == TaskStatus.IN_PROGRESS:
                task.started_at = now
            elif status == TaskStatus.DONE:
                task.resolved_at = now
        if priority is not None:
            task.priority = priority
        if assigned_to is not None:
            task.assigned_to = assigned_to

        self._store.save_task(task)
        logger.info("Task %s updated (status=%s)", task_id, task.status.value)
        return task

    # ── Queries ──

    def get_task(self, task_id: str) -> Task:
        return self._store.get_task(task_id)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        priority: TaskPriority | None = None,
        patient_id: str | None = None,
        overdue: bool | None = None,
        now: datetime | None = None,
    ) -> list[Task]:
        """Priority high→low, then newest first."""
        now = now or _now()
        tasks = self._store.list_tasks(
            patient_id=patient_id,
            statuses=[status] if status else None,
        )
        if priority is not None:
            tasks = [t for t in tasks if t.priority == priority]
        if overdue is not None:
            tasks = [t for t in tasks if compute_sla(t, now).is_overdue == overdue]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        tasks.sort(key=lambda t: priority_rank(t.priority), reverse=True)
        return tasks

    # ── Escalation sweep ──

    def escalate_overdue(self, now: datetime | None = None) -> list[Task]:
        """
        Spawn a FOLLOW_UP for each patient with an OPEN HIGH task past its
        2h SLA.  A patient that already has an OPEN system FOLLOW_UP is
        skipped, so repeated sweeps create nothing new.
        """
        now = now or _now()
        cutoff = now - timedelta(hours=SLA_HOURS[TaskPriority.HIGH])
        stale = [
            t for t in self._store.list_tasks(statuses=[TaskStatus.OPEN])
            if t.priority == TaskPriority.HIGH and t.created_at < cutoff
        ]
        stale.sort(key=lambda t: t.created_at)

        created = []
        for task in stale:
            if task.type == TaskType.FOLLOW_UP and task.source == TaskSource.SYSTEM:
                continue
            has_follow_up = self._store.list_tasks(
                patient_id=task.patient_id,
                task_type=TaskType.FOLLOW_UP,
                statuses=[TaskStatus.OPEN],
            )
            if any(t.source == TaskSource.SYSTEM for t in has_follow_up):
                continue

            follow_up = Task(
                patient_id=task.patient_id,
                type=TaskType.FOLLOW_UP,
                priority=TaskPriority.HIGH,
                source=TaskSource.SYSTEM,
                title=f"Escalation: {task.title or task.type.value}",
                description=(
                    f"Task {task.id} ({task.type.value}) has been open since "
                    f"{task.created_at.isoformat()} and is past its SLA."
                ),
                meta={"escalated_from_task_id": task.id},
                created_at=now,
            )
            self._store.save_task(follow_up)
            created.append(follow_up)
            logger.warning(
                "Escalated overdue task %s for patient %s → follow-up %s",
                task.id, task.patient_id, follow_up.id,
            )
        return created
