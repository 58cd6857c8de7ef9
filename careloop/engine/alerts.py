"""
Alert Deduplicator — alert lifecycle tied to the chat-mode state machine.

create_from_ai:
  HIGH/CRITICAL with an OPEN HIGH/CRITICAL alert for the same patient in
  the last 24h → the new description is appended to that alert (raised
  to CRITICAL on a CRITICAL signal); no new row, no mode switch.
  Otherwise the alert row and the AUTOMATED → HUMAN switch commit in one
  store transaction.  Follow-ups (task from alert, CRM note, CRM status
  sync) run after the commit and never fail the alert.

resolve:
  RESOLVED + resolved_at/by, optional note, patient released to AUTOMATED
  in the same transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from careloop.engine.chat_mode import ChatModeMachine
from careloop.engine.crm import CrmNotifier, CrmTrigger
from careloop.engine.errors import ConflictError
from careloop.engine.models import (
    ELEVATED_LEVELS,
    Alert,
    AlertLevel,
    AlertStatus,
    AlertType,
    Patient,
    is_elevated,
)
from careloop.engine.store import EngineStore
from careloop.engine.tasks import TaskService

logger = logging.getLogger("engine.alerts")

DEDUP_WINDOW = timedelta(hours=24)
DESCRIPTION_SEPARATOR = "\n---\n"
ACTIVE_STATUSES = [AlertStatus.OPEN, AlertStatus.IN_PROGRESS]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AlertService:
    def __init__(
        self,
        store: EngineStore,
        tasks: TaskService,
        chat_mode: ChatModeMachine | None = None,
        crm: CrmNotifier | None = None,
    ) -> None:
        self._store = store
        self._tasks = tasks
        self._chat_mode = chat_mode or ChatModeMachine()
        self._crm = crm

    # ── Creation ──

    def create_from_ai(
        self,
        patient_id: str,
        alert_type: AlertType,
        level: AlertLevel,
        title: str,
        description: str = "",
        *,
        message_id: Optional[str] = None,
        now: datetime | None = None,
    ) -> Alert:
        now = now or _now()

        if is_elevated(level):
            existing = self.find_recent_elevated(patient_id, now)
            if existing is not None:
                return self._absorb(existing, level, description, now)

        with self._store.transaction():
            patient = self._store.get_patient(patient_id)
            alert = Alert(
                patient_id=patient_id,
                type=alert_type,
                level=level,
                title=title,
                description=description,
                message_id=message_id,
                created_at=now,
                updated_at=now,
            )
            self._store.save_alert(alert)
            switched = self._chat_mode.escalate(patient, level, alert_type, actor="system", now=now)
            if switched:
                self._store.save_patient(patient)

        logger.info(
            "Alert %s created for patient %s (type=%s, level=%s, switched_to_human=%s)",
            alert.id, patient_id, alert_type.value, level.value, switched,
        )
        self._after_create(alert, patient, now)
        return alert

    def find_recent_elevated(self, patient_id: str, now: datetime) -> Optional[Alert]:
        candidates = self._store.list_alerts(
            patient_id=patient_id,
            statuses=[AlertStatus.OPEN],
            levels=list(ELEVATED_LEVELS),
            since=now - DEDUP_WINDOW,
        )
        return candidates[0] if candidates else None

    # ── Lifecycle ──

    def resolve(
        self,
        alert_id: str,
        actor: str,
        note: Optional[str] = None,
        now: datetime | None = None,
    ) -> Alert:
        now = now or _now()
        with self._store.transaction():
            alert = self._store.get_alert(alert_id)
            if alert.status == AlertStatus.RESOLVED:
                raise ConflictError(f"Alert {alert_id} is already resolved")

            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = now
            alert.resolved_by = actor
            alert.updated_at = now
            if note:
                alert.description = f"{alert.description}{DESCRIPTION_SEPARATOR}Resolve note: {note}"
            self._store.save_alert(alert)

            patient = self._store.get_patient(alert.patient_id)
            if self._chat_mode.release(patient, actor, now):
                self._store.save_patient(patient)

        logger.info("Alert %s resolved by %s (patient %s)", alert_id, actor, alert.patient_id)
        return alert

    def update_status(self, alert_id: str, status: AlertStatus, actor: str = "staff") -> Alert:
        if status == AlertStatus.RESOLVED:
            return self.resolve(alert_id, actor)
        alert = self._store.get_alert(alert_id)
        if alert.status == AlertStatus.RESOLVED:
            raise ConflictError(f"Alert {alert_id} is already resolved")
        alert.status = status
        alert.updated_at = _now()
        self._store.save_alert(alert)
        logger.info("Alert %s status → %s", alert_id, status.value)
        return alert

    # ── Queries ──

    def get(self, alert_id: str) -> Alert:
        return self._store.get_alert(alert_id)

    def list_active(
        self,
        *,
        status: AlertStatus | None = None,
        level: AlertLevel | None = None,
        patient_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Alert]:
        """Newest first; OPEN and IN_PROGRESS unless ``status`` is given."""
        alerts = self._store.list_alerts(
            patient_id=patient_id,
            statuses=[status] if status else ACTIVE_STATUSES,
            levels=[level] if level else None,
        )
        return alerts[offset: offset + limit]

    # ── Internal ──

    def _absorb(self, alert: Alert, level: AlertLevel, description: str, now: datetime) -> Alert:
        if description:
            alert.description = (
                f"{alert.description}{DESCRIPTION_SEPARATOR}{description}"
                if alert.description else description
            )
        if level == AlertLevel.CRITICAL:
            alert.level = AlertLevel.CRITICAL
        alert.updated_at = now
        self._store.save_alert(alert)
        logger.info(
            "Alert %s updated for patient %s (duplicate prevention, level=%s)",
            alert.id, alert.patient_id, alert.level.value,
        )
        return alert

    def _after_create(self, alert: Alert, patient: Patient, now: datetime) -> None:
        try:
            self._tasks.create_from_alert(alert, now)
        except Exception as exc:
            logger.error("Failed to create task from alert %s: %s", alert.id, exc)

        if self._crm is None or not patient.crm_lead_id:
            return
        self._crm.fire(self._crm.add_note(
            patient.crm_lead_id,
            f"Alert [{alert.level.value}]: {alert.title}\n{alert.description}",
        ))
        if is_elevated(alert.level):
            self._crm.fire(self._crm.sync_state(patient, CrmTrigger.RISK_HIGH))
