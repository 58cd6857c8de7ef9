"""
Program lifecycle — templates, enrollments and the daily day-counter.

The stored ``current_day`` is a cache for listings and CRM week
milestones; everything that acts on the schedule recomputes the day from
``start_date`` in the patient's time zone.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from careloop.engine.crm import CrmNotifier, CrmTrigger, week_trigger
from careloop.engine.errors import ConflictError, InvalidRequestError, NotFoundError
from careloop.engine.models import EnrollmentStatus, ProgramEnrollment, ProgramTemplate
from careloop.engine.schedule import ScheduleMatcher, calculate_current_day, local_midnight
from careloop.engine.store import EngineStore

logger = logging.getLogger("engine.programs")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProgramService:
    def __init__(
        self,
        store: EngineStore,
        matcher: ScheduleMatcher,
        crm: CrmNotifier | None = None,
    ) -> None:
        self._store = store
        self._matcher = matcher
        self._crm = crm

    # ── Templates ──

    def create_template(self, data: dict[str, Any]) -> ProgramTemplate:
        template = ProgramTemplate.model_validate(data)
        self._store.save_template(template)
        logger.info("Program template %s created (%s, %d days)", template.id, template.name, template.duration_days)
        return template

    def delete_template(self, template_id: str) -> None:
        self._store.get_template(template_id)
        if self._store.list_enrollments(template_id=template_id):
            raise ConflictError(
                f"Template {template_id} is used by enrollments; deactivate it instead"
            )
        self._store.delete_template(template_id)
        logger.info("Program template %s deleted", template_id)

    # ── Enrollments ──

    def create_enrollment(
        self,
        patient_id: str,
        template_id: str,
        start_date: Optional[datetime] = None,
        now: datetime | None = None,
    ) -> ProgramEnrollment:
        now = now or _now()
        patient = self._store.get_patient(patient_id)
        template = self._store.get_template(template_id)
        if not template.is_active:
            raise InvalidRequestError(f"Program template {template_id} is not active")

        tz = self._matcher.timezone_for(patient)
        start = local_midnight(start_date or now, tz)
        enrollment = ProgramEnrollment(
            patient_id=patient_id,
            template_id=template_id,
            start_date=start,
            end_date=start + timedelta(days=template.duration_days),
            current_day=1,
            created_at=now,
        )

        with self._store.transaction():
            if self._store.active_enrollment(patient_id) is not None:
                raise ConflictError(f"Patient {patient_id} already has an active program")
            self._store.save_enrollment(enrollment)

        logger.info(
            "Patient %s enrolled in %s (start=%s, end=%s)",
            patient_id, template.name, enrollment.start_date.isoformat(), enrollment.end_date.isoformat(),
        )
        if self._crm:
            self._crm.fire(self._crm.sync_state(patient, CrmTrigger.PROGRAM_STARTED))
        return enrollment

    def pause_enrollment(self, patient_id: str, paused: bool) -> ProgramEnrollment:
        """Toggle the patient's current program between ACTIVE and PAUSED."""
        current = EnrollmentStatus.ACTIVE if paused else EnrollmentStatus.PAUSED
        candidates = self._store.list_enrollments(patient_id=patient_id, statuses=[current])
        if not candidates:
            state = "active" if paused else "paused"
            raise NotFoundError(f"No {state} program found for patient {patient_id}")

        enrollment = candidates[0]
        with self._store.transaction():
            if not paused and self._store.active_enrollment(patient_id) is not None:
                raise ConflictError(f"Patient {patient_id} already has an active program")
            enrollment.status = EnrollmentStatus.PAUSED if paused else EnrollmentStatus.ACTIVE
            self._store.save_enrollment(enrollment)

        logger.info("Program %s for patient %s → %s", enrollment.id, patient_id, enrollment.status.value)
        return enrollment

    # ── Daily update ──

    def update_program_days(self, now: datetime | None = None) -> dict[str, int]:
        """
        Refresh the cached day of every ACTIVE enrollment.  Entering day
        1, 8, 15, ... fires the matching WEEK_n CRM sync; passing the
        template duration completes the program.
        """
        now = now or _now()
        updated = completed = 0
        for enrollment in self._store.list_enrollments(statuses=[EnrollmentStatus.ACTIVE]):
            try:
                patient = self._store.get_patient(enrollment.patient_id)
                template = self._store.get_template(enrollment.template_id)
            except NotFoundError as exc:
                logger.warning("Skipping day update for enrollment %s: %s", enrollment.id, exc)
                continue

            day = calculate_current_day(enrollment.start_date, now, self._matcher.timezone_for(patient))
            if day == enrollment.current_day:
                continue

            previous = enrollment.current_day
            enrollment.current_day = day
            trigger: CrmTrigger | None = None
            if day > template.duration_days:
                enrollment.status = EnrollmentStatus.COMPLETED
                enrollment.end_date = now
                trigger = CrmTrigger.PROGRAM_COMPLETED
                completed += 1
                logger.info("Program %s for patient %s completed", enrollment.id, patient.id)
            elif day > previous and (day - 1) % 7 == 0:
                trigger = week_trigger((day - 1) // 7 + 1)
            self._store.save_enrollment(enrollment)
            updated += 1

            if trigger is not None and self._crm:
                self._crm.fire(self._crm.sync_state(patient, trigger))

        if updated:
            logger.info("Program days updated: %d (completed %d)", updated, completed)
        return {"updated": updated, "completed": completed}
