"""
Schedule Matcher — resolves what a patient is expected to do right now.

A program template is a day-number → activities table.  For a patient and
a moment in time the matcher:
  1. finds the ACTIVE enrollment
  2. computes the program day in the patient's local calendar
  3. walks that day's activities in order, skipping those already
     satisfied by a same-type check-in since local midnight
  4. returns the first activity whose acceptance window contains "now"

Two windows exist:
  STRICT — [scheduled, scheduled + 60min]   used before SENDING a prompt
  LOOSE  — [scheduled − 30min, scheduled + 180min]   used when MATCHING
           a message the patient already sent
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from careloop import settings
from careloop.engine.errors import NotFoundError
from careloop.engine.models import (
    Activity,
    CheckInType,
    EnrollmentStatus,
    Patient,
    ProgramEnrollment,
)
from careloop.engine.store import EngineStore

logger = logging.getLogger("engine.schedule")

EARLY_TOLERANCE_MINUTES = 30
STRICT_WINDOW_MINUTES = 60
LOOSE_WINDOW_MINUTES = 180


class MatchWindow(str, Enum):
    STRICT = "STRICT"
    LOOSE = "LOOSE"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Time helpers ──


def resolve_timezone(name: str | None) -> ZoneInfo:
    """ZoneInfo for ``name``; unknown or empty names fall back to the default."""
    for candidate in (name, settings.DEFAULT_TIMEZONE, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r — falling back", candidate)
    return ZoneInfo("UTC")


def local_midnight(moment: datetime, tz: ZoneInfo) -> datetime:
    """Start of the local calendar day containing ``moment``, as UTC."""
    local_date = moment.astimezone(tz).date()
    return datetime.combine(local_date, time.min, tzinfo=tz).astimezone(timezone.utc)


def calculate_current_day(start_date: datetime, now: datetime, tz: ZoneInfo) -> int:
    """1-based program day: whole local days since the start date, plus one."""
    elapsed = (now.astimezone(tz).date() - start_date.astimezone(tz).date()).days
    return max(1, elapsed + 1)


def minutes_from_schedule(activity: Activity, local_now: datetime) -> int:
    """Signed minutes between now and the activity's time (positive = late)."""
    current = local_now.hour * 60 + local_now.minute
    return current - activity.minute_of_day


def is_in_window(activity: Activity, local_now: datetime, window: MatchWindow) -> bool:
    diff = minutes_from_schedule(activity, local_now)
    if window == MatchWindow.STRICT:
        return 0 <= diff <= STRICT_WINDOW_MINUTES
    return -EARLY_TOLERANCE_MINUTES <= diff <= LOOSE_WINDOW_MINUTES


@dataclass
class ScheduleContext:
    """Resolved program state for one patient at one moment."""

    patient: Patient
    enrollment: ProgramEnrollment
    current_day: int
    duration_days: int
    activities: list[Activity]
    tz: ZoneInfo
    local_now: datetime
    day_start: datetime  # local midnight, UTC


class ScheduleMatcher:
    """Maps (patient, now) onto the patient's expected activities."""

    def __init__(self, store: EngineStore) -> None:
        self._store = store

    def timezone_for(self, patient: Patient) -> ZoneInfo:
        return resolve_timezone(patient.timezone)

    def resolve(self, patient_id: str, now: datetime | None = None) -> Optional[ScheduleContext]:
        """Program context for today, or None when nothing is active."""
        now = now or _now()
        try:
            patient = self._store.get_patient(patient_id)
        except NotFoundError:
            return None

        enrollment = self._store.active_enrollment(patient_id)
        if enrollment is None:
            return None

        try:
            template = self._store.get_template(enrollment.template_id)
        except NotFoundError:
            logger.warning(
                "Enrollment %s points at missing template %s",
                enrollment.id, enrollment.template_id,
            )
            return None

        tz = self.timezone_for(patient)
        current_day = calculate_current_day(enrollment.start_date, now, tz)
        return ScheduleContext(
            patient=patient,
            enrollment=enrollment,
            current_day=current_day,
            duration_days=template.duration_days,
            activities=template.activities_for_day(current_day),
            tz=tz,
            local_now=now.astimezone(tz),
            day_start=local_midnight(now, tz),
        )

    def day_start(self, patient_id: str, now: datetime | None = None) -> datetime:
        """Local midnight of the patient's current day, as UTC."""
        patient = self._store.get_patient(patient_id)
        return local_midnight(now or _now(), self.timezone_for(patient))

    def satisfied_types(self, patient_id: str, day_start: datetime) -> set[CheckInType]:
        return {c.type for c in self._store.list_check_ins(patient_id, since=day_start)}

    def find_candidate_activity(
        self,
        patient_id: str,
        now: datetime | None = None,
        window: MatchWindow = MatchWindow.LOOSE,
    ) -> Optional[Activity]:
        """First unsatisfied activity of today whose window contains now."""
        matches = self.matching_activities(patient_id, now, window)
        return matches[0] if matches else None

    def matching_activities(
        self,
        patient_id: str,
        now: datetime | None = None,
        window: MatchWindow = MatchWindow.LOOSE,
    ) -> list[Activity]:
        ctx = self.resolve(patient_id, now)
        if ctx is None or not ctx.activities:
            return []

        done = self.satisfied_types(patient_id, ctx.day_start)
        matches = []
        for activity in ctx.activities:
            if activity.type in done:
                continue
            if is_in_window(activity, ctx.local_now, window):
                matches.append(activity)
        return matches

    def get_active_programs(self, patient_id: str, now: datetime | None = None) -> list[dict[str, Any]]:
        """
        Enrollments (ACTIVE and PAUSED) with today's schedule state.

        Each expected activity is reported RECEIVED with the satisfying
        check-in id, or PENDING.
        """
        now = now or _now()
        patient = self._store.get_patient(patient_id)
        tz = self.timezone_for(patient)
        day_start = local_midnight(now, tz)
        todays = self._store.list_check_ins(patient_id, since=day_start)
        by_type: dict[CheckInType, str] = {}
        for check_in in sorted(todays, key=lambda c: c.created_at):
            by_type.setdefault(check_in.type, check_in.id)

        programs = []
        for enrollment in self._store.list_enrollments(
            patient_id=patient_id,
            statuses=[EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED],
        ):
            try:
                template = self._store.get_template(enrollment.template_id)
            except NotFoundError:
                continue
            day = calculate_current_day(enrollment.start_date, now, tz)
            activities = []
            for activity in template.activities_for_day(day):
                check_in_id = by_type.get(activity.type)
                activities.append({
                    **activity.model_dump(mode="json"),
                    "status": "RECEIVED" if check_in_id else "PENDING",
                    "check_in_id": check_in_id,
                })
            programs.append({
                "enrollment_id": enrollment.id,
                "template_id": template.id,
                "template_name": template.name,
                "status": enrollment.status.value,
                "start_date": enrollment.start_date.isoformat(),
                "end_date": enrollment.end_date.isoformat(),
                "current_day": day,
                "duration_days": template.duration_days,
                "activities": activities,
            })
        return programs

