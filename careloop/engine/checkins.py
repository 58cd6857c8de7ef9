"""
Check-in Recorder — turns messages and analysis verdicts into stored
observations.

Recording rules:
  - media attachments prove compliance and are recorded immediately
  - a bare number answering a numeric activity ("78.5", "8 h") is
    structured input and is recorded immediately
  - any other text waits for the analysis step to confirm it satisfies
    the activity, then is recorded with source AI

Callers gate on ScheduleMatcher.find_candidate_activity, which never
returns an activity that already has a check-in today, so repeated
messages cannot produce a second same-type check-in for the day.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional, Union

from careloop.engine.analysis.types import ExtractedCheckIn, ExtractedType
from careloop.engine.errors import NotFoundError
from careloop.engine.models import (
    Activity,
    CheckIn,
    CheckInMedia,
    CheckInSource,
    CheckInType,
    Message,
)
from careloop.engine.schedule import ScheduleMatcher
from careloop.engine.store import EngineStore

logger = logging.getLogger("engine.checkins")

CheckInValue = Union[float, int, str, bool, None]

NUMERIC_TYPES = {
    CheckInType.WEIGHT,
    CheckInType.STEPS,
    CheckInType.SLEEP,
    CheckInType.WATER,
}

# A reply that is only a number, optionally with a short unit
_NUMERIC_ANSWER = re.compile(
    r"^\s*(\d{1,6}(?:[.,]\d{1,3})?)\s*"
    r"(?:kg|kgs|кг|lb|lbs|h|hr|hrs|hours|ч|l|л|ml|мл|steps|шагов|шаг)?\.?\s*$",
    re.IGNORECASE,
)

# Provider types → stored types.  Kinds without a dedicated column are
# stored as FREE_TEXT with a "[KIND]" prefix.
EXTRACTED_TYPE_MAP: dict[ExtractedType, CheckInType] = {
    ExtractedType.WEIGHT: CheckInType.WEIGHT,
    ExtractedType.STEPS: CheckInType.STEPS,
    ExtractedType.MOOD: CheckInType.MOOD,
    ExtractedType.DIET_ADHERENCE: CheckInType.DIET_ADHERENCE,
    ExtractedType.SLEEP: CheckInType.SLEEP,
    ExtractedType.FREE_TEXT: CheckInType.FREE_TEXT,
    ExtractedType.FOOD_LOG: CheckInType.FREE_TEXT,
    ExtractedType.WATER: CheckInType.FREE_TEXT,
    ExtractedType.EXERCISE: CheckInType.FREE_TEXT,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_numeric_answer(text: str | None) -> Optional[float]:
    """78.5 for "78.5", "78,5 kg" or "78.5кг"; None for anything else."""
    if not text:
        return None
    match = _NUMERIC_ANSWER.match(text)
    if not match:
        return None
    return float(match.group(1).replace(",", "."))


class CheckInRecorder:
    """Persists check-ins and links them to the message that produced them."""

    def __init__(self, store: EngineStore, matcher: ScheduleMatcher) -> None:
        self._store = store
        self._matcher = matcher

    def record(
        self,
        patient_id: str,
        check_in_type: CheckInType,
        value: CheckInValue,
        source: CheckInSource,
        *,
        media: CheckInMedia | None = None,
        message_id: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Store one check-in and return its id."""
        check_in = CheckIn(
            patient_id=patient_id,
            type=check_in_type,
            media=media,
            source=source,
            created_at=now or _now(),
        )
        if isinstance(value, bool):
            check_in.value_bool = value
        elif isinstance(value, (int, float)):
            check_in.value_number = float(value)
        elif value is not None:
            check_in.value_text = str(value)

        self._store.save_check_in(check_in)
        if message_id:
            self._link_message(message_id, check_in.id)

        logger.info(
            "CheckIn %s recorded for patient %s (type=%s, source=%s)",
            check_in.id, patient_id, check_in_type.value, source.value,
        )
        return check_in.id

    def record_from_message(self, message: Message, now: datetime | None = None) -> Optional[str]:
        """
        Record a check-in straight from an inbound message when the
        message is unambiguous (media, or a bare number for a numeric
        activity).  Returns the check-in id, or None when the message
        must wait for analysis.
        """
        now = now or message.created_at
        candidate = self._matcher.find_candidate_activity(message.patient_id, now)
        if candidate is None:
            return None

        if message.media_url:
            return self.record(
                message.patient_id,
                candidate.type,
                message.content or None,
                CheckInSource.PATIENT,
                media=CheckInMedia(url=message.media_url, type=message.media_type or "file"),
                message_id=message.id,
                now=now,
            )

        if candidate.type in NUMERIC_TYPES:
            number = parse_numeric_answer(message.content)
            if number is not None:
                return self.record(
                    message.patient_id,
                    candidate.type,
                    number,
                    CheckInSource.PATIENT,
                    message_id=message.id,
                    now=now,
                )

        return None

    def record_confirmed(
        self,
        patient_id: str,
        summary: str | None,
        *,
        message_id: str | None = None,
        now: datetime | None = None,
    ) -> Optional[str]:
        """Record the current candidate activity after analysis confirmed it."""
        candidate: Activity | None = self._matcher.find_candidate_activity(patient_id, now)
        if candidate is None:
            logger.debug("Analysis confirmed a check-in but no activity is open for %s", patient_id)
            return None
        return self.record(
            patient_id,
            candidate.type,
            summary or "AI validated",
            CheckInSource.AI,
            message_id=message_id,
            now=now,
        )

    def record_extracted(
        self,
        patient_id: str,
        extracted: list[ExtractedCheckIn],
        now: datetime | None = None,
    ) -> list[str]:
        """Store provider-extracted observations.  One failure never stops the rest."""
        saved = []
        now = now or _now()
        already = self._matcher.satisfied_types(
            patient_id, self._matcher.day_start(patient_id, now)
        )
        for item in extracted:
            stored_type = EXTRACTED_TYPE_MAP.get(item.type)
            if stored_type is None:
                continue
            # One structured check-in per type per local day; notes may repeat
            if stored_type != CheckInType.FREE_TEXT and stored_type in already:
                logger.debug(
                    "Skipping extracted %s for %s: already recorded today",
                    item.type.value, patient_id,
                )
                continue
            try:
                check_in = CheckIn(
                    patient_id=patient_id,
                    type=stored_type,
                    value_number=item.value_number,
                    value_text=item.value_text,
                    value_bool=item.value_bool,
                    source=CheckInSource.AI,
                    created_at=now,
                )
                if stored_type.value != item.type.value:
                    check_in.value_text = f"[{item.type.value}] {item.value_text or ''}".strip()
                self._store.save_check_in(check_in)
                saved.append(check_in.id)
                already.add(stored_type)
                logger.info(
                    "Auto-saved %s check-in for patient %s",
                    item.type.value, patient_id,
                )
            except Exception as exc:
                logger.error(
                    "Failed to save extracted %s check-in for %s: %s",
                    item.type.value, patient_id, exc,
                )
        return saved

    def _link_message(self, message_id: str, check_in_id: str) -> None:
        try:
            message = self._store.get_message(message_id)
        except NotFoundError as exc:
            logger.warning("Cannot link check-in %s to message %s: %s", check_in_id, message_id, exc)
            return
        message.linked_check_in_id = check_in_id
        self._store.save_message(message)
