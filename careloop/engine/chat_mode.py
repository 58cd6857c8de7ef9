"""
Chat-Mode State Machine — who is talking to the patient right now.

States and guarded transitions:

    AUTOMATED ──ESCALATE──▶ HUMAN      level HIGH/CRITICAL or REQUEST_HUMAN
    HUMAN     ──RELEASE───▶ AUTOMATED  alert resolved / staff hand back
    AUTOMATED ──RELEASE───▶ AUTOMATED  re-stamps mode_set_by
    any       ──PAUSE─────▶ PAUSED     staff only
    PAUSED    ──RESUME────▶ AUTOMATED  staff only

PAUSED is a manual override: ESCALATE and RELEASE leave it untouched.

The machine mutates the Patient it is given and reports whether anything
changed; persisting the patient is the caller's job, usually inside the
same store transaction as the alert write.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum

from careloop.engine.models import AlertLevel, AlertType, ChatMode, Patient, is_elevated

logger = logging.getLogger("engine.chat_mode")


class Transition(str, Enum):
    ESCALATE = "ESCALATE"
    RELEASE = "RELEASE"
    PAUSE = "PAUSE"
    RESUME = "RESUME"


# (transition, from-state) → to-state
_TRANSITIONS: dict[tuple[Transition, ChatMode], ChatMode] = {
    (Transition.ESCALATE, ChatMode.AUTOMATED): ChatMode.HUMAN,
    (Transition.RELEASE, ChatMode.HUMAN): ChatMode.AUTOMATED,
    (Transition.RELEASE, ChatMode.AUTOMATED): ChatMode.AUTOMATED,
    (Transition.PAUSE, ChatMode.AUTOMATED): ChatMode.PAUSED,
    (Transition.PAUSE, ChatMode.HUMAN): ChatMode.PAUSED,
    (Transition.RESUME, ChatMode.PAUSED): ChatMode.AUTOMATED,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def should_escalate(level: AlertLevel, alert_type: AlertType) -> bool:
    """Switch condition for an alert, before looking at the current mode."""
    return is_elevated(level) or alert_type == AlertType.REQUEST_HUMAN


class ChatModeMachine:
    def apply(
        self,
        patient: Patient,
        transition: Transition,
        actor: str,
        now: datetime | None = None,
    ) -> bool:
        """Apply ``transition``; False when it is not allowed from the current mode."""
        target = _TRANSITIONS.get((transition, patient.chat_mode))
        if target is None:
            logger.debug(
                "Transition %s ignored for patient %s in mode %s",
                transition.value, patient.id, patient.chat_mode.value,
            )
            return False

        previous = patient.chat_mode
        patient.chat_mode = target
        patient.mode_set_at = now or _now()
        patient.mode_set_by = actor
        logger.info(
            "Patient %s chat mode %s → %s (%s by %s)",
            patient.id, previous.value, target.value, transition.value, actor,
        )
        return True

    def escalate(
        self,
        patient: Patient,
        level: AlertLevel,
        alert_type: AlertType,
        actor: str = "system",
        now: datetime | None = None,
    ) -> bool:
        if not should_escalate(level, alert_type):
            return False
        if patient.chat_mode == ChatMode.PAUSED:
            logger.info("Patient %s is PAUSED — skipping switch to HUMAN", patient.id)
            return False
        return self.apply(patient, Transition.ESCALATE, actor, now)

    def release(self, patient: Patient, actor: str, now: datetime | None = None) -> bool:
        return self.apply(patient, Transition.RELEASE, actor, now)

    def pause(self, patient: Patient, actor: str, now: datetime | None = None) -> bool:
        return self.apply(patient, Transition.PAUSE, actor, now)

    def resume(self, patient: Patient, actor: str, now: datetime | None = None) -> bool:
        return self.apply(patient, Transition.RESUME, actor, now)

    def set_mode(self, patient: Patient, mode: ChatMode, actor: str, now: datetime | None = None) -> bool:
        """Staff request for a target mode, mapped onto a transition."""
        if mode == patient.chat_mode:
            return False
        if mode == ChatMode.PAUSED:
            return self.pause(patient, actor, now)
        if mode == ChatMode.HUMAN:
            return self.apply(patient, Transition.ESCALATE, actor, now)
        if patient.chat_mode == ChatMode.PAUSED:
            return self.resume(patient, actor, now)
        return self.release(patient, actor, now)
