"""
Staff chat commands — ``#ai off`` / ``#ai on`` / ``#ai status`` typed in
the staff composer toggle automation for one patient instead of being
sent to them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from careloop.engine.models import Patient
from careloop.engine.store import EngineStore

logger = logging.getLogger("engine.commands")

PAUSE_WORDS = {"off", "pause", "stop"}
RESUME_WORDS = {"on", "resume", "start"}
STATUS_WORDS = {"status"}


class CommandAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STATUS = "status"


@dataclass
class CommandResult:
    action: CommandAction
    ai_enabled: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": True,
            "action": self.action.value,
            "ai_enabled": self.ai_enabled,
            "message": self.message,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_command(text: str, prefix: str = "#ai") -> Optional[CommandAction]:
    """``"#ai off"`` → PAUSE.  Anything else, including unknown verbs, → None."""
    stripped = (text or "").strip()
    if not prefix or not stripped.lower().startswith(prefix.lower()):
        return None
    rest = stripped[len(prefix):]
    # "#aiX" is not a command
    if rest and not rest[0].isspace():
        return None
    words = rest.split()
    verb = words[0].lower() if words else "status"
    if verb in PAUSE_WORDS:
        return CommandAction.PAUSE
    if verb in RESUME_WORDS:
        return CommandAction.RESUME
    if verb in STATUS_WORDS:
        return CommandAction.STATUS
    return None


class AutomationControl:
    """Per-patient automation pause, independent of chat mode."""

    def __init__(self, store: EngineStore) -> None:
        self._store = store

    def set_paused(
        self,
        patient_id: str,
        paused: bool,
        actor: str = "staff",
        reason: Optional[str] = None,
        now: datetime | None = None,
    ) -> Patient:
        patient = self._store.get_patient(patient_id)
        patient.automation_paused = paused
        if paused:
            patient.paused_at = now or _now()
            patient.paused_by = actor
            patient.pause_reason = reason
        else:
            patient.paused_at = None
            patient.paused_by = None
            patient.pause_reason = None
        self._store.save_patient(patient)
        logger.info("Automation %s for patient %s by %s", "paused" if paused else "resumed", patient_id, actor)
        return patient

    def execute(self, patient_id: str, action: CommandAction, actor: str, text: str = "") -> CommandResult:
        if action == CommandAction.PAUSE:
            self.set_paused(patient_id, True, actor, reason=text or None)
            return CommandResult(action, False, "Automation paused: staff now handle every message.")
        if action == CommandAction.RESUME:
            self.set_paused(patient_id, False, actor)
            return CommandResult(action, True, "Automation resumed: messages are analyzed again.")

        patient = self._store.get_patient(patient_id)
        if patient.automation_paused:
            since = patient.paused_at.isoformat() if patient.paused_at else "unknown time"
            message = f"Automation paused since {since} by {patient.paused_by or 'unknown'}"
        else:
            message = "Automation active"
        return CommandResult(action, not patient.automation_paused, message)
