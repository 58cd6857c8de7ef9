"""
Reply/Handoff Decider — turns an AnalysisResult into exactly one action.

    handoff_required or risk HIGH/CRITICAL  → HANDOFF  (alert, never a reply)
    should_reply and a suggested reply      → REPLY    (AI message via outbox)
    otherwise                               → NOOP

``decide`` is pure; ``ReplyHandoffDecider.apply`` executes the decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from careloop.engine.alerts import AlertService
from careloop.engine.analysis.types import AnalysisResult
from careloop.engine.checkins import CheckInRecorder
from careloop.engine.errors import NotFoundError
from careloop.engine.models import AlertType, ChatMode, MessageSender, is_elevated
from careloop.engine.outbox import Outbox
from careloop.engine.store import EngineStore
from careloop.engine.variants import PromptVariantSelector

logger = logging.getLogger("engine.decider")


class DecisionKind(str, Enum):
    HANDOFF = "HANDOFF"
    REPLY = "REPLY"
    NOOP = "NOOP"


@dataclass
class Decision:
    kind: DecisionKind
    reply: Optional[str] = None
    alert_id: Optional[str] = None
    message_id: Optional[str] = None
    check_in_id: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def decide(result: AnalysisResult) -> Decision:
    if result.handoff_required or is_elevated(result.risk_level):
        return Decision(kind=DecisionKind.HANDOFF)
    if result.should_reply and result.suggested_reply:
        return Decision(kind=DecisionKind.REPLY, reply=result.suggested_reply)
    return Decision(kind=DecisionKind.NOOP)


class ReplyHandoffDecider:
    def __init__(
        self,
        store: EngineStore,
        alerts: AlertService,
        outbox: Outbox,
        recorder: CheckInRecorder,
        variants: PromptVariantSelector | None = None,
    ) -> None:
        self._store = store
        self._alerts = alerts
        self._outbox = outbox
        self._recorder = recorder
        self._variants = variants

    async def apply(
        self,
        patient_id: str,
        result: AnalysisResult,
        *,
        message_id: Optional[str] = None,
        message_ids: Optional[list[str]] = None,
        now: datetime | None = None,
    ) -> Decision:
        """
        ``message_ids`` is the analysed batch.  A batch whose numeric or
        media answer was already recorded on arrival is not recorded again.
        """
        now = now or _now()
        decision = decide(result)

        if result.check_in_satisfied:
            batch = message_ids or ([message_id] if message_id else [])
            if self._batch_has_check_in(batch):
                logger.debug("Check-in for patient %s already recorded from the batch", patient_id)
            else:
                decision.check_in_id = self._recorder.record_confirmed(
                    patient_id, result.summary, message_id=message_id, now=now,
                )

        if decision.kind == DecisionKind.HANDOFF:
            alert_type = (
                AlertType.BAD_CONDITION if is_elevated(result.risk_level)
                else AlertType.REQUEST_HUMAN
            )
            alert = self._alerts.create_from_ai(
                patient_id,
                alert_type,
                result.risk_level,
                f"AI Handoff: {result.summary[:100]}",
                f"Risk: {result.risk_level.value}\nSummary: {result.summary}",
                message_id=message_id,
                now=now,
            )
            decision.alert_id = alert.id
            if self._variants:
                self._variants.record_handoff(result.prompt_variant_id)
            logger.info("Handoff for patient %s → alert %s", patient_id, alert.id)
            return decision

        if decision.kind == DecisionKind.REPLY:
            patient = self._store.get_patient(patient_id)
            if patient.chat_mode != ChatMode.AUTOMATED or patient.automation_paused:
                logger.info(
                    "Reply suppressed for patient %s (mode=%s, paused=%s)",
                    patient_id, patient.chat_mode.value, patient.automation_paused,
                )
                decision.kind = DecisionKind.NOOP
                decision.reply = None
                return decision

            message = await self._outbox.send(
                patient,
                decision.reply or "",
                MessageSender.AI,
                prompt_variant_id=result.prompt_variant_id,
                now=now,
            )
            decision.message_id = message.id
            if self._variants:
                self._variants.record_message(result.prompt_variant_id)
            return decision

        logger.debug("No action for patient %s (%s)", patient_id, result.summary)
        return decision

    def _batch_has_check_in(self, message_ids: list[str]) -> bool:
        for message_id in message_ids:
            try:
                if self._store.get_message(message_id).linked_check_in_id:
                    return True
            except NotFoundError:
                continue
        return False
