"""
Message service — inbound transport messages, staff and system sends,
delivery-status callbacks.

Inbound flow:
  1. normalize phone, find the patient (unknown phone → ignored)
  2. drop transport duplicates (same external id already stored)
  3. store the INBOUND message (media-only → placeholder text)
  4. media / bare numeric answer → immediate check-in
  5. bump the summary counter
  6. AUTOMATED and not paused → Message Aggregator
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from careloop.engine.aggregator import MessageAggregator
from careloop.engine.analysis.config import AIConfig
from careloop.engine.checkins import CheckInRecorder
from careloop.engine.commands import AutomationControl, CommandResult, parse_command
from careloop.engine.models import (
    ChatMode,
    DeliveryStatus,
    Message,
    MessageDirection,
    MessageSender,
)
from careloop.engine.outbox import Outbox
from careloop.engine.store import EngineStore

logger = logging.getLogger("engine.messages")

_NON_DIGITS = re.compile(r"\D")

# Transport status words → stored status
STATUS_MAP: dict[str, DeliveryStatus] = {
    "accepted": DeliveryStatus.PENDING,
    "queued": DeliveryStatus.PENDING,
    "sending": DeliveryStatus.PENDING,
    "sent": DeliveryStatus.SENT,
    "delivered": DeliveryStatus.DELIVERED,
    "read": DeliveryStatus.READ,
    "failed": DeliveryStatus.FAILED,
    "undelivered": DeliveryStatus.FAILED,
}

_STATUS_RANK = {
    DeliveryStatus.PENDING: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_phone(phone: str | None) -> str:
    """Digits only; an 11-digit number starting with 8 becomes 7…"""
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) == 11 and digits.startswith("8"):
        digits = "7" + digits[1:]
    return digits


def media_placeholder(media_type: str | None) -> str:
    kind = (media_type or "").lower()
    if kind.startswith("image"):
        return "[Photo from patient]"
    if kind.startswith("audio"):
        return "[Audio message]"
    return "[Media file]"


class MessageService:
    def __init__(
        self,
        store: EngineStore,
        recorder: CheckInRecorder,
        outbox: Outbox,
        automation: AutomationControl,
        aggregator: MessageAggregator | None = None,
        config: Callable[[], AIConfig] | None = None,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._outbox = outbox
        self._automation = automation
        self._aggregator = aggregator
        self._config = config or AIConfig.from_env

    def attach_aggregator(self, aggregator: MessageAggregator) -> None:
        self._aggregator = aggregator

    # ── Inbound ──

    async def save_inbound(
        self,
        phone: str,
        text: str = "",
        *,
        external_id: Optional[str] = None,
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
        now: datetime | None = None,
    ) -> Optional[Message]:
        now = now or _now()
        normalized = normalize_phone(phone)
        patient = self._store.find_patient_by_phone(normalized) if normalized else None
        if patient is None:
            logger.warning("Inbound message from unknown phone %s — ignoring", phone)
            return None

        if external_id and self._store.find_messages_by_external_id(external_id):
            logger.info("Duplicate inbound message %s for patient %s — ignoring", external_id, patient.id)
            return None

        content = (text or "").strip()
        if not content and media_url:
            content = media_placeholder(media_type)

        message = Message(
            patient_id=patient.id,
            direction=MessageDirection.INBOUND,
            sender=MessageSender.PATIENT,
            content=content,
            media_url=media_url,
            media_type=media_type,
            external_id=external_id,
            delivery_status=DeliveryStatus.DELIVERED,
            created_at=now,
        )
        self._store.save_message(message)

        check_in_id = self._recorder.record_from_message(message, now)
        if check_in_id:
            message.linked_check_in_id = check_in_id

        patient = self._store.get_patient(patient.id)
        patient.messages_since_summary += 1
        self._store.save_patient(patient)

        logger.info(
            "Inbound message %s saved for patient %s (check_in=%s)",
            message.id, patient.id, check_in_id,
        )

        if (
            content
            and self._aggregator is not None
            and self._config().enabled
            and patient.chat_mode == ChatMode.AUTOMATED
            and not patient.automation_paused
        ):
            await self._aggregator.on_inbound_message(patient.id, content, message.id)
        return message

    # ── Outbound ──

    async def send_staff_message(
        self,
        patient_id: str,
        text: str,
        actor: str = "staff",
    ) -> Union[Message, CommandResult]:
        """Send a staff message, or run it as an ``#ai`` command."""
        action = parse_command(text, self._config().command_prefix)
        if action is not None:
            logger.info("Staff command %s for patient %s by %s", action.value, patient_id, actor)
            return self._automation.execute(patient_id, action, actor, text)

        patient = self._store.get_patient(patient_id)
        return await self._outbox.send(patient, text, MessageSender.STAFF, sender_id=actor)

    async def send_system_message(self, patient_id: str, text: str) -> Message:
        patient = self._store.get_patient(patient_id)
        return await self._outbox.send(patient, text, MessageSender.SYSTEM)

    # ── Delivery status ──

    def update_delivery_status(
        self,
        external_id: str,
        status: str,
        error: Optional[str] = None,
    ) -> int:
        """Apply a transport status callback.  Returns the number of rows changed."""
        new_status = STATUS_MAP.get((status or "").lower())
        if new_status is None or not external_id:
            logger.debug("Ignoring delivery status %r for %r", status, external_id)
            return 0

        changed = 0
        for message in self._store.find_messages_by_external_id(external_id):
            if message.direction != MessageDirection.OUTBOUND:
                continue
            # Callbacks can arrive out of order; never move backwards
            if (
                new_status != DeliveryStatus.FAILED
                and message.delivery_status in _STATUS_RANK
                and _STATUS_RANK[message.delivery_status] >= _STATUS_RANK[new_status]
            ):
                continue
            message.delivery_status = new_status
            if new_status == DeliveryStatus.FAILED:
                message.delivery_error = error or status
            self._store.save_message(message)
            changed += 1
        if changed:
            logger.info("Delivery status %s for %s", new_status.value, external_id)
        return changed

    def list_messages(self, patient_id: str, limit: int = 50) -> list[Message]:
        self._store.get_patient(patient_id)
        return self._store.list_messages(patient_id, limit=limit)
