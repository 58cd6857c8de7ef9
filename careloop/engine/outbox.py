"""
Outbox — send-then-persist for every outbound message.

The message row is written whatever the transport says: SENT with the
transport id on success, FAILED with the error after retries ran out.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from careloop.engine.channels import DispatcherRegistry, OutboundMessage
from careloop.engine.models import (
    DeliveryStatus,
    Message,
    MessageDirection,
    MessageSender,
    Patient,
)
from careloop.engine.store import EngineStore

logger = logging.getLogger("engine.outbox")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Outbox:
    def __init__(
        self,
        store: EngineStore,
        dispatchers: DispatcherRegistry,
        default_channel: str = "sms",
    ) -> None:
        self._store = store
        self._dispatchers = dispatchers
        self._default_channel = default_channel

    async def send(
        self,
        patient: Patient,
        text: str,
        sender: MessageSender,
        *,
        prompt_variant_id: Optional[str] = None,
        sender_id: Optional[str] = None,
        channel: Optional[str] = None,
        now: datetime | None = None,
    ) -> Message:
        result = await self._dispatchers.dispatch(OutboundMessage(
            address=patient.phone or "",
            channel=channel or self._default_channel,
            text=text,
            metadata={"patient_id": patient.id, "sender": sender.value},
        ))

        message = Message(
            patient_id=patient.id,
            direction=MessageDirection.OUTBOUND,
            sender=sender,
            content=text,
            prompt_variant_id=prompt_variant_id,
            sender_id=sender_id,
            external_id=result.delivery_id,
            delivery_status=DeliveryStatus.SENT if result.success else DeliveryStatus.FAILED,
            delivery_error=None if result.success else result.error,
            created_at=now or _now(),
        )
        self._store.save_message(message)

        if result.success:
            logger.info("%s message %s sent to patient %s", sender.value, message.id, patient.id)
        else:
            logger.error(
                "%s message %s to patient %s stored as FAILED: %s",
                sender.value, message.id, patient.id, result.error,
            )
        return message
