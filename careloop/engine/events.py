"""
Event Envelope — Universal event format for the engine's work queue.

Every unit of work that runs through a patient's FIFO worker (an inbound
transport message, a drained aggregator batch, a delivery-status
callback) is wrapped in the same EventEnvelope.  The queue only reads
``patient_id`` for routing — it never inspects the payload.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types recognised by the engine."""

    # External events (from the messaging transport)
    INBOUND_MESSAGE = "INBOUND_MESSAGE"
    DELIVERY_STATUS = "DELIVERY_STATUS"

    # Internal events
    ANALYZE_BUFFER = "ANALYZE_BUFFER"


class SenderRole(str, Enum):
    """Who sent the event."""

    PATIENT = "patient"
    STAFF = "staff"
    SYSTEM = "system"


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EventEnvelope(BaseModel):
    """Universal event wrapper — the only object that enters the work queue."""

    event_id: str = Field(default_factory=_new_uuid)
    event_type: EventType
    patient_id: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    sender_id: str = ""
    sender_role: SenderRole = SenderRole.SYSTEM
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)

    model_config = {"use_enum_values": False}

    # ── Convenience factories ──

    @classmethod
    def inbound_message(
        cls,
        phone: str,
        text: str,
        *,
        patient_id: str = "",
        channel: str = "sms",
        external_id: str | None = None,
        media_url: str | None = None,
        media_type: str | None = None,
    ) -> EventEnvelope:
        return cls(
            event_type=EventType.INBOUND_MESSAGE,
            patient_id=patient_id,
            payload={
                "phone": phone,
                "text": text,
                "channel": channel,
                "external_id": external_id,
                "media_url": media_url,
                "media_type": media_type,
            },
            source=channel,
            sender_id=phone,
            sender_role=SenderRole.PATIENT,
            correlation_id=external_id,
        )

    @classmethod
    def analyze_buffer(
        cls,
        patient_id: str,
        content: str,
        message_ids: list[str] | None = None,
    ) -> EventEnvelope:
        return cls(
            event_type=EventType.ANALYZE_BUFFER,
            patient_id=patient_id,
            payload={"content": content, "message_ids": message_ids or []},
            source="aggregator",
            sender_id="system",
            sender_role=SenderRole.SYSTEM,
        )

    @classmethod
    def delivery_status(
        cls,
        external_id: str,
        status: str,
        *,
        error: str | None = None,
        channel: str = "sms",
    ) -> EventEnvelope:
        return cls(
            event_type=EventType.DELIVERY_STATUS,
            payload={"external_id": external_id, "status": status, "error": error},
            source=channel,
            sender_id="transport",
            sender_role=SenderRole.SYSTEM,
            correlation_id=external_id,
        )

    @property
    def text(self) -> str:
        return self.payload.get("text") or self.payload.get("content") or ""
