"""
Twilio Ingest — converts Twilio SMS/WhatsApp webhook bodies into
EventEnvelopes for the engine.

Twilio sends a POST with form data for each incoming message, and another
for each delivery-status change of an outbound message.

Expected webhook body (Twilio incoming message):
{
  "MessageSid": "SM...",
  "AccountSid": "AC...",
  "From": "+77010000001",        # or "whatsapp:+77010000001"
  "To": "+77000000000",          # your Twilio number
  "Body": "Message text",
  "NumMedia": "1",
  "MediaUrl0": "https://...",
  "MediaContentType0": "image/jpeg"
}

Expected status callback body:
{
  "MessageSid": "SM...",
  "MessageStatus": "delivered",  # queued|sent|delivered|read|failed|undelivered
  "ErrorCode": "30003"           # only on failure
}
"""

from __future__ import annotations

import logging
from typing import Any

from careloop.engine.channels import ChannelIngest
from careloop.engine.events import EventEnvelope, EventType, SenderRole

logger = logging.getLogger("engine.ingest.twilio")


class TwilioMessageIngest(ChannelIngest):
    """Converts Twilio incoming SMS/WhatsApp webhooks into EventEnvelopes."""

    channel_name = "sms"

    async def to_envelope(self, raw_input: dict[str, Any]) -> EventEnvelope:
        """
        Parse Twilio webhook body into an INBOUND_MESSAGE envelope.

        The patient is not resolved here; the message service looks the
        sender up by normalized phone.
        """
        from_number = raw_input.get("From", "") or ""
        is_whatsapp = from_number.startswith("whatsapp:")
        phone = from_number.replace("whatsapp:", "").strip()

        text = (raw_input.get("Body") or "").strip()

        # Only the first attachment becomes the message media
        media_url = None
        media_type = None
        try:
            num_media = int(raw_input.get("NumMedia", "0") or "0")
        except ValueError:
            num_media = 0
        if num_media > 0:
            media_url = raw_input.get("MediaUrl0") or None
            media_type = raw_input.get("MediaContentType0") or None

        message_sid = raw_input.get("MessageSid") or raw_input.get("SmsSid") or None

        return self._build_base_envelope(
            event_type=EventType.INBOUND_MESSAGE,
            sender_id=phone,
            sender_role=SenderRole.PATIENT,
            payload={
                "text": text,
                "phone": phone,
                "external_id": message_sid,
                "media_url": media_url,
                "media_type": media_type,
                "is_whatsapp": is_whatsapp,
            },
            correlation_id=message_sid,
        )

    async def status_envelope(self, raw_input: dict[str, Any]) -> EventEnvelope:
        """Parse a Twilio status callback into a DELIVERY_STATUS envelope."""
        message_sid = raw_input.get("MessageSid") or raw_input.get("SmsSid") or ""
        status = (raw_input.get("MessageStatus") or raw_input.get("SmsStatus") or "").lower()
        error_code = raw_input.get("ErrorCode") or None
        return EventEnvelope.delivery_status(
            message_sid,
            status,
            error=f"Twilio error {error_code}" if error_code else None,
            channel=self.channel_name,
        )
