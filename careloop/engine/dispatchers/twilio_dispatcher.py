"""
Twilio SMS Dispatcher — delivers engine messages via the Twilio SMS API.

Configuration (environment variables):
  TWILIO_ACCOUNT_SID     — Twilio account SID
  TWILIO_AUTH_TOKEN      — Twilio auth token
  TWILIO_FROM_NUMBER     — Twilio phone number (e.g., "+77000000000")
  TWILIO_STATUS_CALLBACK — optional URL for delivery-status callbacks

Without credentials the dispatcher runs in stub mode: the message is
logged and a non-retryable failure is returned, so the caller stores it
with delivery_status=FAILED instead of pretending it was sent.
"""

from __future__ import annotations

import asyncio
import logging
import os

from careloop.engine.channels import (
    ChannelDispatcher,
    DeliveryResult,
    OutboundMessage,
)

logger = logging.getLogger("engine.dispatchers.twilio")

# Twilio concatenates long bodies up to this size
SMS_MAX_CHARS = 1600

# Twilio REST error codes for addresses that will never accept a message
_PERMANENT_ERROR_CODES = {21211, 21408, 21610, 21614}


class TwilioSMSDispatcher(ChannelDispatcher):
    """Delivers messages via Twilio SMS API."""

    channel_name = "sms"

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        status_callback: str | None = None,
        client=None,
    ) -> None:
        self._account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID", "")
        self._auth_token = auth_token or os.getenv("TWILIO_AUTH_TOKEN", "")
        self._from_number = from_number or os.getenv("TWILIO_FROM_NUMBER", "")
        self._status_callback = status_callback or os.getenv("TWILIO_STATUS_CALLBACK", "")
        self._client = client

    @property
    def configured(self) -> bool:
        if self._client is not None:
            return True
        return bool(self._account_sid and self._auth_token and self._from_number)

    def _get_client(self):
        """Lazy-initialize the Twilio client."""
        if self._client is None:
            if not self.configured:
                logger.warning(
                    "Twilio credentials not set — SMS dispatcher in stub mode"
                )
                return None
            try:
                from twilio.rest import Client

                self._client = Client(self._account_sid, self._auth_token)
                logger.info("Twilio client initialized")
            except Exception as exc:
                logger.error("Failed to initialize Twilio client: %s", exc)
        return self._client

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        """Send an SMS via Twilio."""
        if not message.address:
            logger.warning("Twilio dispatch: no recipient address")
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                address=message.address,
                error="No recipient phone number",
                retryable=False,
            )

        body = message.text
        if len(body) > SMS_MAX_CHARS:
            body = body[: SMS_MAX_CHARS - 3] + "..."

        client = self._get_client()
        if client is None:
            logger.info(
                "Twilio stub: SMS → %s: %s",
                message.address, body[:80],
            )
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                address=message.address,
                error="transport_not_configured",
                retryable=False,
            )

        params = {"body": body, "from_": self._from_number, "to": message.address}
        if self._status_callback:
            params["status_callback"] = self._status_callback

        try:
            sms = await asyncio.to_thread(client.messages.create, **params)
        except Exception as exc:
            code = getattr(exc, "code", None)
            logger.error("Twilio SMS send error (code=%s): %s", code, exc)
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                address=message.address,
                error=str(exc),
                retryable=code not in _PERMANENT_ERROR_CODES,
            )

        logger.info("Twilio SMS sent: SID=%s → %s", sms.sid, message.address)
        return DeliveryResult(
            success=True,
            channel=self.channel_name,
            address=message.address,
            delivery_id=sms.sid,
        )
