"""
Channel Abstractions — Inbound ingestion and outbound dispatch.

These ABCs decouple the engine from any specific messaging transport.
Adding WhatsApp or another SMS provider is just:
  1. Implement a ChannelDispatcher subclass
  2. Implement a ChannelIngest subclass
  3. Add a webhook endpoint
  4. Register the dispatcher in setup.py
Zero changes to the aggregator, analysis, decider or task engine.

Delivery retry: ``DispatcherRegistry.dispatch`` makes up to 3 attempts,
waiting ``3 ** (attempt - 1)`` seconds between them.  Results flagged
``retryable=False`` (bad address, transport not configured) stop at once.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from careloop.engine.events import EventEnvelope, EventType, SenderRole

logger = logging.getLogger("engine.channels")

MAX_ATTEMPTS = 3
BACKOFF_BASE = 3.0

Sleeper = Callable[[float], Awaitable[Any]]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  OUTBOUND: delivering messages to patients
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class OutboundMessage(BaseModel):
    """A message the engine wants to deliver to one address."""

    address: str            # transport address, e.g. "+77010000001"
    channel: str            # Must match a registered ChannelDispatcher.channel_name
    text: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    """Outcome of a single message delivery attempt."""

    success: bool
    channel: str
    address: str
    delivery_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = True
    attempts: int = 1
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ChannelDispatcher(ABC):
    """Abstract outbound channel — delivers OutboundMessages to a transport."""

    channel_name: str = ""  # overridden by subclasses

    @property
    def configured(self) -> bool:
        return True

    @abstractmethod
    async def send(self, message: OutboundMessage) -> DeliveryResult:
        """Deliver a single message. Must not raise — return DeliveryResult."""


class DispatcherRegistry:
    """
    Registry of active ChannelDispatchers.

    Services call ``dispatch()`` — they never talk to a specific transport
    directly.
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE,
        sleep: Sleeper | None = None,
    ) -> None:
        self._dispatchers: dict[str, ChannelDispatcher] = {}
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._sleep = sleep or asyncio.sleep

    def register(self, dispatcher: ChannelDispatcher) -> None:
        name = dispatcher.channel_name
        self._dispatchers[name] = dispatcher
        logger.info("Registered channel dispatcher: %s", name)

    def unregister(self, channel_name: str) -> None:
        self._dispatchers.pop(channel_name, None)

    def get(self, channel_name: str) -> ChannelDispatcher | None:
        return self._dispatchers.get(channel_name)

    @property
    def registered_channels(self) -> list[str]:
        return list(self._dispatchers.keys())

    def backoff_for(self, attempt: int) -> float:
        """Seconds to wait after a failed ``attempt`` (1-based)."""
        return self._backoff_base ** (attempt - 1)

    async def dispatch(self, message: OutboundMessage) -> DeliveryResult:
        """Route one message to the correct dispatcher, retrying failures."""
        dispatcher = self.get(message.channel)
        if dispatcher is None:
            logger.warning(
                "No dispatcher for channel '%s' — message stored only",
                message.channel,
            )
            return DeliveryResult(
                success=False,
                channel=message.channel,
                address=message.address,
                error=f"No dispatcher registered for channel '{message.channel}'",
                retryable=False,
                attempts=0,
            )

        result: DeliveryResult | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                result = await dispatcher.send(message)
            except Exception as exc:
                logger.warning(
                    "Dispatcher '%s' error (attempt %d): %s",
                    message.channel, attempt, exc,
                )
                result = DeliveryResult(
                    success=False,
                    channel=message.channel,
                    address=message.address,
                    error=str(exc),
                )
            result.attempts = attempt
            if result.success or not result.retryable:
                return result
            if attempt < self._max_attempts:
                delay = self.backoff_for(attempt)
                logger.warning(
                    "Dispatch to %s on %s failed (attempt %d/%d) — retrying in %.0fs",
                    message.address, message.channel, attempt, self._max_attempts, delay,
                )
                await self._sleep(delay)

        logger.error(
            "Dispatch to %s on %s failed after %d attempts: %s",
            message.address, message.channel, self._max_attempts,
            result.error if result else "unknown",
        )
        return result


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  INBOUND: converting transport-specific input into EventEnvelopes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ChannelIngest(ABC):
    """Abstract inbound channel — converts raw input into an EventEnvelope."""

    channel_name: str = ""

    @abstractmethod
    async def to_envelope(self, raw_input: dict[str, Any]) -> EventEnvelope:
        """Parse channel-specific data into a standard EventEnvelope."""

    def _build_base_envelope(
        self,
        *,
        event_type: EventType = EventType.INBOUND_MESSAGE,
        patient_id: str = "",
        sender_id: str,
        sender_role: SenderRole,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> EventEnvelope:
        """Shared helper for subclasses."""
        return EventEnvelope(
            event_id=str(uuid4()),
            event_type=event_type,
            patient_id=patient_id,
            payload={"channel": self.channel_name, **payload},
            source=self.channel_name,
            sender_id=sender_id,
            sender_role=sender_role,
            correlation_id=correlation_id,
            timestamp=datetime.now(timezone.utc),
        )
