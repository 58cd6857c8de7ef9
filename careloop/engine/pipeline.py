"""
Engine Pipeline — routes EventEnvelopes to the service that owns them.

No AI here — a plain dispatch on event type:
  INBOUND_MESSAGE  → MessageService.save_inbound (→ aggregator)
  ANALYZE_BUFFER   → AnalysisGateway → ReplyHandoffDecider → summarizer
  DELIVERY_STATUS  → MessageService.update_delivery_status

The aggregator hands each drained batch to ``enqueue_analysis``, which
puts an ANALYZE_BUFFER envelope on the patient's FIFO queue so analyses
for one patient never overlap.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from careloop.engine.analysis.gateway import AnalysisGateway
from careloop.engine.decider import Decision, ReplyHandoffDecider
from careloop.engine.events import EventEnvelope, EventType
from careloop.engine.messages import MessageService
from careloop.engine.queue import PatientQueueManager
from careloop.engine.summary import ConversationSummarizer

logger = logging.getLogger("engine.pipeline")

EVENT_LOG_LIMIT = 1000


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EnginePipeline:
    """
    Usage:
        pipeline = EnginePipeline(messages=..., gateway=..., decider=...)
        queue = PatientQueueManager(processor=pipeline.process_event)
        pipeline.attach_queue(queue)
    """

    def __init__(
        self,
        *,
        messages: MessageService,
        gateway: AnalysisGateway,
        decider: ReplyHandoffDecider,
        summarizer: ConversationSummarizer | None = None,
    ) -> None:
        self._messages = messages
        self._gateway = gateway
        self._decider = decider
        self._summarizer = summarizer
        self._queue: PatientQueueManager | None = None
        self._event_log: list[dict[str, Any]] = []
        self._metrics: dict[str, Any] = {
            "events_processed": 0,
            "events_failed": 0,
            "analyses": 0,
            "analyses_skipped": 0,
            "decisions": {},
        }

    def attach_queue(self, queue: PatientQueueManager | None) -> None:
        """None runs analyses inline, inside the flushing call."""
        self._queue = queue

    # ── Entry points ──

    async def enqueue_analysis(self, patient_id: str, content: str, message_ids: list[str]) -> None:
        """Aggregator flush handler."""
        event = EventEnvelope.analyze_buffer(patient_id, content, message_ids)
        if self._queue is None:
            await self.process_event(event)
            return
        await self._queue.enqueue(event)

    async def process_event(self, event: EventEnvelope) -> Optional[Any]:
        t0 = time.monotonic()
        try:
            if event.event_type == EventType.INBOUND_MESSAGE:
                result = await self._handle_inbound(event)
            elif event.event_type == EventType.ANALYZE_BUFFER:
                result = await self._handle_analysis(event)
            elif event.event_type == EventType.DELIVERY_STATUS:
                result = self._messages.update_delivery_status(
                    event.payload.get("external_id", ""),
                    event.payload.get("status", ""),
                    event.payload.get("error"),
                )
            else:
                logger.warning("No handler for event type %s", event.event_type.value)
                return None
        except Exception as exc:
            self._metrics["events_failed"] += 1
            self._log_event(event, "failed", error=str(exc))
            logger.error(
                "Event %s (%s) failed for patient %s: %s",
                event.event_id, event.event_type.value, event.patient_id or "-", exc,
                exc_info=True,
            )
            raise

        self._metrics["events_processed"] += 1
        self._log_event(event, "processed", elapsed=round(time.monotonic() - t0, 3))
        return result

    # ── Handlers ──

    async def _handle_inbound(self, event: EventEnvelope):
        payload = event.payload
        return await self._messages.save_inbound(
            payload.get("phone") or event.sender_id,
            payload.get("text", ""),
            external_id=payload.get("external_id"),
            media_url=payload.get("media_url"),
            media_type=payload.get("media_type"),
        )

    async def _handle_analysis(self, event: EventEnvelope) -> Optional[Decision]:
        patient_id = event.patient_id
        content = event.payload.get("content", "")
        message_ids = event.payload.get("message_ids") or []
        last_message_id = message_ids[-1] if message_ids else None
        if not content.strip():
            return None

        result = await self._gateway.analyze(patient_id, content, message_id=last_message_id)
        if result is None:
            self._metrics["analyses_skipped"] += 1
            logger.info("No analysis result for patient %s — automated handling skipped", patient_id)
            return None
        self._metrics["analyses"] += 1

        decision = await self._decider.apply(
            patient_id, result, message_id=last_message_id, message_ids=message_ids,
        )
        counts = self._metrics["decisions"]
        counts[decision.kind.value] = counts.get(decision.kind.value, 0) + 1

        if self._summarizer is not None:
            try:
                await self._summarizer.maybe_summarize(patient_id)
            except Exception as exc:
                logger.error("Summary update failed for %s: %s", patient_id, exc)
        return decision

    # ── Observability ──

    def _log_event(self, event: EventEnvelope, outcome: str, **extra: Any) -> None:
        self._event_log.append({
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "patient_id": event.patient_id,
            "outcome": outcome,
            "timestamp": _now().isoformat(),
            **extra,
        })
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log = self._event_log[-EVENT_LOG_LIMIT // 2:]

    def get_event_log(self, patient_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        entries = self._event_log
        if patient_id:
            entries = [e for e in entries if e["patient_id"] == patient_id]
        return entries[-limit:]

    def get_metrics(self) -> dict[str, Any]:
        return {**self._metrics, "decisions": dict(self._metrics["decisions"])}
