"""
Conversation summarizer — keeps a rolling 3-5 sentence summary per
patient so the analysis context stays small.

Regenerated once ``messages_since_summary`` reaches the threshold and the
patient has enough history.  Runs after the analysis job, never on the
inbound hot path.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from careloop import settings
from careloop.engine.analysis.gateway import AnalysisGateway
from careloop.engine.analysis.llm_utils import llm_generate
from careloop.engine.models import MessageSender
from careloop.engine.store import EngineStore

logger = logging.getLogger("engine.summary")

SUMMARY_INSTRUCTIONS = (
    "You compress a patient conversation into 3-5 sentences used as context "
    "for future replies. Merge the previous summary with the new messages. "
    "Keep complaints, recommendations given, agreements and notable events "
    "(missed check-ins, progress). Write in the third person. Plain text only."
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationSummarizer:
    def __init__(
        self,
        store: EngineStore,
        gateway: AnalysisGateway,
        threshold: int = settings.SUMMARY_THRESHOLD,
        min_messages: int = settings.SUMMARY_MIN_MESSAGES,
        window: int = settings.SUMMARY_WINDOW,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._threshold = threshold
        self._min_messages = min_messages
        self._window = window

    def is_due(self, patient_id: str) -> bool:
        patient = self._store.get_patient(patient_id)
        return patient.messages_since_summary >= self._threshold

    async def maybe_summarize(self, patient_id: str) -> Optional[str]:
        if not self.is_due(patient_id):
            return None
        logger.info("Summary threshold reached for patient %s", patient_id)
        return await self.summarize(patient_id)

    async def summarize(self, patient_id: str, now: datetime | None = None) -> Optional[str]:
        client = self._gateway.client
        if client is None:
            logger.warning("Cannot generate summary: reasoning provider not configured")
            return None

        patient = self._store.get_patient(patient_id)
        messages = self._store.list_messages(patient_id, limit=self._window)
        if len(messages) < self._min_messages:
            logger.info("Not enough messages for summary (patient %s)", patient_id)
            return None

        lines = []
        for message in reversed(messages):
            if message.sender == MessageSender.PATIENT:
                who = patient.full_name or "Patient"
            else:
                who = message.sender.value
            lines.append(f"[{who}]: {message.content or '[media]'}")

        prompt = ""
        if patient.conversation_summary:
            prompt += f"PREVIOUS SUMMARY:\n{patient.conversation_summary}\n\n"
        prompt += "NEW MESSAGES:\n" + "\n".join(lines)

        config = self._gateway.config()
        raw = await llm_generate(
            client,
            config.model,
            prompt,
            config={
                "system_instruction": SUMMARY_INSTRUCTIONS,
                "temperature": 0.3,
                "max_output_tokens": 500,
            },
            timeout=config.timeout_seconds,
            max_retries=1,
        )
        summary = (raw or "").strip()
        if not summary:
            logger.error("Failed to generate conversation summary for %s", patient_id)
            return None

        # Re-read: the counter may have moved while the provider was busy
        patient = self._store.get_patient(patient_id)
        patient.conversation_summary = summary
        patient.summary_updated_at = now or _now()
        patient.messages_since_summary = 0
        self._store.save_patient(patient)
        logger.info("Conversation summary updated for %s (%d chars)", patient_id, len(summary))
        return summary
