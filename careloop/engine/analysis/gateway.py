"""
Analysis Gateway — one bounded call to the reasoning provider per batch
of patient messages.

Pipeline:
  1. Pre-call trigger scan     handoff trigger present → synthetic HIGH-risk
                               handoff, provider never called
  2. Context assembly          instructions + summary + history + check-ins
                               + program day + knowledge snippets
  3. Provider call             JSON output, one attempt, bounded timeout;
                               empty or non-JSON output → None
  4. Output validation         closed enums, conservative defaults
  5. Forbidden-phrase filter   → no reply, handoff, risk ≥ MEDIUM
  6. Reply shaping             max chars / max sentences
  7. Extracted observations    → Check-in Recorder (source AI)

Side effect: HIGH/CRITICAL risk opens a RISK_ALERT task, any other
handoff a FOLLOW_UP task.  A task failure is logged and never fails the
analysis.

``analyze`` returns None when the provider is disabled, unconfigured or
failed.  None means "skip automated handling", never "safe".
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from careloop.engine.analysis.config import AIConfig
from careloop.engine.analysis.llm_utils import llm_generate
from careloop.engine.analysis.matching import get_matcher
from careloop.engine.analysis.parser import parse_analysis
from careloop.engine.analysis.prompt import AnalysisContext, ContextBuilder
from careloop.engine.analysis.shaping import apply_forbidden_filter, apply_reply_shaping
from careloop.engine.analysis.types import AnalysisResult
from careloop.engine.checkins import CheckInRecorder
from careloop.engine.errors import NotFoundError
from careloop.engine.knowledge import KnowledgeBase
from careloop.engine.models import Patient, TaskPriority, TaskSource, TaskType, is_elevated
from careloop.engine.schedule import ScheduleMatcher
from careloop.engine.store import EngineStore
from careloop.engine.tasks import TaskService
from careloop.engine.variants import PromptVariantSelector

logger = logging.getLogger("engine.analysis")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisGateway:
    """
    Usage:
        gateway = AnalysisGateway(store, recorder, tasks, matcher)
        result = await gateway.analyze(patient_id, "I feel dizzy")
        if result is None:
            ...  # provider unavailable: do nothing automated
    """

    def __init__(
        self,
        store: EngineStore,
        recorder: CheckInRecorder,
        tasks: TaskService,
        matcher: ScheduleMatcher,
        knowledge: KnowledgeBase | None = None,
        variants: PromptVariantSelector | None = None,
        llm_client: Any = None,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._tasks = tasks
        self._matcher = matcher
        self._knowledge = knowledge
        self._variants = variants
        self._client = llm_client

    @property
    def client(self):
        if self._client is None:
            api_key = os.getenv("GOOGLE_API_KEY")
            if not api_key:
                return None
            try:
                from google import genai
                self._client = genai.Client(api_key=api_key)
            except Exception as exc:
                logger.error("Failed to create Gemini client: %s", exc)
        return self._client

    def config(self) -> AIConfig:
        return self._store.get_ai_config() or AIConfig.from_env()

    # ── Public API ──

    async def analyze(
        self,
        patient_id: str,
        text: str,
        *,
        message_id: str | None = None,
        now: datetime | None = None,
    ) -> Optional[AnalysisResult]:
        now = now or _now()
        config = self.config()
        if not config.enabled:
            logger.info("AI analysis disabled — skipping patient %s", patient_id)
            return None

        matcher = get_matcher(config.phrase_match_mode)

        # 1. Pre-call trigger scan
        trigger = matcher.first_match(text, config.handoff_triggers)
        if trigger is not None:
            logger.warning("Handoff trigger %r for patient %s — provider skipped", trigger, patient_id)
            result = AnalysisResult.from_trigger(trigger)
            self._open_task_for(patient_id, result, now)
            return result

        client = self.client
        if client is None:
            logger.warning("Reasoning provider not configured — skipping analysis for %s", patient_id)
            return None

        try:
            patient = self._store.get_patient(patient_id)
        except NotFoundError:
            logger.warning("Analysis requested for unknown patient %s", patient_id)
            return None

        # 2. Context assembly
        variant = self._variants.select() if self._variants else None
        context = self._build_context(patient, text, config, variant.system_prompt if variant else "", now)

        # 3. Provider call
        raw = await llm_generate(
            client,
            config.model,
            context.contents,
            config={
                "system_instruction": context.system_instruction,
                "temperature": config.temperature,
                "max_output_tokens": config.max_output_tokens,
                "response_mime_type": "application/json",
            },
            timeout=config.timeout_seconds,
        )

        # 4. Output validation
        result = parse_analysis(raw)
        if result is None:
            logger.error("Analysis failed for patient %s — no automated action", patient_id)
            if variant is not None:
                self._variants.record_error(variant.id)
            return None

        # 5. Forbidden-phrase filter, 6. reply shaping
        result = apply_forbidden_filter(result, config.forbidden_phrases, matcher)
        result = apply_reply_shaping(result, config.max_sentences, config.max_chars)
        result.prompt_variant_id = variant.id if variant else None

        logger.info(
            "Analysis for %s: risk=%s intent=%s reply=%s handoff=%s checkin=%s",
            patient_id, result.risk_level.value, result.intent.value,
            result.should_reply, result.handoff_required, result.check_in_satisfied,
        )

        # 7. Extracted observations
        if result.extracted_check_ins:
            self._recorder.record_extracted(patient_id, result.extracted_check_ins, now)

        self._annotate_message(message_id, result)
        self._open_task_for(patient_id, result, now)
        return result

    # ── Internal ──

    def _build_context(
        self, patient: Patient, text: str, config: AIConfig, variant_prompt: str, now: datetime,
    ) -> AnalysisContext:
        recent = self._store.list_messages(patient.id, limit=config.history_fetch)
        recent.reverse()  # oldest first
        # The batch under analysis is sent as the final turn
        batch_lines = set(text.split("\n"))
        while recent and recent[-1].content in batch_lines:
            recent.pop()

        check_ins = self._store.list_check_ins(
            patient.id,
            since=now - timedelta(days=config.recent_checkin_days),
            limit=config.recent_checkin_limit,
        )

        schedule = self._matcher.resolve(patient.id, now)
        snippets = (
            self._knowledge.search(text, top_k=config.knowledge_top_k)
            if self._knowledge else []
        )

        builder = ContextBuilder(
            history_turns=config.history_turns,
            turn_max_chars=config.turn_max_chars,
        )
        return builder.build(
            text,
            instructions=variant_prompt or config.system_prompt,
            summary=patient.conversation_summary,
            history=recent,
            check_ins=check_ins,
            program_day=schedule.current_day if schedule else None,
            duration_days=schedule.duration_days if schedule else None,
            snippets=snippets,
        )

    def _annotate_message(self, message_id: str | None, result: AnalysisResult) -> None:
        if not message_id:
            return
        try:
            message = self._store.get_message(message_id)
        except NotFoundError:
            return
        message.ai_risk = result.risk_level
        message.ai_summary = result.summary
        self._store.save_message(message)

    def _open_task_for(self, patient_id: str, result: AnalysisResult, now: datetime) -> None:
        """Elevated risk or handoff → task.  Never raises."""
        try:
            if is_elevated(result.risk_level):
                self._tasks.create_task(
                    patient_id,
                    TaskType.RISK_ALERT,
                    f"High risk: {result.summary[:100]}",
                    priority=TaskPriority.HIGH,
                    source=TaskSource.AI,
                    description=f"Risk: {result.risk_level.value}\nSummary: {result.summary}",
                    now=now,
                )
            elif result.handoff_required:
                self._tasks.create_task(
                    patient_id,
                    TaskType.FOLLOW_UP,
                    f"Handoff: {result.summary[:100]}",
                    priority=TaskPriority.MEDIUM,
                    source=TaskSource.AI,
                    description=f"Risk: {result.risk_level.value}\nSummary: {result.summary}",
                    now=now,
                )
        except Exception as exc:
            logger.error("Failed to create task from analysis for %s: %s", patient_id, exc)
