"""
AI configuration — live, editable settings for the analysis step.
Defaults come from careloop.settings; the running copy lives in the store.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from careloop import settings


class AIConfig(BaseModel):
    enabled: bool = True
    model: str = "gemini-2.0-flash"
    temperature: float = 0.2
    max_output_tokens: int = 1024
    timeout_seconds: float = 30.0
    message_buffer_seconds: float = 10.0
    max_sentences: int = 6
    max_chars: int = 1200
    handoff_triggers: list[str] = Field(default_factory=list)
    forbidden_phrases: list[str] = Field(default_factory=list)
    phrase_match_mode: str = "substring"
    system_prompt: str = ""
    command_prefix: str = "#ai"
    # Context bounds
    history_fetch: int = 20
    history_turns: int = 10
    turn_max_chars: int = 1000
    recent_checkin_days: int = 7
    recent_checkin_limit: int = 20
    knowledge_top_k: int = 3

    @classmethod
    def from_env(cls) -> AIConfig:
        return cls(
            enabled=settings.AI_ENABLED,
            model=settings.AI_MODEL,
            temperature=settings.AI_TEMPERATURE,
            max_output_tokens=settings.AI_MAX_OUTPUT_TOKENS,
            timeout_seconds=settings.AI_TIMEOUT_SECONDS,
            message_buffer_seconds=settings.AI_MESSAGE_BUFFER_SECONDS,
            max_sentences=settings.AI_MAX_SENTENCES,
            max_chars=settings.AI_MAX_CHARS,
            handoff_triggers=list(settings.AI_HANDOFF_TRIGGERS),
            forbidden_phrases=list(settings.AI_FORBIDDEN_PHRASES),
            phrase_match_mode=settings.AI_PHRASE_MATCH_MODE,
            system_prompt=settings.AI_SYSTEM_PROMPT,
            command_prefix=settings.AI_COMMAND_PREFIX,
        )
