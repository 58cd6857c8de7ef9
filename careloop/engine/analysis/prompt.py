"""
Context assembly for the analysis call.

Produces the system instruction and the ordered role/content turns the
provider sees:

  system   operator instructions (config or prompt variant)
           + output contract
           + rolling conversation summary
           + recent check-ins, program day, knowledge snippets
  turns    last N stored messages (patient → "user", everyone else →
           "model"), then the batch being analyzed as the final user turn

Every block is character-bounded so a long history cannot blow the
request size.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from careloop.engine.knowledge import Snippet
from careloop.engine.models import CheckIn, Message, MessageSender

OUTPUT_CONTRACT = """\
Respond with ONE JSON object and nothing else:
{
  "sentiment": "positive" | "neutral" | "negative",
  "intent": "question" | "complaint" | "checkin" | "urgent" | "chitchat" | "gratitude" | "unknown",
  "riskLevel": "LOW" | "MEDIUM" | "HIGH" | "CRITICAL",
  "summary": "<one sentence>",
  "shouldReply": true | false,
  "suggestedReply": "<reply text or null>",
  "handoffRequired": true | false,
  "checkInSatisfied": true | false,
  "extractedCheckIns": [{"type": "WEIGHT|STEPS|MOOD|DIET_ADHERENCE|SLEEP|WATER|FOOD_LOG|EXERCISE|FREE_TEXT",
                         "valueNumber": <number or null>, "valueText": "<text or null>",
                         "valueBool": <bool or null>, "confidence": "high|medium|low"}],
  "enhancedSentiment": {"overall": "...", "emotions": ["anxious", ...], "intensity": "low|medium|high"}
}"""

DEFAULT_INSTRUCTIONS = (
    "You support patients enrolled in a care program over chat. "
    "Classify each message, decide whether a short supportive reply is enough "
    "or a human coordinator must take over, and never give medical diagnoses."
)

SUMMARY_MAX_CHARS = 2000
SECTION_MAX_CHARS = 1500


def _clip(text: str, limit: int) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _format_check_in(check_in: CheckIn) -> str:
    if check_in.value_number is not None:
        value = f"{check_in.value_number:g}"
    elif check_in.value_bool is not None:
        value = "yes" if check_in.value_bool else "no"
    else:
        value = check_in.value_text or ("media" if check_in.media else "-")
    return f"- {check_in.created_at:%Y-%m-%d} {check_in.type.value}: {value}"


@dataclass
class AnalysisContext:
    system_instruction: str
    contents: list[dict[str, Any]] = field(default_factory=list)


class ContextBuilder:
    def __init__(self, history_turns: int = 10, turn_max_chars: int = 1000) -> None:
        self._history_turns = history_turns
        self._turn_max_chars = turn_max_chars

    def build(
        self,
        text: str,
        *,
        instructions: str = "",
        summary: Optional[str] = None,
        history: list[Message] | None = None,
        check_ins: list[CheckIn] | None = None,
        program_day: Optional[int] = None,
        duration_days: Optional[int] = None,
        snippets: list[Snippet] | None = None,
    ) -> AnalysisContext:
        """``history`` is oldest-first and must not include ``text`` itself."""
        sections = [instructions.strip() or DEFAULT_INSTRUCTIONS, OUTPUT_CONTRACT]

        if summary:
            sections.append("Conversation summary so far:\n" + _clip(summary, SUMMARY_MAX_CHARS))

        if program_day is not None:
            day_line = f"Program day: {program_day}"
            if duration_days:
                day_line += f" of {duration_days}"
            sections.append(day_line)

        if check_ins:
            lines = "\n".join(_format_check_in(c) for c in check_ins)
            sections.append("Recent check-ins:\n" + _clip(lines, SECTION_MAX_CHARS))

        if snippets:
            lines = "\n".join(f"[{s.title}] {s.snippet}" for s in snippets)
            sections.append("Reference material:\n" + _clip(lines, SECTION_MAX_CHARS))

        contents: list[dict[str, Any]] = []
        for message in (history or [])[-self._history_turns:]:
            if not message.content:
                continue
            role = "user" if message.sender == MessageSender.PATIENT else "model"
            self._append_turn(contents, role, _clip(message.content, self._turn_max_chars))
        self._append_turn(contents, "user", _clip(text, self._turn_max_chars * 4))

        # The provider expects the conversation to open with a user turn
        if contents and contents[0]["role"] != "user":
            contents.pop(0)

        return AnalysisContext(system_instruction="\n\n".join(sections), contents=contents)

    @staticmethod
    def _append_turn(contents: list[dict[str, Any]], role: str, text: str) -> None:
        # Merge consecutive turns from the same side
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"][0]["text"] += "\n" + text
            return
        contents.append({"role": role, "parts": [{"text": text}]})
