"""
Reply shaping and content filters applied to every provider verdict.
"""

from __future__ import annotations

import logging
import re

from careloop.engine.analysis.matching import PhraseMatcher
from careloop.engine.analysis.types import AnalysisResult
from careloop.engine.models import AlertLevel, max_level

logger = logging.getLogger("engine.analysis.shaping")

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def shape_reply(text: str, max_sentences: int, max_chars: int) -> str:
    """
    Bound a reply to ``max_chars`` characters and ``max_sentences``
    sentences.

    A char cut prefers the last sentence end past the halfway mark;
    without one the cut text gets "..." appended.
    """
    result = text.strip()

    if max_chars > 0 and len(result) > max_chars:
        result = result[:max_chars]
        last_end = max(result.rfind("."), result.rfind("!"), result.rfind("?"))
        if last_end > max_chars * 0.5:
            result = result[: last_end + 1]
        else:
            result = result + "..."

    if max_sentences > 0:
        sentences = _SENTENCE_SPLIT.split(result)
        if len(sentences) > max_sentences:
            result = " ".join(sentences[:max_sentences])

    return result.strip()


def apply_forbidden_filter(
    result: AnalysisResult, phrases: list[str], matcher: PhraseMatcher,
) -> AnalysisResult:
    """Downgrade to handoff when the suggested reply uses a forbidden phrase."""
    if not result.suggested_reply or not phrases:
        return result
    hit = matcher.first_match(result.suggested_reply, phrases)
    if hit is None:
        return result

    logger.warning("Suggested reply contains forbidden phrase %r — forcing handoff", hit)
    result.should_reply = False
    result.handoff_required = True
    result.suggested_reply = None
    result.risk_level = max_level(result.risk_level, AlertLevel.MEDIUM)
    result.blocked_phrase = hit
    return result


def apply_reply_shaping(result: AnalysisResult, max_sentences: int, max_chars: int) -> AnalysisResult:
    if result.suggested_reply:
        shaped = shape_reply(result.suggested_reply, max_sentences, max_chars)
        result.suggested_reply = shaped or None
    return result
