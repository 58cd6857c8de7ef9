"""
Provider output parsing and validation.

The provider is asked for a JSON object, but anything can come back.
  - empty text or text that is not JSON → None (a provider failure)
  - JSON that is not an object → conservative handoff result
  - an object → every enumerated field validated against its closed set
    and defaulted conservatively when unknown
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Optional, TypeVar

from careloop.engine.analysis.types import (
    AnalysisResult,
    Confidence,
    Emotion,
    EnhancedSentiment,
    ExtractedCheckIn,
    ExtractedType,
    Intensity,
    Intent,
    Sentiment,
)
from careloop.engine.models import AlertLevel

logger = logging.getLogger("engine.analysis.parser")

EnumT = TypeVar("EnumT", bound=Enum)


def strip_code_fence(raw: str) -> str:
    """Remove a ```json ... ``` wrapper if the model added one."""
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def _enum_value(
    enum_cls: type[EnumT], value: Any, default: Optional[EnumT], upper: bool = False,
) -> Optional[EnumT]:
    if not isinstance(value, str):
        return default
    candidate = value.strip().upper() if upper else value.strip().lower()
    try:
        return enum_cls(candidate)
    except ValueError:
        return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    if isinstance(value, (int, float)):
        return value != 0
    return False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "."))
        except ValueError:
            return None
    return None


def parse_enhanced_sentiment(value: Any) -> Optional[EnhancedSentiment]:
    if not isinstance(value, dict):
        return None
    emotions = []
    raw_emotions = value.get("emotions")
    for item in raw_emotions if isinstance(raw_emotions, list) else []:
        emotion = _enum_value(Emotion, item, None)
        if emotion is not None:
            emotions.append(emotion)
    return EnhancedSentiment(
        overall=_enum_value(Sentiment, value.get("overall"), Sentiment.NEUTRAL),
        emotions=emotions,
        intensity=_enum_value(Intensity, value.get("intensity"), Intensity.MEDIUM),
    )


def parse_extracted_check_ins(value: Any) -> list[ExtractedCheckIn]:
    """Keep only well-formed entries of a known type."""
    if not isinstance(value, list):
        return []
    results = []
    for item in value:
        if not isinstance(item, dict):
            continue
        kind = _enum_value(ExtractedType, item.get("type"), None, upper=True)
        if kind is None:
            continue
        value_bool = item.get("valueBool", item.get("value_bool"))
        value_text = item.get("valueText", item.get("value_text"))
        results.append(ExtractedCheckIn(
            type=kind,
            value_number=_as_number(item.get("valueNumber", item.get("value_number"))),
            value_text=str(value_text) if value_text is not None else None,
            value_bool=value_bool if isinstance(value_bool, bool) else None,
            confidence=_enum_value(Confidence, item.get("confidence"), Confidence.MEDIUM),
        ))
    return results


def parse_analysis(raw: str | None) -> Optional[AnalysisResult]:
    """Turn raw provider text into a validated AnalysisResult (or None)."""
    if raw is None or not raw.strip():
        return None

    try:
        data = json.loads(strip_code_fence(raw))
    except (json.JSONDecodeError, ValueError) as exc:
        logger.warning("Provider returned non-JSON output: %s", exc)
        return None

    if not isinstance(data, dict):
        logger.warning("Provider JSON is %s, not an object — handing off", type(data).__name__)
        return AnalysisResult.conservative()

    suggested = data.get("suggestedReply", data.get("suggested_reply"))
    if not isinstance(suggested, str) or not suggested.strip():
        suggested = None

    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = "No summary"

    return AnalysisResult(
        sentiment=_enum_value(Sentiment, data.get("sentiment"), Sentiment.NEUTRAL),
        intent=_enum_value(Intent, data.get("intent"), Intent.UNKNOWN),
        risk_level=_enum_value(
            AlertLevel, data.get("riskLevel", data.get("risk_level")), AlertLevel.MEDIUM, upper=True,
        ),
        summary=summary.strip(),
        should_reply=_as_bool(data.get("shouldReply", data.get("should_reply"))),
        suggested_reply=suggested,
        handoff_required=_as_bool(data.get("handoffRequired", data.get("handoff_required"))),
        check_in_satisfied=_as_bool(data.get("checkInSatisfied", data.get("check_in_satisfied"))),
        extracted_check_ins=parse_extracted_check_ins(
            data.get("extractedCheckIns", data.get("extracted_check_ins"))
        ),
        enhanced_sentiment=parse_enhanced_sentiment(
            data.get("enhancedSentiment", data.get("enhanced_sentiment"))
        ),
    )
