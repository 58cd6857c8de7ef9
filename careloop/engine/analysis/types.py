"""
Analysis result types — the normalized shape of a reasoning-provider
verdict on a batch of patient messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from careloop.engine.models import AlertLevel


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Intent(str, Enum):
    QUESTION = "question"
    COMPLAINT = "complaint"
    CHECKIN = "checkin"
    URGENT = "urgent"
    CHITCHAT = "chitchat"
    GRATITUDE = "gratitude"
    UNKNOWN = "unknown"


class Emotion(str, Enum):
    ANXIOUS = "anxious"
    FRUSTRATED = "frustrated"
    HOPEFUL = "hopeful"
    CONFUSED = "confused"
    CALM = "calm"
    GRATEFUL = "grateful"
    DISCOURAGED = "discouraged"


class Intensity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ExtractedType(str, Enum):
    """Observation kinds the provider may pull out of free text."""

    WEIGHT = "WEIGHT"
    STEPS = "STEPS"
    MOOD = "MOOD"
    DIET_ADHERENCE = "DIET_ADHERENCE"
    SLEEP = "SLEEP"
    WATER = "WATER"
    FOOD_LOG = "FOOD_LOG"
    EXERCISE = "EXERCISE"
    FREE_TEXT = "FREE_TEXT"


@dataclass
class ExtractedCheckIn:
    type: ExtractedType
    value_number: Optional[float] = None
    value_text: Optional[str] = None
    value_bool: Optional[bool] = None
    confidence: Confidence = Confidence.MEDIUM


@dataclass
class EnhancedSentiment:
    overall: Sentiment = Sentiment.NEUTRAL
    emotions: list[Emotion] = field(default_factory=list)
    intensity: Intensity = Intensity.MEDIUM


@dataclass
class AnalysisResult:
    """Outcome of one analysis call."""

    sentiment: Sentiment = Sentiment.NEUTRAL
    intent: Intent = Intent.UNKNOWN
    risk_level: AlertLevel = AlertLevel.MEDIUM
    summary: str = "No summary"
    should_reply: bool = False
    suggested_reply: Optional[str] = None
    handoff_required: bool = False
    check_in_satisfied: bool = False
    extracted_check_ins: list[ExtractedCheckIn] = field(default_factory=list)
    enhanced_sentiment: Optional[EnhancedSentiment] = None
    prompt_variant_id: Optional[str] = None
    # Set when a handoff trigger short-circuited the provider call
    trigger: Optional[str] = None
    # Set when the forbidden-phrase filter rewrote the result
    blocked_phrase: Optional[str] = None

    @classmethod
    def from_trigger(cls, trigger: str) -> AnalysisResult:
        return cls(
            sentiment=Sentiment.NEUTRAL,
            intent=Intent.URGENT,
            risk_level=AlertLevel.HIGH,
            summary=f"Handoff trigger detected: {trigger}",
            should_reply=False,
            handoff_required=True,
            trigger=trigger,
        )

    @classmethod
    def conservative(cls, summary: str = "Failed to analyze") -> AnalysisResult:
        """Used when the provider answered but the payload is unusable."""
        return cls(
            sentiment=Sentiment.NEUTRAL,
            intent=Intent.UNKNOWN,
            risk_level=AlertLevel.MEDIUM,
            summary=summary,
            should_reply=False,
            handoff_required=True,
        )
