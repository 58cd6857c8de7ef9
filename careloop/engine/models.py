"""
Engine records — patients, programs, check-ins, messages, alerts, tasks.

Every record is a pydantic model.  The store hands out copies, so callers
load a record, mutate it and save it back, the same way a patient diary
is loaded and saved.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ChatMode(str, Enum):
    AUTOMATED = "AUTOMATED"
    HUMAN = "HUMAN"
    PAUSED = "PAUSED"


class EnrollmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


class Slot(str, Enum):
    MORNING = "MORNING"
    AFTERNOON = "AFTERNOON"
    EVENING = "EVENING"


class CheckInType(str, Enum):
    WEIGHT = "WEIGHT"
    STEPS = "STEPS"
    MOOD = "MOOD"
    DIET_ADHERENCE = "DIET_ADHERENCE"
    SLEEP = "SLEEP"
    WATER = "WATER"
    FREE_TEXT = "FREE_TEXT"
    VISIT = "VISIT"


class CheckInSource(str, Enum):
    PATIENT = "PATIENT"
    STAFF = "STAFF"
    AI = "AI"


class MessageDirection(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class MessageSender(str, Enum):
    PATIENT = "PATIENT"
    AI = "AI"
    STAFF = "STAFF"
    SYSTEM = "SYSTEM"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


class AlertType(str, Enum):
    BAD_CONDITION = "BAD_CONDITION"
    REQUEST_HUMAN = "REQUEST_HUMAN"
    MISSED_CHECKIN = "MISSED_CHECKIN"
    OTHER = "OTHER"


class AlertLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"


class TaskType(str, Enum):
    RISK_ALERT = "RISK_ALERT"
    MISSED_CHECKIN = "MISSED_CHECKIN"
    FOLLOW_UP = "FOLLOW_UP"
    VISIT_FOLLOWUP = "VISIT_FOLLOWUP"
    CUSTOM = "CUSTOM"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class TaskStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


class TaskSource(str, Enum):
    AI = "AI"
    SYSTEM = "SYSTEM"
    STAFF = "STAFF"


ELEVATED_LEVELS = {AlertLevel.HIGH, AlertLevel.CRITICAL}

_LEVEL_RANK = {
    AlertLevel.LOW: 0,
    AlertLevel.MEDIUM: 1,
    AlertLevel.HIGH: 2,
    AlertLevel.CRITICAL: 3,
}

_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.HIGH: 2,
}


def is_elevated(level: AlertLevel | None) -> bool:
    return level in ELEVATED_LEVELS


def level_rank(level: AlertLevel) -> int:
    return _LEVEL_RANK[level]


def max_level(a: AlertLevel, b: AlertLevel) -> AlertLevel:
    return a if _LEVEL_RANK[a] >= _LEVEL_RANK[b] else b


def priority_rank(priority: TaskPriority) -> int:
    return _PRIORITY_RANK[priority]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Records
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Patient(BaseModel):
    id: str = Field(default_factory=_new_id)
    full_name: str = ""
    phone: Optional[str] = None
    timezone: Optional[str] = None
    is_active: bool = True
    crm_lead_id: Optional[str] = None

    chat_mode: ChatMode = ChatMode.AUTOMATED
    mode_set_at: Optional[datetime] = None
    mode_set_by: Optional[str] = None

    # Per-patient override, independent of chat_mode
    automation_paused: bool = False
    paused_at: Optional[datetime] = None
    paused_by: Optional[str] = None
    pause_reason: Optional[str] = None

    conversation_summary: Optional[str] = None
    messages_since_summary: int = 0
    summary_updated_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=_now)


class Activity(BaseModel):
    """One expected action on a program day, e.g. "weigh in at 09:00"."""

    time: str  # "HH:MM", patient-local
    slot: Slot = Slot.MORNING
    type: CheckInType
    prompt: str = ""
    required: bool = True

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        hours, _, minutes = value.partition(":")
        if not (hours.isdigit() and minutes.isdigit()):
            raise ValueError(f"time must be HH:MM, got {value!r}")
        if not (0 <= int(hours) <= 23 and 0 <= int(minutes) <= 59):
            raise ValueError(f"time out of range: {value!r}")
        return f"{int(hours):02d}:{int(minutes):02d}"

    @property
    def minute_of_day(self) -> int:
        hours, minutes = self.time.split(":")
        return int(hours) * 60 + int(minutes)


class ScheduleDay(BaseModel):
    day: int
    activities: list[Activity] = Field(default_factory=list)


class ProgramTemplate(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    duration_days: int = 42
    is_active: bool = True
    schedule: list[ScheduleDay] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)

    def activities_for_day(self, day: int) -> list[Activity]:
        for entry in self.schedule:
            if entry.day == day:
                return list(entry.activities)
        return []


class ProgramEnrollment(BaseModel):
    id: str = Field(default_factory=_new_id)
    patient_id: str
    template_id: str
    start_date: datetime
    end_date: datetime
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    # Last value written by the daily update; live code recomputes it
    current_day: int = 1
    created_at: datetime = Field(default_factory=_now)


class CheckInMedia(BaseModel):
    url: str
    type: str = "image"


class CheckIn(BaseModel):
    id: str = Field(default_factory=_new_id)
    patient_id: str
    type: CheckInType
    value_number: Optional[float] = None
    value_text: Optional[str] = None
    value_bool: Optional[bool] = None
    media: Optional[CheckInMedia] = None
    source: CheckInSource = CheckInSource.PATIENT
    created_at: datetime = Field(default_factory=_now)


class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    patient_id: str
    direction: MessageDirection
    sender: MessageSender
    content: str = ""
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    linked_check_in_id: Optional[str] = None
    prompt_variant_id: Optional[str] = None
    sender_id: Optional[str] = None
    external_id: Optional[str] = None
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    delivery_error: Optional[str] = None
    ai_risk: Optional[AlertLevel] = None
    ai_summary: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class Alert(BaseModel):
    id: str = Field(default_factory=_new_id)
    patient_id: str
    type: AlertType
    level: AlertLevel
    status: AlertStatus = AlertStatus.OPEN
    title: str = ""
    description: str = ""
    message_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Task(BaseModel):
    id: str = Field(default_factory=_new_id)
    patient_id: str
    type: TaskType
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.OPEN
    source: TaskSource = TaskSource.SYSTEM
    title: str = ""
    description: str = ""
    alert_id: Optional[str] = None
    assigned_to: Optional[str] = None
    due_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class KnowledgeDocument(BaseModel):
    """A reference snippet the reasoning provider may quote from."""

    id: str = Field(default_factory=_new_id)
    source_name: str = "default"
    title: str
    content: str
    enabled: bool = True
    created_at: datetime = Field(default_factory=_now)


class PromptVariant(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    system_prompt: str = ""
    weight: float = 1.0
    is_active: bool = True
    total_messages: int = 0
    handoff_count: int = 0
    error_count: int = 0
    created_at: datetime = Field(default_factory=_now)
