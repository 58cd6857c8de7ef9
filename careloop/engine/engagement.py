"""
Engagement score — a 0-100 health indicator per patient.

Starts at 100:
  -30  no check-in for 3 days          (+20 if one in the last 24h)
  -20  any OPEN task
  -20  ≥2 of the last 5 messages flagged HIGH/CRITICAL
                                        (+10 if all of them are LOW/unflagged)
  -10  an OPEN task older than 24h
  -10  ≥2 OPEN MISSED_CHECKIN tasks (ignores reminders)
  +20  tasks in the last 7 days, none of them OPEN

Clamped to 0..100.  < 40 → HIGH_RISK, < 70 → AT_RISK, else OK.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from careloop.engine.models import AlertLevel, TaskStatus, TaskType, is_elevated
from careloop.engine.store import EngineStore


class EngagementStatus(str, Enum):
    OK = "OK"
    AT_RISK = "AT_RISK"
    HIGH_RISK = "HIGH_RISK"


@dataclass
class EngagementScore:
    score: int
    status: EngagementStatus
    factors: list[str] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def status_for(score: int) -> EngagementStatus:
    if score < 40:
        return EngagementStatus.HIGH_RISK
    if score < 70:
        return EngagementStatus.AT_RISK
    return EngagementStatus.OK


class EngagementService:
    def __init__(self, store: EngineStore) -> None:
        self._store = store

    def calculate(self, patient_id: str, now: datetime | None = None) -> EngagementScore:
        now = now or _now()
        score = 100
        factors: list[str] = []

        latest = self._store.list_check_ins(patient_id, limit=1)
        if not latest or latest[0].created_at < now - timedelta(days=3):
            score -= 30
            factors.append("No check-ins for more than 3 days")
        elif latest[0].created_at > now - timedelta(days=1):
            score += 20
            factors.append("Recent check-in (+20)")
        score = min(100, score)

        open_tasks = self._store.list_tasks(patient_id=patient_id, statuses=[TaskStatus.OPEN])
        if open_tasks:
            score -= 20
            factors.append(f"Open tasks: {len(open_tasks)}")

        recent = self._store.list_messages(patient_id, limit=5)
        flagged = [m for m in recent if is_elevated(m.ai_risk)]
        if len(flagged) >= 2:
            score -= 20
            factors.append("Negative tone in recent messages")
        elif recent and all(m.ai_risk in (None, AlertLevel.LOW) for m in recent):
            score = min(100, score + 10)
            factors.append("Positive communication")

        if any(t.created_at < now - timedelta(days=1) for t in open_tasks):
            score -= 10
            factors.append("Overdue tasks")

        if sum(1 for t in open_tasks if t.type == TaskType.MISSED_CHECKIN) >= 2:
            score -= 10
            factors.append("Ignores reminders")

        week_tasks = self._store.list_tasks(patient_id=patient_id, since=now - timedelta(days=7))
        if week_tasks and not any(t.status == TaskStatus.OPEN for t in week_tasks):
            score = min(100, score + 20)
            factors.append("All tasks closed (+20)")

        score = max(0, min(100, score))
        return EngagementScore(score=score, status=status_for(score), factors=factors)

    def overview(self, now: datetime | None = None) -> dict[str, int]:
        counts = {status: 0 for status in EngagementStatus}
        for patient in self._store.list_patients():
            counts[self.calculate(patient.id, now).status] += 1
        return {
            "ok": counts[EngagementStatus.OK],
            "at_risk": counts[EngagementStatus.AT_RISK],
            "high_risk": counts[EngagementStatus.HIGH_RISK],
        }
