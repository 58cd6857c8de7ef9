"""
Engine Store — in-process persistence for every engine record.

Records are kept as private copies.  ``get_*`` returns a copy and
``save_*`` writes one back, so a caller can never mutate stored state by
accident.  Writes that must land together go inside ``transaction()``:
if the block raises, every table is restored to its state at entry.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, TypeVar

from pydantic import BaseModel

from careloop.engine.errors import ConflictError, NotFoundError
from careloop.engine.models import (
    Alert,
    AlertLevel,
    AlertStatus,
    CheckIn,
    CheckInType,
    EnrollmentStatus,
    KnowledgeDocument,
    Message,
    MessageDirection,
    MessageSender,
    Patient,
    ProgramEnrollment,
    ProgramTemplate,
    PromptVariant,
    Task,
    TaskStatus,
    TaskType,
)

logger = logging.getLogger("engine.store")

RecordT = TypeVar("RecordT", bound=BaseModel)

_TABLES = (
    "patients",
    "templates",
    "enrollments",
    "check_ins",
    "messages",
    "alerts",
    "tasks",
    "documents",
    "variants",
)


class EngineStore:
    """
    Thread-safe in-memory store.

    Usage:
        store = EngineStore()
        patient = store.get_patient(pid)
        patient.messages_since_summary += 1
        store.save_patient(patient)

        with store.transaction():
            store.save_alert(alert)
            store.save_patient(patient)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshot: dict[str, dict[str, BaseModel]] | None = None
        self.patients: dict[str, Patient] = {}
        self.templates: dict[str, ProgramTemplate] = {}
        self.enrollments: dict[str, ProgramEnrollment] = {}
        self.check_ins: dict[str, CheckIn] = {}
        self.messages: dict[str, Message] = {}
        self.alerts: dict[str, Alert] = {}
        self.tasks: dict[str, Task] = {}
        self.documents: dict[str, KnowledgeDocument] = {}
        self.variants: dict[str, PromptVariant] = {}
        self._ai_config: Any = None

    # ── Transactions ──

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes; roll every table back if the block raises."""
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._snapshot = {name: dict(getattr(self, name)) for name in _TABLES}
            self._depth += 1
            try:
                yield
            except BaseException:
                if outermost and self._snapshot is not None:
                    for name, table in self._snapshot.items():
                        setattr(self, name, table)
                    logger.warning("Store transaction rolled back")
                raise
            finally:
                self._depth -= 1
                if outermost:
                    self._snapshot = None

    # ── Generic helpers ──

    def _get(self, table: dict[str, RecordT], record_id: str, kind: str) -> RecordT:
        with self._lock:
            record = table.get(record_id)
            if record is None:
                raise NotFoundError(f"{kind} {record_id} not found")
            return record.model_copy(deep=True)

    def _put(self, table_name: str, record: BaseModel) -> None:
        with self._lock:
            getattr(self, table_name)[record.id] = record.model_copy(deep=True)

    def _select(self, table: dict[str, RecordT], predicate) -> list[RecordT]:
        with self._lock:
            return [r.model_copy(deep=True) for r in table.values() if predicate(r)]

    # ── AI config ──

    def get_ai_config(self) -> Any:
        with self._lock:
            return self._ai_config.model_copy(deep=True) if self._ai_config else None

    def save_ai_config(self, config: Any) -> None:
        with self._lock:
            self._ai_config = config.model_copy(deep=True)

    # ── Patients ──

    def add_patient(self, patient: Patient) -> Patient:
        """Insert a new patient.  Phone numbers are unique."""
        with self._lock:
            if patient.id in self.patients:
                raise ConflictError(f"Patient {patient.id} already exists")
            if patient.phone and self.find_patient_by_phone(patient.phone):
                raise ConflictError(f"Phone {patient.phone} is already registered")
            self._put("patients", patient)
        return patient

    def get_patient(self, patient_id: str) -> Patient:
        return self._get(self.patients, patient_id, "Patient")

    def save_patient(self, patient: Patient) -> None:
        self._put("patients", patient)

    def find_patient_by_phone(self, phone: str) -> Optional[Patient]:
        candidates = {phone, phone.lstrip("+"), "+" + phone.lstrip("+")}
        matches = self._select(self.patients, lambda p: p.phone in candidates)
        return matches[0] if matches else None

    def list_patients(self, active_only: bool = False) -> list[Patient]:
        return self._select(self.patients, lambda p: p.is_active or not active_only)

    # ── Programs ──

    def get_template(self, template_id: str) -> ProgramTemplate:
        return self._get(self.templates, template_id, "Program template")

    def save_template(self, template: ProgramTemplate) -> None:
        self._put("templates", template)

    def delete_template(self, template_id: str) -> None:
        with self._lock:
            if self.templates.pop(template_id, None) is None:
                raise NotFoundError(f"Program template {template_id} not found")

    def get_enrollment(self, enrollment_id: str) -> ProgramEnrollment:
        return self._get(self.enrollments, enrollment_id, "Program enrollment")

    def save_enrollment(self, enrollment: ProgramEnrollment) -> None:
        self._put("enrollments", enrollment)

    def active_enrollment(self, patient_id: str) -> Optional[ProgramEnrollment]:
        matches = self._select(
            self.enrollments,
            lambda e: e.patient_id == patient_id and e.status == EnrollmentStatus.ACTIVE,
        )
        return matches[0] if matches else None

    def list_enrollments(
        self,
        patient_id: str | None = None,
        template_id: str | None = None,
        statuses: Iterable[EnrollmentStatus] | None = None,
    ) -> list[ProgramEnrollment]:
        wanted = set(statuses) if statuses else None
        results = self._select(
            self.enrollments,
            lambda e: (patient_id is None or e.patient_id == patient_id)
            and (template_id is None or e.template_id == template_id)
            and (wanted is None or e.status in wanted),
        )
        return sorted(results, key=lambda e: e.created_at, reverse=True)

    # ── Check-ins ──

    def save_check_in(self, check_in: CheckIn) -> None:
        self._put("check_ins", check_in)

    def get_check_in(self, check_in_id: str) -> CheckIn:
        return self._get(self.check_ins, check_in_id, "Check-in")

    def list_check_ins(
        self,
        patient_id: str,
        since: datetime | None = None,
        check_in_type: CheckInType | None = None,
        limit: int | None = None,
    ) -> list[CheckIn]:
        """Newest first."""
        results = self._select(
            self.check_ins,
            lambda c: c.patient_id == patient_id
            and (since is None or c.created_at >= since)
            and (check_in_type is None or c.type == check_in_type),
        )
        results.sort(key=lambda c: c.created_at, reverse=True)
        return results[:limit] if limit else results

    # ── Messages ──

    def save_message(self, message: Message) -> None:
        self._put("messages", message)

    def get_message(self, message_id: str) -> Message:
        return self._get(self.messages, message_id, "Message")

    def list_messages(
        self,
        patient_id: str,
        limit: int | None = None,
        since: datetime | None = None,
        direction: MessageDirection | None = None,
        sender: MessageSender | None = None,
    ) -> list[Message]:
        """Newest first."""
        results = self._select(
            self.messages,
            lambda m: m.patient_id == patient_id
            and (since is None or m.created_at >= since)
            and (direction is None or m.direction == direction)
            and (sender is None or m.sender == sender),
        )
        results.sort(key=lambda m: m.created_at, reverse=True)
        return results[:limit] if limit else results

    def count_messages(self, patient_id: str) -> int:
        with self._lock:
            return sum(1 for m in self.messages.values() if m.patient_id == patient_id)

    def find_messages_by_external_id(self, external_id: str) -> list[Message]:
        return self._select(self.messages, lambda m: m.external_id == external_id)

    # ── Alerts ──

    def save_alert(self, alert: Alert) -> None:
        self._put("alerts", alert)

    def get_alert(self, alert_id: str) -> Alert:
        return self._get(self.alerts, alert_id, "Alert")

    def list_alerts(
        self,
        patient_id: str | None = None,
        statuses: Iterable[AlertStatus] | None = None,
        levels: Iterable[AlertLevel] | None = None,
        since: datetime | None = None,
    ) -> list[Alert]:
        """Newest first."""
        wanted_status = set(statuses) if statuses else None
        wanted_level = set(levels) if levels else None
        results = self._select(
            self.alerts,
            lambda a: (patient_id is None or a.patient_id == patient_id)
            and (wanted_status is None or a.status in wanted_status)
            and (wanted_level is None or a.level in wanted_level)
            and (since is None or a.created_at >= since),
        )
        results.sort(key=lambda a: a.created_at, reverse=True)
        return results

    # ── Tasks ──

    def save_task(self, task: Task) -> None:
        self._put("tasks", task)

    def get_task(self, task_id: str) -> Task:
        return self._get(self.tasks, task_id, "Task")

    def list_tasks(
        self,
        patient_id: str | None = None,
        task_type: TaskType | None = None,
        statuses: Iterable[TaskStatus] | None = None,
        since: datetime | None = None,
    ) -> list[Task]:
        wanted = set(statuses) if statuses else None
        return self._select(
            self.tasks,
            lambda t: (patient_id is None or t.patient_id == patient_id)
            and (task_type is None or t.type == task_type)
            and (wanted is None or t.status in wanted)
            and (since is None or t.created_at >= since),
        )

    # ── Knowledge documents & prompt variants ──

    def save_document(self, document: KnowledgeDocument) -> None:
        self._put("documents", document)

    def list_documents(self, enabled_only: bool = False) -> list[KnowledgeDocument]:
        return self._select(self.documents, lambda d: d.enabled or not enabled_only)

    def save_variant(self, variant: PromptVariant) -> None:
        self._put("variants", variant)

    def get_variant(self, variant_id: str) -> PromptVariant:
        return self._get(self.variants, variant_id, "Prompt variant")

    def list_variants(self, active_only: bool = False) -> list[PromptVariant]:
        results = self._select(self.variants, lambda v: v.is_active or not active_only)
        return sorted(results, key=lambda v: v.created_at)

    # ── Seeding ──

    def load_seed(self, data: dict[str, Any]) -> dict[str, int]:
        """
        Load patients, templates, enrollments, documents and variants from
        a plain dict (the shape of a JSON seed file).  Returns counts.
        """
        counts: dict[str, int] = {}
        with self.transaction():
            for raw in data.get("patients", []):
                self.add_patient(Patient.model_validate(raw))
            counts["patients"] = len(data.get("patients", []))
            for raw in data.get("templates", []):
                self.save_template(ProgramTemplate.model_validate(raw))
            counts["templates"] = len(data.get("templates", []))
            for raw in data.get("enrollments", []):
                self.save_enrollment(ProgramEnrollment.model_validate(raw))
            counts["enrollments"] = len(data.get("enrollments", []))
            for raw in data.get("documents", []):
                self.save_document(KnowledgeDocument.model_validate(raw))
            counts["documents"] = len(data.get("documents", []))
            for raw in data.get("variants", []):
                self.save_variant(PromptVariant.model_validate(raw))
            counts["variants"] = len(data.get("variants", []))
        logger.info("Seed loaded: %s", counts)
        return counts

    def load_seed_file(self, path: str) -> dict[str, int]:
        content = Path(path).read_text(encoding="utf-8")
        return self.load_seed(json.loads(content))
