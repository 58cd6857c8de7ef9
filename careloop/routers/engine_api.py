"""
Engine API — HTTP endpoints for the care-program engagement engine.

Endpoints:
  POST   /api/engine/patients                         Register a patient
  GET    /api/engine/patients/{id}                    Patient record
  GET    /api/engine/patients/{id}/programs           Active programs + today's schedule state
  GET    /api/engine/patients/{id}/messages           Message history (newest first)
  POST   /api/engine/patients/{id}/messages           Staff message (or #ai command)
  POST   /api/engine/patients/{id}/automation         Pause / resume automation
  POST   /api/engine/patients/{id}/chat-mode          Set chat mode
  GET    /api/engine/patients/{id}/engagement         Engagement score
  POST   /api/engine/programs                         Enroll a patient
  POST   /api/engine/patients/{id}/program/pause      Pause / resume the current program
  POST   /api/engine/templates                        Create a program template
  DELETE /api/engine/templates/{id}                   Delete an unused template
  GET    /api/engine/alerts                           Active alerts
  POST   /api/engine/alerts/{id}/resolve              Resolve an alert
  PATCH  /api/engine/alerts/{id}                      Change alert status
  GET    /api/engine/tasks                            Tasks with SLA fields
  POST   /api/engine/tasks                            Create a task
  PATCH  /api/engine/tasks/{id}                       Update a task
  GET    /api/engine/analytics/engagement             OK / at-risk / high-risk counts
  GET    /api/engine/variants                         Prompt variant counters
  POST   /api/engine/knowledge                        Add a knowledge document
  GET    /api/engine/config                           Live AI config
  PUT    /api/engine/config                           Replace the live AI config
  POST   /api/engine/twilio/inbound                   Twilio inbound webhook (form)
  POST   /api/engine/twilio/status                    Twilio status callback (form)
  POST   /api/engine/scenario/load                    Seed the store
  POST   /api/engine/sweep                            Run every background sweep now
  GET    /api/engine/events                           Pipeline event log
  GET    /api/engine/status                           Queue / channel / metrics info
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request, Response
from pydantic import BaseModel, Field

from careloop.engine.analysis.config import AIConfig
from careloop.engine.commands import CommandResult
from careloop.engine.errors import ConflictError, EngineError, InvalidRequestError, NotFoundError
from careloop.engine.models import (
    AlertLevel,
    AlertStatus,
    ChatMode,
    Patient,
    TaskPriority,
    TaskSource,
    TaskStatus,
    TaskType,
)
from careloop.engine.tasks import task_view

logger = logging.getLogger("engine.api")

router = APIRouter(prefix="/api/engine", tags=["engine"])

EMPTY_TWIML = "<Response></Response>"


# ── Request / Response Models ──


class CreatePatientRequest(BaseModel):
    full_name: str = ""
    phone: str
    timezone: Optional[str] = None
    crm_lead_id: Optional[str] = None


class StaffMessageRequest(BaseModel):
    text: str = Field(min_length=1)
    actor: str = "staff"


class AutomationRequest(BaseModel):
    paused: bool
    actor: str = "staff"
    reason: Optional[str] = None


class ChatModeRequest(BaseModel):
    mode: ChatMode
    actor: str = "staff"


class EnrollRequest(BaseModel):
    patient_id: str
    template_id: str
    start_date: Optional[datetime] = None


class ProgramPauseRequest(BaseModel):
    paused: bool


class ResolveAlertRequest(BaseModel):
    actor: str = "staff"
    note: Optional[str] = None


class AlertStatusRequest(BaseModel):
    status: AlertStatus
    actor: str = "staff"


class CreateTaskRequest(BaseModel):
    patient_id: str
    type: TaskType
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    due_at: Optional[datetime] = None


class UpdateTaskRequest(BaseModel):
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[str] = None


class KnowledgeRequest(BaseModel):
    title: str
    content: str
    source_name: str = "default"


class EngineStatusResponse(BaseModel):
    status: str = "ok"
    active_queues: int = 0
    active_patients: list[str] = Field(default_factory=list)
    merged_analyses: int = 0
    registered_channels: list[str] = Field(default_factory=list)
    provider_configured: bool = False
    crm_configured: bool = False
    scheduler_running: bool = False
    last_sweeps: dict[str, str] = Field(default_factory=dict)
    metrics: dict[str, Any] = Field(default_factory=dict)


# ── Helpers ──


def _engine():
    from careloop.engine.setup import get_engine

    engine = get_engine()
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


def _http_error(exc: EngineError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidRequestError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _dump(record: BaseModel) -> dict[str, Any]:
    return record.model_dump(mode="json")


# ── Patients ──


@router.post("/patients", status_code=201)
async def create_patient(request: CreatePatientRequest):
    from careloop.engine.messages import normalize_phone

    engine = _engine()
    phone = normalize_phone(request.phone)
    if not phone:
        raise HTTPException(status_code=400, detail="phone must contain digits")
    try:
        patient = engine.store.add_patient(Patient(
            full_name=request.full_name,
            phone=phone,
            timezone=request.timezone,
            crm_lead_id=request.crm_lead_id,
        ))
    except EngineError as exc:
        raise _http_error(exc)
    return _dump(patient)


@router.get("/patients/{patient_id}")
async def get_patient(patient_id: str):
    engine = _engine()
    try:
        return _dump(engine.store.get_patient(patient_id))
    except EngineError as exc:
        raise _http_error(exc)


@router.get("/patients/{patient_id}/programs")
async def get_active_programs(patient_id: str):
    """Active programs with today's activities and their completion state."""
    engine = _engine()
    try:
        engine.store.get_patient(patient_id)
        programs = engine.matcher.get_active_programs(patient_id)
    except EngineError as exc:
        raise _http_error(exc)
    return {"patient_id": patient_id, "count": len(programs), "programs": programs}


@router.get("/patients/{patient_id}/messages")
async def list_messages(patient_id: str, limit: int = 50):
    engine = _engine()
    try:
        messages = engine.messages.list_messages(patient_id, limit=limit)
    except EngineError as exc:
        raise _http_error(exc)
    return {
        "patient_id": patient_id,
        "count": len(messages),
        "messages": [_dump(m) for m in messages],
    }


@router.post("/patients/{patient_id}/messages")
async def send_staff_message(patient_id: str, request: StaffMessageRequest):
    """Send a staff message; ``#ai off|on|status`` runs a command instead."""
    engine = _engine()
    try:
        result = await engine.messages.send_staff_message(patient_id, request.text, request.actor)
    except EngineError as exc:
        raise _http_error(exc)

    if isinstance(result, CommandResult):
        return {"command": True, **result.to_dict()}
    return {"command": False, "message": _dump(result)}


@router.post("/patients/{patient_id}/automation")
async def set_automation(patient_id: str, request: AutomationRequest):
    engine = _engine()
    try:
        patient = engine.automation.set_paused(
            patient_id, request.paused, request.actor, reason=request.reason,
        )
    except EngineError as exc:
        raise _http_error(exc)
    return {
        "patient_id": patient_id,
        "automation_paused": patient.automation_paused,
        "paused_at": patient.paused_at.isoformat() if patient.paused_at else None,
        "paused_by": patient.paused_by,
    }


@router.post("/patients/{patient_id}/chat-mode")
async def set_chat_mode(patient_id: str, request: ChatModeRequest):
    engine = _engine()
    try:
        with engine.store.transaction():
            patient = engine.store.get_patient(patient_id)
            changed = engine.chat_mode.set_mode(patient, request.mode, request.actor)
            if changed:
                engine.store.save_patient(patient)
    except EngineError as exc:
        raise _http_error(exc)
    return {"patient_id": patient_id, "chat_mode": patient.chat_mode.value, "changed": changed}


@router.get("/patients/{patient_id}/engagement")
async def get_engagement(patient_id: str):
    engine = _engine()
    try:
        engine.store.get_patient(patient_id)
        score = engine.engagement.calculate(patient_id)
    except EngineError as exc:
        raise _http_error(exc)
    return {"patient_id": patient_id, **asdict(score), "status": score.status.value}


# ── Programs ──


@router.post("/programs", status_code=201)
async def create_enrollment(request: EnrollRequest):
    engine = _engine()
    try:
        enrollment = engine.programs.create_enrollment(
            request.patient_id, request.template_id, start_date=request.start_date,
        )
    except EngineError as exc:
        raise _http_error(exc)
    return _dump(enrollment)


@router.post("/patients/{patient_id}/program/pause")
async def pause_program(patient_id: str, request: ProgramPauseRequest):
    engine = _engine()
    try:
        enrollment = engine.programs.pause_enrollment(patient_id, request.paused)
    except EngineError as exc:
        raise _http_error(exc)
    return _dump(enrollment)


@router.post("/templates", status_code=201)
async def create_template(request_body: dict[str, Any]):
    engine = _engine()
    try:
        template = engine.programs.create_template(request_body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _dump(template)


@router.delete("/templates/{template_id}")
async def delete_template(template_id: str):
    engine = _engine()
    try:
        engine.programs.delete_template(template_id)
    except EngineError as exc:
        raise _http_error(exc)
    return {"success": True, "template_id": template_id}


# ── Alerts ──


@router.get("/alerts")
async def list_alerts(
    status: Optional[AlertStatus] = None,
    level: Optional[AlertLevel] = None,
    patient_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
):
    engine = _engine()
    alerts = engine.alerts.list_active(
        status=status, level=level, patient_id=patient_id, limit=limit, offset=offset,
    )
    return {"count": len(alerts), "alerts": [_dump(a) for a in alerts]}


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(alert_id: str, request: ResolveAlertRequest):
    """Resolve an alert and hand the conversation back to automation."""
    engine = _engine()
    try:
        alert = engine.alerts.resolve(alert_id, request.actor, note=request.note)
    except EngineError as exc:
        raise _http_error(exc)
    return _dump(alert)


@router.patch("/alerts/{alert_id}")
async def update_alert_status(alert_id: str, request: AlertStatusRequest):
    engine = _engine()
    try:
        alert = engine.alerts.update_status(alert_id, request.status, request.actor)
    except EngineError as exc:
        raise _http_error(exc)
    return _dump(alert)


# ── Tasks ──


@router.get("/tasks")
async def list_tasks(
    status: Optional[TaskStatus] = None,
    priority: Optional[TaskPriority] = None,
    patient_id: Optional[str] = None,
    overdue: Optional[bool] = None,
):
    engine = _engine()
    tasks = engine.tasks.list_tasks(
        status=status, priority=priority, patient_id=patient_id, overdue=overdue,
    )
    return {"count": len(tasks), "tasks": [task_view(t) for t in tasks]}


@router.post("/tasks", status_code=201)
async def create_task(request: CreateTaskRequest):
    engine = _engine()
    try:
        engine.store.get_patient(request.patient_id)
        task = engine.tasks.create_task(
            request.patient_id,
            request.type,
            request.title,
            priority=request.priority,
            source=TaskSource.STAFF,
            description=request.description,
            due_at=request.due_at,
        )
    except EngineError as exc:
        raise _http_error(exc)
    return task_view(task)


@router.patch("/tasks/{task_id}")
async def update_task(task_id: str, request: UpdateTaskRequest):
    engine = _engine()
    try:
        task = engine.tasks.update_task(
            task_id,
            status=request.status,
            priority=request.priority,
            assigned_to=request.assigned_to,
        )
    except EngineError as exc:
        raise _http_error(exc)
    return task_view(task)


# ── Analytics / AI settings ──


@router.get("/analytics/engagement")
async def engagement_overview():
    return _engine().engagement.overview()


@router.get("/variants")
async def variant_metrics():
    return {"variants": _engine().variants.metrics()}


@router.post("/knowledge", status_code=201)
async def add_knowledge(request: KnowledgeRequest):
    engine = _engine()
    document = engine.knowledge.add_document(request.title, request.content, request.source_name)
    return _dump(document)


@router.get("/config")
async def get_ai_config():
    return _engine().gateway.config().model_dump(mode="json")


@router.put("/config")
async def put_ai_config(config: AIConfig):
    engine = _engine()
    engine.store.save_ai_config(config)
    logger.info("AI config replaced (enabled=%s, model=%s)", config.enabled, config.model)
    return config.model_dump(mode="json")


# ── Transport webhooks ──


@router.post("/twilio/inbound")
async def twilio_inbound(request: Request):
    """
    Twilio incoming SMS/WhatsApp webhook.

    Always answers 200 with empty TwiML; replies go out asynchronously
    through the dispatcher, and failures are only logged.
    """
    from careloop.engine.ingest.twilio_ingest import TwilioMessageIngest

    engine = _engine()
    form = dict(await request.form())
    try:
        envelope = await TwilioMessageIngest().to_envelope(form)
        await engine.pipeline.process_event(envelope)
    except Exception as exc:
        logger.error("Twilio inbound processing error: %s", exc, exc_info=True)
    return Response(content=EMPTY_TWIML, media_type="application/xml")


@router.post("/twilio/status")
async def twilio_status(request: Request):
    """Twilio delivery status callback."""
    from careloop.engine.ingest.twilio_ingest import TwilioMessageIngest

    engine = _engine()
    form = dict(await request.form())
    try:
        envelope = await TwilioMessageIngest().status_envelope(form)
        await engine.pipeline.process_event(envelope)
    except Exception as exc:
        logger.error("Twilio status processing error: %s", exc, exc_info=True)
    return Response(content=EMPTY_TWIML, media_type="application/xml")


# ── Operations ──


@router.post("/scenario/load")
async def load_scenario(request_body: dict[str, Any]):
    """Seed patients, templates, enrollments, documents and variants."""
    engine = _engine()
    try:
        counts = engine.store.load_seed(request_body)
    except EngineError as exc:
        raise _http_error(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "loaded": counts}


@router.post("/sweep")
async def run_sweep():
    report = await _engine().scheduler.run_once(force=True)
    return {"success": True, "report": report}


@router.get("/events")
async def get_events(patient_id: Optional[str] = None, limit: int = 50):
    events = _engine().pipeline.get_event_log(patient_id=patient_id, limit=limit)
    return {"patient_id": patient_id, "count": len(events), "events": events}


@router.get("/status", response_model=EngineStatusResponse)
async def engine_status():
    """Health + active queue info for the engine."""
    from careloop.engine.setup import get_engine

    engine = get_engine()
    if engine is None:
        return EngineStatusResponse(status="not_initialized")

    return EngineStatusResponse(
        status="ok",
        active_queues=engine.queue.active_count,
        active_patients=engine.queue.active_patients,
        merged_analyses=engine.queue.coalesced_count,
        registered_channels=engine.dispatchers.registered_channels,
        provider_configured=engine.gateway.client is not None,
        crm_configured=engine.crm.configured,
        scheduler_running=engine.scheduler.running,
        last_sweeps=engine.scheduler.last_run,
        metrics=engine.pipeline.get_metrics(),
    )
