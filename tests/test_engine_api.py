"""
Tests for the HTTP surface: health, patients, messaging, programs,
alerts, tasks, AI config, Twilio webhooks and operations.

The app runs against the fixture engine from conftest: a fake reasoning
provider that always suggests a reply, "chest pain" as a handoff trigger
and a recording transport.
"""

from fastapi.testclient import TestClient

from careloop.engine import setup
from careloop.engine.models import ChatMode, DeliveryStatus, MessageDirection

PATIENT = {"full_name": "Aigerim Sadykova", "phone": "+7 701 000 00 01", "timezone": "UTC"}
TEMPLATE = {
    "name": "Weight loss 6 weeks",
    "duration_days": 42,
    "schedule": [
        {"day": 1, "activities": [{"time": "09:00", "type": "WEIGHT", "prompt": "Please send your weight."}]},
    ],
}


def _create_patient(client, **overrides):
    body = {**PATIENT, **overrides}
    resp = client.post("/api/engine/patients", json=body)
    assert resp.status_code == 201
    return resp.json()


def _inbound(client, text, sid):
    return client.post(
        "/api/engine/twilio/inbound",
        data={"From": "+77010000001", "Body": text, "MessageSid": sid, "NumMedia": "0"},
    )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Health
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestHealth:

    def test_root(self, test_client):
        resp = test_client.get("/")
        assert resp.status_code == 200
        assert resp.json()["status"] == "CareLoop Engine is Running"

    def test_health_reports_engine(self, test_client):
        data = test_client.get("/health").json()
        assert data["service"] == "careloop-engine"
        assert data["engine"] == "running"

    def test_status(self, test_client):
        data = test_client.get("/api/engine/status").json()
        assert data["status"] == "ok"
        assert data["registered_channels"] == ["sms"]
        assert data["provider_configured"] is True
        assert data["crm_configured"] is False
        assert data["merged_analyses"] == 0

    def test_not_initialized_returns_503(self, monkeypatch):
        from careloop.app import app

        monkeypatch.setattr(setup, "_engine", None)
        client = TestClient(app)
        assert client.get("/api/engine/patients/PT-1").status_code == 503
        assert client.get("/api/engine/status").json()["status"] == "not_initialized"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Patients
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPatients:

    def test_create_normalizes_phone(self, test_client):
        patient = _create_patient(test_client)
        assert patient["phone"] == "77010000001"
        assert patient["chat_mode"] == ChatMode.AUTOMATED.value

        fetched = test_client.get(f"/api/engine/patients/{patient['id']}").json()
        assert fetched["full_name"] == "Aigerim Sadykova"

    def test_duplicate_phone_conflicts(self, test_client):
        _create_patient(test_client)
        resp = test_client.post("/api/engine/patients", json={**PATIENT, "phone": "77010000001"})
        assert resp.status_code == 409

    def test_phone_without_digits(self, test_client):
        resp = test_client.post("/api/engine/patients", json={**PATIENT, "phone": "n/a"})
        assert resp.status_code == 400

    def test_unknown_patient(self, test_client):
        assert test_client.get("/api/engine/patients/missing").status_code == 404
        assert test_client.get("/api/engine/patients/missing/messages").status_code == 404

    def test_engagement(self, test_client):
        patient = _create_patient(test_client)
        data = test_client.get(f"/api/engine/patients/{patient['id']}/engagement").json()
        assert data["patient_id"] == patient["id"]
        assert 0 <= data["score"] <= 100
        assert data["status"] in ("OK", "AT_RISK", "HIGH_RISK")

        overview = test_client.get("/api/engine/analytics/engagement").json()
        assert sum(overview.values()) == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Staff messaging and automation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestStaffMessages:

    def test_staff_message_is_sent(self, test_client, transport):
        patient = _create_patient(test_client)
        resp = test_client.post(
            f"/api/engine/patients/{patient['id']}/messages",
            json={"text": "Hi, how are you feeling?", "actor": "nurse-1"},
        )
        data = resp.json()
        assert resp.status_code == 200
        assert data["command"] is False
        assert data["message"]["sender"] == "STAFF"
        assert data["message"]["delivery_status"] == DeliveryStatus.SENT.value
        assert transport.sent[0].text == "Hi, how are you feeling?"

    def test_ai_off_command_is_not_sent(self, test_client, transport):
        patient = _create_patient(test_client)
        data = test_client.post(
            f"/api/engine/patients/{patient['id']}/messages", json={"text": "#ai off"},
        ).json()

        assert data["command"] is True
        assert data["action"] == "pause"
        assert data["ai_enabled"] is False
        assert transport.sent == []
        assert test_client.get(f"/api/engine/patients/{patient['id']}").json()["automation_paused"] is True

    def test_empty_text_rejected(self, test_client):
        patient = _create_patient(test_client)
        resp = test_client.post(f"/api/engine/patients/{patient['id']}/messages", json={"text": ""})
        assert resp.status_code == 422

    def test_automation_toggle(self, test_client):
        patient = _create_patient(test_client)
        url = f"/api/engine/patients/{patient['id']}/automation"

        paused = test_client.post(url, json={"paused": True, "actor": "nurse-1"}).json()
        assert paused["automation_paused"] is True
        assert paused["paused_by"] == "nurse-1"

        resumed = test_client.post(url, json={"paused": False}).json()
        assert resumed["automation_paused"] is False
        assert resumed["paused_at"] is None

    def test_chat_mode(self, test_client):
        patient = _create_patient(test_client)
        url = f"/api/engine/patients/{patient['id']}/chat-mode"

        first = test_client.post(url, json={"mode": "HUMAN"}).json()
        again = test_client.post(url, json={"mode": "HUMAN"}).json()

        assert first == {"patient_id": patient["id"], "chat_mode": "HUMAN", "changed": True}
        assert again["changed"] is False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Programs
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPrograms:

    def test_template_and_enrollment(self, test_client):
        patient = _create_patient(test_client)
        template = test_client.post("/api/engine/templates", json=TEMPLATE)
        assert template.status_code == 201
        template_id = template.json()["id"]

        enrollment = test_client.post(
            "/api/engine/programs", json={"patient_id": patient["id"], "template_id": template_id},
        )
        assert enrollment.status_code == 201
        assert enrollment.json()["status"] == "ACTIVE"
        assert enrollment.json()["current_day"] == 1

        programs = test_client.get(f"/api/engine/patients/{patient['id']}/programs").json()
        assert programs["count"] == 1

        second = test_client.post(
            "/api/engine/programs", json={"patient_id": patient["id"], "template_id": template_id},
        )
        assert second.status_code == 409

    def test_invalid_template(self, test_client):
        resp = test_client.post("/api/engine/templates", json={"duration_days": 10})
        assert resp.status_code == 400

    def test_delete_template(self, test_client):
        patient = _create_patient(test_client)
        used = test_client.post("/api/engine/templates", json=TEMPLATE).json()["id"]
        unused = test_client.post("/api/engine/templates", json=TEMPLATE).json()["id"]
        test_client.post("/api/engine/programs", json={"patient_id": patient["id"], "template_id": used})

        assert test_client.delete(f"/api/engine/templates/{used}").status_code == 409
        assert test_client.delete(f"/api/engine/templates/{unused}").status_code == 200
        assert test_client.delete(f"/api/engine/templates/{unused}").status_code == 404

    def test_pause_and_resume_program(self, test_client):
        patient = _create_patient(test_client)
        template_id = test_client.post("/api/engine/templates", json=TEMPLATE).json()["id"]
        test_client.post("/api/engine/programs", json={"patient_id": patient["id"], "template_id": template_id})
        url = f"/api/engine/patients/{patient['id']}/program/pause"

        assert test_client.post(url, json={"paused": True}).json()["status"] == "PAUSED"
        assert test_client.post(url, json={"paused": True}).status_code == 404
        assert test_client.post(url, json={"paused": False}).json()["status"] == "ACTIVE"

    def test_enroll_unknown_template(self, test_client):
        patient = _create_patient(test_client)
        resp = test_client.post("/api/engine/programs", json={"patient_id": patient["id"], "template_id": "nope"})
        assert resp.status_code == 404


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Twilio webhooks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTwilioWebhooks:

    def test_inbound_gets_ai_reply(self, test_client, transport):
        patient = _create_patient(test_client)

        resp = _inbound(test_client, "What can I eat for breakfast?", "SMin1")

        assert resp.status_code == 200
        assert resp.text == "<Response></Response>"
        assert resp.headers["content-type"].startswith("application/xml")
        messages = test_client.get(f"/api/engine/patients/{patient['id']}/messages").json()["messages"]
        assert len(messages) == 2
        replies = [m for m in messages if m["direction"] == MessageDirection.OUTBOUND.value]
        assert replies[0]["sender"] == "AI"
        assert replies[0]["content"] == "Oatmeal with berries is a good choice."
        assert len(transport.sent) == 1

    def test_duplicate_sid_is_ignored(self, test_client, transport):
        patient = _create_patient(test_client)
        _inbound(test_client, "What can I eat for breakfast?", "SMin1")
        _inbound(test_client, "What can I eat for breakfast?", "SMin1")

        messages = test_client.get(f"/api/engine/patients/{patient['id']}/messages").json()["messages"]
        assert len(messages) == 2
        assert len(transport.sent) == 1

    def test_unknown_sender_still_200(self, test_client, transport):
        resp = test_client.post(
            "/api/engine/twilio/inbound", data={"From": "+10000000000", "Body": "hi", "MessageSid": "SMx"},
        )
        assert resp.status_code == 200
        assert resp.text == "<Response></Response>"
        assert transport.sent == []

    def test_handoff_then_resolve(self, test_client, transport, llm):
        patient = _create_patient(test_client)

        _inbound(test_client, "I have chest pain since morning", "SMin2")

        llm.aio.models.generate_content.assert_not_awaited()
        assert transport.sent == []
        alerts = test_client.get("/api/engine/alerts", params={"patient_id": patient["id"]}).json()
        assert alerts["count"] == 1
        alert_id = alerts["alerts"][0]["id"]
        assert test_client.get(f"/api/engine/patients/{patient['id']}").json()["chat_mode"] == "HUMAN"

        tasks = test_client.get("/api/engine/tasks", params={"patient_id": patient["id"]}).json()
        assert tasks["count"] == 1

        resolved = test_client.post(f"/api/engine/alerts/{alert_id}/resolve", json={"actor": "dr-1", "note": "called"})
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "RESOLVED"
        assert resolved.json()["resolved_by"] == "dr-1"
        assert test_client.get(f"/api/engine/patients/{patient['id']}").json()["chat_mode"] == "AUTOMATED"

        again = test_client.post(f"/api/engine/alerts/{alert_id}/resolve", json={})
        assert again.status_code == 409
        assert test_client.get("/api/engine/alerts").json()["count"] == 0

    def test_delivery_status_callback(self, test_client, engine):
        patient = _create_patient(test_client)
        message = test_client.post(
            f"/api/engine/patients/{patient['id']}/messages", json={"text": "Reminder"},
        ).json()["message"]

        resp = test_client.post(
            "/api/engine/twilio/status", data={"MessageSid": "SM0001", "MessageStatus": "delivered"},
        )

        assert resp.text == "<Response></Response>"
        assert engine.store.get_message(message["id"]).delivery_status == DeliveryStatus.DELIVERED


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Tasks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTasks:

    def test_create_and_update(self, test_client):
        patient = _create_patient(test_client)
        created = test_client.post("/api/engine/tasks", json={
            "patient_id": patient["id"],
            "type": "CUSTOM",
            "title": "Call about diet plan",
            "priority": "HIGH",
        })
        assert created.status_code == 201
        task = created.json()
        assert task["source"] == "STAFF"
        assert task["sla_hours"] > 0
        assert task["is_overdue"] is False

        updated = test_client.patch(
            f"/api/engine/tasks/{task['id']}", json={"status": "DONE", "assigned_to": "nurse-1"},
        ).json()
        assert updated["status"] == "DONE"
        assert updated["assigned_to"] == "nurse-1"

    def test_unknown_patient(self, test_client):
        resp = test_client.post("/api/engine/tasks", json={
            "patient_id": "missing", "type": "CUSTOM", "title": "x",
        })
        assert resp.status_code == 404

    def test_unknown_task(self, test_client):
        assert test_client.patch("/api/engine/tasks/missing", json={"status": "DONE"}).status_code == 404


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# AI settings and operations
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestConfigAndOperations:

    def test_config_roundtrip(self, test_client):
        config = test_client.get("/api/engine/config").json()
        assert config["handoff_triggers"] == ["chest pain"]

        config["forbidden_phrases"] = ["guaranteed cure"]
        config["enabled"] = False
        saved = test_client.put("/api/engine/config", json=config)

        assert saved.status_code == 200
        fetched = test_client.get("/api/engine/config").json()
        assert fetched["forbidden_phrases"] == ["guaranteed cure"]
        assert fetched["enabled"] is False

    def test_disabled_config_stores_without_reply(self, test_client, transport):
        patient = _create_patient(test_client)
        config = test_client.get("/api/engine/config").json()
        test_client.put("/api/engine/config", json={**config, "enabled": False})

        _inbound(test_client, "hello", "SMin3")

        messages = test_client.get(f"/api/engine/patients/{patient['id']}/messages").json()
        assert messages["count"] == 1
        assert transport.sent == []

    def test_knowledge_and_variants(self, test_client):
        doc = test_client.post("/api/engine/knowledge", json={
            "title": "Breakfast", "content": "Oatmeal and eggs are good breakfast options.",
        })
        assert doc.status_code == 201
        assert doc.json()["title"] == "Breakfast"
        assert test_client.get("/api/engine/variants").json() == {"variants": []}

    def test_scenario_load(self, test_client):
        resp = test_client.post("/api/engine/scenario/load", json={
            "patients": [{"full_name": "Seeded", "phone": "77010000009"}],
            "templates": [TEMPLATE],
        })
        assert resp.status_code == 200
        assert resp.json()["loaded"]["patients"] == 1
        assert resp.json()["loaded"]["templates"] == 1

    def test_scenario_duplicate_phone_conflicts(self, test_client):
        _create_patient(test_client)
        resp = test_client.post("/api/engine/scenario/load", json={
            "patients": [{"full_name": "Twin", "phone": "77010000001"}],
        })
        assert resp.status_code == 409

    def test_sweep(self, test_client):
        data = test_client.post("/api/engine/sweep").json()
        assert data["success"] is True
        assert "reminders_sent" in data["report"]
        assert "escalated" in data["report"]

    def test_event_log(self, test_client):
        patient = _create_patient(test_client)
        _inbound(test_client, "What can I eat for breakfast?", "SMin4")

        events = test_client.get("/api/engine/events", params={"patient_id": patient["id"]}).json()
        assert events["count"] >= 1
        assert test_client.get("/api/engine/status").json()["metrics"]["decisions"] == {"REPLY": 1}
