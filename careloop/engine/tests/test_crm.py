"""
Tests for the CRM Notifier, using httpx.MockTransport as the CRM.
"""

import json

import httpx
import pytest

from careloop.engine.crm import CrmNotifier, CrmTrigger, week_trigger
from careloop.engine.models import Patient

MAPPINGS = {"RISK_HIGH": {"pipeline_id": 7, "status_id": 42}}


class _Crm:
    """Records requests and answers with a fixed status."""

    def __init__(self, status_code=200):
        self.requests = []
        self.status_code = status_code

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={})


def _notifier(crm, **overrides):
    fields = dict(
        base_url="https://crm.example.com/",
        access_token="secret",
        mappings=MAPPINGS,
        transport=httpx.MockTransport(crm),
    )
    fields.update(overrides)
    return CrmNotifier(**fields)


class TestCrmNotifier:

    @pytest.mark.asyncio
    async def test_add_note(self):
        crm = _Crm()
        assert await _notifier(crm).add_note("1001", "Alert [HIGH]: Dizzy") is True

        request = crm.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/v4/leads/1001/notes"
        assert request.headers["Authorization"] == "Bearer secret"
        assert json.loads(request.content) == [
            {"note_type": "common", "params": {"text": "Alert [HIGH]: Dizzy"}},
        ]

    @pytest.mark.asyncio
    async def test_sync_state_uses_mapping(self):
        crm = _Crm()
        patient = Patient(full_name="A", crm_lead_id="1001")

        assert await _notifier(crm).sync_state(patient, CrmTrigger.RISK_HIGH) is True

        request = crm.requests[0]
        assert request.method == "PATCH"
        assert request.url.path == "/api/v4/leads/1001"
        assert json.loads(request.content) == {"pipeline_id": 7, "status_id": 42}

    @pytest.mark.asyncio
    async def test_unmapped_trigger_or_missing_lead_is_noop(self):
        crm = _Crm()
        notifier = _notifier(crm)

        assert await notifier.sync_state(Patient(full_name="A", crm_lead_id="1"), CrmTrigger.WEEK_2) is False
        assert await notifier.sync_state(Patient(full_name="A"), CrmTrigger.RISK_HIGH) is False
        assert crm.requests == []

    @pytest.mark.asyncio
    async def test_unconfigured_is_noop(self):
        crm = _Crm()
        notifier = _notifier(crm, access_token="")
        assert notifier.configured is False
        assert await notifier.add_note("1", "x") is False
        assert crm.requests == []

    @pytest.mark.asyncio
    async def test_http_error_is_not_raised(self):
        assert await _notifier(_Crm(status_code=500)).add_note("1", "x") is False

    @pytest.mark.asyncio
    async def test_transport_error_is_not_raised(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        notifier = _notifier(None, transport=httpx.MockTransport(refuse))
        assert await notifier.add_note("1", "x") is False

    @pytest.mark.asyncio
    async def test_fire_and_drain(self):
        crm = _Crm()
        notifier = _notifier(crm)

        task = notifier.fire(notifier.add_note("1", "background"))
        assert task is not None
        await notifier.drain()

        assert len(crm.requests) == 1
        assert notifier.pending_count == 0

    def test_fire_without_loop_drops_call(self):
        notifier = _notifier(_Crm())
        assert notifier.fire(notifier.add_note("1", "x")) is None


def test_week_trigger():
    assert week_trigger(3) == CrmTrigger.WEEK_3
    assert week_trigger(9) is None
