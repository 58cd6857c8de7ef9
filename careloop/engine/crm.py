"""
CRM Notifier — lead notes and pipeline-status sync over HTTP.

Configuration:
  CRM_BASE_URL          — e.g. "https://clinic.example-crm.com"
  CRM_ACCESS_TOKEN      — bearer token
  CRM_STATUS_MAPPINGS   — JSON: {"RISK_HIGH": {"pipeline_id": 1, "status_id": 2}, ...}

Every call is best-effort: an unconfigured notifier is a no-op and HTTP
failures are logged, never raised.  ``fire`` runs a call in the
background so the request path never waits for the CRM.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Coroutine, Optional

import httpx

from careloop.engine.models import Patient

logger = logging.getLogger("engine.crm")

REQUEST_TIMEOUT = 10.0


class CrmTrigger(str, Enum):
    PROGRAM_STARTED = "PROGRAM_STARTED"
    PROGRAM_COMPLETED = "PROGRAM_COMPLETED"
    RISK_HIGH = "RISK_HIGH"
    CHECKIN_MISSED = "CHECKIN_MISSED"
    WEEK_1 = "WEEK_1"
    WEEK_2 = "WEEK_2"
    WEEK_3 = "WEEK_3"
    WEEK_4 = "WEEK_4"
    WEEK_5 = "WEEK_5"
    WEEK_6 = "WEEK_6"


def week_trigger(week: int) -> Optional[CrmTrigger]:
    try:
        return CrmTrigger(f"WEEK_{week}")
    except ValueError:
        return None


class CrmNotifier:
    def __init__(
        self,
        base_url: str = "",
        access_token: str = "",
        mappings: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._mappings = mappings or {}
        self._transport = transport
        self._pending: set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._access_token)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Public API ──

    async def add_note(self, lead_id: str, text: str) -> bool:
        if not self.configured or not lead_id:
            return False
        payload = [{"note_type": "common", "params": {"text": text}}]
        ok = await self._request("POST", f"/api/v4/leads/{lead_id}/notes", payload)
        if ok:
            logger.info("CRM note added to lead %s", lead_id)
        return ok

    async def sync_state(self, patient: Patient, trigger: CrmTrigger) -> bool:
        """Move the patient's lead to the status mapped for ``trigger``."""
        if not self.configured:
            return False
        rule = self._mappings.get(trigger.value)
        if not rule:
            return False
        if not patient.crm_lead_id:
            logger.warning("CRM sync skipped for %s (%s): no lead id", patient.id, trigger.value)
            return False

        payload = {"pipeline_id": rule.get("pipeline_id"), "status_id": rule.get("status_id")}
        ok = await self._request("PATCH", f"/api/v4/leads/{patient.crm_lead_id}", payload)
        if ok:
            logger.info("CRM sync: patient %s lead moved for %s", patient.id, trigger.value)
        return ok

    def fire(self, coro: Coroutine[Any, Any, Any]) -> Optional[asyncio.Task]:
        """Run a notifier call in the background, keeping a reference until done."""
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.debug("No running loop — CRM call dropped")
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for background calls (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Internal ──

    async def _request(self, method: str, path: str, payload: Any) -> bool:
        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, transport=self._transport, timeout=REQUEST_TIMEOUT,
            ) as client:
                response = await client.request(method, path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("CRM %s %s error: %s", method, path, exc)
            return False

        if response.status_code >= 400:
            logger.error(
                "CRM %s %s failed: HTTP %d %s",
                method, path, response.status_code, response.text[:200],
            )
            return False
        return True
