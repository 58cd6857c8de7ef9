"""
Per-Patient Analysis Queue — one FIFO lane and one worker per patient.

A patient's jobs run strictly one at a time, in arrival order, so
analyses of the same conversation are causally ordered.  Lanes of
different patients run in parallel.

While a patient's analysis is running, further ANALYZE_BUFFER jobs wait
in the lane.  Consecutive waiting jobs are merged into one (content
joined with newlines, message ids concatenated), so a backlog costs one
provider call instead of many.  The job already running is never
touched.

Lanes that stay idle longer than ``idle_timeout_seconds`` are torn down
by a background cleanup loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from careloop.engine.events import EventEnvelope, EventType

logger = logging.getLogger("engine.queue")

# Callback the worker runs for each job
EventProcessor = Callable[[EventEnvelope], Awaitable[Any]]

SLOW_EVENT_SECONDS = 30


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Lane:
    pending: deque = field(default_factory=deque)
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    idle: asyncio.Event = field(default_factory=asyncio.Event)
    worker: asyncio.Task | None = None
    busy: bool = False
    processed: int = 0
    last_activity: datetime = field(default_factory=_now)


def _merge_into(target: EventEnvelope, extra: EventEnvelope) -> None:
    target.payload["content"] = "\n".join(
        part for part in (target.payload.get("content", ""), extra.payload.get("content", "")) if part
    )
    target.payload["message_ids"] = list(target.payload.get("message_ids", [])) + list(
        extra.payload.get("message_ids", [])
    )


class PatientQueueManager:
    """
    Owns one lane per patient_id.

    Usage:
        mgr = PatientQueueManager(processor=pipeline.process_event)
        await mgr.start()
        await mgr.enqueue(event)   # routed by event.patient_id
        await mgr.join()           # wait until every lane is drained
        await mgr.stop()
    """

    def __init__(
        self,
        processor: EventProcessor,
        idle_timeout_seconds: int = 1800,
        cleanup_interval_seconds: float = 60.0,
        coalesce_analyses: bool = True,
    ) -> None:
        self._processor = processor
        self._idle_timeout = idle_timeout_seconds
        self._cleanup_interval = cleanup_interval_seconds
        self._coalesce = coalesce_analyses

        self._lanes: dict[str, _Lane] = {}
        self._cleanup_task: asyncio.Task | None = None
        self._running = False
        self._failed = 0
        self._coalesced = 0

    # ── Public API ──

    async def start(self) -> None:
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            "PatientQueueManager started (idle timeout=%ds, coalesce=%s)",
            self._idle_timeout, self._coalesce,
        )

    async def stop(self) -> None:
        """Cancel the cleanup loop and every worker.  Pending jobs are dropped."""
        self._running = False
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        dropped = sum(len(lane.pending) for lane in self._lanes.values())
        for pid in list(self._lanes.keys()):
            await self._destroy_lane(pid)
        if dropped:
            logger.warning("PatientQueueManager stopped with %d pending job(s) dropped", dropped)
        else:
            logger.info("PatientQueueManager stopped")

    async def enqueue(self, event: EventEnvelope) -> None:
        pid = event.patient_id
        lane = self._lanes.get(pid)
        if lane is None:
            lane = self._create_lane(pid)

        lane.last_activity = _now()
        tail = lane.pending[-1] if lane.pending else None
        if (
            self._coalesce
            and tail is not None
            and tail.event_type == EventType.ANALYZE_BUFFER
            and event.event_type == EventType.ANALYZE_BUFFER
        ):
            _merge_into(tail, event)
            self._coalesced += 1
            logger.info("Merged waiting analysis for patient %s (depth=%d)", pid, len(lane.pending))
        else:
            lane.pending.append(event)
            logger.debug(
                "Enqueued %s for patient %s (depth=%d)",
                event.event_type.value, pid, len(lane.pending),
            )
        lane.idle.clear()
        lane.wake.set()

    async def join(self) -> None:
        """Wait until every lane has nothing pending and nothing running."""
        for lane in list(self._lanes.values()):
            await lane.idle.wait()

    @property
    def active_patients(self) -> list[str]:
        return list(self._lanes.keys())

    @property
    def active_count(self) -> int:
        return len(self._lanes)

    @property
    def failed_count(self) -> int:
        return self._failed

    @property
    def coalesced_count(self) -> int:
        return self._coalesced

    def queue_depth(self, patient_id: str) -> int:
        """Jobs waiting (not running) for a patient.  0 if the patient has no lane."""
        lane = self._lanes.get(patient_id)
        return len(lane.pending) if lane else 0

    def stats(self) -> dict[str, dict[str, Any]]:
        return {
            pid: {
                "pending": len(lane.pending),
                "busy": lane.busy,
                "processed": lane.processed,
                "last_activity": lane.last_activity.isoformat(),
            }
            for pid, lane in self._lanes.items()
        }

    # ── Internal ──

    def _create_lane(self, patient_id: str) -> _Lane:
        lane = _Lane()
        self._lanes[patient_id] = lane
        lane.worker = asyncio.create_task(self._worker_loop(patient_id, lane))
        logger.debug("Created lane for patient %s", patient_id)
        return lane

    async def _worker_loop(self, patient_id: str, lane: _Lane) -> None:
        while True:
            if not lane.pending:
                lane.idle.set()
                lane.wake.clear()
                try:
                    await lane.wake.wait()
                except asyncio.CancelledError:
                    break
                continue

            event = lane.pending.popleft()
            lane.busy = True
            lane.last_activity = _now()
            t0 = time.monotonic()
            try:
                await self._processor(event)
                lane.processed += 1
            except asyncio.CancelledError:
                lane.busy = False
                lane.idle.set()
                break
            except Exception as exc:
                self._failed += 1
                logger.error(
                    "Error processing %s for patient %s: %s",
                    event.event_type.value, patient_id, exc,
                    exc_info=True,
                )
            lane.busy = False

            elapsed = time.monotonic() - t0
            if elapsed > SLOW_EVENT_SECONDS:
                logger.warning(
                    "Slow job: %s for %s took %.1fs",
                    event.event_type.value, patient_id, elapsed,
                )
            else:
                logger.debug("%s for %s done in %.2fs", event.event_type.value, patient_id, elapsed)

    async def _destroy_lane(self, patient_id: str) -> None:
        lane = self._lanes.pop(patient_id, None)
        if lane is None:
            return
        if lane.worker and not lane.worker.done():
            lane.worker.cancel()
            try:
                await lane.worker
            except asyncio.CancelledError:
                pass
        lane.idle.set()
        logger.debug("Destroyed lane for patient %s", patient_id)

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._cleanup_interval)
                now = _now()
                idle = [
                    pid for pid, lane in list(self._lanes.items())
                    if not lane.pending and not lane.busy
                    and (now - lane.last_activity).total_seconds() > self._idle_timeout
                ]
                for pid in idle:
                    logger.info("Cleaning up idle lane for patient %s", pid)
                    await self._destroy_lane(pid)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Queue cleanup error: %s", exc)
