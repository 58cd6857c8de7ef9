"""
Message Aggregator — debounces bursts of inbound messages per patient.

Each patient owns one buffer, one pending flush timer and one lock.
A new message appends to the buffer and re-arms the timer to fire
``delay`` seconds after the latest message.  When the timer fires the
buffer is drained under the lock and handed downstream as a single
newline-joined unit.

  delay > 0   buffer + debounce
  delay == 0  flush synchronously inside on_inbound_message (no timer)

Append and drain for the same patient never interleave.  Different
patients never wait on each other.  Once a timer has started draining it
is no longer cancellable; messages that arrive afterwards start a fresh
buffer with a fresh timer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger("engine.aggregator")

# Called with (patient_id, joined_content, message_ids) once per flush
FlushHandler = Callable[[str, str, list[str]], Awaitable[Any]]
DelaySource = Union[float, Callable[[], float]]


@dataclass
class _PatientBuffer:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    parts: list[str] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)
    timer: asyncio.Task | None = None
    # on_inbound_message calls holding or waiting for the lock
    users: int = 0


class MessageAggregator:
    """
    Per-patient debounce of inbound messages.

    Usage:
        agg = MessageAggregator(on_flush=pipeline.enqueue_analysis, delay=10)
        await agg.on_inbound_message("PT-1", "hello", message_id="m1")
        ...
        await agg.stop()
    """

    def __init__(self, on_flush: FlushHandler, delay: DelaySource = 10.0) -> None:
        self._on_flush = on_flush
        self._delay = delay
        self._buffers: dict[str, _PatientBuffer] = {}
        self._flush_count = 0

    # ── Public API ──

    @property
    def delay_seconds(self) -> float:
        value = self._delay() if callable(self._delay) else self._delay
        return max(0.0, float(value))

    @property
    def active_patients(self) -> list[str]:
        """Patients with buffered, not yet flushed content."""
        return [pid for pid, buf in self._buffers.items() if buf.parts]

    @property
    def tracked_count(self) -> int:
        """Patients that currently own a buffer."""
        return len(self._buffers)

    @property
    def flush_count(self) -> int:
        return self._flush_count

    def pending_count(self, patient_id: str) -> int:
        buf = self._buffers.get(patient_id)
        return len(buf.parts) if buf else 0

    def has_pending_timer(self, patient_id: str) -> bool:
        buf = self._buffers.get(patient_id)
        return bool(buf and buf.timer and not buf.timer.done())

    async def on_inbound_message(
        self, patient_id: str, content: str, message_id: str | None = None,
    ) -> None:
        """Buffer one message and (re)arm the patient's flush timer."""
        delay = self.delay_seconds
        buf = self._buffers.get(patient_id)
        if buf is None:
            buf = self._buffers[patient_id] = _PatientBuffer()

        buf.users += 1
        try:
            async with buf.lock:
                buf.parts.append(content)
                if message_id:
                    buf.message_ids.append(message_id)

                if buf.timer is not None and not buf.timer.done():
                    buf.timer.cancel()
                buf.timer = None

                if delay > 0:
                    buf.timer = asyncio.create_task(self._fire_after(patient_id, delay))
                    logger.debug(
                        "Buffered message for %s (pending=%d, flush in %.1fs)",
                        patient_id, len(buf.parts), delay,
                    )
                    return

                batch = self._drain(buf)
        finally:
            buf.users -= 1

        # delay == 0: hand off synchronously, outside the lock
        await self._dispatch(patient_id, batch)

    async def flush_now(self, patient_id: str) -> bool:
        """Flush a patient's buffer immediately.  Returns False if it was empty."""
        buf = self._buffers.get(patient_id)
        if buf is None:
            return False
        async with buf.lock:
            if buf.timer is not None and not buf.timer.done():
                buf.timer.cancel()
            buf.timer = None
            batch = self._drain(buf)
        return await self._dispatch(patient_id, batch)

    async def stop(self, flush_pending: bool = False) -> None:
        """Cancel every pending timer; optionally flush what is buffered."""
        for pid in list(self._buffers.keys()):
            if flush_pending:
                await self.flush_now(pid)
                continue
            buf = self._buffers.get(pid)
            if buf is None:
                continue
            if buf.timer is not None and not buf.timer.done():
                buf.timer.cancel()
                try:
                    await buf.timer
                except asyncio.CancelledError:
                    pass
            buf.timer = None
        logger.info("MessageAggregator stopped")

    # ── Internal ──

    async def _fire_after(self, patient_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return  # superseded by a newer message

        buf = self._buffers.get(patient_id)
        if buf is None:
            return
        async with buf.lock:
            # A newer message replaced this timer while we waited for the lock
            if buf.timer is not asyncio.current_task():
                return
            buf.timer = None
            batch = self._drain(buf)
        await self._dispatch(patient_id, batch)

    @staticmethod
    def _drain(buf: _PatientBuffer) -> tuple[list[str], list[str]]:
        parts, ids = buf.parts, buf.message_ids
        buf.parts, buf.message_ids = [], []
        return parts, ids

    async def _dispatch(self, patient_id: str, batch: tuple[list[str], list[str]]) -> bool:
        parts, ids = batch
        if not parts:
            self._prune(patient_id)
            return False
        content = "\n".join(parts)
        self._flush_count += 1
        logger.info(
            "Flushing %d buffered message(s) for patient %s",
            len(parts), patient_id,
        )
        try:
            await self._on_flush(patient_id, content, ids)
        except Exception as exc:
            logger.error(
                "Flush handler failed for patient %s: %s",
                patient_id, exc, exc_info=True,
            )
        self._prune(patient_id)
        return True

    def _prune(self, patient_id: str) -> None:
        """Forget a patient's buffer once it is empty, idle and unreferenced."""
        buf = self._buffers.get(patient_id)
        if buf is None or buf.parts or buf.users or buf.lock.locked():
            return
        if buf.timer is not None and not buf.timer.done():
            return
        del self._buffers[patient_id]
        logger.debug("Dropped idle buffer for patient %s", patient_id)
