"""
Tests for the Message Aggregator (per-patient debounce).

Tests cover:
  - A burst inside the window becomes exactly one flush, joined in order
  - Each new message re-arms the timer
  - delay == 0 flushes synchronously
  - Patients are independent
  - Messages arriving after a flush start a new batch
  - flush_now / stop
  - A failing flush handler is contained
  - Flushed, idle buffers are dropped
"""

import asyncio

import pytest

from careloop.engine.aggregator import MessageAggregator


class _Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, patient_id, content, message_ids):
        self.calls.append((patient_id, content, list(message_ids)))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Debounce
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDebounce:

    @pytest.mark.asyncio
    async def test_burst_becomes_one_flush_in_arrival_order(self):
        """N messages within the window → exactly one call, newline-joined."""
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=0.05)

        await agg.on_inbound_message("PT-1", "Hi", "m1")
        await agg.on_inbound_message("PT-1", "my weight is 80", "m2")
        await agg.on_inbound_message("PT-1", "and I slept badly", "m3")
        assert agg.pending_count("PT-1") == 3
        assert agg.has_pending_timer("PT-1")

        await asyncio.sleep(0.15)

        assert recorder.calls == [
            ("PT-1", "Hi\nmy weight is 80\nand I slept badly", ["m1", "m2", "m3"]),
        ]
        assert agg.pending_count("PT-1") == 0
        assert agg.flush_count == 1

    @pytest.mark.asyncio
    async def test_new_message_rearms_timer(self):
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=0.1)

        await agg.on_inbound_message("PT-1", "one")
        await asyncio.sleep(0.06)
        await agg.on_inbound_message("PT-1", "two")
        await asyncio.sleep(0.06)
        # 0.12s after the first message, but only 0.06s after the second
        assert recorder.calls == []

        await asyncio.sleep(0.1)
        assert recorder.calls == [("PT-1", "one\ntwo", [])]

    @pytest.mark.asyncio
    async def test_zero_delay_flushes_synchronously(self):
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=0)

        await agg.on_inbound_message("PT-1", "hello", "m1")

        assert recorder.calls == [("PT-1", "hello", ["m1"])]
        assert not agg.has_pending_timer("PT-1")

    @pytest.mark.asyncio
    async def test_delay_can_be_a_callable(self):
        current = {"delay": 0.0}
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=lambda: current["delay"])

        await agg.on_inbound_message("PT-1", "now")
        assert len(recorder.calls) == 1

        current["delay"] = 5
        assert agg.delay_seconds == 5.0
        await agg.on_inbound_message("PT-1", "later")
        assert len(recorder.calls) == 1
        await agg.stop()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Isolation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestIsolation:

    @pytest.mark.asyncio
    async def test_patients_flush_independently(self):
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=0.05)

        await agg.on_inbound_message("PT-A", "a1")
        await agg.on_inbound_message("PT-B", "b1")
        await agg.on_inbound_message("PT-A", "a2")
        assert sorted(agg.active_patients) == ["PT-A", "PT-B"]

        await asyncio.sleep(0.15)

        by_patient = {pid: content for pid, content, _ in recorder.calls}
        assert by_patient == {"PT-A": "a1\na2", "PT-B": "b1"}

    @pytest.mark.asyncio
    async def test_message_after_flush_starts_new_batch(self):
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=0.03)

        await agg.on_inbound_message("PT-1", "first")
        await asyncio.sleep(0.1)
        await agg.on_inbound_message("PT-1", "second")
        await asyncio.sleep(0.1)

        assert [c[1] for c in recorder.calls] == ["first", "second"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Manual flush / shutdown / errors
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_flush_now_cancels_timer(self):
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=10)

        await agg.on_inbound_message("PT-1", "x", "m1")
        assert await agg.flush_now("PT-1") is True
        assert recorder.calls == [("PT-1", "x", ["m1"])]
        assert not agg.has_pending_timer("PT-1")
        assert await agg.flush_now("PT-1") is False
        assert await agg.flush_now("PT-unknown") is False

    @pytest.mark.asyncio
    async def test_stop_without_flush_drops_timers(self):
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=10)

        await agg.on_inbound_message("PT-1", "x")
        await agg.stop()

        assert recorder.calls == []
        assert not agg.has_pending_timer("PT-1")

    @pytest.mark.asyncio
    async def test_stop_with_flush_pending(self):
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=10)

        await agg.on_inbound_message("PT-1", "x")
        await agg.stop(flush_pending=True)

        assert recorder.calls == [("PT-1", "x", [])]

    @pytest.mark.asyncio
    async def test_failing_handler_is_contained(self):
        async def broken(patient_id, content, message_ids):
            raise RuntimeError("downstream down")

        agg = MessageAggregator(on_flush=broken, delay=0)
        await agg.on_inbound_message("PT-1", "x")

        assert agg.flush_count == 1
        assert agg.pending_count("PT-1") == 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Buffer bookkeeping
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBufferBookkeeping:

    @pytest.mark.asyncio
    async def test_zero_delay_leaves_no_buffer_behind(self):
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=0)

        for i in range(3):
            await agg.on_inbound_message(f"PT-{i}", "x")

        assert len(recorder.calls) == 3
        assert agg.tracked_count == 0

    @pytest.mark.asyncio
    async def test_buffer_kept_while_timer_pending_then_dropped(self):
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=0.05)

        await agg.on_inbound_message("PT-1", "a", "m1")
        await agg.on_inbound_message("PT-1", "b", "m2")
        assert agg.tracked_count == 1
        assert agg.pending_count("PT-1") == 2

        await asyncio.sleep(0.15)

        assert recorder.calls == [("PT-1", "a\nb", ["m1", "m2"])]
        assert agg.tracked_count == 0

    @pytest.mark.asyncio
    async def test_flush_now_drops_buffer(self):
        recorder = _Recorder()
        agg = MessageAggregator(on_flush=recorder, delay=10)

        await agg.on_inbound_message("PT-1", "x")
        await agg.flush_now("PT-1")

        assert agg.tracked_count == 0
        await agg.on_inbound_message("PT-1", "y")
        assert agg.tracked_count == 1
        await agg.stop()
