"""Tests for Connection and its bounded outbound queue."""

import pytest

from connection import Connection, ConnectionState, OutboundQueue
from schemas.events import DroppedNotice, PresenceEvent, TypingEvent

from conftest import ManualClock, RecordingTransport


def presence(name: str, count: int = 1) -> PresenceEvent:
    return PresenceEvent(kind="joined", username=name, room="general", count=count)


def typing(name: str) -> TypingEvent:
    return TypingEvent(username=name, room="general", is_typing=True)


class TestOutboundQueue:
    def test_put_until_full(self):
        queue = OutboundQueue(2)
        queue.put(presence("a"), "presence")
        assert not queue.is_full()
        queue.put(presence("b"), "presence")
        assert queue.is_full()
        assert len(queue) == 2

    def test_put_when_full_raises(self):
        queue = OutboundQueue(1)
        queue.put(presence("a"), "presence")
        with pytest.raises(OverflowError):
            queue.put(presence("b"), "presence")
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_get_is_fifo(self):
        queue = OutboundQueue(3)
        for name in ("a", "b", "c"):
            queue.put(presence(name), "presence")
        names = [(await queue.get()).frame.username for _ in range(3)]
        assert names == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_drops_are_reported_before_next_frame(self):
        queue = OutboundQueue(2)
        queue.put(presence("a"), "presence")
        queue.record_drop()
        queue.record_drop()
        queue.put(presence("b"), "presence")

        first = await queue.get()
        second = await queue.get()
        assert first.dropped_before == 0
        assert second.dropped_before == 2
        assert queue.dropped_total == 2

    @pytest.mark.asyncio
    async def test_trailing_drops_become_a_notice(self):
        queue = OutboundQueue(1)
        queue.put(presence("a"), "presence")
        queue.record_drop(3)

        await queue.get()
        notice = await queue.get()
        assert isinstance(notice.frame, DroppedNotice)
        assert notice.frame.count == 3

    def test_evict_oldest_only_touches_matching_kind(self):
        queue = OutboundQueue(3)
        queue.put(presence("a"), "presence")
        queue.put(typing("b"), "typing")
        queue.put(typing("c"), "typing")

        assert queue.evict_oldest("typing")
        assert len(queue) == 2
        assert queue.dropped_total == 1
        assert not queue.evict_oldest("message")

    def test_evict_oldest_skips_frames_the_match_rejects(self):
        queue = OutboundQueue(3)
        queue.put(typing("b"), "typing")
        queue.put(typing("c"), "typing")

        assert queue.evict_oldest("typing", lambda frame: frame.username == "c")
        assert [entry.frame.username for entry in queue._items] == ["b"]
        assert not queue.evict_oldest("typing", lambda frame: frame.username == "z")
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_evicted_frame_is_counted_on_its_successor(self):
        queue = OutboundQueue(2)
        queue.put(typing("a"), "typing")
        queue.put(presence("b"), "presence")
        queue.evict_oldest("typing")

        entry = await queue.get()
        assert entry.frame.username == "b"
        assert entry.dropped_before == 1

    def test_clear_discards_everything(self):
        queue = OutboundQueue(4)
        queue.put(presence("a"), "presence")
        queue.put(presence("b"), "presence")
        queue.record_drop()
        assert queue.clear() == 2
        assert len(queue) == 0


class TestConnection:
    def test_new_connection_is_connecting(self):
        conn = Connection(RecordingTransport(), queue_size=8)
        assert conn.state is ConnectionState.CONNECTING
        assert conn.is_open
        assert conn.username is None
        assert conn.outbound.capacity == 8

    def test_ids_are_unique(self):
        ids = {Connection(RecordingTransport(), queue_size=1).id for _ in range(50)}
        assert len(ids) == 50

    def test_touch_updates_last_activity(self):
        clock = ManualClock()
        conn = Connection(RecordingTransport(), queue_size=1, clock=clock)
        clock.advance(12)
        conn.touch()
        assert conn.last_activity == clock.now

    @pytest.mark.asyncio
    async def test_close_transport_sends_reason(self):
        transport = RecordingTransport()
        conn = Connection(transport, queue_size=1)
        await conn.close_transport("slow_consumer", code=1008)
        assert transport.frames == [{"type": "closed", "reason": "slow_consumer"}]
        assert transport.closed == (1008, "slow_consumer")

    @pytest.mark.asyncio
    async def test_close_transport_tolerates_broken_channel(self):
        transport = RecordingTransport()
        transport.fail = True
        conn = Connection(transport, queue_size=1)
        await conn.close_transport("server_shutdown", code=1001)
        assert transport.closed == (1001, "server_shutdown")
