"""
Unit tests for the sequenced event log.

Tests cover:
- Gapless, totally ordered sequence numbers
- Replay from a cursor
- Count and age based eviction
- Atomic replay + listener registration
"""

import asyncio

import pytest

from bridge.crewsync_server.errors import GapTooLargeError
from bridge.crewsync_server.events.base import EventKind
from bridge.crewsync_server.events.log import EventLog
from bridge.crewsync_server.store.base import EntityKind


async def append_n(log: EventLog, count: int, entity_id: str = "emp-1") -> list:
    events = []
    for i in range(count):
        events.append(
            await log.append(
                EventKind.ASSIGNMENT_UPDATED,
                EntityKind.EMPLOYEE,
                entity_id,
                f"proj-{i}",
                version=i + 2,
            )
        )
    return events


class TestSequencing:
    """Tests for sequence assignment."""

    @pytest.fixture
    def log(self):
        """Create a fresh log."""
        return EventLog(capacity=100)

    @pytest.mark.asyncio
    async def test_first_sequence_is_one(self, log):
        """The first event gets sequence 1."""
        assert log.head == 0

        event = await log.append(
            EventKind.ASSIGNMENT_UPDATED, EntityKind.EMPLOYEE, "emp-1", "proj-1", version=2
        )

        assert event.sequence == 1
        assert log.head == 1
        assert event.new_value == "proj-1"
        assert event.version == 2
        assert event.timestamp > 0

    @pytest.mark.asyncio
    async def test_sequences_are_gapless_across_entities(self, log):
        """Sequences increase by one regardless of entity."""
        await append_n(log, 3, "emp-1")
        await log.append(
            EventKind.ENTITY_ARCHIVED, EntityKind.EQUIPMENT, "eq-1", None, version=2
        )
        await append_n(log, 2, "emp-2")

        sequences = [e.sequence for e in log.replay_since(0)]
        assert sequences == [1, 2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_concurrent_appends_never_collide(self, log):
        """Concurrent appends receive distinct, contiguous sequences."""
        events = await asyncio.gather(
            *(
                log.append(
                    EventKind.ASSIGNMENT_UPDATED, EntityKind.EMPLOYEE, f"emp-{i}", "p", version=2
                )
                for i in range(50)
            )
        )

        assert sorted(e.sequence for e in events) == list(range(1, 51))
        assert log.head == 50

    @pytest.mark.asyncio
    async def test_event_payload_shape(self, log):
        """Payload uses the wire field names."""
        event = await log.append(
            EventKind.ASSIGNMENT_UPDATED, EntityKind.EQUIPMENT, "eq-9", None, version=4
        )

        assert event.event_name == "assignment.updated"
        payload = event.payload()
        assert payload["entityKind"] == "equipment"
        assert payload["entityId"] == "eq-9"
        assert payload["newValue"] is None
        assert payload["version"] == 4
        assert event.to_dict()["id"] == 1


class TestReplay:
    """Tests for replay_since()."""

    @pytest.mark.asyncio
    async def test_replay_returns_events_after_cursor(self):
        """Replay yields sequence > since in order."""
        log = EventLog(capacity=100)
        await append_n(log, 10)

        replayed = log.replay_since(6)

        assert [e.sequence for e in replayed] == [7, 8, 9, 10]

    @pytest.mark.asyncio
    async def test_replay_at_head_is_empty(self):
        """A caller at the head has nothing to replay."""
        log = EventLog(capacity=100)
        await append_n(log, 3)

        assert log.replay_since(3) == []

    @pytest.mark.asyncio
    async def test_replay_on_empty_log(self):
        """A fresh log replays nothing from zero."""
        log = EventLog()

        assert log.replay_since(0) == []

    @pytest.mark.asyncio
    async def test_replay_evicted_range_raises(self):
        """Cursor older than the buffer raises GapTooLargeError."""
        log = EventLog(capacity=5)
        await append_n(log, 10)

        assert log.oldest == 6
        assert len(log) == 5
        assert [e.sequence for e in log.replay_since(5)] == [6, 7, 8, 9, 10]

        with pytest.raises(GapTooLargeError) as exc_info:
            log.replay_since(4)
        assert exc_info.value.oldest == 6
        assert exc_info.value.head == 10

    @pytest.mark.asyncio
    async def test_cursor_ahead_of_head_raises(self):
        """A cursor from a previous server life cannot be replayed."""
        log = EventLog(capacity=100)
        await append_n(log, 2)

        with pytest.raises(GapTooLargeError):
            log.replay_since(50)

    def test_negative_cursor_rejected(self):
        """Negative cursors are invalid."""
        log = EventLog()

        with pytest.raises(ValueError):
            log.replay_since(-1)

    @pytest.mark.asyncio
    async def test_age_eviction(self):
        """Events older than max_age_seconds are evicted."""
        now = [1000.0]
        log = EventLog(capacity=100, max_age_seconds=10, clock=lambda: now[0])

        await append_n(log, 2)
        now[0] = 1005.0
        await append_n(log, 1)
        now[0] = 1012.0

        replayed = log.replay_since(2)
        assert [e.sequence for e in replayed] == [3]
        with pytest.raises(GapTooLargeError):
            log.replay_since(1)

    @pytest.mark.asyncio
    async def test_recent_returns_newest_last(self):
        """recent() returns the tail of the buffer."""
        log = EventLog(capacity=100)
        await append_n(log, 8)

        assert [e.sequence for e in log.recent(3)] == [6, 7, 8]
        assert log.recent(0) == []
        assert len(log.recent(100)) == 8

    def test_capacity_must_be_positive(self):
        """A zero capacity log is rejected."""
        with pytest.raises(ValueError):
            EventLog(capacity=0)


class TestCursors:
    """Tests for open_cursor() and listeners."""

    @pytest.mark.asyncio
    async def test_cursor_replays_then_delivers_live(self):
        """Listener sees the backlog then live events, without gaps."""
        log = EventLog(capacity=100)
        await append_n(log, 5)

        seen = []
        cursor = await log.open_cursor(2, lambda e: seen.append(e.sequence) or True)
        await append_n(log, 2)

        assert cursor.head == 5
        assert cursor.replayed == 3
        assert not cursor.gap
        assert seen == [3, 4, 5, 6, 7]

    @pytest.mark.asyncio
    async def test_cursor_without_position_is_live_only(self):
        """since=None skips replay."""
        log = EventLog(capacity=100)
        await append_n(log, 5)

        seen = []
        await log.open_cursor(None, lambda e: seen.append(e.sequence) or True)
        await append_n(log, 1)

        assert seen == [6]

    @pytest.mark.asyncio
    async def test_gap_calls_on_gap_with_head(self):
        """An evicted cursor reports the head and still goes live."""
        log = EventLog(capacity=3)
        await append_n(log, 10)

        gaps = []
        seen = []
        cursor = await log.open_cursor(
            1, lambda e: seen.append(e.sequence) or True, on_gap=gaps.append
        )
        await append_n(log, 1)

        assert cursor.gap
        assert gaps == [10]
        assert seen == [11]

    @pytest.mark.asyncio
    async def test_listener_returning_false_is_detached(self):
        """A listener that returns False stops receiving events."""
        log = EventLog(capacity=100)
        seen = []

        def listener(event):
            seen.append(event.sequence)
            return False

        await log.open_cursor(None, listener)
        await append_n(log, 3)

        assert seen == [1]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self):
        """An exception in one listener detaches it; others still receive."""
        log = EventLog(capacity=100)
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        await log.open_cursor(None, broken)
        await log.open_cursor(None, lambda e: seen.append(e.sequence) or True)
        await append_n(log, 2)

        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_remove_listener(self):
        """Removed listeners receive nothing further."""
        log = EventLog(capacity=100)
        seen = []

        def listener(event):
            seen.append(event.sequence)
            return True

        await log.open_cursor(None, listener)
        await append_n(log, 1)
        log.remove_listener(listener)
        log.remove_listener(listener)
        await append_n(log, 1)

        assert seen == [1]
