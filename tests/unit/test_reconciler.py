"""
Unit tests for the client reconciler.

Tests cover:
- Optimistic drags confirmed by the response or by the stream
- Rollback on Conflict / NotFound with a notice
- Supersession by foreign events and by redrags
- Idempotent and out-of-order stream events
- Confirmation timeouts and refetch
- Resync and connection notices
"""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest

from sdk.crewsync_sdk.cache import EntityKey
from sdk.crewsync_sdk.client import AssignmentClient, Entity, MutationResult
from sdk.crewsync_sdk.config import BackoffPolicy, ReconcilerConfig
from sdk.crewsync_sdk.errors import (
    ConflictError,
    NotFoundError,
    StreamDisconnectedError,
    TransportError,
)
from sdk.crewsync_sdk.notify import NoticeBoard, NoticeLevel
from sdk.crewsync_sdk.reconciler import Outcome, Reconciler
from sdk.crewsync_sdk.sse import StreamEvent

EMPLOYEE = EntityKey.of("employee", "17")
EQUIPMENT = EntityKey.of("equipment", "4")


def stream_event(sequence, entity_id="17", value="proj-2", version=2, kind="employee",
                 name="assignment.updated"):
    return StreamEvent(
        kind=name,
        sequence=sequence,
        data={"entityKind": kind, "entityId": entity_id, "newValue": value, "version": version},
    )


def mutation(value, version, sequence, kind="employee", entity_id="17"):
    return MutationResult(Entity(kind, entity_id, value, version=version), sequence)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def board(clock):
    board = NoticeBoard(display_seconds=3600, clock=clock)
    board.open()
    return board


@pytest.fixture
def client():
    client = AsyncMock(spec=AssignmentClient)
    client.list_entities.return_value = (
        [
            Entity("employee", "17", "proj-1", version=1),
            Entity("equipment", "4", None, version=1),
        ],
        10,
    )
    return client


@pytest.fixture
async def reconciler(client, board, clock):
    reconciler = Reconciler(
        client, notifier=board, config=ReconcilerConfig(timeout=10.0), clock=clock
    )
    await reconciler.load()
    return reconciler


def messages(board):
    return [n.message for n in board.visible()]


class TestLoad:
    @pytest.mark.asyncio
    async def test_load_sets_cache_and_cursor(self, reconciler):
        assert reconciler.cursor == 10
        assert len(reconciler.cache) == 2
        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-1"


class TestDrag:
    """Tests for Reconciler.drag()."""

    @pytest.mark.asyncio
    async def test_response_confirms_then_event_is_noop(self, reconciler, client, board):
        """Drag, success response, then the same-value event changes nothing."""
        shown = []

        async def assign(*args, **kwargs):
            shown.append(reconciler.cache.get(EMPLOYEE).project_id)
            return mutation("proj-2", 2, 11)

        client.assign.side_effect = assign
        changes = []
        reconciler.cache.add_listener(lambda key, entry: changes.append(key))

        record = await reconciler.drag(EMPLOYEE, "proj-2")

        assert shown == ["proj-2"]
        assert record.outcome == Outcome.CONFIRMED
        client.assign.assert_awaited_once_with("employee", "17", "proj-2", expected_version=1)
        assert reconciler.cache.get(EMPLOYEE).version == 2
        assert reconciler.pending == {}

        before = len(changes)
        await reconciler.apply_event(stream_event(11))

        assert len(changes) == before
        assert reconciler.cursor == 11
        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-2"
        assert messages(board) == []

    @pytest.mark.asyncio
    async def test_event_before_response(self, reconciler, client, board):
        async def assign(*args, **kwargs):
            await reconciler.apply_event(stream_event(11))
            return mutation("proj-2", 2, 11)

        client.assign.side_effect = assign

        record = await reconciler.drag(EMPLOYEE, "proj-2")

        assert record.outcome == Outcome.CONFIRMED
        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-2"
        assert reconciler.cache.get(EMPLOYEE).version == 2
        assert messages(board) == []

    @pytest.mark.asyncio
    async def test_conflict_rolls_back_with_notice(self, reconciler, client, board):
        client.assign.side_effect = ConflictError(
            "Conflict", "proj-5", {"entityId": "17", "projectId": "proj-5", "version": 3}
        )

        record = await reconciler.drag(EMPLOYEE, "proj-2")

        assert record.outcome == Outcome.ROLLED_BACK
        entry = reconciler.cache.get(EMPLOYEE)
        assert entry.project_id == "proj-5"
        assert entry.version == 3
        notices = board.visible()
        assert [n.message for n in notices] == ["Employee 17 was reassigned by someone else"]
        assert notices[0].level == NoticeLevel.WARNING

    @pytest.mark.asyncio
    async def test_not_found_drops_entity(self, reconciler, client, board):
        client.assign.side_effect = NotFoundError("gone", "equipment", "4")

        record = await reconciler.drag(EQUIPMENT, "proj-1")

        assert record.outcome == Outcome.ROLLED_BACK
        assert EQUIPMENT not in reconciler.cache
        assert messages(board) == ["Equipment 4 no longer exists"]

    @pytest.mark.asyncio
    async def test_transport_failure_stays_pending(self, reconciler, client, board):
        client.assign.side_effect = TransportError("refused")

        record = await reconciler.drag(EMPLOYEE, "proj-2")

        assert record.outcome == Outcome.PENDING
        assert reconciler.pending_for(EMPLOYEE) is record
        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-2"
        assert messages(board) == []

    @pytest.mark.asyncio
    async def test_foreign_event_supersedes_pending(self, reconciler, client, board):
        """Someone else's write wins; the late conflict adds nothing."""

        async def assign(*args, **kwargs):
            await reconciler.apply_event(stream_event(11, value="proj-7"))
            raise ConflictError("Conflict", "proj-7", {"version": 2})

        client.assign.side_effect = assign

        record = await reconciler.drag(EMPLOYEE, "proj-2")

        assert record.outcome == Outcome.SUPERSEDED
        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-7"
        assert messages(board) == ["Employee 17 was moved by someone else"]

    @pytest.mark.asyncio
    async def test_late_response_after_foreign_event_ignored(self, reconciler, client, board):
        """Equipment moved elsewhere mid-flight stays where the stream put it."""

        async def assign(*args, **kwargs):
            await reconciler.apply_event(
                stream_event(11, "4", "proj-9", 2, "equipment")
            )
            return mutation("proj-3", 2, 11, "equipment", "4")

        client.assign.side_effect = assign

        record = await reconciler.drag(EQUIPMENT, "proj-3")

        assert record.outcome == Outcome.SUPERSEDED
        assert reconciler.cache.get(EQUIPMENT).project_id == "proj-9"
        assert messages(board) == ["Equipment 4 was moved by someone else"]

    @pytest.mark.asyncio
    async def test_redrag_supersedes_own_pending_record(self, reconciler, client):
        client.assign.side_effect = [TransportError("refused"), mutation("proj-3", 2, 11)]
        client.get_entity.return_value = Entity("employee", "17", "proj-1", version=1)

        first = await reconciler.drag(EMPLOYEE, "proj-2")
        second = await reconciler.drag(EMPLOYEE, "proj-3")

        assert first.outcome == Outcome.SUPERSEDED
        assert second.outcome == Outcome.CONFIRMED
        assert second.previous_value == "proj-1"
        assert second.earlier_values == frozenset({"proj-2"})
        assert client.assign.await_args_list[1].kwargs == {"expected_version": 1}
        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-3"

    @pytest.mark.asyncio
    async def test_redrag_after_own_write_landed(self, reconciler, client):
        """A write that landed despite the transport error is ours to replace."""
        client.assign.side_effect = [TransportError("timed out"), mutation("proj-3", 3, 12)]
        client.get_entity.return_value = Entity("employee", "17", "proj-2", version=2)

        await reconciler.drag(EMPLOYEE, "proj-2")
        second = await reconciler.drag(EMPLOYEE, "proj-3")

        assert second.outcome == Outcome.CONFIRMED
        assert client.assign.await_args_list[1].kwargs == {"expected_version": 2}

    @pytest.mark.asyncio
    async def test_redrag_never_overwrites_foreign_write(self, reconciler, client, board):
        client.assign.side_effect = TransportError("refused")
        client.get_entity.return_value = Entity("employee", "17", "proj-7", version=2)

        await reconciler.drag(EMPLOYEE, "proj-2")
        second = await reconciler.drag(EMPLOYEE, "proj-3")

        assert second.outcome == Outcome.ROLLED_BACK
        assert client.assign.await_count == 1
        entry = reconciler.cache.get(EMPLOYEE)
        assert entry.project_id == "proj-7"
        assert entry.version == 2
        assert messages(board) == ["Employee 17 was reassigned by someone else"]

    @pytest.mark.asyncio
    async def test_redrag_waits_for_in_flight_request(self, reconciler, client):
        """The redrag compares against the version the first drag produced."""
        release = asyncio.Event()
        responses = iter([mutation("proj-2", 2, 11), mutation("proj-3", 3, 12)])

        async def assign(*args, **kwargs):
            if kwargs["expected_version"] == 1:
                await release.wait()
            return next(responses)

        client.assign.side_effect = assign

        first = asyncio.create_task(reconciler.drag(EMPLOYEE, "proj-2"))
        await asyncio.sleep(0)
        second = asyncio.create_task(reconciler.drag(EMPLOYEE, "proj-3"))
        await asyncio.sleep(0)

        assert client.assign.await_count == 1
        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-3"

        release.set()
        first_record, second_record = await asyncio.gather(first, second)

        assert first_record.outcome == Outcome.SUPERSEDED
        assert second_record.outcome == Outcome.CONFIRMED
        assert [c.kwargs for c in client.assign.await_args_list] == [
            {"expected_version": 1},
            {"expected_version": 2},
        ]
        entry = reconciler.cache.get(EMPLOYEE)
        assert entry.project_id == "proj-3"
        assert entry.version == 3
        client.get_entity.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_earlier_own_drag_landing_keeps_newest(self, reconciler, client, board):
        """Our superseded drag's event does not flicker the display."""
        client.assign.side_effect = TransportError("refused")
        client.get_entity.return_value = Entity("employee", "17", "proj-1", version=1)
        await reconciler.drag(EMPLOYEE, "proj-2")
        record = await reconciler.drag(EMPLOYEE, "proj-3")

        await reconciler.apply_event(stream_event(11, value="proj-2", version=2))

        assert record.outcome == Outcome.PENDING
        entry = reconciler.cache.get(EMPLOYEE)
        assert entry.project_id == "proj-3"
        assert entry.version == 2
        assert messages(board) == []

        await reconciler.apply_event(stream_event(12, value="proj-3", version=3))

        assert record.outcome == Outcome.CONFIRMED
        assert reconciler.pending == {}

    @pytest.mark.asyncio
    async def test_repair_alias_normalized(self, reconciler, client):
        client.assign.return_value = mutation("repair-shop", 2, 11, "equipment", "4")

        await reconciler.drag(EQUIPMENT, "repair")

        client.assign.assert_awaited_once_with(
            "equipment", "4", "repair-shop", expected_version=1
        )

    @pytest.mark.asyncio
    async def test_handle_drop(self, reconciler, client):
        client.assign.return_value = mutation("proj-1", 2, 11, "equipment", "4")

        record = await reconciler.handle_drop("4", "equipment-unassigned", 0, "equipment-proj-1", 0)

        assert record.key == EQUIPMENT
        assert record.outcome == Outcome.CONFIRMED
        assert reconciler.cache.get(EQUIPMENT).project_id == "proj-1"

    @pytest.mark.asyncio
    async def test_handle_drop_cancelled(self, reconciler, client):
        assert await reconciler.handle_drop("4", "equipment-proj-1", 0, None) is None
        client.assign.assert_not_awaited()


class TestStreamEvents:
    """Tests for Reconciler.apply_event()."""

    @pytest.mark.asyncio
    async def test_foreign_assignment_applied(self, reconciler):
        await reconciler.apply_event(stream_event(11, value="proj-8", version=2))

        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-8"
        assert reconciler.cursor == 11

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_idempotent(self, reconciler):
        await reconciler.apply_event(stream_event(11, value="proj-8", version=2))
        await reconciler.apply_event(stream_event(11, value="proj-8", version=2))

        assert reconciler.cache.get(EMPLOYEE).version == 2
        assert reconciler.cursor == 11

    @pytest.mark.asyncio
    async def test_events_at_or_below_cursor_ignored(self, reconciler):
        await reconciler.apply_event(stream_event(10, value="proj-9", version=5))

        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-1"

    @pytest.mark.asyncio
    async def test_lower_version_never_regresses(self, reconciler):
        await reconciler.apply_event(stream_event(11, value="proj-8", version=3))
        await reconciler.apply_event(stream_event(12, value="proj-2", version=2))

        entry = reconciler.cache.get(EMPLOYEE)
        assert entry.project_id == "proj-8"
        assert entry.version == 3
        assert reconciler.cursor == 12

    @pytest.mark.asyncio
    async def test_archive_and_restore(self, reconciler):
        await reconciler.apply_event(
            stream_event(11, "4", None, 2, "equipment", "entity.archived")
        )
        assert reconciler.cache.get(EQUIPMENT).status == "archived"

        await reconciler.apply_event(
            stream_event(12, "4", None, 3, "equipment", "entity.restored")
        )
        assert reconciler.cache.get(EQUIPMENT).status == "active"

    @pytest.mark.asyncio
    async def test_remove_supersedes_pending_and_drops(self, reconciler, client):
        client.assign.side_effect = TransportError("refused")
        record = await reconciler.drag(EQUIPMENT, "proj-1")

        await reconciler.apply_event(stream_event(11, "4", None, 2, "equipment", "entity.removed"))

        assert record.outcome == Outcome.SUPERSEDED
        assert EQUIPMENT not in reconciler.cache
        assert reconciler.pending == {}

    @pytest.mark.asyncio
    async def test_unknown_entity_kind_skipped(self, reconciler):
        await reconciler.apply_event(stream_event(11, kind="vehicle"))

        assert reconciler.cursor == 11
        assert len(reconciler.cache) == 2

    @pytest.mark.asyncio
    async def test_resync_discards_local_state(self, reconciler, client):
        client.assign.side_effect = TransportError("refused")
        record = await reconciler.drag(EMPLOYEE, "proj-2")
        client.list_entities.return_value = (
            [Entity("employee", "17", "proj-9", version=5)],
            40,
        )

        await reconciler.apply_event(
            StreamEvent("resync.required", 40, {"sequence": 40, "reason": "cursor evicted"})
        )

        assert record.outcome == Outcome.SUPERSEDED
        assert reconciler.pending == {}
        assert reconciler.cursor == 40
        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-9"
        assert EQUIPMENT not in reconciler.cache


class TestTimeouts:
    """Tests for Reconciler.expire_overdue()."""

    @pytest.fixture
    async def pending(self, reconciler, client):
        client.assign.side_effect = TransportError("refused")
        return await reconciler.drag(EMPLOYEE, "proj-2")

    @pytest.mark.asyncio
    async def test_not_expired_before_deadline(self, reconciler, pending, clock):
        assert await reconciler.expire_overdue(clock.now + 5) == []
        assert pending.outcome == Outcome.PENDING

    @pytest.mark.asyncio
    async def test_server_never_applied_change(self, reconciler, client, pending, clock, board):
        client.get_entity.return_value = Entity("employee", "17", "proj-1", version=1)
        clock.now += 10

        expired = await reconciler.expire_overdue()

        assert expired == [pending]
        assert pending.outcome == Outcome.EXPIRED
        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-1"
        notices = board.visible()
        assert notices[0].message == "Employee 17 could not be moved; showing current assignment"
        assert notices[0].level == NoticeLevel.WARNING

    @pytest.mark.asyncio
    async def test_server_applied_change(self, reconciler, client, pending, clock, board):
        client.get_entity.return_value = Entity("employee", "17", "proj-2", version=2)
        clock.now += 10

        await reconciler.expire_overdue()

        entry = reconciler.cache.get(EMPLOYEE)
        assert entry.project_id == "proj-2"
        assert entry.version == 2
        assert messages(board) == []

    @pytest.mark.asyncio
    async def test_refetch_failure_reverts(self, reconciler, client, pending, clock, board):
        client.get_entity.side_effect = TransportError("refused")
        clock.now += 10

        await reconciler.expire_overdue()

        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-1"
        notices = board.visible()
        assert notices[0].level == NoticeLevel.ERROR
        assert "reverted" in notices[0].message

    @pytest.mark.asyncio
    async def test_refetch_not_found_drops(self, reconciler, client, pending, clock, board):
        client.get_entity.side_effect = NotFoundError("gone", "employee", "17")
        clock.now += 10

        await reconciler.expire_overdue()

        assert EMPLOYEE not in reconciler.cache
        assert messages(board) == ["Employee 17 no longer exists"]


class TestConnection:
    """Tests for run() and connection notices."""

    @staticmethod
    def scripted_stream(steps, calls):
        remaining = iter(steps)

        @asynccontextmanager
        async def connect(since=None):
            calls.append(since)
            step = next(remaining)
            if isinstance(step, Exception):
                raise step

            async def events():
                for item in step:
                    yield item

            yield events()

        return connect

    @pytest.mark.asyncio
    async def test_outage_notices_and_give_up(self, client, board, clock):
        delays = []

        async def sleep(delay):
            delays.append(delay)
            await asyncio.sleep(0)

        calls = []
        client.stream_events.side_effect = self.scripted_stream(
            [TransportError("refused"), [stream_event(11, value="proj-3")], TransportError("refused")],
            calls,
        )
        reconciler = Reconciler(
            client,
            notifier=board,
            policy=BackoffPolicy(max_attempts=2),
            clock=clock,
            sleep=sleep,
        )

        with pytest.raises(StreamDisconnectedError):
            await reconciler.run()

        assert calls == [10, 10, 11]
        assert reconciler.cache.get(EMPLOYEE).project_id == "proj-3"
        assert messages(board) == [
            "Live updates interrupted; reconnecting",
            "Live updates restored",
            "Live updates interrupted; reconnecting",
        ]
        client.list_entities.assert_awaited_once()
