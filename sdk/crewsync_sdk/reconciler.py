"""
Client reconciler: optimistic drags reconciled against the event stream.

A drag of entity E to project P:
    1. opens a ReconciliationRecord (optimistic P, value before the drag)
    2. renders P immediately through the cache
    3. calls the server
    4. on success folds the server's entity into the cache; the matching
       stream event later is an idempotent no-op
    5. on Conflict / NotFound rolls back to the server's value and posts a notice
A stream event that disagrees with a pending record wins and supersedes it;
a new drag of E supersedes the older pending record.

Mutations of one entity are sent one at a time. A redrag waits until the
record it superseded has settled and then compare-and-swaps on the version
that write produced, so it replaces our own change but never a foreign one.

Invariants:
    - At most one pending record per entity
    - Events at or below the cursor are ignored (replays are idempotent)
    - An event whose version is not newer than the cached version changes
      nothing, so late or reordered deliveries never regress the cache
    - A superseded record's mutation result is ignored
    - A request is sent only after the previous request for its entity settled

How to change safely:
    - Every new event kind needs a branch in _fold_event()
    - Keep clock and sleep injectable; tests drive timeouts without waiting
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from .cache import REPAIR_SHOP, EntityCache, EntityKey
from .client import AssignmentClient, MutationResult
from .config import BackoffPolicy, ReconcilerConfig
from .dnd import resolve_drop
from .errors import ConflictError, NotFoundError, TransportError
from .notify import LoggingNotifier, NoticeLevel, Notifier
from .sse import (
    ASSIGNMENT_UPDATED,
    ENTITY_ARCHIVED,
    ENTITY_REMOVED,
    ENTITY_RESTORED,
    RESYNC_REQUIRED,
    StreamEvent,
)
from .stream import ConnectionState, StreamConnection

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """How a reconciliation record ended."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"


@dataclass
class ReconciliationRecord:
    """One in-flight optimistic change.

    Attributes:
        key: Entity being moved
        optimistic_value: Assignment rendered before the server answered
        previous_value: Last known server value, used for rollback
        base_sequence: Stream cursor when the drag happened
        base_version: Cached entity version the drag was based on (0 = unknown)
        deadline: Clock reading after which the record expires
        outcome: Current outcome
        earlier_values: Optimistic values of records this one superseded
        expected_version: Version the request compared against, None if unchecked
        result_version: Server version after the request, None if unknown
        settled: Set once the request has been answered or has failed
    """

    key: EntityKey
    optimistic_value: str | None
    previous_value: str | None
    base_sequence: int | None
    base_version: int
    deadline: float
    outcome: Outcome = Outcome.PENDING
    earlier_values: frozenset = field(default_factory=frozenset)
    expected_version: int | None = None
    result_version: int | None = None
    settled: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)


def normalize_project_id(project_id: str | None) -> str | None:
    """Client-side mirror of the server's assignment normalization."""
    if project_id is None:
        return None
    project_id = project_id.strip()
    if not project_id or project_id == "unassigned":
        return None
    if project_id == "repair":
        return REPAIR_SHOP
    return project_id


def describe(key: EntityKey) -> str:
    return f"{key.kind.value.capitalize()} {key.entity_id}"


class Reconciler:
    """Keeps an EntityCache consistent with the server under optimistic UI.

    Example:
        >>> reconciler = Reconciler(client, notifier=board)
        >>> await reconciler.load()
        >>> await reconciler.drag(EntityKey.of("employee", "emp-1"), "proj-7")
        >>> await reconciler.run()  # stream + timeouts until cancelled
    """

    def __init__(
        self,
        client: AssignmentClient,
        cache: EntityCache | None = None,
        notifier: Notifier | None = None,
        config: ReconcilerConfig | None = None,
        policy: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the reconciler.

        Args:
            client: Server client
            cache: Entity cache to keep in sync
            notifier: Sink for one-line user notices
            config: Timeout settings
            policy: Reconnect backoff for run()
            clock: Monotonic clock in seconds
            sleep: Awaitable delay
        """
        self.client = client
        self.cache = cache or EntityCache()
        self.notifier = notifier or LoggingNotifier()
        self.config = config or ReconcilerConfig()
        self.policy = policy or BackoffPolicy()
        self._clock = clock
        self._sleep = sleep
        self.cursor: int | None = None
        self._pending: dict[EntityKey, ReconciliationRecord] = {}
        self._reconnecting = False

    @property
    def pending(self) -> dict[EntityKey, ReconciliationRecord]:
        return dict(self._pending)

    def pending_for(self, key: EntityKey) -> ReconciliationRecord | None:
        return self._pending.get(key)

    # -------------------------------------------------------------------------
    # Full state
    # -------------------------------------------------------------------------

    async def load(self) -> int:
        """Replace the cache with the server's full state.

        Returns:
            Number of cached entities
        """
        entities, sequence = await self.client.list_entities()
        count = self.cache.load(entities)
        self.cursor = sequence
        logger.info("Cache loaded", extra={"entities": count, "cursor": sequence})
        return count

    async def resync(self, sequence: int) -> None:
        """Discard everything local and refetch, resuming from sequence."""
        logger.info("Resync required", extra={"cursor": self.cursor, "resume_from": sequence})
        for record in self._pending.values():
            record.outcome = Outcome.SUPERSEDED
        self._pending.clear()
        self.cache.clear()

        entities, _ = await self.client.list_entities()
        self.cache.load(entities)
        self.cursor = sequence

    # -------------------------------------------------------------------------
    # Optimistic changes
    # -------------------------------------------------------------------------

    async def handle_drop(
        self,
        draggable_id: str,
        source_id: str,
        source_index: int,
        destination_id: str | None,
        destination_index: int | None = None,
    ) -> ReconciliationRecord | None:
        """Entry point for a finished drag on the board."""
        intent = resolve_drop(
            draggable_id, source_id, source_index, destination_id, destination_index
        )
        if intent is None:
            return None
        return await self.drag(intent.key, intent.project_id)

    async def drag(self, key: EntityKey, project_id: str | None) -> ReconciliationRecord:
        """Move an entity optimistically and confirm with the server.

        Returns:
            The reconciliation record; its outcome tells what happened
        """
        project_id = normalize_project_id(project_id)
        entry = self.cache.get(key)
        previous = entry.project_id if entry else None
        base_version = entry.version if entry else 0
        earlier: frozenset = frozenset()

        older = self._pending.pop(key, None)
        if older is not None:
            older.outcome = Outcome.SUPERSEDED
            previous = older.previous_value
            earlier = older.earlier_values | {older.optimistic_value}

        record = ReconciliationRecord(
            key=key,
            optimistic_value=project_id,
            previous_value=previous,
            base_sequence=self.cursor,
            base_version=base_version,
            deadline=self._clock() + self.config.timeout,
            earlier_values=earlier,
        )
        self._pending[key] = record
        self.cache.update(key, project_id=project_id)

        try:
            try:
                if older is None:
                    record.expected_version = base_version or None
                else:
                    # Kept if the lookup fails so a later redrag still compares against it
                    record.expected_version = older.expected_version
                    record.expected_version = await self._version_after(older)
                result = await self.client.assign(
                    key.kind.value,
                    key.entity_id,
                    project_id,
                    expected_version=record.expected_version,
                )
            except ConflictError as e:
                record.result_version = record.expected_version
                if self._is_current(record):
                    self._roll_back(record, e.current_value, e.current_version)
                    self.notifier.notify(
                        f"{describe(key)} was reassigned by someone else", NoticeLevel.WARNING
                    )
                return record
            except NotFoundError:
                record.result_version = record.expected_version
                if self._is_current(record):
                    self._finish(record, Outcome.ROLLED_BACK)
                    self.cache.drop(key)
                    self.notifier.notify(f"{describe(key)} no longer exists", NoticeLevel.WARNING)
                return record
            except TransportError as e:
                logger.warning(
                    "Assignment request failed; awaiting confirmation",
                    extra={"entity_id": key.entity_id, "error": e.message},
                )
                return record

            record.result_version = result.entity.version
            self._accept(record, result)
            return record
        finally:
            record.settled.set()

    async def _version_after(self, older: ReconciliationRecord) -> int | None:
        """Version a redrag must compare against once the older request settled.

        Raises:
            ConflictError: If another writer changed the entity in between
            NotFoundError: If the entity is gone
            TransportError: If the server could not be asked
        """
        await older.settled.wait()
        if older.result_version is not None:
            return older.result_version

        # The older request failed in transit; ask the server whether it landed
        sent = older.expected_version
        entity = await self.client.get_entity(older.key.kind.value, older.key.entity_id)
        if sent is None or entity.version == sent:
            return entity.version
        if entity.version == sent + 1 and entity.project_id == older.optimistic_value:
            return entity.version
        raise ConflictError(
            f"{describe(older.key)} changed on the server",
            entity.project_id,
            {"version": entity.version},
        )

    def _is_current(self, record: ReconciliationRecord) -> bool:
        return (
            record.outcome == Outcome.PENDING and self._pending.get(record.key) is record
        )

    def _finish(self, record: ReconciliationRecord, outcome: Outcome) -> None:
        record.outcome = outcome
        if self._pending.get(record.key) is record:
            del self._pending[record.key]

    def _accept(self, record: ReconciliationRecord, result: MutationResult) -> None:
        if not self._is_current(record):
            return
        entity = result.entity
        self._fold_truth(record.key, entity.project_id, entity.version, entity.status)
        self._finish(record, Outcome.CONFIRMED)
        logger.debug(
            "Assignment confirmed by response",
            extra={"entity_id": record.key.entity_id, "sequence": result.sequence},
        )

    def _roll_back(
        self, record: ReconciliationRecord, value: str | None, version: int | None
    ) -> None:
        self._finish(record, Outcome.ROLLED_BACK)
        self._fold_truth(record.key, value, version)

    def _fold_truth(
        self, key: EntityKey, value: str | None, version: int | None, status: str | None = None
    ) -> None:
        """Apply a server-reported state unless the cache already holds a newer one."""
        entry = self.cache.get(key)
        if entry is not None and version is not None and version < entry.version:
            return
        if status is None:
            self.cache.update(key, project_id=value, version=version)
        else:
            self.cache.update(key, project_id=value, status=status, version=version)

    # -------------------------------------------------------------------------
    # Stream events
    # -------------------------------------------------------------------------

    async def apply_event(self, event: StreamEvent) -> None:
        """Fold one stream event into the cache."""
        if event.kind == RESYNC_REQUIRED:
            await self.resync(event.sequence if event.sequence is not None else 0)
            return

        if event.sequence is not None and self.cursor is not None and event.sequence <= self.cursor:
            return

        try:
            key = EntityKey.of(event.entity_kind, event.entity_id)
        except (TypeError, ValueError, AttributeError):
            logger.warning(
                "Ignoring event for unknown entity", extra={"event": event.kind, "data": event.data}
            )
        else:
            self._fold_event(key, event)

        if event.sequence is not None:
            self.cursor = event.sequence

    def _fold_event(self, key: EntityKey, event: StreamEvent) -> None:
        entry = self.cache.get(key)
        version = event.version
        if entry is not None and version is not None and version <= entry.version:
            return

        display_value = event.new_value
        record = self._pending.get(key)
        if record is not None:
            if event.kind == ENTITY_REMOVED:
                self._finish(record, Outcome.SUPERSEDED)
            elif event.new_value == record.optimistic_value:
                if event.kind == ASSIGNMENT_UPDATED:
                    self._finish(record, Outcome.CONFIRMED)
            elif event.new_value in record.earlier_values:
                # Our own earlier drag landing; keep showing the newest one
                display_value = record.optimistic_value
            else:
                self._finish(record, Outcome.SUPERSEDED)
                self.notifier.notify(
                    f"{describe(key)} was moved by someone else", NoticeLevel.INFO
                )

        if event.kind == ENTITY_REMOVED:
            self.cache.drop(key)
        elif event.kind == ENTITY_ARCHIVED:
            self.cache.update(key, project_id=display_value, status="archived", version=version)
        elif event.kind == ENTITY_RESTORED:
            self.cache.update(key, project_id=display_value, status="active", version=version)
        elif event.kind == ASSIGNMENT_UPDATED:
            self.cache.update(key, project_id=display_value, version=version)
        else:
            logger.debug("Ignoring unknown event kind", extra={"event": event.kind})

    # -------------------------------------------------------------------------
    # Timeouts
    # -------------------------------------------------------------------------

    async def expire_overdue(self, now: float | None = None) -> list[ReconciliationRecord]:
        """Expire records past their deadline and re-check them with the server.

        Returns:
            The records that expired
        """
        now = self._clock() if now is None else now
        overdue = [r for r in self._pending.values() if r.deadline <= now]

        for record in overdue:
            self._finish(record, Outcome.EXPIRED)
            await self._refetch(record)
        return overdue

    async def _refetch(self, record: ReconciliationRecord) -> None:
        key = record.key
        try:
            entity = await self.client.get_entity(key.kind.value, key.entity_id)
        except NotFoundError:
            self.cache.drop(key)
            self.notifier.notify(f"{describe(key)} no longer exists", NoticeLevel.WARNING)
            return
        except TransportError as e:
            logger.warning(
                "Could not confirm assignment; reverting",
                extra={"entity_id": key.entity_id, "error": e.message},
            )
            if key not in self._pending:
                self.cache.update(key, project_id=record.previous_value)
            self.notifier.notify(
                f"Could not confirm the move of {describe(key)}; change reverted",
                NoticeLevel.ERROR,
            )
            return

        if key in self._pending:
            # A newer drag is in flight; it owns the display now
            self.cache.update(key, version=entity.version)
            return

        self._fold_truth(key, entity.project_id, entity.version, entity.status)
        if entity.project_id != record.optimistic_value:
            self.notifier.notify(
                f"{describe(key)} could not be moved; showing current assignment",
                NoticeLevel.WARNING,
            )

    async def run_timeouts(self) -> None:
        """Sweep for overdue records until cancelled."""
        while True:
            await self._sleep(self.config.sweep_interval)
            await self.expire_overdue()

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------

    def connection(self) -> StreamConnection:
        """Build the reconnecting stream connection feeding apply_event()."""
        return StreamConnection(
            connect=self.client.stream_events,
            handler=self.apply_event,
            cursor_provider=lambda: self.cursor,
            policy=self.policy,
            sleep=self._sleep,
            on_state_change=self._on_connection_state,
        )

    def _on_connection_state(self, state: ConnectionState) -> None:
        if state == ConnectionState.BACKOFF and not self._reconnecting:
            self._reconnecting = True
            self.notifier.notify("Live updates interrupted; reconnecting", NoticeLevel.WARNING)
        elif state == ConnectionState.LIVE and self._reconnecting:
            self._reconnecting = False
            self.notifier.notify("Live updates restored", NoticeLevel.INFO)

    async def run(self) -> None:
        """Load state if needed, then stream and sweep timeouts until cancelled.

        Raises:
            StreamDisconnectedError: If reconnect attempts are exhausted
        """
        if self.cursor is None:
            await self.load()

        timeouts = asyncio.create_task(self.run_timeouts())
        try:
            await self.connection().run()
        finally:
            timeouts.cancel()
            try:
                await timeouts
            except asyncio.CancelledError:
                pass
