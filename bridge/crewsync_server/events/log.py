"""
Sequenced event log with a bounded replay buffer.

The EventLog assigns every emitted AssignmentEvent a sequence number and keeps
the most recent events in a ring buffer so reconnecting subscribers can catch
up incrementally.

Invariants:
    - Sequence numbers start at 1, strictly increase, never repeat or skip
    - Assigning a number, inserting into the buffer and notifying listeners
      happen in one critical section, so every observer sees one total order
    - The buffer is gapless: it always holds a contiguous sequence range
    - Eviction is oldest-first, by count and optionally by age

How to change safely:
    - Listeners run inside the critical section, they must not block or await
    - Keep replay_since() and open_cursor() sharing the same gap rules
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import GapTooLargeError
from ..store.base import EntityKind
from .base import AssignmentEvent, EventKind

logger = logging.getLogger(__name__)

# A listener returns False to be detached (e.g. its subscriber is gone).
Listener = Callable[[AssignmentEvent], bool]


@dataclass
class Cursor:
    """Result of opening a cursor on the log.

    Attributes:
        head: Last assigned sequence at the time the cursor opened
        replayed: Number of buffered events handed to the listener
        gap: True if the requested position could not be replayed
    """

    head: int
    replayed: int = 0
    gap: bool = False


class EventLog:
    """Total-order event numbering with a short-term replay buffer.

    Thread safety:
        Uses an asyncio lock around every mutation. The critical sections
        contain no suspension points.

    Example:
        >>> log = EventLog(capacity=1000)
        >>> event = await log.append(
        ...     EventKind.ASSIGNMENT_UPDATED, EntityKind.EMPLOYEE, "emp-1", "proj-1", version=2
        ... )
        >>> log.replay_since(event.sequence - 1)
        [AssignmentEvent(sequence=1, ...)]
    """

    def __init__(
        self,
        capacity: int = 1000,
        max_age_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the log.

        Args:
            capacity: Maximum number of retained events
            max_age_seconds: Drop events older than this (0 disables)
            clock: Wall clock in seconds, injectable for tests
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._buffer: deque[AssignmentEvent] = deque()
        self._head = 0
        self._listeners: list[Listener] = []
        self._lock = asyncio.Lock()

    @property
    def head(self) -> int:
        """Last assigned sequence number (0 before the first event)."""
        return self._head

    @property
    def oldest(self) -> int | None:
        """Oldest retained sequence number, None if the buffer is empty."""
        return self._buffer[0].sequence if self._buffer else None

    def __len__(self) -> int:
        return len(self._buffer)

    async def append(
        self,
        kind: EventKind,
        entity_kind: EntityKind,
        entity_id: str,
        new_value: str | None,
        version: int,
    ) -> AssignmentEvent:
        """Assign the next sequence number and make the event visible.

        Args:
            kind: Event kind
            entity_kind: Kind of the changed entity
            entity_id: Identifier of the changed entity
            new_value: Assignment after the change
            version: Entity version after the change

        Returns:
            The sequenced, immutable event
        """
        async with self._lock:
            now = self._clock()
            self._head += 1
            event = AssignmentEvent(
                sequence=self._head,
                kind=kind,
                entity_kind=entity_kind,
                entity_id=entity_id,
                new_value=new_value,
                version=version,
                timestamp=int(now * 1000),
            )
            self._buffer.append(event)
            self._evict(now)
            self._notify(event)

        logger.debug(
            "Event appended",
            extra={
                "sequence": event.sequence,
                "event": kind.value,
                "entity_id": entity_id,
            },
        )
        return event

    def replay_since(self, since: int) -> list[AssignmentEvent]:
        """Return retained events with sequence > since, in order.

        Args:
            since: Last sequence the caller has seen

        Returns:
            Ordered list of events (empty if the caller is up to date)

        Raises:
            GapTooLargeError: If events after since were evicted, or since
                is ahead of the head (cursor from a previous server life)
            ValueError: If since is negative
        """
        self._evict(self._clock())
        return self._replay(since)

    async def open_cursor(
        self,
        since: int | None,
        listener: Listener,
        on_gap: Callable[[int], None] | None = None,
    ) -> Cursor:
        """Replay from since and register a live listener atomically.

        No event can be appended between the replay and the registration,
        so the listener observes every sequence after since exactly once.

        Args:
            since: Last sequence seen by the subscriber, None for live only
            listener: Receives replayed events, then live events
            on_gap: Called with the head when since cannot be replayed

        Returns:
            Cursor describing what was replayed
        """
        async with self._lock:
            self._evict(self._clock())
            cursor = Cursor(head=self._head)

            if since is not None:
                try:
                    backlog = self._replay(since)
                except GapTooLargeError as e:
                    logger.info(
                        "Cursor too old for replay",
                        extra={"since": e.since, "oldest": e.oldest, "head": e.head},
                    )
                    cursor.gap = True
                    if on_gap is not None:
                        on_gap(self._head)
                else:
                    for event in backlog:
                        listener(event)
                    cursor.replayed = len(backlog)

            self._listeners.append(listener)

        return cursor

    def remove_listener(self, listener: Listener) -> None:
        """Detach a listener (no-op if already detached)."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def recent(self, limit: int = 50) -> list[AssignmentEvent]:
        """Most recent retained events, newest last."""
        if limit <= 0:
            return []
        start = max(len(self._buffer) - limit, 0)
        return list(itertools.islice(self._buffer, start, None))

    def _replay(self, since: int) -> list[AssignmentEvent]:
        if since < 0:
            raise ValueError(f"since must be >= 0, got {since}")
        if since > self._head:
            raise GapTooLargeError(since, self.oldest, self._head)
        if since == self._head:
            return []

        oldest = self.oldest
        if oldest is None or since + 1 < oldest:
            raise GapTooLargeError(since, oldest, self._head)

        return list(itertools.islice(self._buffer, since + 1 - oldest, None))

    def _evict(self, now: float) -> None:
        while len(self._buffer) > self.capacity:
            self._buffer.popleft()

        if self.max_age_seconds > 0:
            cutoff_ms = int((now - self.max_age_seconds) * 1000)
            while self._buffer and self._buffer[0].timestamp < cutoff_ms:
                self._buffer.popleft()

    def _notify(self, event: AssignmentEvent) -> None:
        for listener in list(self._listeners):
            try:
                keep = listener(event)
            except Exception:
                logger.exception("Event listener failed; detaching it")
                keep = False
            if keep is False:
                self.remove_listener(listener)
