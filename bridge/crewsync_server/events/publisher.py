"""
Stream publisher: ordered fan-out of log events to live subscriptions.

Each subscription walks the state machine

    CONNECTING ──▶ LIVE ──▶ DRAINING ──▶ CLOSED
                     └──────────────────────▲

A subscription that supplies a resume cursor first receives the buffered gap,
or exactly one resync.required control event when the gap is no longer
buffered, and then live events.

Invariants:
    - Items handed to one subscription have strictly increasing sequences
    - The replay is held outside the bounded queue, so any buffered gap can be
      resumed; the queue bound applies to live events only
    - A subscription whose live queue overflows is closed, never retried
    - Closing one subscription never affects others or in-flight mutations

How to change safely:
    - offer() runs inside the log's critical section, keep it non-blocking
    - Keep heartbeat handling in Subscription.stream(), not in the log
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import AsyncIterator
from enum import Enum

from .base import RESYNC_REQUIRED, AssignmentEvent, ControlEvent
from .log import EventLog

logger = logging.getLogger(__name__)

StreamItem = AssignmentEvent | ControlEvent

_DRAIN = object()


class SubscriptionState(Enum):
    """Lifecycle of a stream subscription."""

    CONNECTING = "connecting"
    LIVE = "live"
    DRAINING = "draining"
    CLOSED = "closed"


class Subscription:
    """One open stream connection and its delivery queue.

    Attributes:
        subscription_id: Unique identifier (for logs)
        state: Current lifecycle state
        last_delivered: Last sequence written to the client, None before any
    """

    def __init__(self, subscription_id: str, queue_size: int = 1000) -> None:
        self.subscription_id = subscription_id
        self.state = SubscriptionState.CONNECTING
        self.last_delivered: int | None = None
        self._last_enqueued: int | None = None
        self._backlog: deque = deque()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    @property
    def is_open(self) -> bool:
        return self.state in (SubscriptionState.CONNECTING, SubscriptionState.LIVE)

    @property
    def pending(self) -> int:
        """Number of items queued but not yet delivered."""
        return len(self._backlog) + self._queue.qsize()

    def offer(self, item: StreamItem) -> bool:
        """Queue an item for delivery.

        Returns:
            False if the subscription can no longer accept items
        """
        if not self.is_open:
            return False

        if self._last_enqueued is not None and item.sequence <= self._last_enqueued:
            logger.warning(
                "Dropping out-of-order item",
                extra={
                    "subscription_id": self.subscription_id,
                    "sequence": item.sequence,
                    "last_enqueued": self._last_enqueued,
                },
            )
            return True

        if self.state == SubscriptionState.CONNECTING:
            # Replay while opening; the live queue starts empty
            self._backlog.append(item)
            self._last_enqueued = item.sequence
            return True

        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning(
                "Subscriber queue full; closing subscription",
                extra={"subscription_id": self.subscription_id, "sequence": item.sequence},
            )
            self.close()
            return False

        self._last_enqueued = item.sequence
        return True

    def mark_delivered(self, sequence: int) -> None:
        self.last_delivered = sequence

    def drain(self) -> None:
        """Stop accepting items; queued items are still delivered."""
        if not self.is_open:
            return
        self.state = SubscriptionState.DRAINING
        try:
            self._queue.put_nowait(_DRAIN)
        except asyncio.QueueFull:
            pass  # stream() notices DRAINING once the queue empties

    def close(self) -> None:
        self.state = SubscriptionState.CLOSED
        try:
            self._queue.put_nowait(_DRAIN)
        except asyncio.QueueFull:
            pass  # stream() checks the state before every wait

    async def stream(self, heartbeat_interval: float) -> AsyncIterator[StreamItem | None]:
        """Yield queued items in order; None means "send a heartbeat".

        Args:
            heartbeat_interval: Idle seconds before a heartbeat is due

        Yields:
            StreamItem to deliver, or None when the connection was idle
        """
        while True:
            if self.state == SubscriptionState.CLOSED:
                return
            if self._backlog:
                yield self._backlog.popleft()
                continue
            if self.state == SubscriptionState.DRAINING and self._queue.empty():
                self.state = SubscriptionState.CLOSED
                return

            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                yield None
                continue

            if item is _DRAIN:
                continue
            yield item


class StreamPublisher:
    """Fans out log events to every open subscription in sequence order.

    Example:
        >>> publisher = StreamPublisher(log, heartbeat_interval=25.0)
        >>> sub = await publisher.subscribe(since=40)
        >>> async for item in sub.stream(publisher.heartbeat_interval):
        ...     write_frame(item)
    """

    def __init__(
        self,
        log: EventLog,
        heartbeat_interval: float = 25.0,
        queue_size: int = 1000,
    ) -> None:
        """Initialize the publisher.

        Args:
            log: Event log to fan out from
            heartbeat_interval: Idle seconds between heartbeats
            queue_size: Per-subscription delivery queue bound
        """
        self.log = log
        self.heartbeat_interval = heartbeat_interval
        self.queue_size = queue_size
        self._subscriptions: dict[str, Subscription] = {}
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return sum(1 for sub in self._subscriptions.values() if sub.is_open)

    async def subscribe(self, since: int | None = None) -> Subscription:
        """Open a subscription, replaying from since when given.

        Args:
            since: Last sequence the client processed, None for live only

        Returns:
            A LIVE subscription already holding the replay (or a single
            resync.required control event) ahead of its live queue
        """
        sub = Subscription(uuid.uuid4().hex, queue_size=self.queue_size)
        if self._closed:
            sub.close()
            return sub

        def on_gap(head: int) -> None:
            sub.offer(ControlEvent(RESYNC_REQUIRED, head, reason=f"cursor {since} not buffered"))

        cursor = await self.log.open_cursor(since, sub.offer, on_gap=on_gap)

        if sub.state == SubscriptionState.CONNECTING:
            sub.state = SubscriptionState.LIVE
        self._subscriptions[sub.subscription_id] = sub

        logger.info(
            "Subscription opened",
            extra={
                "subscription_id": sub.subscription_id,
                "since": since,
                "head": cursor.head,
                "replayed": cursor.replayed,
                "resync": cursor.gap,
                "subscribers": self.subscriber_count,
            },
        )
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Close a subscription and detach it from the log."""
        sub.close()
        self.log.remove_listener(sub.offer)
        self._subscriptions.pop(sub.subscription_id, None)
        logger.info(
            "Subscription closed",
            extra={
                "subscription_id": sub.subscription_id,
                "last_delivered": sub.last_delivered,
                "subscribers": self.subscriber_count,
            },
        )

    def close(self) -> None:
        """Drain every subscription and refuse new ones."""
        self._closed = True
        for sub in list(self._subscriptions.values()):
            sub.drain()
            self.log.remove_listener(sub.offer)
        logger.info("Publisher draining", extra={"subscriptions": len(self._subscriptions)})
