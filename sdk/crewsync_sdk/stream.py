"""
Reconnecting event stream connection.

The connection walks an explicit state machine

    CONNECTING ──▶ LIVE ──▶ BACKOFF ──▶ CONNECTING ...
         │                      ▲
         └──────── failure ─────┘          stop() / exhausted ──▶ CLOSED

Every attempt resumes from the cursor reported by cursor_provider, so the
server replays whatever was missed while disconnected.

Invariants:
    - Delays follow BackoffPolicy: 1s, 2s, 4s ... capped at the ceiling
    - The failure counter resets as soon as a connection is established
    - StreamDisconnectedError is raised only after max_attempts consecutive
      failures; anything less is retried

How to change safely:
    - Keep sleep injectable, tests drive the schedule without waiting
    - Handler exceptions that are not CrewSyncError are bugs and propagate
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from enum import Enum

from .config import BackoffPolicy
from .errors import CrewSyncError, StreamDisconnectedError
from .sse import StreamEvent

logger = logging.getLogger(__name__)

Connect = Callable[[int | None], AbstractAsyncContextManager[AsyncIterator[StreamEvent]]]
Handler = Callable[[StreamEvent], Awaitable[None]]


class ConnectionState(Enum):
    """Lifecycle of the client side of the stream."""

    CONNECTING = "connecting"
    LIVE = "live"
    BACKOFF = "backoff"
    CLOSED = "closed"


class StreamConnection:
    """Keeps an event stream open, reconnecting with exponential backoff.

    Attributes:
        state: Current connection state
        failures: Consecutive failed attempts since the last successful connect
        attempts: Total connection attempts made

    Example:
        >>> connection = StreamConnection(
        ...     connect=client.stream_events,
        ...     handler=reconciler.apply_event,
        ...     cursor_provider=lambda: reconciler.cursor,
        ... )
        >>> await connection.run()
    """

    def __init__(
        self,
        connect: Connect,
        handler: Handler,
        cursor_provider: Callable[[], int | None],
        policy: BackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_state_change: Callable[[ConnectionState], None] | None = None,
    ) -> None:
        """Initialize the connection.

        Args:
            connect: Opens the stream from a cursor (e.g. client.stream_events)
            handler: Awaited for each event, in order
            cursor_provider: Returns the last processed sequence
            policy: Backoff schedule
            sleep: Awaitable delay, injectable for tests
            on_state_change: Called on every state transition
        """
        self.connect = connect
        self.handler = handler
        self.cursor_provider = cursor_provider
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._on_state_change = on_state_change
        self.state = ConnectionState.CLOSED
        self.failures = 0
        self.attempts = 0
        self.last_error: str | None = None
        self._stopped = False

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        logger.debug(
            "Stream state change",
            extra={"from": self.state.value, "to": state.value, "failures": self.failures},
        )
        self.state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    def stop(self) -> None:
        """Ask run() to return after the event being handled."""
        self._stopped = True

    async def run(self) -> None:
        """Stream until stop() is called.

        Raises:
            StreamDisconnectedError: After policy.max_attempts consecutive failures
        """
        self._stopped = False
        try:
            while not self._stopped:
                await self._attempt()
                if self._stopped:
                    break

                self.failures += 1
                if self.policy.max_attempts and self.failures >= self.policy.max_attempts:
                    raise StreamDisconnectedError(
                        f"Event stream unavailable after {self.failures} attempts",
                        attempts=self.failures,
                        last_error=self.last_error,
                    )

                delay = self.policy.delay(self.failures)
                self._set_state(ConnectionState.BACKOFF)
                logger.info(
                    "Event stream reconnecting",
                    extra={"delay": delay, "failures": self.failures, "error": self.last_error},
                )
                await self._sleep(delay)
        finally:
            self._set_state(ConnectionState.CLOSED)

    async def _attempt(self) -> None:
        """One connection lifetime; returns when the stream ends or fails."""
        self._set_state(ConnectionState.CONNECTING)
        self.attempts += 1
        since = self.cursor_provider()

        try:
            async with self.connect(since) as events:
                self.failures = 0
                self._set_state(ConnectionState.LIVE)
                logger.info("Event stream connected", extra={"since": since})

                async for event in events:
                    await self.handler(event)
                    if self._stopped:
                        return
            self.last_error = "stream closed by server"
        except CrewSyncError as e:
            self.last_error = e.message
            logger.warning("Event stream failed", extra={"since": since, "error": e.message})
