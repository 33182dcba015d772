"""
Incremental decoder for the server-sent event stream.

Lines are fed one at a time (without their terminator); a complete event is
returned when the blank separator line arrives. Comment lines are heartbeats
and only refresh liveness.

Invariants:
    - Events are emitted in the order their frames arrive
    - A frame without data is not an event
    - last_event_id survives across frames, as required for resume
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Event names sent by the server.
ASSIGNMENT_UPDATED = "assignment.updated"
ENTITY_ARCHIVED = "entity.archived"
ENTITY_RESTORED = "entity.restored"
ENTITY_REMOVED = "entity.removed"
RESYNC_REQUIRED = "resync.required"


@dataclass(frozen=True)
class StreamEvent:
    """One decoded stream frame.

    Attributes:
        kind: Event name (assignment.updated, resync.required, ...)
        sequence: Frame id as an integer, None if absent or not numeric
        data: Decoded JSON payload
    """

    kind: str
    sequence: int | None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def entity_kind(self) -> str | None:
        return self.data.get("entityKind")

    @property
    def entity_id(self) -> str | None:
        return self.data.get("entityId")

    @property
    def new_value(self) -> str | None:
        return self.data.get("newValue")

    @property
    def version(self) -> int | None:
        return self.data.get("version")


class SseDecoder:
    """Line-oriented SSE parser.

    Example:
        >>> decoder = SseDecoder()
        >>> for line in ["event: assignment.updated", "id: 3", 'data: {"entityId": "e1"}', ""]:
        ...     event = decoder.feed(line)
        >>> event.sequence
        3
    """

    def __init__(self) -> None:
        self.last_event_id: str | None = None
        self.retry_ms: int | None = None
        self.comments = 0
        self._event = ""
        self._data: list[str] = []

    def feed(self, line: str) -> StreamEvent | None:
        """Consume one line, returning an event when a frame completes."""
        line = line.rstrip("\r")

        if line == "":
            return self._dispatch()

        if line.startswith(":"):
            self.comments += 1
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif name == "retry":
            if value.isdigit():
                self.retry_ms = int(value)
        return None

    def _dispatch(self) -> StreamEvent | None:
        kind, data_lines = self._event or "message", self._data
        self._event = ""
        self._data = []

        if not data_lines:
            return None

        raw = "\n".join(data_lines)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding frame with malformed data", extra={"event": kind})
            return None
        if not isinstance(data, dict):
            data = {"value": data}

        sequence = None
        if self.last_event_id is not None and self.last_event_id.isdigit():
            sequence = int(self.last_event_id)

        return StreamEvent(kind=kind, sequence=sequence, data=data)
