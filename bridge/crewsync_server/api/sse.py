"""
Server-sent event frame encoding.

Frame layout (one per event, terminated by a blank line):

    event: assignment.updated
    id: 42
    data: {"entityKind": "employee", "entityId": "emp-1", ...}

Invariants:
    - data is always a single line of compact JSON
    - id is the event's global sequence number, clients echo it back as
      Last-Event-ID or ?since= when they reconnect
"""

from __future__ import annotations

import json

from ..events.base import AssignmentEvent, ControlEvent

CONTENT_TYPE = "text/event-stream"


def encode_event(event: AssignmentEvent | ControlEvent) -> bytes:
    """Encode an assignment or control event as one SSE frame."""
    data = json.dumps(event.payload(), separators=(",", ":"))
    return f"event: {event.event_name}\nid: {event.sequence}\ndata: {data}\n\n".encode()


def encode_comment(text: str = "keepalive") -> bytes:
    """Comment frame, ignored by clients, used as a heartbeat."""
    return f": {text}\n\n".encode()


def encode_retry(retry_ms: int) -> bytes:
    """Reconnect delay hint for EventSource-style clients."""
    return f"retry: {retry_ms}\n\n".encode()
