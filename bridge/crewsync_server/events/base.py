"""
Event types for the assignment stream.

Invariants:
    - AssignmentEvent is immutable once emitted
    - sequence numbers are assigned only by the EventLog
    - Control events never enter the replay buffer

How to change safely:
    - New event kinds must also be handled by the SDK reconciler
    - Never rename wire fields, clients persist cursors across deploys
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..store.base import EntityKind

# Control event telling a subscriber to discard its cache and refetch.
RESYNC_REQUIRED = "resync.required"


class EventKind(str, Enum):
    """Kinds of entity change events."""

    ASSIGNMENT_UPDATED = "assignment.updated"
    ENTITY_ARCHIVED = "entity.archived"
    ENTITY_RESTORED = "entity.restored"
    ENTITY_REMOVED = "entity.removed"


@dataclass(frozen=True)
class AssignmentEvent:
    """A sequenced change to one entity.

    Attributes:
        sequence: Global, gapless sequence number
        kind: Event kind
        entity_kind: Kind of the changed entity
        entity_id: Identifier of the changed entity
        new_value: Assignment after the change
        version: Entity version after the change
        timestamp: Emission time (Unix ms)
    """

    sequence: int
    kind: EventKind
    entity_kind: EntityKind
    entity_id: str
    new_value: str | None
    version: int
    timestamp: int

    @property
    def event_name(self) -> str:
        return self.kind.value

    def payload(self) -> dict[str, Any]:
        """The `data:` object of the SSE envelope."""
        return {
            "entityKind": self.entity_kind.value,
            "entityId": self.entity_id,
            "newValue": self.new_value,
            "version": self.version,
            "timestamp": self.timestamp,
        }

    def to_dict(self) -> dict[str, Any]:
        """Full representation including the envelope fields."""
        return {"event": self.kind.value, "id": self.sequence, **self.payload()}


@dataclass(frozen=True)
class ControlEvent:
    """A publisher-generated instruction that is not part of the log.

    Attributes:
        name: Control event name (e.g. resync.required)
        sequence: Sequence the subscriber should resume from
        reason: Human readable cause
    """

    name: str
    sequence: int
    reason: str = ""

    @property
    def event_name(self) -> str:
        return self.name

    def payload(self) -> dict[str, Any]:
        return {"sequence": self.sequence, "reason": self.reason}
