"""
Error taxonomy for CrewSync server.

Every failure a caller can act on has an ErrorKind:
- NotFound: entity no longer exists, client must drop it from its cache
- Conflict: compare-and-swap lost a race, client must adopt the returned value
- GapTooLarge: resume cursor is older than the replay buffer, full resync needed
- StreamDisconnected: transient transport failure, retried with backoff

Invariants:
    - Mutation errors carry enough state for the client to re-render from truth
    - Error kinds are stable strings, they appear on the wire
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .store.base import Entity


class ErrorKind(str, Enum):
    """Wire-visible error kinds."""

    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    GAP_TOO_LARGE = "GapTooLarge"
    STREAM_DISCONNECTED = "StreamDisconnected"


class SyncError(Exception):
    """Base exception for CrewSync server errors."""

    kind: ErrorKind

    def to_dict(self) -> dict[str, Any]:
        """Error payload returned to HTTP callers."""
        return {"errorKind": self.kind.value, "error": str(self)}


class NotFoundError(SyncError):
    """Entity does not exist (or has been removed)."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity_kind: str, entity_id: str) -> None:
        super().__init__(f"{entity_kind} '{entity_id}' not found")
        self.entity_kind = entity_kind
        self.entity_id = entity_id

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["currentValue"] = None
        return payload


class ConflictError(SyncError):
    """Compare-and-swap lost a race against another writer.

    Attributes:
        current: The entity as it is now stored
    """

    kind = ErrorKind.CONFLICT

    def __init__(self, current: Entity) -> None:
        super().__init__(
            f"{current.kind.value} '{current.entity_id}' was modified concurrently "
            f"(now at version {current.version})"
        )
        self.current = current

    @property
    def current_value(self) -> str | None:
        return self.current.assignment

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["currentValue"] = self.current.assignment
        payload["entity"] = self.current.to_dict()
        return payload


class GapTooLargeError(SyncError):
    """Resume cursor cannot be served from the replay buffer.

    Attributes:
        since: Cursor the subscriber asked to resume from
        oldest: Oldest sequence still retained (None if buffer empty)
        head: Last sequence assigned
    """

    kind = ErrorKind.GAP_TOO_LARGE

    def __init__(self, since: int, oldest: int | None, head: int) -> None:
        super().__init__(
            f"Cannot replay from sequence {since}: oldest retained is {oldest}, head is {head}"
        )
        self.since = since
        self.oldest = oldest
        self.head = head