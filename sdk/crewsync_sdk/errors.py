"""
Error types for CrewSync SDK.

This module defines all exception types raised by the SDK:
- CrewSyncError: Base exception
- NotFoundError: Entity no longer exists
- ConflictError: Another writer changed the entity first
- ValidationError: Request rejected as malformed
- TransportError: The server could not be reached
- StreamDisconnectedError: Reconnect attempts exhausted

Invariants:
    - All errors inherit from CrewSyncError
    - Mutation errors carry the server's current value so callers can roll back
    - Error codes match the server's errorKind strings where one exists
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Server error kinds as they appear on the wire."""

    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    STREAM_DISCONNECTED = "StreamDisconnected"


class CrewSyncError(Exception):
    """Base exception for all CrewSync SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "CREWSYNC_ERROR"
        self.details = details or {}


class NotFoundError(CrewSyncError):
    """Entity not found.

    Raised when:
    - The entity never existed
    - The entity was removed (possibly by another client)
    """

    def __init__(
        self,
        message: str,
        entity_kind: str,
        entity_id: str,
    ) -> None:
        super().__init__(
            message,
            code=ErrorKind.NOT_FOUND.value,
            details={"entity_kind": entity_kind, "entity_id": entity_id},
        )
        self.entity_kind = entity_kind
        self.entity_id = entity_id

    @property
    def current_value(self) -> None:
        return None


class ConflictError(CrewSyncError):
    """Mutation lost a compare-and-swap race.

    Attributes:
        current_value: Assignment now stored on the server
        current_version: Entity version now stored on the server
        entity: Full entity payload returned by the server, if any
    """

    def __init__(
        self,
        message: str,
        current_value: str | None,
        entity: dict[str, Any] | None = None,
    ) -> None:
        entity = entity or {}
        super().__init__(
            message,
            code=ErrorKind.CONFLICT.value,
            details={"current_value": current_value, "entity": entity},
        )
        self.current_value = current_value
        self.entity = entity
        self.current_version: int | None = entity.get("version")


class ValidationError(CrewSyncError):
    """Request was rejected as malformed.

    Raised when:
    - The entity kind is unknown
    - The body does not match the expected shape
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details={"status": status})
        self.status = status


class TransportError(CrewSyncError):
    """The server could not be reached or answered unexpectedly.

    Raised when:
    - Connection is refused or times out
    - The server returns a 5xx response
    """

    def __init__(
        self,
        message: str,
        address: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSPORT_ERROR",
            details={"address": address, "status": status},
        )
        self.address = address
        self.status = status


class StreamDisconnectedError(CrewSyncError):
    """The event stream could not be re-established.

    Raised only after the configured number of consecutive reconnect
    attempts has failed; single failures are retried with backoff.
    """

    def __init__(self, message: str, attempts: int, last_error: str | None = None) -> None:
        super().__init__(
            message,
            code=ErrorKind.STREAM_DISCONNECTED.value,
            details={"attempts": attempts, "last_error": last_error},
        )
        self.attempts = attempts
        self.last_error = last_error


def error_from_response(
    status: int,
    payload: dict[str, Any],
    entity_kind: str = "",
    entity_id: str = "",
) -> CrewSyncError:
    """Build the SDK error matching a non-2xx server response.

    Args:
        status: HTTP status code
        payload: Decoded JSON body (may be empty)
        entity_kind: Kind of the entity the request targeted
        entity_id: Identifier of the entity the request targeted

    Returns:
        The most specific CrewSyncError for the response
    """
    message = payload.get("error") or f"Server returned HTTP {status}"
    kind = payload.get("errorKind")

    if kind == ErrorKind.NOT_FOUND.value or status == 404:
        return NotFoundError(message, entity_kind, entity_id)
    if kind == ErrorKind.CONFLICT.value or status == 409:
        return ConflictError(message, payload.get("currentValue"), payload.get("entity"))
    if 400 <= status < 500:
        return ValidationError(message, status=status)
    return TransportError(message, status=status)
