"""
Assignment mutation service for CrewSync.

The AssignmentService is the only path by which an entity's assignment or
lifecycle status may change. Each successful write is followed by exactly one
event appended to the EventLog; a failed write emits nothing.

Invariants:
    - Exclusivity is structural: assignment is one scalar per entity, so only
      the entity's own record is updated, never a "project" record
    - Writes are compare-and-swap on the entity version; losing a race is
      reported as ConflictError carrying the now-current entity
    - Removed entities behave as missing (NotFoundError)
    - No lock is held across store I/O; CAS failure is the only contention signal

How to change safely:
    - Every new mutation must go through _commit()
    - Emit the event only after the store write succeeded
"""

from __future__ import annotations

import logging
from dataclasses import replace

from ..errors import ConflictError, NotFoundError
from ..events.base import AssignmentEvent, EventKind
from ..events.log import EventLog
from ..store.base import REPAIR_SHOP, Entity, EntityKind, EntityStatus, EntityStore

logger = logging.getLogger(__name__)


def normalize_assignment(project_id: str | None) -> str | None:
    """Validate an assignment value.

    Accepts a project id, None (unassigned) or the repair-shop sentinel.
    Blank strings mean unassigned.

    Raises:
        ValueError: If the value is not a string or None
    """
    if project_id is None:
        return None
    if not isinstance(project_id, str):
        raise ValueError(f"projectId must be a string or null, got {type(project_id).__name__}")
    project_id = project_id.strip()
    if not project_id or project_id == "unassigned":
        return None
    if project_id == "repair":
        return REPAIR_SHOP
    return project_id


class AssignmentService:
    """Validates and applies assignment changes.

    Thread safety:
        Safe for concurrent use. Concurrent calls on different entities
        proceed independently; calls on the same entity race on CAS.

    Example:
        >>> service = AssignmentService(store, log)
        >>> entity, event = await service.assign("employee", "emp-1", "proj-1")
        >>> event.sequence
        1
    """

    def __init__(self, store: EntityStore, log: EventLog) -> None:
        """Initialize the service.

        Args:
            store: Entity store (single source of truth)
            log: Event log receiving one event per successful write
        """
        self.store = store
        self.log = log

    async def get(self, entity_kind: str | EntityKind, entity_id: str) -> Entity:
        """Read one live entity.

        Raises:
            NotFoundError: If the entity is missing or removed
        """
        kind = EntityKind.parse(entity_kind)
        entity = await self.store.get(kind, entity_id)
        if entity is None or entity.status == EntityStatus.REMOVED:
            raise NotFoundError(kind.value, entity_id)
        return entity

    async def list_entities(self, entity_kind: str | EntityKind | None = None) -> list[Entity]:
        """Current state of every entity that has not been removed."""
        kind = EntityKind.parse(entity_kind) if entity_kind is not None else None
        entities = await self.store.list_entities(kind)
        return [e for e in entities if e.status != EntityStatus.REMOVED]

    async def assign(
        self,
        entity_kind: str | EntityKind,
        entity_id: str,
        project_id: str | None,
        expected_version: int | None = None,
    ) -> tuple[Entity, AssignmentEvent]:
        """Move an entity to a project (or unassign it).

        Args:
            entity_kind: employee or equipment
            entity_id: Entity identifier
            project_id: Target project, None, or REPAIR_SHOP
            expected_version: Version the caller based its change on; when
                omitted the freshly read version is used

        Returns:
            Tuple of (stored entity, emitted assignment.updated event)

        Raises:
            NotFoundError: If the entity does not exist
            ConflictError: If another writer changed the entity first
            ValueError: If project_id is malformed
        """
        assignment = normalize_assignment(project_id)
        current = await self.get(entity_kind, entity_id)
        return await self._commit(
            current,
            replace(current, assignment=assignment),
            EventKind.ASSIGNMENT_UPDATED,
            expected_version,
        )

    async def archive(
        self,
        entity_kind: str | EntityKind,
        entity_id: str,
        expected_version: int | None = None,
    ) -> tuple[Entity, AssignmentEvent]:
        """Soft-archive an entity; its assignment is kept."""
        current = await self.get(entity_kind, entity_id)
        return await self._commit(
            current,
            replace(current, status=EntityStatus.ARCHIVED),
            EventKind.ENTITY_ARCHIVED,
            expected_version,
        )

    async def restore(
        self,
        entity_kind: str | EntityKind,
        entity_id: str,
        expected_version: int | None = None,
    ) -> tuple[Entity, AssignmentEvent]:
        """Return an archived entity to active status."""
        current = await self.get(entity_kind, entity_id)
        return await self._commit(
            current,
            replace(current, status=EntityStatus.ACTIVE),
            EventKind.ENTITY_RESTORED,
            expected_version,
        )

    async def remove(
        self,
        entity_kind: str | EntityKind,
        entity_id: str,
        expected_version: int | None = None,
    ) -> tuple[Entity, AssignmentEvent]:
        """Soft-delete an entity and release its assignment."""
        current = await self.get(entity_kind, entity_id)
        return await self._commit(
            current,
            replace(current, status=EntityStatus.REMOVED, assignment=None),
            EventKind.ENTITY_REMOVED,
            expected_version,
        )

    async def _commit(
        self,
        current: Entity,
        desired: Entity,
        event_kind: EventKind,
        expected_version: int | None,
    ) -> tuple[Entity, AssignmentEvent]:
        base_version = current.version if expected_version is None else expected_version

        stored = None
        if base_version == current.version:
            stored = await self.store.compare_and_swap(desired, expected_version=base_version)

        if stored is None:
            latest = await self.store.get(current.kind, current.entity_id)
            if latest is None or latest.status == EntityStatus.REMOVED:
                raise NotFoundError(current.kind.value, current.entity_id)
            logger.info(
                "Assignment conflict",
                extra={
                    "entity_kind": current.kind.value,
                    "entity_id": current.entity_id,
                    "expected_version": base_version,
                    "current_version": latest.version,
                },
            )
            raise ConflictError(latest)

        event = await self.log.append(
            event_kind,
            stored.kind,
            stored.entity_id,
            stored.assignment,
            version=stored.version,
        )

        logger.info(
            "Entity updated",
            extra={
                "event": event_kind.value,
                "entity_kind": stored.kind.value,
                "entity_id": stored.entity_id,
                "assignment": stored.assignment,
                "version": stored.version,
                "sequence": event.sequence,
            },
        )
        return stored, event
