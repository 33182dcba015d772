"""
Base protocol and types for the entity store.

The entity store holds the current assignment of every trackable entity
(employee, equipment). Its storage format is not owned by this package; any
backend that honours the EntityStore protocol can be plugged in.

Invariants:
    - An entity's assignment is a single scalar: a project id, None, or the
      repair-shop sentinel, so one entity can never have two owners
    - Every successful write bumps the version by exactly one
    - compare_and_swap() only succeeds when the stored version matches

How to change safely:
    - Protocol changes require updating all implementations
    - Keep scan() returning raw records, the conflict detector relies on it
"""

from __future__ import annotations

import time
from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

# Assignment value for assets sent to the repair shop instead of a project.
REPAIR_SHOP = "repair-shop"


class StoreError(Exception):
    """Base exception for entity store operations."""

    pass


class EntityKind(str, Enum):
    """Kinds of trackable entities."""

    EMPLOYEE = "employee"
    EQUIPMENT = "equipment"

    @classmethod
    def parse(cls, value: str | EntityKind) -> EntityKind:
        """Parse a kind, accepting the plural route forms."""
        if isinstance(value, EntityKind):
            return value
        normalized = value.strip().lower()
        if normalized == "employees":
            normalized = "employee"
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown entity kind '{value}'. Must be one of: employee, equipment")


class EntityStatus(str, Enum):
    """Lifecycle status of an entity."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    REMOVED = "removed"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Entity:
    """Current assignment state of one employee or piece of equipment.

    Attributes:
        kind: Entity kind
        entity_id: Entity identifier
        assignment: Project id, None (unassigned) or REPAIR_SHOP
        status: Lifecycle status
        version: Write counter used for compare-and-swap
        updated_at: Last write timestamp (Unix ms)
    """

    kind: EntityKind
    entity_id: str
    assignment: str | None = None
    status: EntityStatus = EntityStatus.ACTIVE
    version: int = 1
    updated_at: int = 0

    @property
    def key(self) -> tuple[EntityKind, str]:
        return (self.kind, self.entity_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON shape used on the wire."""
        return {
            "entityKind": self.kind.value,
            "entityId": self.entity_id,
            "projectId": self.assignment,
            "status": self.status.value,
            "version": self.version,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Entity:
        """Create from the wire/seed dictionary shape."""
        return cls(
            kind=EntityKind.parse(data["entityKind"]),
            entity_id=str(data["entityId"]),
            assignment=data.get("projectId"),
            status=EntityStatus(data.get("status", EntityStatus.ACTIVE.value)),
            version=int(data.get("version", 1)),
            updated_at=int(data.get("updatedAt", 0)),
        )


@runtime_checkable
class EntityStore(Protocol):
    """Protocol for entity store backends.

    Concurrency contract:
        - compare_and_swap() is atomic per entity
        - Writes to different entities never block each other
        - A failed compare_and_swap() leaves the record untouched

    Example:
        >>> store = InMemoryEntityStore()
        >>> await store.insert(Entity(EntityKind.EMPLOYEE, "emp-1"))
        >>> current = await store.get(EntityKind.EMPLOYEE, "emp-1")
        >>> updated = await store.compare_and_swap(
        ...     replace(current, assignment="proj-1"), expected_version=current.version
        ... )
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (create schema, open files)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def get(self, kind: EntityKind, entity_id: str) -> Entity | None:
        """Read the current record of one entity, None if absent."""
        ...

    @abstractmethod
    async def insert(self, entity: Entity) -> Entity:
        """Insert a new entity at version 1.

        Raises:
            StoreError: If the entity already exists
        """
        ...

    @abstractmethod
    async def compare_and_swap(self, entity: Entity, expected_version: int) -> Entity | None:
        """Write assignment and status if the stored version matches.

        Args:
            entity: Desired state (kind, entity_id, assignment, status are used)
            expected_version: Version the caller read before deciding

        Returns:
            The stored entity at expected_version + 1, or None if the entity
            is missing or its version moved on
        """
        ...

    @abstractmethod
    async def list_entities(self, kind: EntityKind | None = None) -> list[Entity]:
        """Current state of every entity, optionally filtered by kind."""
        ...

    @abstractmethod
    async def scan(self) -> list[Entity]:
        """Every raw record as physically stored, duplicates included."""
        ...

    @abstractmethod
    async def import_records(self, entities: list[Entity]) -> int:
        """Bulk write records without version checks or events.

        This is the out-of-band path used by imports and manual data fixes.

        Returns:
            Number of records written
        """
        ...


def create_entity_store(config: ServerConfig) -> EntityStore:
    """Factory function to create an entity store from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate EntityStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryEntityStore
    from .sqlite import SqliteEntityStore

    if config.store.backend == StoreBackend.MEMORY:
        return InMemoryEntityStore()
    elif config.store.backend == StoreBackend.SQLITE:
        return SqliteEntityStore(
            data_dir=config.store.data_dir,
            wal_mode=config.store.wal_mode,
            busy_timeout_ms=config.store.busy_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.store.backend}")
