"""
Client-side entity cache.

One cache holds both employees and equipment, keyed by EntityKey so an
employee and a piece of equipment with the same id never collide. Every
change goes through EntityCache.update() (or drop/clear), which is also where
change listeners are notified.

Invariants:
    - An entity appears at most once; it has exactly one project_id
    - version only moves forward through update()
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from .client import Entity

logger = logging.getLogger(__name__)

# Assignment value for assets sent to the repair shop instead of a project.
REPAIR_SHOP = "repair-shop"

_UNSET: Any = object()


class EntityKind(str, Enum):
    """Kinds of trackable entities."""

    EMPLOYEE = "employee"
    EQUIPMENT = "equipment"

    @classmethod
    def parse(cls, value: str | EntityKind) -> EntityKind:
        if isinstance(value, EntityKind):
            return value
        normalized = value.strip().lower()
        if normalized == "employees":
            normalized = "employee"
        return cls(normalized)


@dataclass(frozen=True)
class EntityKey:
    """Identity of a cached entity."""

    kind: EntityKind
    entity_id: str

    @classmethod
    def of(cls, kind: str | EntityKind, entity_id: str) -> EntityKey:
        return cls(EntityKind.parse(kind), str(entity_id))


@dataclass(frozen=True)
class CachedEntity:
    """What the client currently renders for one entity.

    Attributes:
        key: Entity identity
        project_id: Assigned project, None, or REPAIR_SHOP
        status: active or archived (removed entities are dropped)
        version: Last server version folded into this entry (0 = unknown)
    """

    key: EntityKey
    project_id: str | None = None
    status: str = "active"
    version: int = 0


ChangeListener = Callable[[EntityKey, "CachedEntity | None"], None]


class EntityCache:
    """Keyed store of the client's view of every entity.

    Example:
        >>> cache = EntityCache()
        >>> key = EntityKey.of("employee", "emp-1")
        >>> cache.update(key, project_id="proj-7", version=3)
        CachedEntity(key=EntityKey(...), project_id='proj-7', status='active', version=3)
    """

    def __init__(self) -> None:
        self._entries: dict[EntityKey, CachedEntity] = {}
        self._listeners: list[ChangeListener] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked with (key, entry or None) on change."""
        self._listeners.append(listener)

    def get(self, key: EntityKey) -> CachedEntity | None:
        return self._entries.get(key)

    def update(
        self,
        key: EntityKey,
        *,
        project_id: str | None = _UNSET,
        status: str = _UNSET,
        version: int | None = None,
    ) -> CachedEntity:
        """Create or change an entry.

        Only the fields passed are changed. A version lower than the cached
        one is ignored (the entry keeps its newer version).

        Returns:
            The entry after the update
        """
        current = self._entries.get(key) or CachedEntity(key)
        changes: dict[str, Any] = {}
        if project_id is not _UNSET:
            changes["project_id"] = project_id
        if status is not _UNSET:
            changes["status"] = status
        if version is not None and version > current.version:
            changes["version"] = version

        entry = replace(current, **changes)
        if entry != self._entries.get(key):
            self._entries[key] = entry
            self._notify(key, entry)
        return entry

    def drop(self, key: EntityKey) -> CachedEntity | None:
        """Remove an entry, returning it if it was present."""
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._notify(key, None)
        return entry

    def clear(self) -> None:
        keys = list(self._entries)
        self._entries.clear()
        for key in keys:
            self._notify(key, None)

    def load(self, entities: Iterable[Entity]) -> int:
        """Replace the cache with a full server snapshot.

        Removed entities in the snapshot are skipped.

        Returns:
            Number of entries loaded
        """
        self.clear()
        for entity in entities:
            if entity.status == "removed":
                continue
            self.update(
                EntityKey.of(entity.entity_kind, entity.entity_id),
                project_id=entity.project_id,
                status=entity.status,
                version=entity.version,
            )
        return len(self._entries)

    def snapshot(self) -> dict[EntityKey, CachedEntity]:
        """Copy of all entries."""
        return dict(self._entries)

    def by_project(self, project_id: str | None) -> list[CachedEntity]:
        """Entries currently assigned to project_id (None = unassigned)."""
        return [e for e in self._entries.values() if e.project_id == project_id]

    def _notify(self, key: EntityKey, entry: CachedEntity | None) -> None:
        for listener in self._listeners:
            listener(key, entry)
