"""
In-memory entity store.

This backend keeps records in a plain list, the way the legacy key/value
backend kept its employee and equipment arrays. It is used for:
- Unit and integration tests
- Local development without a data directory

Invariants:
    - All data is lost on process exit
    - get/compare_and_swap address the first record with a given key
    - import_records() may append duplicate keys, exactly like an
      out-of-band bulk import against a loosely keyed store

How to change safely:
    - Keep interface compatible with EntityStore protocol
    - Do not await inside compare_and_swap, it must stay atomic
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from .base import Entity, EntityKind, StoreError, now_ms

logger = logging.getLogger(__name__)


class InMemoryEntityStore:
    """In-memory implementation of EntityStore.

    Thread safety:
        Uses an asyncio lock for inserts and imports. compare_and_swap()
        contains no suspension point, so it is atomic on the event loop.

    Example:
        >>> store = InMemoryEntityStore()
        >>> await store.insert(Entity(EntityKind.EQUIPMENT, "eq-2"))
        >>> await store.get(EntityKind.EQUIPMENT, "eq-2")
    """

    def __init__(self, entities: list[Entity] | None = None) -> None:
        """Initialize the store.

        Args:
            entities: Optional initial records
        """
        self._records: list[Entity] = []
        self._index: dict[tuple[EntityKind, str], int] = {}
        self._lock = asyncio.Lock()
        for entity in entities or []:
            self._append(entity)

    def _append(self, entity: Entity) -> None:
        self._records.append(entity)
        self._index.setdefault(entity.key, len(self._records) - 1)

    async def initialize(self) -> None:
        """Initialize (no-op for in-memory)."""
        logger.debug("InMemoryEntityStore initialized", extra={"records": len(self._records)})

    async def close(self) -> None:
        """Close (no-op for in-memory)."""
        logger.debug("InMemoryEntityStore closed")

    async def get(self, kind: EntityKind, entity_id: str) -> Entity | None:
        position = self._index.get((kind, entity_id))
        if position is None:
            return None
        return self._records[position]

    async def insert(self, entity: Entity) -> Entity:
        async with self._lock:
            if entity.key in self._index:
                raise StoreError(f"{entity.kind.value} '{entity.entity_id}' already exists")
            stored = replace(entity, version=1, updated_at=entity.updated_at or now_ms())
            self._append(stored)
        return stored

    async def compare_and_swap(self, entity: Entity, expected_version: int) -> Entity | None:
        position = self._index.get(entity.key)
        if position is None:
            return None

        current = self._records[position]
        if current.version != expected_version:
            return None

        stored = replace(
            current,
            assignment=entity.assignment,
            status=entity.status,
            version=expected_version + 1,
            updated_at=now_ms(),
        )
        self._records[position] = stored
        return stored

    async def list_entities(self, kind: EntityKind | None = None) -> list[Entity]:
        return [
            self._records[position]
            for key, position in self._index.items()
            if kind is None or key[0] == kind
        ]

    async def scan(self) -> list[Entity]:
        return list(self._records)

    async def import_records(self, entities: list[Entity]) -> int:
        async with self._lock:
            for entity in entities:
                self._append(entity)
        logger.info("Imported records out of band", extra={"count": len(entities)})
        return len(entities)
