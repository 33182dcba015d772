"""
Entity store abstraction for CrewSync.

This module provides a pluggable store interface supporting:
- SQLite (single file, for deployments)
- In-memory (for testing and local development)

The store is the single source of truth for assignments. It is an external
collaborator: the bridge only relies on read and compare-and-swap.

Invariants:
    - Only the assignment service writes through compare_and_swap()
    - import_records() is the out-of-band path and emits no events

How to change safely:
    - New backends must implement the EntityStore protocol
    - Verify CAS semantics with concurrent writers before shipping a backend
"""

from .base import (
    REPAIR_SHOP,
    Entity,
    EntityKind,
    EntityStatus,
    EntityStore,
    StoreError,
    create_entity_store,
)
from .memory import InMemoryEntityStore
from .sqlite import SqliteEntityStore

__all__ = [
    # Protocol and types
    "EntityStore",
    "Entity",
    "EntityKind",
    "EntityStatus",
    "StoreError",
    "REPAIR_SHOP",
    # Factory
    "create_entity_store",
    # Implementations
    "InMemoryEntityStore",
    "SqliteEntityStore",
]
