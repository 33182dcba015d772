"""
Unit tests for entity store backends.

Tests cover:
- Insert / get / list for memory and SQLite backends
- Compare-and-swap version semantics
- Out-of-band imports
- Factory selection from configuration
"""

import tempfile
from dataclasses import replace

import pytest

from bridge.crewsync_server.config import ServerConfig, StoreBackend, StoreConfig
from bridge.crewsync_server.store.base import (
    Entity,
    EntityKind,
    EntityStatus,
    StoreError,
    create_entity_store,
)
from bridge.crewsync_server.store.memory import InMemoryEntityStore
from bridge.crewsync_server.store.sqlite import SqliteEntityStore


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, data_dir):
    """Each test runs against both backends."""
    if request.param == "memory":
        backend = InMemoryEntityStore()
    else:
        backend = SqliteEntityStore(data_dir, wal_mode=False)
    await backend.initialize()
    yield backend
    await backend.close()


class TestEntityStore:
    """Behaviour shared by every backend."""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store):
        stored = await store.insert(Entity(EntityKind.EMPLOYEE, "emp-1", "proj-1"))

        assert stored.version == 1
        assert stored.updated_at > 0

        fetched = await store.get(EntityKind.EMPLOYEE, "emp-1")
        assert fetched == stored

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get(EntityKind.EMPLOYEE, "nobody") is None

    @pytest.mark.asyncio
    async def test_kinds_do_not_collide(self, store):
        """An employee and equipment may share an id."""
        await store.insert(Entity(EntityKind.EMPLOYEE, "7", "proj-1"))
        await store.insert(Entity(EntityKind.EQUIPMENT, "7", "proj-2"))

        assert (await store.get(EntityKind.EMPLOYEE, "7")).assignment == "proj-1"
        assert (await store.get(EntityKind.EQUIPMENT, "7")).assignment == "proj-2"

    @pytest.mark.asyncio
    async def test_duplicate_insert_rejected(self, store):
        await store.insert(Entity(EntityKind.EMPLOYEE, "emp-1"))

        with pytest.raises(StoreError):
            await store.insert(Entity(EntityKind.EMPLOYEE, "emp-1"))

    @pytest.mark.asyncio
    async def test_compare_and_swap_bumps_version(self, store):
        current = await store.insert(Entity(EntityKind.EQUIPMENT, "eq-1"))

        updated = await store.compare_and_swap(
            replace(current, assignment="proj-4", status=EntityStatus.ARCHIVED),
            expected_version=1,
        )

        assert updated.version == 2
        assert updated.assignment == "proj-4"
        assert updated.status == EntityStatus.ARCHIVED
        assert (await store.get(EntityKind.EQUIPMENT, "eq-1")).version == 2

    @pytest.mark.asyncio
    async def test_compare_and_swap_stale_version_fails(self, store):
        current = await store.insert(Entity(EntityKind.EQUIPMENT, "eq-1", "proj-1"))
        await store.compare_and_swap(replace(current, assignment="proj-2"), expected_version=1)

        result = await store.compare_and_swap(
            replace(current, assignment="proj-3"), expected_version=1
        )

        assert result is None
        assert (await store.get(EntityKind.EQUIPMENT, "eq-1")).assignment == "proj-2"

    @pytest.mark.asyncio
    async def test_compare_and_swap_missing_entity(self, store):
        result = await store.compare_and_swap(
            Entity(EntityKind.EMPLOYEE, "ghost", "proj-1"), expected_version=1
        )
        assert result is None

    @pytest.mark.asyncio
    async def test_list_entities_filters_by_kind(self, store):
        await store.insert(Entity(EntityKind.EMPLOYEE, "emp-1"))
        await store.insert(Entity(EntityKind.EMPLOYEE, "emp-2"))
        await store.insert(Entity(EntityKind.EQUIPMENT, "eq-1"))

        assert len(await store.list_entities()) == 3
        employees = await store.list_entities(EntityKind.EMPLOYEE)
        assert sorted(e.entity_id for e in employees) == ["emp-1", "emp-2"]

    @pytest.mark.asyncio
    async def test_import_records(self, store):
        count = await store.import_records(
            [
                Entity(EntityKind.EMPLOYEE, "emp-1", "proj-1", version=4),
                Entity(EntityKind.EQUIPMENT, "eq-1", None, EntityStatus.REMOVED, version=2),
            ]
        )

        assert count == 2
        imported = await store.get(EntityKind.EMPLOYEE, "emp-1")
        assert imported.version == 4
        assert len(await store.scan()) == 2


class TestInMemoryDuplicates:
    """The in-memory backend keeps duplicate imports, like a loosely keyed store."""

    @pytest.mark.asyncio
    async def test_import_keeps_duplicates_in_scan(self):
        store = InMemoryEntityStore([Entity(EntityKind.EMPLOYEE, "emp-1", "proj-1")])

        await store.import_records([Entity(EntityKind.EMPLOYEE, "emp-1", "proj-2")])

        assert len(await store.scan()) == 2
        assert len(await store.list_entities()) == 1
        assert (await store.get(EntityKind.EMPLOYEE, "emp-1")).assignment == "proj-1"


class TestSqlitePersistence:
    """SQLite-specific behaviour."""

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, data_dir):
        first = SqliteEntityStore(data_dir, wal_mode=True)
        await first.initialize()
        await first.insert(Entity(EntityKind.EMPLOYEE, "emp-1", "proj-1"))
        await first.close()

        second = SqliteEntityStore(data_dir)
        await second.initialize()
        fetched = await second.get(EntityKind.EMPLOYEE, "emp-1")
        await second.close()

        assert fetched.assignment == "proj-1"


class TestStoreFactory:
    """Tests for create_entity_store()."""

    def test_memory_backend(self):
        config = ServerConfig(store=StoreConfig(backend=StoreBackend.MEMORY))
        assert isinstance(create_entity_store(config), InMemoryEntityStore)

    def test_sqlite_backend(self, data_dir):
        config = ServerConfig(store=StoreConfig(backend=StoreBackend.SQLITE, data_dir=data_dir))
        store = create_entity_store(config)

        assert isinstance(store, SqliteEntityStore)
        assert str(store.data_dir) == data_dir
