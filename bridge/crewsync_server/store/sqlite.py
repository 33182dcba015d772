"""
SQLite entity store for CrewSync.

This module keeps entity assignment state in a single SQLite database file.
Compare-and-swap is a conditional UPDATE on the version column, so concurrent
writers never wait on each other: the loser simply sees zero affected rows.

Invariants:
    - One row per (kind, entity_id)
    - version only ever increases by one per successful write
    - Conditional updates are the only write path used by the service

How to change safely:
    - Schema migrations must be backward compatible
    - Keep the version predicate in every UPDATE issued by compare_and_swap()
    - Use explicit transactions for multi-statement writes

Table schema:
    entities:
        - kind TEXT
        - entity_id TEXT
        - assignment TEXT NULL
        - status TEXT
        - version INTEGER
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (kind, entity_id)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .base import Entity, EntityKind, EntityStatus, StoreError, now_ms

logger = logging.getLogger(__name__)


class SqliteEntityStore:
    """SQLite implementation of EntityStore.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteEntityStore("/var/lib/crewsync")
        >>> await store.initialize()
        >>> await store.insert(Entity(EntityKind.EMPLOYEE, "emp-1"))
    """

    # SQLite schema version for migrations
    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        filename: str = "entities.db",
    ) -> None:
        """Initialize the entity store.

        Args:
            data_dir: Directory for the SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            filename: Database file name inside data_dir
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / filename
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the database."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> Entity:
        return Entity(
            kind=EntityKind(row["kind"]),
            entity_id=row["entity_id"],
            assignment=row["assignment"],
            status=EntityStatus(row["status"]),
            version=row["version"],
            updated_at=row["updated_at"],
        )

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._get_connection() as conn:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INTEGER PRIMARY KEY,
                        applied_at INTEGER NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS entities (
                        kind TEXT NOT NULL,
                        entity_id TEXT NOT NULL,
                        assignment TEXT,
                        status TEXT NOT NULL DEFAULT 'active',
                        version INTEGER NOT NULL DEFAULT 1,
                        updated_at INTEGER NOT NULL,
                        PRIMARY KEY (kind, entity_id)
                    );

                    CREATE INDEX IF NOT EXISTS idx_entities_assignment
                        ON entities(assignment);

                    INSERT OR IGNORE INTO schema_version (version, applied_at)
                    VALUES (1, strftime('%s', 'now') * 1000);
                """)
        logger.info("Initialized entity database", extra={"path": str(self.db_path)})

    async def close(self) -> None:
        """Close (connections are per-operation)."""
        logger.debug("SqliteEntityStore closed")

    async def get(self, kind: EntityKind, entity_id: str) -> Entity | None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM entities WHERE kind = ? AND entity_id = ?",
                (kind.value, entity_id),
            )
            row = cursor.fetchone()
            return self._row_to_entity(row) if row else None

    async def insert(self, entity: Entity) -> Entity:
        updated_at = entity.updated_at or now_ms()
        with self._get_connection() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO entities (kind, entity_id, assignment, status, version, updated_at)
                    VALUES (?, ?, ?, ?, 1, ?)
                    """,
                    (
                        entity.kind.value,
                        entity.entity_id,
                        entity.assignment,
                        entity.status.value,
                        updated_at,
                    ),
                )
            except sqlite3.IntegrityError:
                raise StoreError(f"{entity.kind.value} '{entity.entity_id}' already exists")

        return Entity(
            kind=entity.kind,
            entity_id=entity.entity_id,
            assignment=entity.assignment,
            status=entity.status,
            version=1,
            updated_at=updated_at,
        )

    async def compare_and_swap(self, entity: Entity, expected_version: int) -> Entity | None:
        updated_at = now_ms()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE entities
                SET assignment = ?, status = ?, version = version + 1, updated_at = ?
                WHERE kind = ? AND entity_id = ? AND version = ?
                """,
                (
                    entity.assignment,
                    entity.status.value,
                    updated_at,
                    entity.kind.value,
                    entity.entity_id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                return None

        return Entity(
            kind=entity.kind,
            entity_id=entity.entity_id,
            assignment=entity.assignment,
            status=entity.status,
            version=expected_version + 1,
            updated_at=updated_at,
        )

    async def list_entities(self, kind: EntityKind | None = None) -> list[Entity]:
        with self._get_connection() as conn:
            if kind is None:
                cursor = conn.execute("SELECT * FROM entities ORDER BY kind, entity_id")
            else:
                cursor = conn.execute(
                    "SELECT * FROM entities WHERE kind = ? ORDER BY entity_id",
                    (kind.value,),
                )
            return [self._row_to_entity(row) for row in cursor.fetchall()]

    async def scan(self) -> list[Entity]:
        return await self.list_entities()

    async def import_records(self, entities: list[Entity]) -> int:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO entities
                        (kind, entity_id, assignment, status, version, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            e.kind.value,
                            e.entity_id,
                            e.assignment,
                            e.status.value,
                            e.version,
                            e.updated_at or now_ms(),
                        )
                        for e in entities
                    ],
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.info("Imported records out of band", extra={"count": len(entities)})
        return len(entities)
