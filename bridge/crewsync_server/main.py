"""
CrewSync Server - Main entry point.

This module starts the CrewSync server with all components:
- Entity store (memory or SQLite)
- Event log and stream publisher
- Assignment mutation service and conflict detector
- aiohttp application (REST + server-sent events)

Usage:
    python -m bridge.crewsync_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store is initialized before the HTTP site accepts requests
    - Graceful shutdown drains open streams before the store closes
    - A restarted server starts a new sequence; old cursors get resync.required

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter
from aiohttp import web

from .api import create_http_app
from .assign import AssignmentService, ConflictDetector
from .config import ServerConfig, StoreBackend
from .events import EventLog, StreamPublisher
from .store import Entity, EntityStore, create_entity_store

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


async def seed_entities(store: EntityStore, path: str) -> int:
    """Insert entities from a JSON seed file that are not stored yet.

    The file holds a list of objects in the wire shape
    (entityKind, entityId, projectId, status).

    Returns:
        Number of entities inserted
    """
    records = json.loads(Path(path).read_text())
    if not isinstance(records, list):
        raise ValueError(f"Seed file {path} must contain a JSON list")

    inserted = 0
    for record in records:
        entity = Entity.from_dict(record)
        if await store.get(entity.kind, entity.entity_id) is None:
            await store.insert(entity)
            inserted += 1

    logger.info("Seeded entities", extra={"seed_file": path, "inserted": inserted})
    return inserted


class Server:
    """CrewSync Server orchestrator.

    Manages the lifecycle of all server components:
    - Entity store
    - Event log and publisher
    - HTTP site

    Attributes:
        config: Server configuration
        store: Entity store instance
        log: Sequenced event log
        publisher: Stream publisher
        service: Assignment mutation service
        detector: Conflict detector

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running until request_shutdown()
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.store: EntityStore | None = None
        self.log: EventLog | None = None
        self.publisher: StreamPublisher | None = None
        self.service: AssignmentService | None = None
        self.detector: ConflictDetector | None = None
        self.runner: web.AppRunner | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the server and block until shutdown is requested."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting CrewSync server")
        self.config.log_config()

        try:
            if self.config.store.backend == StoreBackend.SQLITE:
                Path(self.config.store.data_dir).mkdir(parents=True, exist_ok=True)

            self.store = create_entity_store(self.config)
            await self.store.initialize()
            logger.info("Entity store initialized")

            if self.config.store.seed_file:
                await seed_entities(self.store, self.config.store.seed_file)

            self.log = EventLog(
                capacity=self.config.event_log.capacity,
                max_age_seconds=self.config.event_log.max_age_seconds,
            )
            self.publisher = StreamPublisher(
                self.log,
                heartbeat_interval=self.config.publisher.heartbeat_interval,
                queue_size=self.config.publisher.queue_size,
            )
            self.service = AssignmentService(self.store, self.log)
            self.detector = ConflictDetector(self.store)

            app = create_http_app(self.service, self.publisher, self.detector, self.config)
            self.runner = web.AppRunner(
                app, shutdown_timeout=self.config.http.shutdown_timeout
            )
            await self.runner.setup()
            site = web.TCPSite(self.runner, self.config.http.host, self.config.http.port)
            await site.start()

            self._running = True
            logger.info(
                f"HTTP server running on http://{self.config.http.host}:{self.config.http.port}"
            )

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping CrewSync server")
        await self._cleanup()
        self._running = False
        logger.info("CrewSync server stopped")

    async def _cleanup(self) -> None:
        # Open streams flush what is queued, then end
        if self.publisher:
            self.publisher.close()

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        if self.store:
            await self.store.close()
            self.store = None

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
