"""
Configuration management for CrewSync Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set an explicit store backend and data dir
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported entity store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        cors_origins: Allowed CORS origins ("*" allows any)
        shutdown_timeout: Seconds to wait for open streams on shutdown
    """

    host: str = "0.0.0.0"
    port: int = 8081
    cors_origins: tuple[str, ...] = ("*",)
    shutdown_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8081")),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            shutdown_timeout=float(os.getenv("HTTP_SHUTDOWN_TIMEOUT", "10")),
        )


@dataclass(frozen=True)
class EventLogConfig:
    """Replay buffer configuration.

    Attributes:
        capacity: Maximum number of retained events
        max_age_seconds: Maximum age of retained events (0 disables)
    """

    capacity: int = 1000
    max_age_seconds: float = 0.0

    @classmethod
    def from_env(cls) -> EventLogConfig:
        """Load configuration from environment variables."""
        return cls(
            capacity=int(os.getenv("EVENT_LOG_CAPACITY", "1000")),
            max_age_seconds=float(os.getenv("EVENT_LOG_MAX_AGE_SECONDS", "0")),
        )


@dataclass(frozen=True)
class PublisherConfig:
    """Stream publisher configuration.

    Attributes:
        heartbeat_interval: Idle seconds before a keepalive comment is sent
        queue_size: Per-subscriber delivery queue bound
        retry_ms: Reconnect hint sent to clients in the first frame
    """

    heartbeat_interval: float = 25.0
    queue_size: int = 1000
    retry_ms: int = 1000

    @classmethod
    def from_env(cls) -> PublisherConfig:
        """Load configuration from environment variables."""
        return cls(
            heartbeat_interval=float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "25")),
            queue_size=int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "1000")),
            retry_ms=int(os.getenv("STREAM_RETRY_MS", "1000")),
        )


@dataclass(frozen=True)
class StoreConfig:
    """Entity store configuration.

    Attributes:
        backend: Which store backend to use
        data_dir: Directory for the SQLite database
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        seed_file: Optional JSON file of entities loaded at startup
    """

    backend: StoreBackend = StoreBackend.MEMORY
    data_dir: str = "/var/lib/crewsync"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    seed_file: str | None = None

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("STORE_BACKEND", "memory").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid STORE_BACKEND '{backend_str}'. Must be one of: memory, sqlite")

        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/crewsync"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            seed_file=os.getenv("SEED_FILE"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        http: HTTP server configuration
        event_log: Replay buffer configuration
        publisher: Stream publisher configuration
        store: Entity store configuration
        observability: Logging configuration
    """

    http: HttpConfig = field(default_factory=HttpConfig)
    event_log: EventLogConfig = field(default_factory=EventLogConfig)
    publisher: PublisherConfig = field(default_factory=PublisherConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            http=HttpConfig.from_env(),
            event_log=EventLogConfig.from_env(),
            publisher=PublisherConfig.from_env(),
            store=StoreConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not 0 < self.http.port < 65536:
            raise ValueError(f"HTTP_PORT must be between 1 and 65535, got {self.http.port}")

        if self.event_log.capacity < 1:
            raise ValueError("EVENT_LOG_CAPACITY must be at least 1")
        if self.event_log.max_age_seconds < 0:
            raise ValueError("EVENT_LOG_MAX_AGE_SECONDS must not be negative")

        if self.publisher.heartbeat_interval <= 0:
            raise ValueError("HEARTBEAT_INTERVAL_SECONDS must be positive")
        if self.publisher.queue_size < 1:
            raise ValueError("SUBSCRIBER_QUEUE_SIZE must be at least 1")

        if self.store.backend == StoreBackend.SQLITE:
            if not self.store.data_dir:
                raise ValueError("DATA_DIR is required when STORE_BACKEND=sqlite")
            if not os.path.exists(self.store.data_dir):
                logger.warning(
                    f"Data directory does not exist: {self.store.data_dir}. "
                    "It will be created on first write."
                )

        if self.store.seed_file and not os.path.exists(self.store.seed_file):
            raise ValueError(f"SEED_FILE does not exist: {self.store.seed_file}")

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "http_bind": f"{self.http.host}:{self.http.port}",
                "store_backend": self.store.backend.value,
                "data_dir": self.store.data_dir
                if self.store.backend == StoreBackend.SQLITE
                else None,
                "event_log_capacity": self.event_log.capacity,
                "event_log_max_age_seconds": self.event_log.max_age_seconds,
                "heartbeat_interval": self.publisher.heartbeat_interval,
                "log_level": self.observability.log_level,
            },
        )
