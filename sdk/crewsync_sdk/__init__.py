"""
CrewSync Python SDK - Client library for the live assignment bridge.

This SDK keeps a local view of employee/equipment assignments in sync with a
CrewSync server:
- AssignmentClient for mutations, reads and the event stream
- EntityCache keyed by (entityKind, entityId)
- Reconciler for optimistic drags with rollback and supersede
- StreamConnection for resumable, backoff-driven reconnects

Example:
    >>> from sdk.crewsync_sdk import AssignmentClient, EntityKey, NoticeBoard, Reconciler
    >>>
    >>> board = NoticeBoard()
    >>> board.open()
    >>> async with AssignmentClient("http://localhost:8081") as client:
    ...     reconciler = Reconciler(client, notifier=board)
    ...     await reconciler.load()
    ...     await reconciler.drag(EntityKey.of("employee", "emp-1"), "proj-7")

Invariants:
    - The server is the single source of truth; the cache only ever folds in
      server-reported versions that are newer than what it holds
    - Every reconnect resumes from the last processed sequence

Version: 1.0.0
"""

__version__ = "1.0.0"

from .cache import REPAIR_SHOP, CachedEntity, EntityCache, EntityKey, EntityKind
from .client import AssignmentClient, Entity, MutationResult
from .config import BackoffPolicy, ClientSettings, ReconcilerConfig
from .dnd import DropIntent, build_droppable_id, parse_droppable_id, resolve_drop
from .errors import (
    ConflictError,
    CrewSyncError,
    ErrorKind,
    NotFoundError,
    StreamDisconnectedError,
    TransportError,
    ValidationError,
)
from .notify import LoggingNotifier, Notice, NoticeBoard, NoticeLevel, Notifier
from .reconciler import Outcome, ReconciliationRecord, Reconciler
from .sse import SseDecoder, StreamEvent
from .stream import ConnectionState, StreamConnection

__all__ = [
    # Version
    "__version__",
    # Client
    "AssignmentClient",
    "Entity",
    "MutationResult",
    "ClientSettings",
    # Cache
    "EntityCache",
    "EntityKey",
    "EntityKind",
    "CachedEntity",
    "REPAIR_SHOP",
    # Reconciliation
    "Reconciler",
    "ReconcilerConfig",
    "ReconciliationRecord",
    "Outcome",
    # Stream
    "StreamConnection",
    "ConnectionState",
    "BackoffPolicy",
    "SseDecoder",
    "StreamEvent",
    # Drag and drop
    "DropIntent",
    "build_droppable_id",
    "parse_droppable_id",
    "resolve_drop",
    # Notices
    "Notifier",
    "NoticeBoard",
    "NoticeLevel",
    "Notice",
    "LoggingNotifier",
    # Errors
    "CrewSyncError",
    "ErrorKind",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "TransportError",
    "StreamDisconnectedError",
]
