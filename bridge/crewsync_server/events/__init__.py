"""
Event module for CrewSync - sequencing and live delivery.

This module handles:
- Global sequence numbering of entity change events
- Bounded replay buffer for resumable subscriptions
- Ordered fan-out to server-sent event subscribers

Invariants:
    - Sequence numbers are gapless and totally ordered across entities
    - A subscription never sees a sequence twice or out of order
    - A stale cursor produces exactly one resync.required control event

How to change safely:
    - Test resume behaviour with cursors inside and outside the buffer
    - Keep listener callbacks non-blocking
"""

from .base import RESYNC_REQUIRED, AssignmentEvent, ControlEvent, EventKind
from .log import Cursor, EventLog
from .publisher import StreamPublisher, Subscription, SubscriptionState

__all__ = [
    "RESYNC_REQUIRED",
    "AssignmentEvent",
    "ControlEvent",
    "EventKind",
    "Cursor",
    "EventLog",
    "StreamPublisher",
    "Subscription",
    "SubscriptionState",
]
