"""
CrewSync Server - live assignment synchronization for crews and equipment.

This package keeps every connected client's view of "which project currently
owns this employee/equipment" consistent while many users move assets between
projects concurrently:
- Entity store holding one scalar assignment per entity (version CAS)
- Mutation service as the single write path
- Sequenced event log with a bounded replay buffer
- Server-sent event stream with resumable cursors

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Client    │────▶│    HTTP     │────▶│   Assignment    │
    │   (SDK)     │     │   Server    │     │    Service      │
    └──────▲──────┘     └─────────────┘     └───┬─────────┬───┘
           │                                    │ CAS     │ append
           │                                    ▼         ▼
           │                             ┌──────────┐ ┌──────────┐
           │                             │  Entity  │ │  Event   │
           │                             │  Store   │ │   Log    │
           │                             └──────────┘ └────┬─────┘
           │                                               │
           │            ┌─────────────────┐                │
           └────────────│ Stream Publisher│◀───────────────┘
              SSE       └─────────────────┘

Invariants:
    - The entity store is the single source of truth
    - Only the assignment service writes entity state
    - Sequence numbers are global, gapless and never reused
    - Each subscription receives strictly increasing sequence numbers

How to change safely:
    - New event kinds must be added to both server and SDK
    - Keep the SSE envelope backward compatible
    - Never write to the store outside the assignment service
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
