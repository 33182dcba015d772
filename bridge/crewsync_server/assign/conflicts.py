"""
Diagnostic scan for assignment records that break exclusivity.

Writes through the AssignmentService cannot produce two owners for one entity,
so anything reported here was introduced out of band (bulk import, manual data
fixes). The detector only reports; it never repairs.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..store.base import Entity, EntityKind, EntityStatus, EntityStore

logger = logging.getLogger(__name__)


class ConflictReason(str, Enum):
    DUPLICATE = "duplicate"  # same key recorded twice with the same owner
    CONFLICTING = "conflicting"  # same key recorded with different owners
    STALE = "stale"  # removed entity still holding an owner


@dataclass(frozen=True)
class AssignmentConflict:
    """One entity whose stored records violate exclusivity."""

    entity_kind: EntityKind
    entity_id: str
    reason: ConflictReason
    assignments: tuple[str | None, ...]
    record_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityKind": self.entity_kind.value,
            "entityId": self.entity_id,
            "reason": self.reason.value,
            "assignments": list(self.assignments),
            "recordCount": self.record_count,
        }


class ConflictDetector:
    """Scans the raw store records for exclusivity violations."""

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    async def find_conflicts(self) -> list[AssignmentConflict]:
        records = await self.store.scan()

        grouped: dict[tuple[EntityKind, str], list[Entity]] = defaultdict(list)
        for record in records:
            grouped[record.key].append(record)

        conflicts: list[AssignmentConflict] = []
        for (kind, entity_id), group in grouped.items():
            assigned = tuple(r.assignment for r in group if r.assignment is not None)

            if len(group) > 1 and assigned:
                reason = (
                    ConflictReason.DUPLICATE
                    if len(set(assigned)) == 1
                    else ConflictReason.CONFLICTING
                )
                conflicts.append(
                    AssignmentConflict(kind, entity_id, reason, assigned, len(group))
                )
            elif any(r.status == EntityStatus.REMOVED and r.assignment for r in group):
                conflicts.append(
                    AssignmentConflict(
                        kind, entity_id, ConflictReason.STALE, assigned, len(group)
                    )
                )

        if conflicts:
            logger.warning(
                "Assignment conflicts detected",
                extra={"count": len(conflicts), "scanned": len(records)},
            )
        return conflicts
