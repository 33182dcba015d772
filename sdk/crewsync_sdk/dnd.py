"""
Drag-and-drop target parsing.

A board renders one drop zone per (entity kind, project) pair. Each draggable
card uses the entity id itself as its draggable id, and employee ids carry the
"emp-" prefix ("emp-1" is employee emp-1; anything else, such as "eq-2", is
equipment). The id is passed through unchanged. This module turns a finished
drag into a DropIntent the Reconciler can act on.

Drop zone ids understood by parse_droppable_id():
    employee-<projectId>             employee-unassigned
    equipment-<projectId>            equipment-unassigned
    project-<projectId>-employees    project-<projectId>-equipment
Any other id is treated as a bare project id, except ids containing
"unassigned" (no project) and "repair-shop" (the repair sentinel).
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .cache import REPAIR_SHOP, EntityKey, EntityKind

EMPLOYEE_PREFIX = "emp-"
UNASSIGNED = "unassigned"

_KIND_ZONE = re.compile(r"^(employee|equipment)-(.*)$")
_PROJECT_ZONE = re.compile(r"^project-(.+)-(employees|equipment)$")


@dataclass(frozen=True)
class DropZone:
    """A parsed kind-specific drop zone."""

    kind: EntityKind
    project_id: str | None


@dataclass(frozen=True)
class DropIntent:
    """Assignment requested by a drag."""

    key: EntityKey
    project_id: str | None


def build_droppable_id(kind: str | EntityKind, project_id: str | None) -> str:
    return f"{EntityKind.parse(kind).value}-{project_id or UNASSIGNED}"


def build_draggable_id(key: EntityKey) -> str:
    return key.entity_id


def parse_droppable_id(droppable_id: str) -> DropZone | None:
    """Parse a kind-specific drop zone id, None if it is not one."""
    match = _KIND_ZONE.match(droppable_id)
    if match:
        rest = match.group(2)
        return DropZone(EntityKind(match.group(1)), None if rest == UNASSIGNED else rest)

    match = _PROJECT_ZONE.match(droppable_id)
    if match:
        kind = EntityKind.EMPLOYEE if match.group(2) == "employees" else EntityKind.EQUIPMENT
        return DropZone(kind, match.group(1))
    return None


def parse_draggable_id(draggable_id: str) -> EntityKey:
    """Map a draggable id to its entity; the id is the entity id unchanged."""
    if draggable_id.startswith(EMPLOYEE_PREFIX):
        return EntityKey(EntityKind.EMPLOYEE, draggable_id)
    return EntityKey(EntityKind.EQUIPMENT, draggable_id)


def resolve_drop(
    draggable_id: str,
    source_id: str,
    source_index: int,
    destination_id: str | None,
    destination_index: int | None = None,
) -> DropIntent | None:
    """Turn a finished drag into an assignment request.

    Returns:
        The DropIntent, or None when the drag was cancelled, dropped back
        where it started, or dropped on a zone for the other entity kind
    """
    if destination_id is None:
        return None
    if destination_id == source_id and destination_index == source_index:
        return None

    key = parse_draggable_id(draggable_id)
    zone = parse_droppable_id(destination_id)

    if zone is not None:
        if zone.kind != key.kind:
            return None
        return DropIntent(key, zone.project_id)

    if UNASSIGNED in destination_id:
        return DropIntent(key, None)
    if destination_id == REPAIR_SHOP:
        return DropIntent(key, REPAIR_SHOP)
    return DropIntent(key, destination_id)
