"""
Assignment module for CrewSync - the single write path and its diagnostics.

This module handles:
- Validated, compare-and-swap assignment changes
- Archive / restore / remove lifecycle changes
- Event emission after every successful write
- Offline detection of exclusivity violations

Invariants:
    - One event per successful mutation, none on failure
    - The conflict detector never writes

How to change safely:
    - Route every new mutation through AssignmentService._commit()
    - Verify race behaviour with concurrent writers on the same entity
"""

from .conflicts import AssignmentConflict, ConflictDetector, ConflictReason
from .service import AssignmentService, normalize_assignment

__all__ = [
    "AssignmentService",
    "normalize_assignment",
    "AssignmentConflict",
    "ConflictDetector",
    "ConflictReason",
]
