"""
API module for CrewSync server.

This module provides the external interface:
- HTTP server (mutations, reads, diagnostics)
- Server-sent event stream of sequenced changes

Invariants:
    - Writes go through the AssignmentService before acknowledgment
    - Stream frames carry the global sequence as their id

How to change safely:
    - Keep wire field names stable, clients persist cursors and parse errors
    - Add new endpoints, don't modify existing ones
"""

from .http_server import create_http_app
from .sse import encode_comment, encode_event, encode_retry

__all__ = [
    "create_http_app",
    "encode_comment",
    "encode_event",
    "encode_retry",
]
