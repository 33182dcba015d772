"""
HTTP server implementation for CrewSync.

This module exposes the assignment bridge over aiohttp:
- A server-sent event stream of sequenced entity changes
- Mutation endpoints (assign, archive, restore, remove)
- Full-state reads used for initial load and resync
- Diagnostics (conflict scan, recent history, health)

Invariants:
    - Mutation failures return the current truth so clients can roll back
    - The stream first frame is the retry hint, then replay, then live events
    - A closed stream never cancels an in-flight mutation

How to change safely:
    - Keep error payload keys stable, the SDK parses them
    - Add new endpoints under /v1, version the API for breaking changes
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .. import __version__
from ..assign.conflicts import ConflictDetector
from ..assign.service import AssignmentService
from ..config import ServerConfig
from ..errors import ConflictError, NotFoundError, SyncError
from ..events.publisher import StreamPublisher
from ..store.base import EntityKind
from .sse import CONTENT_TYPE, encode_comment, encode_event, encode_retry

logger = logging.getLogger(__name__)

ALLOWED_METHODS = "GET, POST, PATCH, DELETE, OPTIONS"
ALLOWED_HEADERS = "Content-Type, Last-Event-ID, X-Trace-ID"


# =============================================================================
# Request Models
# =============================================================================


class AssignmentRequest(BaseModel):
    """Body of PATCH /v1/entities/{kind}/{id}/assignment."""

    model_config = ConfigDict(populate_by_name=True)

    project_id: str | None = Field(..., alias="projectId", description="Target project, null or 'repair-shop'")
    expected_version: int | None = Field(
        None, alias="expectedVersion", description="Entity version the change is based on"
    )


class LifecycleRequest(BaseModel):
    """Optional body of archive / restore / remove."""

    model_config = ConfigDict(populate_by_name=True)

    expected_version: int | None = Field(None, alias="expectedVersion")


# =============================================================================
# Application
# =============================================================================


def create_http_app(
    service: AssignmentService,
    publisher: StreamPublisher,
    detector: ConflictDetector,
    config: ServerConfig | None = None,
) -> web.Application:
    """Create the aiohttp application for CrewSync.

    Args:
        service: Assignment mutation service
        publisher: Stream publisher for /v1/stream
        detector: Conflict detector for /v1/conflicts
        config: Server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or ServerConfig()
    app = web.Application()

    app.router.add_get("/v1/stream", lambda r: handle_stream(r, publisher, config))
    app.router.add_patch(
        "/v1/entities/{kind}/{entity_id}/assignment", lambda r: handle_assign(r, service)
    )
    app.router.add_post(
        "/v1/entities/{kind}/{entity_id}/archive", lambda r: handle_archive(r, service)
    )
    app.router.add_post(
        "/v1/entities/{kind}/{entity_id}/restore", lambda r: handle_restore(r, service)
    )
    app.router.add_delete("/v1/entities/{kind}/{entity_id}", lambda r: handle_remove(r, service))
    app.router.add_get("/v1/entities/{kind}/{entity_id}", lambda r: handle_get_entity(r, service))
    app.router.add_get("/v1/entities", lambda r: handle_list_entities(r, service))
    app.router.add_get("/v1/conflicts", lambda r: handle_conflicts(r, detector))
    app.router.add_get("/v1/history", lambda r: handle_history(r, service))
    app.router.add_get("/v1/health", lambda r: handle_health(r, service, publisher))

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                apply_cors_headers(request, e, config.http.cors_origins)
                raise

        # A stream response has already sent its headers
        if not response.prepared:
            apply_cors_headers(request, response, config.http.cors_origins)
        return response

    app.middlewares.append(cors_middleware)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.insert(0, error_middleware)

    return app


def apply_cors_headers(
    request: web.Request, response: web.StreamResponse, origins: tuple[str, ...]
) -> None:
    origin = request.headers.get("Origin", "*")
    if "*" in origins or origin in origins:
        response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS
    response.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS


def bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": message}),
        content_type="application/json",
    )


def sync_error_response(error: SyncError) -> web.Response:
    """Map a mutation/read failure to its HTTP status."""
    if isinstance(error, NotFoundError):
        status = 404
    elif isinstance(error, ConflictError):
        status = 409
    else:
        status = 400
    return web.json_response(error.to_dict(), status=status)


def extract_entity(request: web.Request) -> tuple[EntityKind, str]:
    """Extract (kind, entity_id) from the route.

    Raises:
        web.HTTPBadRequest: If the kind is unknown
    """
    try:
        kind = EntityKind.parse(request.match_info["kind"])
    except ValueError as e:
        raise bad_request(str(e))
    return kind, request.match_info["entity_id"]


def parse_since(request: web.Request) -> int | None:
    """Resume cursor from ?since= or the Last-Event-ID header.

    Raises:
        web.HTTPBadRequest: If the cursor is not a non-negative integer
    """
    raw = request.query.get("since") or request.headers.get("Last-Event-ID")
    if raw is None or raw == "":
        return None
    try:
        since = int(raw)
    except ValueError:
        raise bad_request(f"Invalid resume cursor '{raw}'")
    if since < 0:
        raise bad_request(f"Invalid resume cursor '{raw}'")
    return since


async def read_body(request: web.Request, model: type[BaseModel], required: bool) -> Any:
    """Parse and validate a JSON body.

    Raises:
        web.HTTPBadRequest: If the body is not valid JSON or fails validation
    """
    if not request.can_read_body:
        if required:
            raise bad_request("JSON body is required")
        return model()

    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise bad_request("Invalid JSON body")

    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        raise bad_request(f"Invalid request body: {e.errors(include_url=False)}")


def mutation_response(entity: Any, event: Any) -> web.Response:
    return web.json_response({"entity": entity.to_dict(), "sequence": event.sequence})


# =============================================================================
# Handlers
# =============================================================================


async def handle_stream(
    request: web.Request, publisher: StreamPublisher, config: ServerConfig
) -> web.StreamResponse:
    """Handle GET /v1/stream - Server-sent event stream."""
    since = parse_since(request)

    response = web.StreamResponse(
        headers={
            "Content-Type": CONTENT_TYPE,
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )
    apply_cors_headers(request, response, config.http.cors_origins)

    sub = await publisher.subscribe(since)
    try:
        await response.prepare(request)
        await response.write(encode_retry(config.publisher.retry_ms))

        async for item in sub.stream(publisher.heartbeat_interval):
            if item is None:
                await response.write(encode_comment())
                continue
            await response.write(encode_event(item))
            sub.mark_delivered(item.sequence)
    except ConnectionResetError:
        logger.info(
            "Stream client disconnected",
            extra={"subscription_id": sub.subscription_id, "last_delivered": sub.last_delivered},
        )
    finally:
        publisher.unsubscribe(sub)

    return response


async def handle_assign(request: web.Request, service: AssignmentService) -> web.Response:
    """Handle PATCH /v1/entities/{kind}/{id}/assignment - Assign to a project."""
    kind, entity_id = extract_entity(request)
    body = await read_body(request, AssignmentRequest, required=True)

    try:
        entity, event = await service.assign(
            kind, entity_id, body.project_id, expected_version=body.expected_version
        )
    except SyncError as e:
        return sync_error_response(e)
    except ValueError as e:
        raise bad_request(str(e))
    return mutation_response(entity, event)


async def handle_archive(request: web.Request, service: AssignmentService) -> web.Response:
    """Handle POST /v1/entities/{kind}/{id}/archive - Archive an entity."""
    kind, entity_id = extract_entity(request)
    body = await read_body(request, LifecycleRequest, required=False)

    try:
        entity, event = await service.archive(kind, entity_id, body.expected_version)
    except SyncError as e:
        return sync_error_response(e)
    return mutation_response(entity, event)


async def handle_restore(request: web.Request, service: AssignmentService) -> web.Response:
    """Handle POST /v1/entities/{kind}/{id}/restore - Restore an archived entity."""
    kind, entity_id = extract_entity(request)
    body = await read_body(request, LifecycleRequest, required=False)

    try:
        entity, event = await service.restore(kind, entity_id, body.expected_version)
    except SyncError as e:
        return sync_error_response(e)
    return mutation_response(entity, event)


async def handle_remove(request: web.Request, service: AssignmentService) -> web.Response:
    """Handle DELETE /v1/entities/{kind}/{id} - Soft-remove an entity."""
    kind, entity_id = extract_entity(request)
    body = await read_body(request, LifecycleRequest, required=False)

    try:
        entity, event = await service.remove(kind, entity_id, body.expected_version)
    except SyncError as e:
        return sync_error_response(e)
    return mutation_response(entity, event)


async def handle_get_entity(request: web.Request, service: AssignmentService) -> web.Response:
    """Handle GET /v1/entities/{kind}/{id} - Current truth of one entity."""
    kind, entity_id = extract_entity(request)

    try:
        entity = await service.get(kind, entity_id)
    except SyncError as e:
        return sync_error_response(e)
    return web.json_response({"entity": entity.to_dict(), "sequence": service.log.head})


async def handle_list_entities(request: web.Request, service: AssignmentService) -> web.Response:
    """Handle GET /v1/entities - Full state for initial load and resync."""
    kind = request.query.get("kind")
    if kind is not None:
        try:
            kind = EntityKind.parse(kind)
        except ValueError as e:
            raise bad_request(str(e))

    # Head is read first: replaying from it may repeat changes already in the
    # snapshot, but can never skip one.
    head = service.log.head
    entities = await service.list_entities(kind)
    return web.json_response(
        {"entities": [e.to_dict() for e in entities], "sequence": head}
    )


async def handle_conflicts(request: web.Request, detector: ConflictDetector) -> web.Response:
    """Handle GET /v1/conflicts - Exclusivity violations in stored records."""
    conflicts = await detector.find_conflicts()
    return web.json_response({"conflicts": [c.to_dict() for c in conflicts]})


async def handle_history(request: web.Request, service: AssignmentService) -> web.Response:
    """Handle GET /v1/history - Recent buffered events."""
    try:
        limit = int(request.query.get("limit", 50))
    except ValueError:
        raise bad_request("limit must be an integer")

    log = service.log
    return web.json_response(
        {
            "events": [e.to_dict() for e in log.recent(limit)],
            "head": log.head,
            "oldest": log.oldest,
        }
    )


async def handle_health(
    request: web.Request, service: AssignmentService, publisher: StreamPublisher
) -> web.Response:
    """Handle GET /v1/health - Health check."""
    return web.json_response(
        {
            "healthy": True,
            "version": __version__,
            "head": service.log.head,
            "subscribers": publisher.subscriber_count,
        }
    )
