"""
CrewSync Client for Python SDK.

This module provides the HTTP interface to a CrewSync server:
- AssignmentClient: mutations, reads and the event stream
- Entity: an entity as reported by the server
- MutationResult: outcome of a successful mutation

Example:
    >>> async with AssignmentClient("http://localhost:8081") as client:
    ...     result = await client.assign("employee", "emp-1", "proj-7")
    ...     async with client.stream_events(since=result.sequence) as events:
    ...         async for event in events:
    ...             print(event.kind, event.entity_id, event.new_value)

Invariants:
    - Non-2xx responses are raised as CrewSyncError subclasses, never returned
    - Network failures surface as TransportError
    - The stream request always carries the resume cursor when one is known
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from .config import ClientSettings
from .errors import TransportError, error_from_response
from .sse import SseDecoder, StreamEvent

logger = logging.getLogger(__name__)


@dataclass
class Entity:
    """An entity as reported by the server.

    Attributes:
        entity_kind: employee or equipment
        entity_id: Entity identifier
        project_id: Assigned project, None, or "repair-shop"
        status: active, archived or removed
        version: Server-side write counter
        updated_at: Last write timestamp (Unix ms)
    """

    entity_kind: str
    entity_id: str
    project_id: str | None = None
    status: str = "active"
    version: int = 1
    updated_at: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Entity:
        return cls(
            entity_kind=data["entityKind"],
            entity_id=str(data["entityId"]),
            project_id=data.get("projectId"),
            status=data.get("status", "active"),
            version=int(data.get("version", 1)),
            updated_at=int(data.get("updatedAt", 0)),
        )


@dataclass
class MutationResult:
    """Result of a successful mutation.

    Attributes:
        entity: Entity state after the write
        sequence: Sequence of the event the write emitted
    """

    entity: Entity
    sequence: int


class AssignmentClient:
    """HTTP client for the CrewSync assignment bridge.

    Attributes:
        base_url: Server URL
        settings: Client settings (timeouts, backoff)
    """

    def __init__(
        self,
        base_url: str | None = None,
        settings: ClientSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Server URL (defaults to settings.base_url)
            settings: Client settings (loaded from CREWSYNC_* env if omitted)
            transport: Optional httpx transport, e.g. for tests
        """
        self.settings = settings or ClientSettings()
        self.base_url = base_url or self.settings.base_url
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.settings.request_timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self._http.aclose()

    async def __aenter__(self) -> AssignmentClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def assign(
        self,
        entity_kind: str,
        entity_id: str,
        project_id: str | None,
        expected_version: int | None = None,
    ) -> MutationResult:
        """Assign an entity to a project.

        Args:
            entity_kind: employee or equipment
            entity_id: Entity identifier
            project_id: Target project, None to unassign, or "repair-shop"
            expected_version: Version the change is based on

        Returns:
            MutationResult with the stored entity and emitted sequence

        Raises:
            NotFoundError: If the entity does not exist
            ConflictError: If another writer changed the entity first
            TransportError: If the server could not be reached
        """
        body: dict[str, Any] = {"projectId": project_id}
        if expected_version is not None:
            body["expectedVersion"] = expected_version

        payload = await self._request(
            "PATCH",
            f"{self._entity_path(entity_kind, entity_id)}/assignment",
            entity_kind,
            entity_id,
            json=body,
        )
        return self._mutation_result(payload)

    async def archive(self, entity_kind: str, entity_id: str) -> MutationResult:
        """Archive an entity (its assignment is kept)."""
        payload = await self._request(
            "POST", f"{self._entity_path(entity_kind, entity_id)}/archive", entity_kind, entity_id
        )
        return self._mutation_result(payload)

    async def restore(self, entity_kind: str, entity_id: str) -> MutationResult:
        """Restore an archived entity."""
        payload = await self._request(
            "POST", f"{self._entity_path(entity_kind, entity_id)}/restore", entity_kind, entity_id
        )
        return self._mutation_result(payload)

    async def remove(self, entity_kind: str, entity_id: str) -> MutationResult:
        """Soft-remove an entity and release its assignment."""
        payload = await self._request(
            "DELETE", self._entity_path(entity_kind, entity_id), entity_kind, entity_id
        )
        return self._mutation_result(payload)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_entity(self, entity_kind: str, entity_id: str) -> Entity:
        """Fetch the current truth for one entity.

        Raises:
            NotFoundError: If the entity does not exist or was removed
        """
        payload = await self._request(
            "GET", self._entity_path(entity_kind, entity_id), entity_kind, entity_id
        )
        return Entity.from_dict(payload["entity"])

    async def list_entities(self, entity_kind: str | None = None) -> tuple[list[Entity], int]:
        """Fetch the full entity set.

        Returns:
            Tuple of (entities, sequence to resume the stream from)
        """
        params = {"kind": entity_kind} if entity_kind else None
        payload = await self._request("GET", "/v1/entities", params=params)
        entities = [Entity.from_dict(e) for e in payload.get("entities", [])]
        return entities, int(payload.get("sequence", 0))

    async def conflicts(self) -> list[dict[str, Any]]:
        """Exclusivity violations found in the server's stored records."""
        payload = await self._request("GET", "/v1/conflicts")
        return payload.get("conflicts", [])

    async def history(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent buffered events, newest last."""
        payload = await self._request("GET", "/v1/history", params={"limit": limit})
        return payload.get("events", [])

    async def health(self) -> dict[str, Any]:
        """Server health, head sequence and subscriber count."""
        return await self._request("GET", "/v1/health")

    # -------------------------------------------------------------------------
    # Stream
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def stream_events(
        self, since: int | None = None
    ) -> AsyncIterator[AsyncIterator[StreamEvent]]:
        """Open the event stream.

        Args:
            since: Last sequence processed, None to start live

        Yields:
            Async iterator of decoded StreamEvents; it ends when the
            server closes the stream

        Raises:
            TransportError: If the stream cannot be opened or breaks
        """
        params = {"since": since} if since is not None else None
        headers = {"Accept": "text/event-stream"}
        if since is not None:
            headers["Last-Event-ID"] = str(since)
        timeout = httpx.Timeout(
            self.settings.request_timeout, read=self.settings.stream_read_timeout
        )

        try:
            async with self._http.stream(
                "GET", "/v1/stream", params=params, headers=headers, timeout=timeout
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    raise error_from_response(response.status_code, self._decode(response))
                yield self._iter_events(response)
        except httpx.TransportError as e:
            raise TransportError(f"Event stream failed: {e}", address=self.base_url) from e

    async def _iter_events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        decoder = SseDecoder()
        async for line in response.aiter_lines():
            event = decoder.feed(line)
            if event is not None:
                yield event

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _entity_path(entity_kind: str, entity_id: str) -> str:
        return f"/v1/entities/{quote(entity_kind, safe='')}/{quote(entity_id, safe='')}"

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _mutation_result(payload: dict[str, Any]) -> MutationResult:
        return MutationResult(
            entity=Entity.from_dict(payload["entity"]),
            sequence=int(payload["sequence"]),
        )

    async def _request(
        self,
        method: str,
        path: str,
        entity_kind: str = "",
        entity_id: str = "",
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransportError(
                f"{method} {path} failed: {e}", address=self.base_url
            ) from e

        payload = self._decode(response)
        if response.status_code >= 400:
            logger.debug(
                "Request failed",
                extra={"method": method, "path": path, "status": response.status_code},
            )
            raise error_from_response(response.status_code, payload, entity_kind, entity_id)
        return payload
