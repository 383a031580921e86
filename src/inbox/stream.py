"""HTTP push-source transport.

``HttpStreamTransport`` subscribes to ``GET /entities/stream`` and reads a
newline-delimited JSON stream. The first line is a snapshot, every later line
is one change::

    {"type": "snapshot", "entities": [{"id": "t1", "isRead": false}, ...]}
    {"type": "modified", "id": "t1", "fields": {"id": "t1", "isRead": true}}
    {"type": "removed", "id": "t2"}

Blank lines are keep-alives and are skipped.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from src.inbox.models import ChangeType, Entity, EntityFilter
from src.inbox.realtime import ChangeEvent, SnapshotEvent, SubscriptionError, SubscriptionEvent

logger = logging.getLogger(__name__)


def parse_stream_line(line: str) -> SubscriptionEvent:
    """Parse one stream line into a subscription event.

    Args:
        line: One non-blank NDJSON line.

    Returns:
        The decoded event.

    Raises:
        SubscriptionError: If the line is not a valid event.
    """
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise SubscriptionError(f"Malformed stream line: {e}") from e
    if not isinstance(data, dict):
        raise SubscriptionError(f"Unexpected stream line: {line!r}")

    event_type = data.get("type")
    try:
        if event_type == "snapshot":
            return SnapshotEvent(
                entities=[Entity.model_validate(item) for item in data.get("entities", [])],
            )
        change_type = ChangeType(event_type)
        entity_id = data.get("id")
        if not entity_id:
            raise SubscriptionError(f"Change without id: {line!r}")
        fields: dict[str, Any] = data.get("fields") or {}
        return ChangeEvent(entity_id=str(entity_id), type=change_type, fields=fields)
    except ValueError as e:
        raise SubscriptionError(f"Invalid stream event {event_type!r}: {e}") from e


class HttpStreamTransport:
    """Push-source transport over an NDJSON HTTP stream.

    Example:
        >>> transport = HttpStreamTransport("http://localhost:8080")
        >>> source = RealtimeStateSource(transport)
        >>> source.subscribe(EntityFilter(category="urgent"))
    """

    def __init__(
        self,
        base_url: str,
        httpx_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        api_token: str | None = None,
        path: str = "/entities/stream",
    ) -> None:
        """Initialize the transport.

        Args:
            base_url: Base URL of the backend.
            httpx_client: Optional httpx AsyncClient to use. If not provided,
                one is created per subscription.
            timeout: Connect timeout in seconds. Reads never time out.
            api_token: Optional bearer token.
            path: Stream endpoint path.
        """
        self.base_url = base_url.rstrip("/")
        self._httpx_client = httpx_client
        self._timeout = timeout
        self._api_token = api_token
        self._path = path

    async def open(self, entity_filter: EntityFilter) -> AsyncIterator[SubscriptionEvent]:
        """Open the stream and yield events until it ends.

        Raises:
            SubscriptionError: If the request fails or the stream drops.
        """
        if self._httpx_client is not None:
            async for event in self._read(self._httpx_client, entity_filter):
                yield event
            return

        timeout = httpx.Timeout(self._timeout, read=None)
        async with httpx.AsyncClient(timeout=timeout) as client:
            async for event in self._read(client, entity_filter):
                yield event

    async def _read(
        self,
        client: httpx.AsyncClient,
        entity_filter: EntityFilter,
    ) -> AsyncIterator[SubscriptionEvent]:
        headers = {"Accept": "application/x-ndjson"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"

        url = f"{self.base_url}{self._path}"
        try:
            async with client.stream(
                "GET", url, params=entity_filter.as_params(), headers=headers,
            ) as response:
                if response.is_error:
                    raise SubscriptionError(
                        f"Stream request failed: HTTP {response.status_code}"
                    )
                logger.debug("Stream opened: %s %s", url, entity_filter.as_params())
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    yield parse_stream_line(line)
        except httpx.HTTPError as e:
            raise SubscriptionError(f"Stream dropped: {e}") from e
