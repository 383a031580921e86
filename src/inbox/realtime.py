"""Realtime state source for a filtered mailbox collection.

This module wraps a push-source subscription and turns its event stream into
the two things the rest of the client consumes:

- **Snapshots**: the full current set of entities matching the filter.
- **Changes**: ordered per-entity deltas (``added``/``modified``/``removed``).

The source owns the subscription lifecycle: it deduplicates repeated
``subscribe`` calls, resubscribes when the filter changes, retries after a
transport drop, and tears everything down on ``close``.

Classes:
    SnapshotEvent: Transport event carrying a full snapshot.
    ChangeEvent: Transport event carrying one entity change.
    SubscriptionTransport: Protocol implemented by push-source transports.
    SourceStatus: Lifecycle status of the source.
    RealtimeStateSource: The subscription wrapper itself.
    SubscriptionError: A transport drop or failure to subscribe.
    SubscriptionLostError: Raised when resubscription attempts are exhausted.

Example:
    >>> source = RealtimeStateSource(transport, resubscribe_attempts=3)
    >>> source.add_change_listener(lambda change: print(change.type))
    >>> source.subscribe(EntityFilter(collection="threads", category="urgent"))
    >>> source.subscribe(EntityFilter(collection="threads", category="urgent"))  # no-op
    >>> await source.wait_for_snapshot(timeout=5.0)
    >>> await source.close()

Design Notes:
    Deltas are delivered to listeners synchronously, inside the task that
    reads the stream, so delta N is fully processed by every listener before
    delta N+1 is read. A snapshot that follows a resubscription is diffed
    against the previous state and surfaced as ordinary changes, so
    listeners never need a separate "resync" path.

Thread Safety:
    Not thread-safe. One source per view, driven by one event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from src.inbox.models import ChangeType, Entity, EntityChange, EntityFilter

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class SubscriptionError(Exception):
    """Raised by transports when a subscription drops or cannot be opened.

    The source treats this as a stale-data condition: overlays stay in place
    and a resubscription is attempted.
    """

    pass


class SubscriptionLostError(SubscriptionError):
    """Reported once resubscription attempts are exhausted.

    This is the only transport condition escalated to the user as a
    "can't load mailbox" state.

    Attributes:
        attempts: Number of consecutive failed subscription attempts.
    """

    def __init__(self, message: str, attempts: int) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error message.
            attempts: Number of consecutive failed attempts.
        """
        super().__init__(message)
        self.attempts = attempts


# =============================================================================
# Transport Contract
# =============================================================================


@dataclass(frozen=True)
class SnapshotEvent:
    """Full snapshot of every entity matching the filter."""

    entities: list[Entity] = field(default_factory=list)


@dataclass(frozen=True)
class ChangeEvent:
    """One change for one entity.

    Attributes:
        entity_id: Identifier of the changed entity.
        type: Kind of change.
        fields: The entity's full current field set (ignored for removals).
    """

    entity_id: str
    type: ChangeType
    fields: dict[str, Any] = field(default_factory=dict)


SubscriptionEvent = SnapshotEvent | ChangeEvent


class SubscriptionTransport(Protocol):
    """A push source that can be subscribed to with a filter.

    ``open`` returns an async iterator that yields one ``SnapshotEvent``
    followed by an ordered stream of ``ChangeEvent`` objects. Transports
    raise ``SubscriptionError`` when the stream drops.
    """

    def open(self, entity_filter: EntityFilter) -> AsyncIterator[SubscriptionEvent]:
        ...


class SourceStatus(str, Enum):
    """Lifecycle status of a realtime source."""

    IDLE = "idle"
    LOADING = "loading"
    LIVE = "live"
    STALE = "stale"
    FAILED = "failed"
    CLOSED = "closed"


ChangeListener = Callable[[EntityChange], None]
SnapshotListener = Callable[[list[Entity]], None]
StatusListener = Callable[[SourceStatus, Exception | None], None]


# =============================================================================
# Realtime Source
# =============================================================================


class RealtimeStateSource:
    """Subscription wrapper that keeps the latest server state per entity.

    Lifecycle:
        1. Create with a transport.
        2. Register listeners.
        3. ``subscribe(filter)``; calling it again with an equal filter is a
           no-op, a different filter tears down and resubscribes.
        4. ``close()`` when the owning view unmounts.

    Attributes:
        entity_filter: The filter of the current subscription, if any.
        status: Current lifecycle status.
        last_error: The most recent transport error, if any.
        entities: Current server entities in delivery order.
        is_stale: Whether the data may be out of date.
    """

    def __init__(
        self,
        transport: SubscriptionTransport,
        *,
        resubscribe_attempts: int = 3,
        resubscribe_delay: float = 1.0,
    ) -> None:
        """Initialize an idle source.

        Args:
            transport: Push-source transport to subscribe through.
            resubscribe_attempts: Consecutive failed attempts tolerated after
                a drop before escalating to ``FAILED``.
            resubscribe_delay: Seconds to wait between attempts.
        """
        self._transport = transport
        self._resubscribe_attempts = max(0, resubscribe_attempts)
        self._resubscribe_delay = max(0.0, resubscribe_delay)

        self._filter: EntityFilter | None = None
        self._task: asyncio.Task[None] | None = None
        self._entities: dict[str, Entity] = {}
        self._snapshot_received = asyncio.Event()
        self._status = SourceStatus.IDLE
        self._last_error: Exception | None = None
        self._closed = False

        self._change_listeners: list[ChangeListener] = []
        self._snapshot_listeners: list[SnapshotListener] = []
        self._status_listeners: list[StatusListener] = []

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @property
    def entity_filter(self) -> EntityFilter | None:
        """Return the filter of the current subscription."""
        return self._filter

    @property
    def status(self) -> SourceStatus:
        """Return the current lifecycle status."""
        return self._status

    @property
    def last_error(self) -> Exception | None:
        """Return the most recent transport error, if any."""
        return self._last_error

    @property
    def is_stale(self) -> bool:
        """Return True while the data may be out of date."""
        return self._status in (SourceStatus.STALE, SourceStatus.FAILED)

    @property
    def entities(self) -> list[Entity]:
        """Return the current server entities in delivery order."""
        return list(self._entities.values())

    def get(self, entity_id: str) -> Entity | None:
        """Return the current server entity for ``entity_id``, if present."""
        return self._entities.get(entity_id)

    def subscribe(self, entity_filter: EntityFilter) -> None:
        """Subscribe to the collection selected by ``entity_filter``.

        Safe to call repeatedly: an equal filter with a live subscription is
        a no-op. A different filter cancels the current subscription and
        opens a new one; the new snapshot is diffed against the old state.

        Args:
            entity_filter: Predicate selecting the collection.

        Raises:
            RuntimeError: If the source was closed, or if called outside a
                running event loop.
        """
        if self._closed:
            raise RuntimeError("Realtime source is closed")

        if (
            self._task is not None
            and not self._task.done()
            and entity_filter == self._filter
        ):
            logger.debug("Already subscribed to %s", entity_filter)
            return

        if self._task is not None and not self._task.done():
            logger.info("Filter changed; resubscribing to %s", entity_filter)
            self._task.cancel()

        self._filter = entity_filter
        self._snapshot_received.clear()
        self._task = asyncio.create_task(
            self._run(entity_filter),
            name=f"realtime-{entity_filter.collection}",
        )

    async def wait_for_snapshot(self, timeout: float | None = None) -> None:
        """Wait until the current subscription delivered its first snapshot.

        Args:
            timeout: Maximum seconds to wait, or None to wait indefinitely.

        Raises:
            TimeoutError: If no snapshot arrived within ``timeout``.
        """
        await asyncio.wait_for(self._snapshot_received.wait(), timeout=timeout)

    async def close(self) -> None:
        """Tear down the subscription and drop all state and listeners."""
        if self._closed:
            return
        self._closed = True

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._entities.clear()
        self._set_status(SourceStatus.CLOSED, None)
        self._change_listeners.clear()
        self._snapshot_listeners.clear()
        self._status_listeners.clear()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_change_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a callback for every entity change, in arrival order."""
        return _register(self._change_listeners, listener)

    def add_snapshot_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a callback for every full snapshot."""
        return _register(self._snapshot_listeners, listener)

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Register a callback for status transitions."""
        return _register(self._status_listeners, listener)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _run(self, entity_filter: EntityFilter) -> None:
        """Consume the transport stream, resubscribing after drops."""
        failures = 0
        self._set_status(SourceStatus.LOADING, None)

        while True:
            try:
                async for event in self._transport.open(entity_filter):
                    if isinstance(event, SnapshotEvent):
                        failures = 0
                        self._apply_snapshot(event.entities)
                        self._set_status(SourceStatus.LIVE, None)
                    else:
                        self._apply_change(event)
                raise SubscriptionError("Subscription stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not isinstance(exc, SubscriptionError):
                    logger.exception("Unexpected error in subscription stream")

                failures += 1
                if failures > self._resubscribe_attempts:
                    lost = SubscriptionLostError(
                        f"Subscription to {entity_filter.collection} lost after "
                        f"{failures} attempts: {exc}",
                        attempts=failures,
                    )
                    logger.error("%s", lost)
                    self._set_status(SourceStatus.FAILED, lost)
                    return

                logger.warning(
                    "Subscription dropped (%s); resubscribing in %.1fs "
                    "(attempt %d of %d)",
                    exc,
                    self._resubscribe_delay,
                    failures,
                    self._resubscribe_attempts,
                )
                self._set_status(SourceStatus.STALE, exc)
                await asyncio.sleep(self._resubscribe_delay)

    def _apply_snapshot(self, entities: list[Entity]) -> None:
        previous = self._entities
        current = {entity.id: entity for entity in entities}
        self._entities = current

        for listener in list(self._snapshot_listeners):
            _call(listener, list(current.values()))

        for entity_id, old in previous.items():
            if entity_id not in current:
                self._emit(EntityChange(entity_id, ChangeType.REMOVED, old))
        for entity_id, entity in current.items():
            old = previous.get(entity_id)
            if old is None:
                self._emit(EntityChange(entity_id, ChangeType.ADDED, entity))
            elif old != entity:
                self._emit(EntityChange(entity_id, ChangeType.MODIFIED, entity))

        self._snapshot_received.set()
        logger.debug(
            "Snapshot applied: %d entities (%d before)", len(current), len(previous),
        )

    def _apply_change(self, event: ChangeEvent) -> None:
        if event.type is ChangeType.REMOVED:
            old = self._entities.pop(event.entity_id, None)
            self._emit(EntityChange(event.entity_id, ChangeType.REMOVED, old))
            return

        entity = Entity.model_validate({**event.fields, "id": event.entity_id})
        self._entities[event.entity_id] = entity
        self._emit(EntityChange(event.entity_id, event.type, entity))

    def _emit(self, change: EntityChange) -> None:
        for listener in list(self._change_listeners):
            _call(listener, change)

    def _set_status(self, status: SourceStatus, error: Exception | None) -> None:
        if error is not None:
            self._last_error = error
        if status is self._status and error is None:
            return
        self._status = status
        for listener in list(self._status_listeners):
            _call(listener, status, error)


def _register(listeners: list[Any], listener: Any) -> Callable[[], None]:
    listeners.append(listener)

    def remove() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return remove


def _call(listener: Callable[..., None], *args: Any) -> None:
    try:
        listener(*args)
    except Exception:
        logger.exception("Realtime listener failed")
