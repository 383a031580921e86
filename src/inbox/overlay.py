"""Optimistic overlay store.

This module holds the client-local overrides that make a user action visible
before the backend or the push source confirms it. An overlay is a pending
value for one field of one entity; the effective entity the UI renders is the
server entity with its overlays layered on top.

Classes:
    OverlayEntry: One pending override for one ``(entity_id, field)``.
    OverlayStore: Per-view store of overlays with a cached projection.

Functions:
    project: Pure merge of a server entity and its overlays.

Lifecycle:
    1. An action handler calls ``apply(ids, field, value)`` before issuing
       any network request, so ``project()`` reflects the action immediately.
    2. The reconciler calls ``clear([id], field)`` once the push source
       reports the same value (the override has caught up).
    3. On a rejected mutation the action handler calls ``clear()`` for the
       failed ids, reverting the UI to server truth.
    4. ``reset()`` drops everything when the owning view unmounts.

Example:
    >>> store = OverlayStore()
    >>> server = Entity(id="t1", is_read=False)
    >>> store.apply(["t1"], "is_read", True)
    >>> store.project_entity(server).is_read
    True
    >>> store.clear(["t1"], "is_read")
    >>> store.project_entity(server) is server
    True

Thread Safety:
    Not thread-safe. All calls must come from the event loop thread that owns
    the view; every method runs to completion without awaiting.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from src.inbox.countdown import wall_clock_ms
from src.inbox.models import Entity, normalize_field

logger = logging.getLogger(__name__)

OverlayListener = Callable[[frozenset[str]], None]

_UNSET: Any = object()


@dataclass(frozen=True)
class OverlayEntry:
    """One pending override for one ``(entity_id, field)``.

    Attributes:
        value: The value the UI should show until the server catches up.
        enqueued_at: Wall-clock time (epoch ms) the override was applied.
    """

    value: Any
    enqueued_at: float


def project(
    server_entity: Entity,
    overlay: Mapping[str, OverlayEntry] | None,
) -> Entity:
    """Merge a server entity with its pending overrides.

    For every overridden field the overlay value wins; every other field
    comes from the server entity. When no override changes anything, the
    server entity itself is returned, so an entity whose overlays have all
    caught up keeps its identity.

    Args:
        server_entity: The entity as last delivered by the push source.
        overlay: The entity's overlay entries keyed by field name.

    Returns:
        The effective entity the UI should render.
    """
    if not overlay:
        return server_entity

    updates = {
        field_name: entry.value
        for field_name, entry in overlay.items()
        if getattr(server_entity, field_name) != entry.value
    }
    if not updates:
        return server_entity
    return server_entity.model_copy(update=updates)


class OverlayStore:
    """Per-view store of optimistic overrides.

    Entries are keyed by entity id, then by field name, so several fields of
    the same entity can be overridden independently. Repeated ``apply`` calls
    on the same ``(id, field)`` are last-writer-wins.

    ``project_entity`` caches its result per entity and returns the same
    object for as long as neither the server entity nor its overlay changed,
    which keeps consuming views from re-rendering needlessly.

    Attributes:
        entity_ids: Ids that currently have at least one overlay.
        is_empty: Whether the store holds no overlays at all.
    """

    def __init__(self, clock: Callable[[], float] = wall_clock_ms) -> None:
        """Initialize an empty overlay store.

        Args:
            clock: Returns the current wall-clock time in epoch ms. Used to
                stamp ``OverlayEntry.enqueued_at``.
        """
        self._clock = clock
        self._entries: dict[str, dict[str, OverlayEntry]] = {}
        self._projection_cache: dict[str, tuple[Entity, tuple[Any, ...], Entity]] = {}
        self._listeners: list[OverlayListener] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def entity_ids(self) -> frozenset[str]:
        """Return the ids that currently have at least one overlay."""
        return frozenset(self._entries)

    @property
    def is_empty(self) -> bool:
        """Return True if no overlays are held."""
        return not self._entries

    def __len__(self) -> int:
        return sum(len(fields) for fields in self._entries.values())

    def get(self, entity_id: str, field_name: str) -> OverlayEntry | None:
        """Return the overlay entry for ``(entity_id, field_name)``, if any."""
        return self._entries.get(entity_id, {}).get(normalize_field(field_name))

    def overlay_for(self, entity_id: str) -> Mapping[str, OverlayEntry]:
        """Return a copy of every overlay entry held for one entity."""
        return dict(self._entries.get(entity_id, {}))

    def project_entity(self, server_entity: Entity) -> Entity:
        """Return the effective entity for ``server_entity``.

        Args:
            server_entity: The entity as last delivered by the push source.

        Returns:
            The projected entity. Identical inputs return the identical
            object across calls.
        """
        fields = self._entries.get(server_entity.id)
        if not fields:
            self._projection_cache.pop(server_entity.id, None)
            return server_entity

        key = tuple(sorted((name, entry.value) for name, entry in fields.items()))
        cached = self._projection_cache.get(server_entity.id)
        if cached is not None and cached[0] is server_entity and cached[1] == key:
            return cached[2]

        projected = project(server_entity, fields)
        self._projection_cache[server_entity.id] = (server_entity, key, projected)
        return projected

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def apply(self, ids: Iterable[str], field_name: str, value: Any) -> None:
        """Record an override for each id.

        Takes effect synchronously: ``project_entity`` reflects the new value
        as soon as this returns.

        Args:
            ids: Entity ids to override.
            field_name: Field to override, in either casing.
            value: Value to show until the server catches up.

        Raises:
            ValueError: If ``field_name`` is not an overridable field.
        """
        canonical = normalize_field(field_name)
        now = self._clock()
        changed: set[str] = set()

        for entity_id in ids:
            fields = self._entries.setdefault(entity_id, {})
            existing = fields.get(canonical)
            if existing is not None and existing.value == value:
                continue
            fields[canonical] = OverlayEntry(value=value, enqueued_at=now)
            changed.add(entity_id)

        if changed:
            logger.debug(
                "Applied overlay %s=%r to %d entities", canonical, value, len(changed),
            )
            self._notify(changed)

    def clear(
        self,
        ids: Iterable[str],
        field_name: str,
        *,
        expected: Any = _UNSET,
    ) -> None:
        """Remove the override for each id.

        Args:
            ids: Entity ids whose override should be removed.
            field_name: Field to clear, in either casing.
            expected: If given, only entries whose value equals
                ``expected`` are removed. Rollback uses this so a failed
                request never erases a newer override for the same field.

        Raises:
            ValueError: If ``field_name`` is not an overridable field.
        """
        canonical = normalize_field(field_name)
        changed: set[str] = set()

        for entity_id in ids:
            fields = self._entries.get(entity_id)
            if not fields or canonical not in fields:
                continue
            if expected is not _UNSET and fields[canonical].value != expected:
                continue
            del fields[canonical]
            if not fields:
                del self._entries[entity_id]
            changed.add(entity_id)

        if changed:
            logger.debug("Cleared overlay %s on %d entities", canonical, len(changed))
            self._notify(changed)

    def clear_entity(self, entity_id: str) -> None:
        """Remove every override held for one entity."""
        if self._entries.pop(entity_id, None) is not None:
            self._projection_cache.pop(entity_id, None)
            self._notify({entity_id})

    def reset(self) -> None:
        """Drop every overlay (used when the owning view unmounts)."""
        if not self._entries:
            return
        changed = set(self._entries)
        self._entries.clear()
        self._projection_cache.clear()
        self._notify(changed)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: OverlayListener) -> Callable[[], None]:
        """Register a callback invoked with the ids whose overlays changed.

        Args:
            listener: Called synchronously after every effective change.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, changed: set[str]) -> None:
        ids = frozenset(changed)
        for listener in list(self._listeners):
            try:
                listener(ids)
            except Exception:
                logger.exception("Overlay listener failed")
