"""Overlay reconciliation.

The reconciler listens to the realtime source and retires overlays once the
server has caught up with them. For each delta it compares every overlaid
field of the changed entity with the server value: equal values clear the
overlay, unequal values leave it in place (the server has not caught up yet,
or another actor changed the field in the meantime). Removed entities lose
all of their overlays.

Because an overlay equal to the server value projects to the server entity
itself, clearing it never changes what the UI renders. This is what makes
convergence free of flicker.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from src.inbox.models import ChangeType, Entity, EntityChange
from src.inbox.overlay import OverlayStore
from src.inbox.realtime import RealtimeStateSource

logger = logging.getLogger(__name__)


class Reconciler:
    """Clears overlays that the push source has confirmed.

    Attributes:
        store: The overlay store being reconciled.
        is_attached: Whether the reconciler is listening to a source.
    """

    def __init__(self, store: OverlayStore) -> None:
        self.store = store
        self._detach: list[Callable[[], None]] = []

    @property
    def is_attached(self) -> bool:
        """Return True while the reconciler is listening to a source."""
        return bool(self._detach)

    def attach(self, source: RealtimeStateSource) -> None:
        """Start reconciling against ``source``'s deltas and snapshots."""
        self.detach()
        self._detach = [
            source.add_change_listener(self.on_change),
            source.add_snapshot_listener(self.on_snapshot),
        ]

    def detach(self) -> None:
        """Stop listening to the current source."""
        for remove in self._detach:
            remove()
        self._detach = []

    def on_change(self, change: EntityChange) -> None:
        """Reconcile overlays against one delta."""
        if change.type is ChangeType.REMOVED:
            self.store.clear_entity(change.entity_id)
            return
        if change.entity is not None:
            self.reconcile(change.entity)

    def on_snapshot(self, entities: list[Entity]) -> None:
        """Reconcile every overlaid entity against a full snapshot.

        Overlays on entities absent from the snapshot are dropped.
        """
        by_id = {entity.id: entity for entity in entities}
        for entity_id in self.store.entity_ids:
            entity = by_id.get(entity_id)
            if entity is None:
                self.store.clear_entity(entity_id)
            else:
                self.reconcile(entity)

    def reconcile(self, entity: Entity) -> None:
        """Clear every overlay on ``entity`` that matches the server value."""
        for field_name, entry in self.store.overlay_for(entity.id).items():
            if entity.field_value(field_name) == entry.value:
                logger.debug("Overlay %s on %s confirmed", field_name, entity.id)
                self.store.clear([entity.id], field_name, expected=entry.value)
