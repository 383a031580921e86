"""Tests for overlay reconciliation."""

from __future__ import annotations

import pytest

from src.inbox.models import ChangeType, Entity, EntityChange, EntityFilter
from src.inbox.overlay import OverlayStore
from src.inbox.realtime import ChangeEvent, RealtimeStateSource, SnapshotEvent
from src.inbox.reconciler import Reconciler


@pytest.fixture
def store(clock) -> OverlayStore:
    return OverlayStore(clock)


@pytest.fixture
def reconciler(store: OverlayStore) -> Reconciler:
    return Reconciler(store)


class TestReconcile:
    """Tests for per-delta reconciliation."""

    def test_matching_delta_clears_overlay(self, store, reconciler):
        """Test that a confirming delta retires the overlay."""
        store.apply(["t1"], "is_read", True)

        reconciler.on_change(
            EntityChange("t1", ChangeType.MODIFIED, Entity(id="t1", is_read=True))
        )

        assert store.is_empty

    def test_unrelated_delta_keeps_overlay(self, store, reconciler):
        """Test that a delta that has not caught up leaves the overlay."""
        store.apply(["t1"], "is_read", True)

        reconciler.on_change(
            EntityChange("t1", ChangeType.MODIFIED, Entity(id="t1", is_read=False))
        )

        assert store.get("t1", "is_read").value is True

    def test_only_matching_fields_cleared(self, store, reconciler):
        """Test that each overlaid field is compared on its own."""
        store.apply(["t1"], "is_read", True)
        store.apply(["t1"], "is_done", True)

        reconciler.on_change(
            EntityChange("t1", ChangeType.MODIFIED, Entity(id="t1", is_read=True))
        )

        assert store.get("t1", "is_read") is None
        assert store.get("t1", "is_done") is not None

    def test_removed_clears_everything(self, store, reconciler):
        """Test that a removal drops every overlay on the entity."""
        store.apply(["t1"], "is_done", True)
        store.apply(["t1"], "is_read", True)

        reconciler.on_change(EntityChange("t1", ChangeType.REMOVED, None))

        assert store.is_empty

    def test_convergence_without_flicker(self, store, reconciler):
        """Test that clearing a caught-up overlay does not change the render."""
        server = Entity(id="t1", is_read=False)
        store.apply(["t1"], "is_read", True)
        before = store.project_entity(server)

        confirmed = Entity(id="t1", is_read=True)
        during = store.project_entity(confirmed)
        reconciler.on_change(EntityChange("t1", ChangeType.MODIFIED, confirmed))
        after = store.project_entity(confirmed)

        assert before.is_read is during.is_read is after.is_read is True
        assert during is confirmed
        assert after is confirmed

    def test_snapshot_reconciles_and_drops_missing(self, store, reconciler):
        """Test reconciling against a full snapshot."""
        store.apply(["t1"], "is_read", True)
        store.apply(["t2"], "is_read", True)
        store.apply(["gone"], "is_done", True)

        reconciler.on_snapshot([
            Entity(id="t1", is_read=True),
            Entity(id="t2", is_read=False),
        ])

        assert store.entity_ids == frozenset({"t2"})


class TestAttach:
    """Tests for wiring to a realtime source."""

    @pytest.mark.asyncio
    async def test_reconciles_live_deltas(self, store, reconciler, transport):
        """Test end-to-end reconciliation through a source."""
        source = RealtimeStateSource(transport, resubscribe_delay=0)
        reconciler.attach(source)
        source.subscribe(EntityFilter())
        transport.push(SnapshotEvent([Entity(id="t1")]))
        await transport.flush()

        store.apply(["t1"], "is_read", True)
        transport.push(ChangeEvent("t1", ChangeType.MODIFIED, {"isRead": True}))
        await transport.flush()

        assert store.is_empty
        assert reconciler.is_attached
        reconciler.detach()
        assert not reconciler.is_attached
        await source.close()
