"""Tests for category-move notifications."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.inbox.models import ChangeType, Entity, EntityChange, EntityFilter
from src.inbox.notifications import (
    MAX_NOTIFICATIONS,
    CategoryMoveNotifier,
    extra_field,
)
from src.inbox.realtime import ChangeEvent, RealtimeStateSource, SnapshotEvent


@pytest.fixture
def notifier(clock) -> CategoryMoveNotifier:
    """Notifier that has already seen an empty first snapshot."""
    notifier = CategoryMoveNotifier(clock)
    notifier.on_snapshot([])
    return notifier


def thread(thread_id: str, **extra) -> Entity:
    return Entity.model_validate({"id": thread_id, **extra})


def modified(entity: Entity) -> EntityChange:
    return EntityChange(entity.id, ChangeType.MODIFIED, entity)


class TestExtraField:
    """Tests for extra_field."""

    def test_either_casing(self):
        """Test reading pass-through fields in both casings."""
        assert extra_field(thread("t1", hasPromise=True), "has_promise") is True
        assert extra_field(thread("t1", has_promise=True), "has_promise") is True
        assert extra_field(thread("t1"), "has_promise") is None


class TestCategoryMoveNotifier:
    """Tests for CategoryMoveNotifier."""

    def test_promise_move(self, notifier, clock):
        """Test a thread gaining a promise."""
        notifier.on_change(modified(thread("t1", hasPromise=True, gmailSubject="Lunch?")))

        [notification] = notifier.notifications
        assert notification.id == "promise-t1"
        assert notification.type == "promise"
        assert notification.subject == "Lunch?"
        assert notification.timestamp == clock.now

    def test_awaiting_move_without_subject(self, notifier):
        """Test the subject fallback."""
        notifier.on_change(modified(thread("t1", has_awaiting=True)))
        assert notifier.notifications[0].subject == "(No Subject)"

    def test_both_categories(self, notifier):
        """Test a thread entering both categories."""
        notifier.on_change(
            modified(thread("t1", hasPromise=True, hasAwaiting=True))
        )
        assert {n.id for n in notifier.notifications} == {"promise-t1", "awaiting-t1"}

    def test_deduplicated(self, notifier):
        """Test that a thread notifies once per category."""
        entity = thread("t1", hasPromise=True)
        notifier.on_change(modified(entity))
        notifier.dismiss("promise-t1")
        notifier.on_change(modified(entity))

        assert notifier.notifications == []

    def test_initial_snapshot_ignored(self, clock):
        """Test that threads already in the first snapshot never notify."""
        notifier = CategoryMoveNotifier(clock)
        existing = thread("t1", hasPromise=True)

        notifier.on_change(modified(existing))
        notifier.on_snapshot([existing])
        notifier.on_change(modified(existing))

        assert notifier.notifications == []

    def test_stale_update_ignored(self, notifier, clock):
        """Test that updates older than 30 seconds are not announced."""
        old = datetime.fromtimestamp((clock.now - 31_000) / 1000.0, tz=timezone.utc)
        notifier.on_change(
            modified(thread("t1", hasPromise=True, updatedAt=old.isoformat()))
        )
        notifier.on_change(
            modified(thread("t2", hasPromise=True, updatedAt=clock.now - 5_000))
        )

        assert [n.thread_id for n in notifier.notifications] == ["t2"]

    def test_removed_ignored(self, notifier):
        """Test that removals never notify."""
        notifier.on_change(
            EntityChange("t1", ChangeType.REMOVED, thread("t1", hasPromise=True))
        )
        assert notifier.notifications == []

    def test_capped_newest_first(self, notifier):
        """Test that only the newest notifications are kept."""
        for i in range(MAX_NOTIFICATIONS + 2):
            notifier.on_change(modified(thread(f"t{i}", hasPromise=True)))

        ids = [n.thread_id for n in notifier.notifications]
        assert len(ids) == MAX_NOTIFICATIONS
        assert ids[0] == f"t{MAX_NOTIFICATIONS + 1}"

    @pytest.mark.asyncio
    async def test_through_source(self, clock, transport):
        """Test wiring to a realtime source."""
        notifier = CategoryMoveNotifier(clock)
        source = RealtimeStateSource(transport, resubscribe_delay=0)
        notifier.attach(source)
        source.subscribe(EntityFilter())

        transport.push(SnapshotEvent([thread("t1", hasPromise=True), thread("t2")]))
        transport.push(ChangeEvent("t2", ChangeType.MODIFIED, {"hasAwaiting": True}))
        await transport.flush()

        assert [n.id for n in notifier.notifications] == ["awaiting-t2"]
        notifier.detach()
        await source.close()
