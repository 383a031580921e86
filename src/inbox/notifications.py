"""Category-move notifications.

Watches a realtime source for threads that newly land in the Promises or
Awaiting categories (``hasPromise`` / ``hasAwaiting`` turning true) and keeps
a short list of notifications about them.

- Threads present in the first snapshot never notify.
- Each thread notifies at most once per category.
- Updates whose ``updatedAt`` is older than 30 seconds are marked as seen
  without notifying.
- At most five notifications are kept, newest first.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic.alias_generators import to_camel

from src.inbox.countdown import Clock, wall_clock_ms
from src.inbox.models import ChangeType, Entity, EntityChange
from src.inbox.realtime import RealtimeStateSource

logger = logging.getLogger(__name__)

RECENCY_THRESHOLD_MS = 30 * 1000
MAX_NOTIFICATIONS = 5

MoveType = Literal["promise", "awaiting"]

_CATEGORY_FIELDS: dict[MoveType, str] = {
    "promise": "has_promise",
    "awaiting": "has_awaiting",
}


@dataclass(frozen=True)
class CategoryMoveNotification:
    """A thread moved into the Promises or Awaiting category.

    Attributes:
        id: ``"<type>-<thread id>"``.
        type: ``"promise"`` or ``"awaiting"``.
        thread_id: The thread that moved.
        subject: The thread's subject line.
        timestamp: When the move was noticed (epoch ms).
    """

    id: str
    type: MoveType
    thread_id: str
    subject: str
    timestamp: float


def extra_field(entity: Entity, name: str) -> Any:
    """Read a pass-through field in either snake_case or camelCase."""
    extra = entity.model_extra or {}
    if name in extra:
        return extra[name]
    return extra.get(to_camel(name))


def _timestamp_ms(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        moment = value
    else:
        try:
            moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable updatedAt %r", value)
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp() * 1000.0


class CategoryMoveNotifier:
    """Collects notifications about threads moving into watched categories."""

    def __init__(self, clock: Clock = wall_clock_ms) -> None:
        self._clock = clock
        self._notifications: list[CategoryMoveNotification] = []
        self._seen: dict[MoveType, set[str]] = {kind: set() for kind in _CATEGORY_FIELDS}
        self._seeded = False
        self._listeners: list[Callable[[list[CategoryMoveNotification]], None]] = []
        self._detach: list[Callable[[], None]] = []

    @property
    def notifications(self) -> list[CategoryMoveNotification]:
        """Return the current notifications, newest first."""
        return list(self._notifications)

    def attach(self, source: RealtimeStateSource) -> None:
        """Start watching ``source``. Resets the initial-snapshot guard."""
        self.detach()
        self._seeded = False
        self._detach = [
            source.add_snapshot_listener(self.on_snapshot),
            source.add_change_listener(self.on_change),
        ]

    def detach(self) -> None:
        """Stop watching the current source."""
        for remove in self._detach:
            remove()
        self._detach = []

    def dismiss(self, notification_id: str) -> None:
        """Remove one notification. Unknown ids are ignored."""
        remaining = [n for n in self._notifications if n.id != notification_id]
        if len(remaining) != len(self._notifications):
            self._notifications = remaining
            self._emit()

    def add_listener(
        self,
        listener: Callable[[list[CategoryMoveNotification]], None],
    ) -> Callable[[], None]:
        """Register a callback invoked with the notification list on change."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def on_snapshot(self, entities: list[Entity]) -> None:
        """Mark everything in the first snapshot as already seen."""
        if self._seeded:
            return
        for entity in entities:
            for kind, field_name in _CATEGORY_FIELDS.items():
                if extra_field(entity, field_name):
                    self._seen[kind].add(entity.id)
        self._seeded = True

    def on_change(self, change: EntityChange) -> None:
        """Notify about an added or modified thread that entered a category."""
        if not self._seeded or change.entity is None:
            return
        if change.type is ChangeType.REMOVED:
            return

        entity = change.entity
        for kind, field_name in _CATEGORY_FIELDS.items():
            if not extra_field(entity, field_name) or entity.id in self._seen[kind]:
                continue
            self._seen[kind].add(entity.id)

            now = self._clock()
            updated_at = _timestamp_ms(extra_field(entity, "updated_at"))
            if updated_at is not None and now - updated_at > RECENCY_THRESHOLD_MS:
                continue

            subject = (
                extra_field(entity, "gmail_subject")
                or extra_field(entity, "subject")
                or "(No Subject)"
            )
            self._add(CategoryMoveNotification(
                id=f"{kind}-{entity.id}",
                type=kind,
                thread_id=entity.id,
                subject=subject,
                timestamp=now,
            ))

    def _add(self, notification: CategoryMoveNotification) -> None:
        if any(n.id == notification.id for n in self._notifications):
            return
        logger.info("Thread %s moved to %s", notification.thread_id, notification.type)
        self._notifications = [notification, *self._notifications][:MAX_NOTIFICATIONS]
        self._emit()

    def _emit(self) -> None:
        snapshot = self.notifications
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Notification listener failed")
