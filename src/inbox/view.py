"""Mailbox view.

``MailboxView`` wires one realtime source, overlay store, reconciler,
dispatcher, deferred-commit queue and toast controller together, and exposes
the user actions of a mailbox screen:

- ``mark_read`` / ``mark_unread`` / ``restore``: immediate, optimistic.
- ``mark_done`` / ``delete``: optimistic, committed client-side once the undo
  window expires.
- ``send``: issued at once with a server-side grace window, cancellable until
  it commits.
- ``move_to_category``: immediate, hides the thread from the current category.

The newest action on a field wins: marking a thread done again, or restoring
a thread whose delete is still counting down, takes it out of the older
entry. While mounted, a ticker polls the queue so countdown progress keeps
flowing to toasts.

Every action applies its overlay before any request leaves the client. A
rejected request rolls the overlay back and shows a notice; nothing is ever
raised to the caller.

Example:
    >>> async with MailboxBackend(config.backend_url) as backend:
    ...     view = MailboxView(backend, HttpStreamTransport(config.backend_url), config)
    ...     view.mount()
    ...     await view.mark_read(["t1", "t2"])
    ...     action_id = view.mark_done(["t3"])
    ...     await view.undo(action_id)
    ...     await view.unmount()
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from src.common.settings.config import MailboxConfig
from src.inbox.backend import BackendError, MailboxBackend
from src.inbox.countdown import Clock, wall_clock_ms
from src.inbox.deferred import (
    CommitStrategy,
    DeferredAction,
    DeferredCommitQueue,
    DeferredStatus,
)
from src.inbox.dispatcher import ActionDispatcher, Mutation
from src.inbox.models import BatchResult, Entity, EntityChange, EntityFilter, MutationAction
from src.inbox.notifications import CategoryMoveNotifier
from src.inbox.overlay import OverlayStore
from src.inbox.realtime import RealtimeStateSource, SourceStatus, SubscriptionTransport
from src.inbox.reconciler import Reconciler
from src.inbox.toasts import KIND_DELETE, KIND_DONE, KIND_SEND, ToastController

logger = logging.getLogger(__name__)

ViewListener = Callable[[frozenset[str]], None]

_DEFERRED_ACTIONS: dict[str, MutationAction] = {
    KIND_DONE: MutationAction.MARK_DONE,
    KIND_DELETE: MutationAction.DELETE,
}

_LIVE_STATUSES = frozenset({DeferredStatus.PENDING, DeferredStatus.PAUSED})

_FAILURE_MESSAGES: dict[MutationAction, str] = {
    MutationAction.MARK_READ: "Couldn't mark as read",
    MutationAction.MARK_UNREAD: "Couldn't mark as unread",
    MutationAction.MARK_DONE: "Couldn't mark as done",
    MutationAction.DELETE: "Couldn't move to trash",
    MutationAction.RESTORE: "Couldn't restore",
}


class MailboxView:
    """One mailbox screen: server state, overlays, and undoable actions.

    Attributes:
        config: The client configuration.
        source: Realtime source for the subscribed collection.
        overlays: Optimistic overrides layered on the source.
        queue: Deferred-commit queue for undoable actions.
        toasts: Toasts mirroring the queue, plus notices.
        notifications: Category-move notifications for the collection.
    """

    def __init__(
        self,
        backend: MailboxBackend,
        transport: SubscriptionTransport,
        config: MailboxConfig | None = None,
        *,
        entity_filter: EntityFilter | None = None,
        clock: Clock = wall_clock_ms,
    ) -> None:
        """Build an unmounted view.

        Args:
            backend: Backend client, already entered.
            transport: Push-source transport.
            config: Client configuration. Defaults to ``MailboxConfig()``.
            entity_filter: Collection to show. Defaults to the configured
                category's active threads.
            clock: Wall clock in epoch ms, shared by every countdown.
        """
        self.config = config or MailboxConfig()
        self._backend = backend
        self._filter = entity_filter or EntityFilter(category=self.config.category)

        self.source = RealtimeStateSource(
            transport,
            resubscribe_attempts=self.config.resubscribe_attempts,
            resubscribe_delay=self.config.resubscribe_delay,
        )
        self.overlays = OverlayStore(clock)
        self.reconciler = Reconciler(self.overlays)
        self.dispatcher = ActionDispatcher(backend)
        self.queue = DeferredCommitQueue(clock)
        self.toasts = ToastController(
            self.queue,
            linger_ms=self.config.toast_linger_ms,
            error_linger_ms=self.config.toast_error_linger_ms,
        )
        self.notifications = CategoryMoveNotifier(clock)

        self._listeners: list[ViewListener] = []
        self._unhooks: list[Callable[[], None]] = []
        self._ticker: asyncio.Task[None] | None = None
        self._mounted = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_mounted(self) -> bool:
        """Return True between ``mount`` and ``unmount``."""
        return self._mounted

    @property
    def entity_filter(self) -> EntityFilter:
        """Return the collection currently shown."""
        return self._filter

    @property
    def status(self) -> SourceStatus:
        """Return the realtime source's status."""
        return self.source.status

    def mount(self) -> None:
        """Start the subscription. Calling it twice is a no-op."""
        if self._mounted:
            return
        self._mounted = True

        self.reconciler.attach(self.source)
        self.notifications.attach(self.source)
        self._unhooks = [
            self.source.add_change_listener(self._on_change),
            self.source.add_status_listener(self._on_status),
            self.overlays.add_listener(self._emit),
        ]
        self._ticker = asyncio.get_running_loop().create_task(
            self._tick(), name="mailbox-countdown",
        )
        self.source.subscribe(self._filter)
        logger.info("Mounted mailbox view on %s", self._filter)

    def select(self, entity_filter: EntityFilter) -> None:
        """Show another collection. An equal filter does not resubscribe."""
        self._filter = entity_filter
        if self._mounted:
            self.source.subscribe(entity_filter)

    async def unmount(self) -> None:
        """Tear everything down: timers, subscription, overlays, toasts."""
        if not self._mounted:
            return
        self._mounted = False

        for unhook in self._unhooks:
            unhook()
        self._unhooks = []
        self.reconciler.detach()
        self.notifications.detach()

        ticker, self._ticker = self._ticker, None
        if ticker is not None and not ticker.done():
            ticker.cancel()
            try:
                await ticker
            except asyncio.CancelledError:
                pass

        await self.queue.close()
        self.toasts.close()
        await self.source.close()
        self.overlays.reset()
        logger.info("Unmounted mailbox view")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def effective(self, entity_id: str) -> Entity | None:
        """Return the entity with its overlays applied, if it exists."""
        server = self.source.get(entity_id)
        if server is None:
            return None
        return self.overlays.project_entity(server)

    def visible(self) -> list[Entity]:
        """Return the effective entities the current collection should show.

        Done and deleted entities are hidden, and so are threads the user
        just moved out of the filtered category.
        """
        projected = (self.overlays.project_entity(e) for e in self.source.entities)
        return [
            e for e in projected
            if not (e.is_done or e.is_deleted or self._moved_away(e.id))
        ]

    def add_listener(self, listener: ViewListener) -> Callable[[], None]:
        """Register a callback invoked with the ids whose rendering may change."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Immediate actions
    # ------------------------------------------------------------------

    async def mark_read(self, ids: list[str]) -> bool:
        """Mark entities read. Returns False if any id was rolled back."""
        return await self._mutate(MutationAction.MARK_READ, ids)

    async def mark_unread(self, ids: list[str]) -> bool:
        """Mark entities unread. Returns False if any id was rolled back."""
        return await self._mutate(MutationAction.MARK_UNREAD, ids)

    async def restore(self, ids: list[str]) -> bool:
        """Restore entities from the trash."""
        return await self._mutate(MutationAction.RESTORE, ids)

    async def move_to_category(self, entity_id: str, category: str) -> bool:
        """Override a thread's category.

        The thread leaves the current collection at once and a "Moved to"
        notice is shown. Returns False if the change was rolled back.
        """
        self.overlays.apply([entity_id], "user_category", category)
        self.toasts.notify(f"Moved to {category.capitalize()}")
        try:
            await self._backend.update_category(entity_id, category)
        except BackendError as e:
            logger.warning("Category change of %s failed: %s", entity_id, e)
            self.overlays.clear([entity_id], "user_category", expected=category)
            self.toasts.notify("Couldn't change category", str(e), error=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Undoable actions
    # ------------------------------------------------------------------

    def mark_done(self, ids: list[str]) -> str | None:
        """Mark entities done after the done undo window.

        Returns:
            The queue entry id to pass to ``undo``, or None for no ids.
        """
        return self._defer(KIND_DONE, ids, self.config.done_undo_window_ms)

    def delete(self, ids: list[str]) -> str | None:
        """Move entities to the trash after the delete undo window.

        Returns:
            The queue entry id to pass to ``undo``, or None for no ids.
        """
        return self._defer(KIND_DELETE, ids, self.config.delete_undo_window_ms)

    async def send(self, payload: dict[str, Any]) -> str | None:
        """Send an email with a server-side undo window.

        Returns:
            The send id (also the queue entry id), or None if the backend
            refused the send.
        """
        window_ms = self.config.send_undo_window_ms
        try:
            receipt = await self._backend.send(payload, window_ms)
        except BackendError as e:
            logger.warning("Send failed: %s", e)
            self.toasts.notify("Couldn't send email", str(e), error=True)
            return None

        self.queue.enqueue(
            receipt.id,
            payload,
            window_ms=window_ms if receipt.can_undo else 0,
            strategy=CommitStrategy.SERVER_DEFERRED,
            kind=KIND_SEND,
            cancel=functools.partial(self._backend.cancel_send, receipt.id),
            deadline_ms=receipt.undo_until_ms,
        )
        return receipt.id

    async def undo(self, action_id: str) -> DeferredStatus | None:
        """Cancel an undoable action.

        Returns:
            The entry's status after the attempt, or None for an unknown id.
        """
        action = self.queue.get(action_id)
        if action is None:
            return None

        was_live = action.status in _LIVE_STATUSES
        status = await self.queue.cancel(action_id)
        if (
            was_live
            and status is DeferredStatus.CANCELLED
            and action.kind in _DEFERRED_ACTIONS
        ):
            field_name, value = _DEFERRED_ACTIONS[action.kind].effect
            owned = self._owned_ids(field_name, exclude=action_id)
            self.overlays.clear(
                [i for i in action.payload if i not in owned],
                field_name,
                expected=value,
            )
        return status

    def pause(self, action_id: str) -> None:
        """Freeze an action's undo countdown (e.g. while its toast is hovered)."""
        if action_id in self.queue:
            self.queue.pause(action_id)

    def resume(self, action_id: str) -> None:
        """Continue an action's undo countdown."""
        if action_id in self.queue:
            self.queue.resume(action_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _mutate(self, action: MutationAction, ids: list[str]) -> bool:
        unique = list(dict.fromkeys(ids))
        if not unique:
            return True
        field_name, value = action.effect
        self._supersede(unique, field_name)
        self.overlays.apply(unique, field_name, value)
        return await self._commit(action, unique)

    async def _commit(self, action: MutationAction, ids: list[str]) -> bool:
        mutation = Mutation.of(action, ids)
        try:
            result = await self.dispatcher.dispatch(mutation)
        except BackendError as e:
            logger.warning("%s failed for %d ids: %s", action.value, len(ids), e)
            self.overlays.clear(ids, mutation.field, expected=mutation.value)
            self.toasts.notify(_FAILURE_MESSAGES[action], str(e), error=True)
            return False

        if isinstance(result, BatchResult) and result.has_failures:
            kept = result.succeeded(list(mutation.ids))
            logger.warning(
                "%s applied to %d of %d ids", action.value, len(kept), len(ids),
            )
            self.overlays.clear(result.failed_ids, mutation.field, expected=mutation.value)
            self.toasts.notify(
                _FAILURE_MESSAGES[action],
                f"{len(ids) - len(kept)} of {len(ids)} threads were not updated",
                error=True,
            )
            return False
        return True

    def _defer(self, kind: str, ids: list[str], window_ms: int) -> str | None:
        unique = list(dict.fromkeys(ids))
        if not unique:
            return None

        action = _DEFERRED_ACTIONS[kind]
        field_name, value = action.effect
        self._supersede(unique, field_name)
        self.overlays.apply(unique, field_name, value)

        action_id = f"{kind}-{uuid4().hex}"
        self.queue.enqueue(
            action_id,
            unique,
            window_ms=window_ms,
            strategy=CommitStrategy.CLIENT_DEFERRED,
            kind=kind,
            commit=functools.partial(self._commit, action, unique),
        )
        return action_id

    def _supersede(self, ids: list[str], field_name: str) -> None:
        """Take ``ids`` out of every live deferred entry that sets ``field_name``.

        The newest action on a field wins. An entry left without ids is
        withdrawn; its commit never runs.
        """
        claimed = set(ids)
        for entry in self.queue.actions:
            if not self._owns_field(entry, field_name):
                continue
            remaining = [i for i in entry.payload if i not in claimed]
            if len(remaining) == len(entry.payload):
                continue
            # The commit callback holds the same list.
            entry.payload[:] = remaining
            if remaining:
                self.queue.refresh(entry.action_id)
            else:
                self.queue.withdraw(entry.action_id)

    def _owned_ids(self, field_name: str, *, exclude: str) -> set[str]:
        owned: set[str] = set()
        for entry in self.queue.actions:
            if entry.action_id != exclude and self._owns_field(entry, field_name):
                owned.update(entry.payload)
        return owned

    @staticmethod
    def _owns_field(entry: DeferredAction, field_name: str) -> bool:
        action = _DEFERRED_ACTIONS.get(entry.kind)
        return (
            action is not None
            and entry.strategy is CommitStrategy.CLIENT_DEFERRED
            and entry.status in _LIVE_STATUSES
            and action.effect[0] == field_name
        )

    def _moved_away(self, entity_id: str) -> bool:
        category = self._filter.category
        moved = self.overlays.get(entity_id, "user_category")
        return (
            category is not None
            and moved is not None
            and str(moved.value).lower() != category.lower()
        )

    async def _tick(self) -> None:
        interval = self.config.tick_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.queue.poll()

    def _on_change(self, change: EntityChange) -> None:
        self._emit(frozenset({change.entity_id}))

    def _on_status(self, status: SourceStatus, error: Exception | None) -> None:
        if status is SourceStatus.FAILED:
            logger.error("Can't load mailbox: %s", error)
            self.toasts.notify("Can't load mailbox", str(error or ""), error=True)
        elif status is SourceStatus.STALE:
            logger.info("Mailbox data may be stale: %s", error)

    def _emit(self, ids: frozenset[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(ids)
            except Exception:
                logger.exception("View listener failed")
