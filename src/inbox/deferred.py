"""Deferred-commit queue.

Every undoable action (send, mark done, delete) lives in this queue for the
length of its undo window. Each entry owns one pausable ``CountdownTimer``
and moves through a small state machine::

    pending ⇄ paused
    pending | paused → cancelling → cancelled | error | pending | paused
    pending → committed
    committed → cancelling → error

Two commit strategies are supported:

- ``CLIENT_DEFERRED``: nothing is sent until the window expires. On expiry
  the entry becomes ``committed`` and its ``commit`` coroutine runs. Cancel
  is purely local and never touches the network.
- ``SERVER_DEFERRED``: the mutation was already issued with a server-side
  grace window. On expiry the entry becomes ``committed`` as a local signal
  only. Cancel awaits the entry's ``cancel`` coroutine, and the backend's
  answer decides between ``cancelled`` (intercepted) and ``error``
  (already committed).

Subscribers receive a ``QueueUpdate`` for every status transition, and for
every ``poll()`` while an entry is counting down.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from src.inbox.backend import BackendError, BackendUnavailableError, CancelRaceError
from src.inbox.countdown import Clock, CountdownTimer, wall_clock_ms

logger = logging.getLogger(__name__)


# =============================================================================
# Status
# =============================================================================


class DeferredStatus(str, Enum):
    """Lifecycle status of a deferred action."""

    PENDING = "pending"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMMITTED = "committed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({
    DeferredStatus.CANCELLED,
    DeferredStatus.COMMITTED,
    DeferredStatus.ERROR,
})


def is_terminal(status: DeferredStatus) -> bool:
    """Check if a status is terminal (the countdown is over for good).

    Args:
        status: The status to check.

    Returns:
        True if the status is cancelled, committed, or error.
    """
    return status in TERMINAL_STATUSES


class CommitStrategy(str, Enum):
    """Who executes a deferred action, and when."""

    CLIENT_DEFERRED = "client_deferred"
    SERVER_DEFERRED = "server_deferred"


ErrorKind = Literal["network", "race", "expired", "backend"]


# =============================================================================
# Exceptions
# =============================================================================


class DeferredQueueError(Exception):
    """Base exception for deferred-queue errors."""

    pass


class UnknownActionError(DeferredQueueError, KeyError):
    """Raised when an action id is not in the queue."""

    pass


class DuplicateActionError(DeferredQueueError):
    """Raised when enqueueing an id that is still counting down."""

    pass


class QueueClosedError(DeferredQueueError):
    """Raised when enqueueing into a closed queue."""

    pass


# =============================================================================
# Entries
# =============================================================================


@dataclass(frozen=True)
class QueueUpdate:
    """Snapshot of one entry, delivered to queue subscribers.

    Attributes:
        action_id: Identifier of the entry.
        kind: Caller-defined action kind (``"send"``, ``"done"``, ...).
        remaining_ms: Wall-clock budget left.
        window_ms: The entry's full budget.
        status: Current status.
        error_kind: Why the last cancel failed, if it did.
    """

    action_id: str
    kind: str
    remaining_ms: float
    window_ms: float
    status: DeferredStatus
    error_kind: ErrorKind | None = None


@dataclass
class DeferredAction:
    """One entry of the deferred-commit queue.

    Attributes:
        action_id: Identifier of the entry.
        payload: Caller data carried along (ids, send payload, ...).
        strategy: Whether commit happens client-side or server-side.
        kind: Caller-defined action kind.
        timer: The entry's countdown.
        status: Current status.
        last_error: Why the last cancel failed, if it did.
    """

    action_id: str
    payload: Any
    strategy: CommitStrategy
    kind: str
    timer: CountdownTimer
    commit: Callable[[], Awaitable[Any]] | None = None
    cancel: Callable[[], Awaitable[Any]] | None = None
    status: DeferredStatus = DeferredStatus.PENDING
    last_error: ErrorKind | None = None
    created_at: float = field(default_factory=wall_clock_ms)

    @property
    def remaining_ms(self) -> float:
        """Return the wall-clock budget left."""
        return self.timer.remaining_ms

    @property
    def window_ms(self) -> float:
        """Return the entry's full budget."""
        return self.timer.duration_ms

    def to_update(self) -> QueueUpdate:
        """Build the subscriber view of this entry."""
        return QueueUpdate(
            action_id=self.action_id,
            kind=self.kind,
            remaining_ms=self.remaining_ms,
            window_ms=self.window_ms,
            status=self.status,
            error_kind=self.last_error,
        )


QueueListener = Callable[[QueueUpdate], None]


# =============================================================================
# Queue
# =============================================================================


class DeferredCommitQueue:
    """Undo-window queue with pause/resume and cancel races.

    Example:
        >>> queue = DeferredCommitQueue()
        >>> queue.enqueue(
        ...     "done-1", ["t1"], window_ms=5000,
        ...     strategy=CommitStrategy.CLIENT_DEFERRED, commit=commit_done,
        ... )
        >>> queue.pause("done-1")
        >>> queue.resume("done-1")
        >>> await queue.cancel("done-1")
        <DeferredStatus.CANCELLED: 'cancelled'>
    """

    def __init__(self, clock: Clock = wall_clock_ms) -> None:
        """Initialize an empty queue.

        Args:
            clock: Returns the current wall-clock time in milliseconds.
        """
        self._clock = clock
        self._actions: dict[str, DeferredAction] = {}
        self._listeners: list[QueueListener] = []
        self._commit_tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def actions(self) -> list[DeferredAction]:
        """Return every entry, in enqueue order."""
        return list(self._actions.values())

    @property
    def is_closed(self) -> bool:
        """Return True once ``close`` was called."""
        return self._closed

    def get(self, action_id: str) -> DeferredAction | None:
        """Return the entry for ``action_id``, if present."""
        return self._actions.get(action_id)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def enqueue(
        self,
        action_id: str,
        payload: Any = None,
        *,
        window_ms: float,
        strategy: CommitStrategy,
        kind: str = "",
        commit: Callable[[], Awaitable[Any]] | None = None,
        cancel: Callable[[], Awaitable[Any]] | None = None,
        deadline_ms: float | None = None,
    ) -> DeferredAction:
        """Add an entry and start its countdown.

        Args:
            action_id: Unique identifier of the entry.
            payload: Caller data carried along with the entry.
            window_ms: Undo window in milliseconds.
            strategy: Commit strategy of the entry.
            kind: Caller-defined action kind, echoed in updates.
            commit: Coroutine factory run on expiry (client-deferred).
            cancel: Coroutine factory run on user cancel (server-deferred).
            deadline_ms: Server undo deadline (epoch ms). Can only shorten
                the window.

        Returns:
            The new entry.

        Raises:
            QueueClosedError: If the queue was closed.
            DuplicateActionError: If ``action_id`` is still counting down.
            ValueError: If a server-deferred entry has no ``cancel``.
        """
        if self._closed:
            raise QueueClosedError("Deferred queue is closed")

        existing = self._actions.get(action_id)
        if existing is not None and not is_terminal(existing.status):
            raise DuplicateActionError(f"Action {action_id} is already pending")

        if strategy is CommitStrategy.SERVER_DEFERRED and cancel is None:
            raise ValueError("Server-deferred actions need a cancel coroutine")

        budget = float(window_ms)
        if deadline_ms is not None:
            budget = min(budget, deadline_ms - self._clock())

        def expire() -> None:
            self._on_expire(action)

        action = DeferredAction(
            action_id=action_id,
            payload=payload,
            strategy=strategy,
            kind=kind,
            timer=CountdownTimer(budget, on_expire=expire, clock=self._clock),
            commit=commit,
            cancel=cancel,
            created_at=self._clock(),
        )
        self._actions[action_id] = action
        action.timer.start()

        logger.debug(
            "Enqueued %s (%s, %.0fms window)", action_id, strategy.value, budget,
        )
        self._publish(action)
        return action

    def pause(self, action_id: str) -> None:
        """Freeze an entry's countdown. No-op unless pending.

        Raises:
            UnknownActionError: If ``action_id`` is not in the queue.
        """
        action = self._require(action_id)
        if action.status is not DeferredStatus.PENDING:
            return
        action.timer.pause()
        action.status = DeferredStatus.PAUSED
        self._publish(action)

    def resume(self, action_id: str) -> None:
        """Continue an entry's countdown. No-op unless paused.

        Raises:
            UnknownActionError: If ``action_id`` is not in the queue.
        """
        action = self._require(action_id)
        if action.status is not DeferredStatus.PAUSED:
            return
        action.status = DeferredStatus.PENDING
        action.timer.resume()
        self._publish(action)

    async def cancel(self, action_id: str) -> DeferredStatus:
        """Try to stop an entry before it commits.

        Args:
            action_id: The entry to cancel.

        Returns:
            The entry's status once the cancel attempt settled:
            ``CANCELLED`` if intercepted, ``ERROR`` if it already committed
            or the race was lost, or the prior ``PENDING``/``PAUSED`` status
            after a network failure with time remaining.

        Raises:
            UnknownActionError: If ``action_id`` is not in the queue.
        """
        action = self._require(action_id)
        if action.status in (
            DeferredStatus.CANCELLING,
            DeferredStatus.CANCELLED,
            DeferredStatus.ERROR,
        ):
            return action.status

        prior = action.status
        self._set_status(action, DeferredStatus.CANCELLING)

        if prior is DeferredStatus.COMMITTED or action.remaining_ms <= 0:
            action.timer.cancel()
            self._set_status(action, DeferredStatus.ERROR, "expired")
            return action.status

        cancel = action.cancel
        if action.strategy is CommitStrategy.CLIENT_DEFERRED or cancel is None:
            action.timer.cancel()
            self._set_status(action, DeferredStatus.CANCELLED)
            return action.status

        try:
            await cancel()
        except CancelRaceError:
            self._settle(action, DeferredStatus.ERROR, "race")
        except BackendUnavailableError as e:
            if action.timer.is_finished or action.remaining_ms <= 0:
                self._settle(action, DeferredStatus.ERROR, "expired")
            else:
                logger.warning("Cancel of %s failed, window still open: %s", action_id, e)
                self._set_status(action, prior, "network")
        except BackendError:
            logger.exception("Cancel of %s failed", action_id)
            self._settle(action, DeferredStatus.ERROR, "backend")
        else:
            self._settle(action, DeferredStatus.CANCELLED)

        return action.status

    def poll(self) -> None:
        """Re-evaluate every running countdown and publish progress.

        Expires entries whose wall-clock budget ran out even if the event
        loop's timer has not fired yet.
        """
        for action in list(self._actions.values()):
            if action.status is DeferredStatus.PENDING and not action.timer.check():
                self._publish(action)

    def withdraw(self, action_id: str) -> DeferredStatus:
        """Cancel a client-deferred entry locally and at once.

        Used when a newer action replaces the entry. No-op unless pending or
        paused.

        Returns:
            The entry's status afterwards.

        Raises:
            UnknownActionError: If ``action_id`` is not in the queue.
            ValueError: If the entry is server-deferred.
        """
        action = self._require(action_id)
        if action.strategy is not CommitStrategy.CLIENT_DEFERRED:
            raise ValueError(f"Action {action_id} can only be cancelled by the server")
        if action.status in (DeferredStatus.PENDING, DeferredStatus.PAUSED):
            logger.debug("Withdrew %s", action_id)
            self._settle(action, DeferredStatus.CANCELLED)
        return action.status

    def refresh(self, action_id: str) -> None:
        """Republish an entry after its payload changed in place.

        Raises:
            UnknownActionError: If ``action_id`` is not in the queue.
        """
        self._publish(self._require(action_id))

    def discard(self, action_id: str) -> None:
        """Stop an entry's countdown and forget it. Unknown ids are ignored."""
        action = self._actions.pop(action_id, None)
        if action is not None:
            action.timer.cancel()

    async def close(self) -> None:
        """Cancel every timer and in-flight commit, and drop every entry."""
        self._closed = True
        for action in self._actions.values():
            action.timer.cancel()
        self._actions.clear()
        self._listeners.clear()

        tasks = list(self._commit_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._commit_tasks.clear()

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        """Register a callback for entry updates.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _require(self, action_id: str) -> DeferredAction:
        action = self._actions.get(action_id)
        if action is None:
            raise UnknownActionError(action_id)
        return action

    def _on_expire(self, action: DeferredAction) -> None:
        if self._actions.get(action.action_id) is not action:
            return
        if action.status is DeferredStatus.CANCELLING:
            return

        self._set_status(action, DeferredStatus.COMMITTED)
        logger.info("Committed %s", action.action_id)

        if action.strategy is CommitStrategy.CLIENT_DEFERRED and action.commit:
            task = asyncio.get_running_loop().create_task(
                self._run_commit(action.action_id, action.commit),
                name=f"commit-{action.action_id}",
            )
            self._commit_tasks.add(task)
            task.add_done_callback(self._commit_tasks.discard)

    async def _run_commit(
        self,
        action_id: str,
        commit: Callable[[], Awaitable[Any]],
    ) -> None:
        try:
            await commit()
        except Exception:
            logger.exception("Commit of %s failed", action_id)

    def _settle(
        self,
        action: DeferredAction,
        status: DeferredStatus,
        error: ErrorKind | None = None,
    ) -> None:
        action.timer.cancel()
        self._set_status(action, status, error)

    def _set_status(
        self,
        action: DeferredAction,
        status: DeferredStatus,
        error: ErrorKind | None = None,
    ) -> None:
        action.status = status
        action.last_error = error
        if self._actions.get(action.action_id) is action:
            self._publish(action)

    def _publish(self, action: DeferredAction) -> None:
        update = action.to_update()
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Queue listener failed")
