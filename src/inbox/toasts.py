"""Undo toasts.

``ToastController`` turns deferred-queue updates into user-facing toast
models: one toast per queue entry, with a title, a description, a progress
percentage and the whole seconds left to undo. Terminal toasts linger for a
short while and then dismiss themselves.

It also carries plain notices (``notify``) for outcomes that have no queue
entry, such as a rolled-back mutation.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import uuid4

from src.inbox.deferred import (
    DeferredAction,
    DeferredCommitQueue,
    DeferredStatus,
    QueueUpdate,
    is_terminal,
)

logger = logging.getLogger(__name__)

KIND_SEND = "send"
KIND_DONE = "done"
KIND_DELETE = "delete"
KIND_NOTICE = "notice"


class ToastState(str, Enum):
    """What a toast is currently showing."""

    COUNTDOWN = "countdown"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    SENT = "sent"
    ERROR = "error"
    INFO = "info"


@dataclass(frozen=True)
class Toast:
    """One toast as the UI should render it.

    Attributes:
        id: Toast id (the queue entry id for undo toasts).
        kind: ``send``, ``done``, ``delete`` or ``notice``.
        state: What the toast is showing.
        title: Main line.
        description: Secondary line, possibly empty.
        progress: Percentage of the undo window left, 0 to 100.
        seconds_left: Whole seconds left to undo, rounded up.
        can_undo: Whether an Undo button should be offered.
    """

    id: str
    kind: str
    state: ToastState
    title: str
    description: str = ""
    progress: int = 0
    seconds_left: int = 0
    can_undo: bool = False


ToastListener = Callable[[str, Toast | None], None]


def _plural(count: int, one: str, many: str) -> str:
    return one if count == 1 else many.format(count=count)


def _recipients(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    to = payload.get("to") or []
    if isinstance(to, str):
        to = [to]
    if not to:
        return ""
    if len(to) == 1:
        return f"To: {to[0]}"
    return f"To: {to[0]} +{len(to) - 1}"


def build_toast(action: DeferredAction) -> Toast:
    """Build the toast for a queue entry in its current state.

    Args:
        action: The queue entry.

    Returns:
        The toast to render.
    """
    update = action.to_update()
    window = update.window_ms
    progress = 0
    if window > 0:
        progress = max(0, min(100, round(update.remaining_ms / window * 100)))
    seconds_left = math.ceil(update.remaining_ms / 1000.0)
    counting = update.status in (DeferredStatus.PENDING, DeferredStatus.PAUSED)

    title, description, state = _describe(update, action.payload)
    return Toast(
        id=update.action_id,
        kind=update.kind,
        state=state,
        title=title,
        description=description,
        progress=progress if counting else 0,
        seconds_left=seconds_left if counting else 0,
        can_undo=counting and update.remaining_ms > 0,
    )


def _describe(update: QueueUpdate, payload: Any) -> tuple[str, str, ToastState]:
    status = update.status

    if update.kind == KIND_SEND:
        to = _recipients(payload)
        if status in (DeferredStatus.PENDING, DeferredStatus.PAUSED):
            if update.error_kind == "network":
                return "Network error, try again", to, ToastState.COUNTDOWN
            return "Sending email…", to, ToastState.COUNTDOWN
        if status is DeferredStatus.CANCELLING:
            return "Cancelling…", "", ToastState.CANCELLING
        if status is DeferredStatus.CANCELLED:
            return "Email cancelled", "Message was not sent", ToastState.CANCELLED
        if status is DeferredStatus.COMMITTED:
            return "Email sent", to, ToastState.SENT
        return "Couldn't cancel", "Email may have already been sent", ToastState.ERROR

    count = len(payload) if isinstance(payload, (list, tuple)) else 1
    if update.kind == KIND_DELETE:
        title = _plural(count, "Thread moved to trash", "{count} threads moved to trash")
    else:
        title = _plural(count, "Marked as done", "{count} threads marked as done")

    if status is DeferredStatus.ERROR:
        return "Couldn't undo", "The change was already applied", ToastState.ERROR
    if status is DeferredStatus.CANCELLING:
        return "Undoing…", "", ToastState.CANCELLING
    if status is DeferredStatus.CANCELLED:
        return title, "Undone", ToastState.CANCELLED
    if status is DeferredStatus.COMMITTED:
        return title, "", ToastState.SENT
    return title, "", ToastState.COUNTDOWN


class ToastController:
    """Keeps one toast per deferred action, plus plain notices.

    Send toasts linger after they settle so the user can read the outcome;
    done and delete toasts disappear as soon as they are undone or
    committed. Either way the settled queue entry is discarded once the
    linger time has passed, so undo still reports its outcome until then.
    """

    def __init__(
        self,
        queue: DeferredCommitQueue,
        *,
        linger_ms: float = 2000,
        error_linger_ms: float = 3000,
    ) -> None:
        """Attach a controller to ``queue``.

        Args:
            queue: The deferred-commit queue to mirror.
            linger_ms: How long settled toasts stay visible.
            error_linger_ms: How long error toasts stay visible.
        """
        self._queue = queue
        self._linger_ms = linger_ms
        self._error_linger_ms = error_linger_ms
        self._toasts: dict[str, Toast] = {}
        self._dismiss_handles: dict[str, asyncio.TimerHandle] = {}
        self._retire_handles: dict[str, asyncio.TimerHandle] = {}
        self._listeners: list[ToastListener] = []
        self._unsubscribe = queue.subscribe(self._on_update)

    @property
    def toasts(self) -> list[Toast]:
        """Return every visible toast, with fresh progress for countdowns."""
        return [self._refresh(toast) for toast in self._toasts.values()]

    def get(self, toast_id: str) -> Toast | None:
        """Return the visible toast with ``toast_id``, if any."""
        toast = self._toasts.get(toast_id)
        return self._refresh(toast) if toast is not None else None

    def notify(self, title: str, description: str = "", *, error: bool = False) -> Toast:
        """Show a plain notice that dismisses itself after the linger time."""
        toast = Toast(
            id=f"notice-{uuid4().hex[:8]}",
            kind=KIND_NOTICE,
            state=ToastState.ERROR if error else ToastState.INFO,
            title=title,
            description=description,
        )
        self._show(toast)
        self._schedule_dismiss(toast)
        return toast

    def dismiss(self, toast_id: str) -> None:
        """Hide a toast now. Unknown ids are ignored."""
        handle = self._dismiss_handles.pop(toast_id, None)
        if handle is not None:
            handle.cancel()
        if self._toasts.pop(toast_id, None) is not None:
            self._emit(toast_id, None)

    def add_listener(self, listener: ToastListener) -> Callable[[], None]:
        """Register a callback invoked with ``(toast_id, toast)`` on change.

        ``toast`` is None when the toast was dismissed.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def close(self) -> None:
        """Detach from the queue and drop every toast."""
        self._unsubscribe()
        for handle in [*self._dismiss_handles.values(), *self._retire_handles.values()]:
            handle.cancel()
        self._dismiss_handles.clear()
        self._retire_handles.clear()
        self._toasts.clear()
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _on_update(self, update: QueueUpdate) -> None:
        action = self._queue.get(update.action_id)
        if action is None:
            return
        if is_terminal(action.status):
            self._schedule_retire(action)

        toast = build_toast(action)
        previous = self._toasts.get(toast.id)
        if update.kind != KIND_SEND and toast.state in (
            ToastState.CANCELLED,
            ToastState.SENT,
        ):
            self.dismiss(toast.id)
            return

        if previous == toast:
            return
        self._show(toast)
        if toast.state in (ToastState.CANCELLED, ToastState.SENT, ToastState.ERROR):
            self._schedule_dismiss(toast)

    def _refresh(self, toast: Toast) -> Toast:
        if toast.state is not ToastState.COUNTDOWN:
            return toast
        action = self._queue.get(toast.id)
        return build_toast(action) if action is not None else toast

    def _show(self, toast: Toast) -> None:
        self._toasts[toast.id] = toast
        self._emit(toast.id, toast)

    def _schedule_dismiss(self, toast: Toast) -> None:
        linger = self._error_linger_ms if toast.state is ToastState.ERROR else self._linger_ms
        existing = self._dismiss_handles.pop(toast.id, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._dismiss_handles[toast.id] = loop.call_later(
            linger / 1000.0, self.dismiss, toast.id,
        )

    def _schedule_retire(self, action: DeferredAction) -> None:
        linger = (
            self._error_linger_ms
            if action.status is DeferredStatus.ERROR
            else self._linger_ms
        )
        existing = self._retire_handles.pop(action.action_id, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._retire_handles[action.action_id] = loop.call_later(
            linger / 1000.0, self._retire, action.action_id,
        )

    def _retire(self, action_id: str) -> None:
        # Settled entries leave the queue once their outcome was shown.
        self._retire_handles.pop(action_id, None)
        action = self._queue.get(action_id)
        if action is not None and is_terminal(action.status):
            self._queue.discard(action_id)

    def _emit(self, toast_id: str, toast: Toast | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(toast_id, toast)
            except Exception:
                logger.exception("Toast listener failed")
