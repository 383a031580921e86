"""Optimistic mailbox client.

User actions (read, done, delete, send) become visible at once through
client-local overlays, are reconciled against a realtime push source, and can
be undone during a grace window before they commit.

Modules:
    models: Entity, change, and backend result models
    overlay: Optimistic overlay store and pure projection
    realtime: Push-source subscription wrapper
    reconciler: Clears overlays once the server catches up
    backend: Async REST backend client
    dispatcher: Mutation dispatch and batch coordination
    countdown: Pausable wall-clock countdown
    deferred: Deferred-commit queue for undoable actions
    toasts: Undo toast models
    notifications: Category-move notifications
    stream: NDJSON HTTP push-source transport
    view: Mailbox view composing all of the above
    cli: ``mailbox-watch`` entry point

Example:
    >>> from src.inbox import MailboxBackend, MailboxView, HttpStreamTransport
    >>> async with MailboxBackend("http://localhost:8080") as backend:
    ...     view = MailboxView(backend, HttpStreamTransport("http://localhost:8080"))
    ...     view.mount()
"""

from src.inbox.backend import (
    BackendError,
    BackendUnavailableError,
    CancelRaceError,
    MailboxBackend,
    MutationRejectedError,
)
from src.inbox.countdown import CountdownError, CountdownTimer, wall_clock_ms
from src.inbox.deferred import (
    CommitStrategy,
    DeferredAction,
    DeferredCommitQueue,
    DeferredQueueError,
    DeferredStatus,
    DuplicateActionError,
    QueueClosedError,
    QueueUpdate,
    UnknownActionError,
    is_terminal,
)
from src.inbox.dispatcher import ActionDispatcher, BatchCoordinator, Mutation
from src.inbox.models import (
    BatchResult,
    CancelReceipt,
    ChangeType,
    Entity,
    EntityChange,
    EntityFilter,
    MutationAction,
    MutationResult,
    SendReceipt,
    SendStatus,
)
from src.inbox.notifications import CategoryMoveNotification, CategoryMoveNotifier
from src.inbox.overlay import OverlayEntry, OverlayStore, project
from src.inbox.realtime import (
    ChangeEvent,
    RealtimeStateSource,
    SnapshotEvent,
    SourceStatus,
    SubscriptionError,
    SubscriptionLostError,
    SubscriptionTransport,
)
from src.inbox.reconciler import Reconciler
from src.inbox.stream import HttpStreamTransport, parse_stream_line
from src.inbox.toasts import Toast, ToastController, ToastState
from src.inbox.view import MailboxView

__all__ = [
    # Backend
    "BackendError",
    "BackendUnavailableError",
    "CancelRaceError",
    "MailboxBackend",
    "MutationRejectedError",
    # Countdown
    "CountdownError",
    "CountdownTimer",
    "wall_clock_ms",
    # Deferred queue
    "CommitStrategy",
    "DeferredAction",
    "DeferredCommitQueue",
    "DeferredQueueError",
    "DeferredStatus",
    "DuplicateActionError",
    "QueueClosedError",
    "QueueUpdate",
    "UnknownActionError",
    "is_terminal",
    # Dispatch
    "ActionDispatcher",
    "BatchCoordinator",
    "Mutation",
    # Models
    "BatchResult",
    "CancelReceipt",
    "ChangeType",
    "Entity",
    "EntityChange",
    "EntityFilter",
    "MutationAction",
    "MutationResult",
    "SendReceipt",
    "SendStatus",
    # Notifications
    "CategoryMoveNotification",
    "CategoryMoveNotifier",
    # Overlay
    "OverlayEntry",
    "OverlayStore",
    "project",
    # Realtime
    "ChangeEvent",
    "RealtimeStateSource",
    "SnapshotEvent",
    "SourceStatus",
    "SubscriptionError",
    "SubscriptionLostError",
    "SubscriptionTransport",
    "Reconciler",
    "HttpStreamTransport",
    "parse_stream_line",
    # Toasts
    "Toast",
    "ToastController",
    "ToastState",
    # View
    "MailboxView",
]
