"""Mailbox data models.

This module defines the entity and wire models shared by every layer of the
mailbox client:

- Entities streamed by the push source (emails and threads)
- Change records emitted by the realtime source
- Mutation, batch, and send results returned by the backend

Classes:
    Entity: Server-owned mailbox item as delivered by the push source.
    ChangeType: Kind of a single push-source change.
    EntityChange: One ordered change for one entity.
    EntityFilter: Predicate selecting the subscribed collection.
    MutationAction: Backend mutation verbs.
    MutationResult: Result of a single-entity mutation.
    BatchResult: Result of a multi-entity mutation.
    SendReceipt: Result of queueing an outbound send.
    CancelReceipt: Result of cancelling an outbound send.
    SendStatus: Current server-side state of an outbound send.

Design Notes:
    - Wire models accept both camelCase (``isRead``) and snake_case
      (``is_read``) keys, since the push source and the REST backend do not
      agree on casing.
    - ``Entity`` is frozen so a projected entity can never be mutated in place
      behind the overlay store's back.
    - ``EntityChange`` and ``EntityFilter`` are dataclasses (not Pydantic);
      they never cross the wire on their own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# Field Names
# =============================================================================

FieldName = Literal["is_read", "is_done", "is_deleted", "user_category"]

OVERLAY_FIELDS: frozenset[str] = frozenset(
    {"is_read", "is_done", "is_deleted", "user_category"}
)

# Push-source and REST payloads use camelCase field names.
_FIELD_ALIASES: dict[str, str] = {
    "isRead": "is_read",
    "isDone": "is_done",
    "isDeleted": "is_deleted",
    "userCategory": "user_category",
}


def normalize_field(name: str) -> str:
    """Map a field name in either casing to its canonical snake_case form.

    Args:
        name: A field name such as ``"isRead"`` or ``"is_read"``.

    Returns:
        The canonical field name.

    Raises:
        ValueError: If the field is not one the overlay store can override.

    Example:
        >>> normalize_field("isDone")
        'is_done'
    """
    canonical = _FIELD_ALIASES.get(name, name)
    if canonical not in OVERLAY_FIELDS:
        raise ValueError(
            f"Unknown overlay field {name!r}; expected one of "
            f"{sorted(OVERLAY_FIELDS)}"
        )
    return canonical


class _WireModel(BaseModel):
    """Base for models that accept camelCase or snake_case keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# =============================================================================
# Entities
# =============================================================================


class Entity(_WireModel):
    """A mailbox item (email or thread) as delivered by the push source.

    Only the status fields the client can override are modelled explicitly;
    everything else the push source sends (subject, snippet, participants,
    ...) is kept as extra attributes and carried through untouched.

    Attributes:
        id: Stable, backend-assigned identifier.
        is_read: Whether the item has been read.
        is_done: Whether the user marked the item done.
        is_deleted: Whether the item is in the trash.
        category: Category assigned by the backend classifier.
        user_category: Category chosen by the user, overriding ``category``.

    Example:
        >>> entity = Entity.model_validate(
        ...     {"id": "t1", "isRead": False, "subject": "Quarterly numbers"}
        ... )
        >>> entity.is_read
        False
        >>> entity.model_extra["subject"]
        'Quarterly numbers'
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )

    id: str = Field(..., min_length=1, description="Backend-assigned identifier")
    is_read: bool = Field(default=False, description="Read state")
    is_done: bool = Field(default=False, description="Done state")
    is_deleted: bool = Field(default=False, description="Deleted state")
    category: str | None = Field(default=None, description="Classifier category")
    user_category: str | None = Field(default=None, description="User override category")

    def field_value(self, name: str) -> Any:
        """Return the value of an overridable field.

        Args:
            name: Field name in either casing.

        Returns:
            The current value of the field on this entity.
        """
        return getattr(self, normalize_field(name))


class ChangeType(str, Enum):
    """Kind of a single push-source change."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class EntityChange:
    """One ordered change delivered by the realtime source.

    Attributes:
        entity_id: Identifier of the changed entity.
        type: Whether the entity was added, modified, or removed.
        entity: The full current entity. ``None`` only for removals where
            the source never saw the entity.
    """

    entity_id: str
    type: ChangeType
    entity: Entity | None = None


@dataclass(frozen=True)
class EntityFilter:
    """Predicate selecting the subscribed collection.

    Two filters that compare equal describe the same subscription; the
    realtime source relies on this to make ``subscribe`` idempotent.

    Attributes:
        collection: Collection name (``"threads"`` or ``"emails"``).
        category: Optional category (``"urgent"``, ``"important"``, ...).
        status: Optional status predicate (defaults to ``"active"``).
        where: Additional equality predicates as ``(field, value)`` pairs.
    """

    collection: str = "threads"
    category: str | None = None
    status: str | None = "active"
    where: tuple[tuple[str, Any], ...] = field(default_factory=tuple)

    def as_params(self) -> dict[str, Any]:
        """Render the filter as query parameters for a stream request."""
        params: dict[str, Any] = {"collection": self.collection}
        if self.category is not None:
            params["category"] = self.category
        if self.status is not None:
            params["status"] = self.status
        for key, value in self.where:
            params[key] = value
        return params


# =============================================================================
# Mutations
# =============================================================================


class MutationAction(str, Enum):
    """Backend mutation verbs and the field each one sets.

    Each member's value is the action segment of the mutation endpoint
    (``POST /entities/{id}/{action}``).
    """

    MARK_READ = "markRead"
    MARK_UNREAD = "markUnread"
    MARK_DONE = "markDone"
    DELETE = "delete"
    RESTORE = "restore"

    @property
    def effect(self) -> tuple[str, bool]:
        """Return the ``(field, value)`` this action sets on each entity."""
        return _ACTION_EFFECTS[self]


_ACTION_EFFECTS: dict[MutationAction, tuple[str, bool]] = {
    MutationAction.MARK_READ: ("is_read", True),
    MutationAction.MARK_UNREAD: ("is_read", False),
    MutationAction.MARK_DONE: ("is_done", True),
    MutationAction.DELETE: ("is_deleted", True),
    MutationAction.RESTORE: ("is_deleted", False),
}


class MutationResult(_WireModel):
    """Result of a single-entity mutation.

    Attributes:
        status: Backend status string (``"ok"``, ``"success"``, ...).
        id: Identifier of the mutated entity.
    """

    status: str
    id: str


class BatchResult(_WireModel):
    """Result of a multi-entity mutation.

    A partial failure is not an error: ``failed_ids`` lists the ids whose
    overlays the caller must roll back, while every other requested id keeps
    its overlay until the reconciler clears it.

    Attributes:
        success_count: Number of entities mutated successfully.
        failed_count: Number of entities the backend failed to mutate.
        failed_ids: Identifiers of the failed entities.

    Example:
        >>> result = BatchResult.model_validate(
        ...     {"successCount": 3, "failedCount": 2, "failedIds": ["x", "y"]}
        ... )
        >>> result.succeeded(["a", "b", "c", "x", "y"])
        ['a', 'b', 'c']
    """

    success_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    failed_ids: list[str] = Field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        """Return True if any entity in the batch failed."""
        return self.failed_count > 0 or bool(self.failed_ids)

    def succeeded(self, requested: list[str]) -> list[str]:
        """Return the requested ids that are not listed as failed.

        Args:
            requested: The ids that were sent in the batch.

        Returns:
            Requested ids, in request order, minus ``failed_ids``.
        """
        failed = set(self.failed_ids)
        return [entity_id for entity_id in requested if entity_id not in failed]


# =============================================================================
# Sends
# =============================================================================


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SendReceipt(_WireModel):
    """Result of queueing an outbound send.

    Attributes:
        id: Identifier of the queued send.
        can_undo: Whether the backend will accept a cancel request.
        undo_until: Server deadline for cancellation, if provided.
    """

    id: str
    can_undo: bool = True
    undo_until: datetime | None = None

    @field_validator("undo_until")
    @classmethod
    def normalize_undo_until(cls, v: datetime | None) -> datetime | None:
        """Treat naive deadlines as UTC."""
        return _as_utc(v)

    @property
    def undo_until_ms(self) -> float | None:
        """Return ``undo_until`` as epoch milliseconds, or None."""
        if self.undo_until is None:
            return None
        return self.undo_until.timestamp() * 1000.0


class CancelReceipt(_WireModel):
    """Result of a successful cancel request.

    Attributes:
        status: Always ``"cancelled"`` on success.
        id: Identifier of the cancelled send, when the backend echoes it.
    """

    status: str = "cancelled"
    id: str | None = None


class SendStatus(_WireModel):
    """Current server-side state of an outbound send.

    Attributes:
        id: Identifier of the send.
        status: One of ``queued``, ``sending``, ``sent``, ``failed``,
            ``cancelled``.
        can_undo: Whether a cancel request could still succeed.
        undo_until: Server deadline for cancellation, if any.
        error: Failure detail for ``failed`` sends.
    """

    id: str
    status: Literal["queued", "sending", "sent", "failed", "cancelled"]
    can_undo: bool = False
    undo_until: datetime | None = None
    error: str | None = None

    @field_validator("undo_until")
    @classmethod
    def normalize_undo_until(cls, v: datetime | None) -> datetime | None:
        """Treat naive deadlines as UTC."""
        return _as_utc(v)
