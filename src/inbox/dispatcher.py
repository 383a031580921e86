"""Mutation dispatch.

``ActionDispatcher`` turns a user mutation into backend calls and hands back
the raw outcome. It never touches the overlay store and never retries;
the caller owns rollback. Multi-entity mutations go through
``BatchCoordinator``, which collapses them into one request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.inbox.backend import MailboxBackend
from src.inbox.models import BatchResult, MutationAction, MutationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Mutation:
    """A user mutation: one action applied to one or more entities.

    Attributes:
        action: The mutation verb.
        ids: Target entity ids, in request order.
    """

    action: MutationAction
    ids: tuple[str, ...]

    @classmethod
    def of(cls, action: MutationAction, ids: list[str] | tuple[str, ...]) -> Mutation:
        """Build a mutation from any id sequence."""
        return cls(action=action, ids=tuple(ids))

    @property
    def field(self) -> str:
        """Return the field this mutation sets."""
        return self.action.effect[0]

    @property
    def value(self) -> bool:
        """Return the value this mutation sets."""
        return self.action.effect[1]


class BatchCoordinator:
    """Issues one network call for a same-field mutation over many ids."""

    def __init__(self, backend: MailboxBackend) -> None:
        self._backend = backend

    async def run(self, action: MutationAction, ids: list[str]) -> BatchResult:
        """Mutate every id in one request.

        Duplicate ids are collapsed, first occurrence wins. An empty id list
        makes no request.

        Raises:
            MutationRejectedError: If the backend rejected the whole batch.
            BackendUnavailableError: If the backend could not be reached.
        """
        unique = list(dict.fromkeys(ids))
        if not unique:
            return BatchResult()

        result = await self._backend.mutate_batch(action, unique)
        if result.has_failures:
            logger.warning(
                "Batch %s: %d succeeded, %d failed",
                action.value,
                result.success_count,
                result.failed_count,
            )
        return result


class ActionDispatcher:
    """Routes mutations to the backend.

    A single id is sent as a single-entity mutation; several ids go through
    the batch coordinator. Errors propagate unchanged.
    """

    def __init__(
        self,
        backend: MailboxBackend,
        batch: BatchCoordinator | None = None,
    ) -> None:
        self._backend = backend
        self._batch = batch or BatchCoordinator(backend)

    async def dispatch(self, mutation: Mutation) -> MutationResult | BatchResult:
        """Send ``mutation`` to the backend.

        Args:
            mutation: The mutation to issue.

        Returns:
            A ``MutationResult`` for one id, a ``BatchResult`` for several.

        Raises:
            MutationRejectedError: If the backend rejected the mutation.
            BackendUnavailableError: If the backend could not be reached.
        """
        logger.debug("Dispatching %s for %d ids", mutation.action.value, len(mutation.ids))
        if len(mutation.ids) == 1:
            return await self._backend.mutate(mutation.action, mutation.ids[0])
        return await self._batch.run(mutation.action, list(mutation.ids))
