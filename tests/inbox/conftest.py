"""Shared fixtures for the mailbox client tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from src.inbox.models import EntityFilter
from src.inbox.realtime import SubscriptionError, SubscriptionEvent


class FakeClock:
    """Manually advanced wall clock in epoch milliseconds."""

    def __init__(self, start_ms: float = 1_700_000_000_000.0) -> None:
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeTransport:
    """Push source fed by the test.

    Events pushed with ``push`` are delivered in order to whichever
    subscription is currently open. ``flush`` waits until every pushed item
    has been consumed by the source. ``fail`` makes the open stream raise.
    """

    def __init__(self) -> None:
        self.opened: list[EntityFilter] = []
        self.closed = 0
        self._items: asyncio.Queue[SubscriptionEvent | Exception] = asyncio.Queue()

    async def open(self, entity_filter: EntityFilter) -> AsyncIterator[SubscriptionEvent]:
        self.opened.append(entity_filter)
        try:
            while True:
                item = await self._items.get()
                try:
                    if isinstance(item, Exception):
                        raise item
                    yield item
                finally:
                    self._items.task_done()
        finally:
            self.closed += 1

    def push(self, event: SubscriptionEvent) -> None:
        self._items.put_nowait(event)

    def fail(self, message: str = "connection reset") -> None:
        self._items.put_nowait(SubscriptionError(message))

    async def flush(self) -> None:
        await asyncio.wait_for(self._items.join(), timeout=2.0)


@pytest.fixture
def clock() -> FakeClock:
    """Fake wall clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    """In-memory push source."""
    return FakeTransport()
