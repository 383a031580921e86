"""Pausable wall-clock countdown.

A ``CountdownTimer`` is the single scheduled-task abstraction behind every
undo window. It replaces a pair of timeout/interval callbacks with one
asyncio timer handle and a wall-clock budget:

- The remaining budget is recomputed from wall-clock elapsed time on every
  read, never from tick counts, so a starved or backgrounded event loop can
  only make expiry late, never early.
- Pausing folds the elapsed time into the stored budget and drops the timer
  handle; resuming records a fresh start time and reschedules. Time spent
  paused is never counted.

Example:
    >>> timer = CountdownTimer(8000, on_expire=lambda: print("expired"))
    >>> timer.start()
    >>> timer.pause()       # budget frozen while hovered
    >>> timer.resume()      # countdown continues from the frozen budget
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def wall_clock_ms() -> float:
    """Return the current wall-clock time in epoch milliseconds."""
    return time.time() * 1000.0


class CountdownError(Exception):
    """Raised when a countdown is driven through an invalid transition."""


class CountdownTimer:
    """One pausable countdown with a wall-clock budget.

    States: idle (constructed) → running ⇄ paused → expired | cancelled.
    ``on_expire`` is invoked exactly once, from the event loop, when the
    wall-clock budget reaches zero while running.

    Attributes:
        duration_ms: The full budget the timer was created with.
        remaining_ms: Budget left right now, never negative.
        is_running: Whether the countdown is consuming budget.
        is_paused: Whether the countdown is paused.
        is_finished: Whether the timer expired or was cancelled.
    """

    def __init__(
        self,
        duration_ms: float,
        on_expire: Callable[[], None],
        *,
        clock: Clock = wall_clock_ms,
    ) -> None:
        """Initialize an idle countdown.

        Args:
            duration_ms: Budget in milliseconds. Negative values are clamped
                to zero (the timer expires on the next loop iteration).
            on_expire: Called once when the budget runs out.
            clock: Returns the current wall-clock time in milliseconds.
        """
        self.duration_ms = max(0.0, float(duration_ms))
        self._on_expire = on_expire
        self._clock = clock

        self._budget_ms = self.duration_ms
        self._started_at: float | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._paused = False
        self._finished = False
        self._expired = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def remaining_ms(self) -> float:
        """Return the budget left, recomputed from the wall clock."""
        if self._started_at is None:
            return self._budget_ms
        elapsed = self._clock() - self._started_at
        return max(0.0, self._budget_ms - elapsed)

    @property
    def is_running(self) -> bool:
        """Return True while the countdown is consuming budget."""
        return self._started_at is not None and not self._finished

    @property
    def is_paused(self) -> bool:
        """Return True while the countdown is paused."""
        return self._paused and not self._finished

    @property
    def is_finished(self) -> bool:
        """Return True once the timer expired or was cancelled."""
        return self._finished

    @property
    def expired(self) -> bool:
        """Return True if the timer ran out (as opposed to being cancelled)."""
        return self._expired

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start consuming budget.

        Raises:
            CountdownError: If the timer was already started or finished.
            RuntimeError: If called outside a running event loop.
        """
        if self._finished or self._started_at is not None or self._paused:
            raise CountdownError("Countdown already started")
        self._run()

    def pause(self) -> None:
        """Freeze the remaining budget. No-op unless running."""
        if not self.is_running:
            return
        self._budget_ms = self.remaining_ms
        self._started_at = None
        self._paused = True
        self._drop_handle()

    def resume(self) -> None:
        """Continue from the budget frozen by ``pause``. No-op unless paused."""
        if not self.is_paused:
            return
        self._paused = False
        self._run()

    def cancel(self) -> None:
        """Stop the countdown for good without invoking ``on_expire``."""
        if self._finished:
            return
        if self._started_at is not None:
            self._budget_ms = self.remaining_ms
            self._started_at = None
        self._finished = True
        self._drop_handle()

    def check(self) -> bool:
        """Expire now if the wall-clock budget is used up.

        The event loop calls this when the timer handle fires; owners may
        also call it to re-evaluate after the loop was starved.

        Returns:
            True if the timer is (now) expired.
        """
        if self._expired:
            return True
        if not self.is_running:
            return False
        if self.remaining_ms > 0:
            return False

        self._budget_ms = 0.0
        self._started_at = None
        self._finished = True
        self._expired = True
        self._drop_handle()
        logger.debug("Countdown of %.0fms expired", self.duration_ms)
        self._on_expire()
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run(self) -> None:
        loop = asyncio.get_running_loop()
        self._started_at = self._clock()
        self._schedule(loop)

    def _schedule(self, loop: asyncio.AbstractEventLoop) -> None:
        self._drop_handle()
        self._handle = loop.call_later(self.remaining_ms / 1000.0, self._on_timer)

    def _on_timer(self) -> None:
        self._handle = None
        if not self.is_running:
            return
        if not self.check():
            # Fired ahead of the wall clock; wait out the rest.
            self._schedule(asyncio.get_running_loop())

    def _drop_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
