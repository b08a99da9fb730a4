"""Deferred-callback schedulers.

Layers never sleep; they hand callbacks to a scheduler and return. Live
playback uses the running asyncio loop. Offline rendering and tests use
``VirtualScheduler``, whose clock only moves when told to.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections.abc import Callable
from typing import Protocol

_LOGGER = logging.getLogger("soulspace.scheduler")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    def time(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler backed by an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def bind(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def _resolve_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.get_running_loop()
        return self._loop

    def time(self) -> float:
        return self._resolve_loop().time()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self._resolve_loop().call_later(max(0.0, delay), callback)


class _VirtualTimer:
    __slots__ = ("when", "callback", "_cancelled")

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class VirtualScheduler:
    """Deterministic scheduler driven by explicit clock advances.

    Timers due at the same instant fire in the order they were scheduled.
    A callback that raises is logged and does not stop the clock, which is
    how the asyncio loop treats failing callbacks too.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._heap: list[tuple[float, int, _VirtualTimer]] = []
        self._counter = itertools.count()

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _VirtualTimer(self._now + max(0.0, delay), callback)
        heapq.heappush(self._heap, (timer.when, next(self._counter), timer))
        return timer

    def pending(self) -> int:
        return sum(1 for _, _, timer in self._heap if not timer.cancelled())

    def next_deadline(self) -> float | None:
        while self._heap and self._heap[0][2].cancelled():
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        return self._heap[0][0]

    def advance(self, seconds: float) -> int:
        return self.advance_to(self._now + max(0.0, seconds))

    def advance_to(self, deadline: float) -> int:
        """Fire every timer due up to ``deadline``; returns how many fired."""
        fired = 0
        while True:
            when = self.next_deadline()
            if when is None or when > deadline:
                break
            _, _, timer = heapq.heappop(self._heap)
            self._now = max(self._now, when)
            fired += 1
            try:
                timer.callback()
            except Exception:
                _LOGGER.exception("Scheduled callback %r failed", timer.callback)
        self._now = max(self._now, deadline)
        return fired
