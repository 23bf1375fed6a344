"""Injectable timer sources and a keyed trailing-edge debouncer."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Iterable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:
        """Cancel the scheduled callback if it has not fired yet."""


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` after ``delay`` seconds."""


class LoopScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class Debouncer:
    """Coalesces bursts of keys into one trailing-edge callback.

    Each :meth:`trigger` cancels the pending timer, folds its keys into the
    pending set and reschedules. When the timer fires the callback receives
    every pending key in first-seen order; a coroutine result is scheduled
    as a task and exposed through :attr:`task`.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[list[str]], Awaitable[Any] | None],
        scheduler: Scheduler | None = None,
    ) -> None:
        self._delay = delay
        self._callback = callback
        self._scheduler = scheduler or LoopScheduler()
        self._pending: dict[str, None] = {}
        self._handle: TimerHandle | None = None
        self.task: asyncio.Future[Any] | None = None

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def trigger(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._pending[key] = None
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._scheduler.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending.clear()

    def _fire(self) -> None:
        self._handle = None
        keys = list(self._pending)
        self._pending.clear()
        result = self._callback(keys)
        if inspect.isawaitable(result):
            self.task = asyncio.ensure_future(result)


__all__ = ["Debouncer", "LoopScheduler", "Scheduler", "TimerHandle"]
