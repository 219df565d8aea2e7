"""Cooperative scheduling helpers built on the asyncio event loop."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Coroutine, Optional, Protocol

logger = logging.getLogger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> None:  # pragma: no cover - interface only
        ...


class PeriodicTask:
    """Repeatedly invoke a callback until cancelled."""

    def __init__(
        self,
        scheduler: "Scheduler",
        interval: float,
        callback: Callable[[], object],
    ) -> None:
        if interval <= 0:
            raise ValueError("Periodic interval must be positive")
        self._scheduler = scheduler
        self._interval = float(interval)
        self._callback = callback
        self._handle: Cancellable | None = None
        self._cancelled = False
        self._schedule()

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _schedule(self) -> None:
        self._handle = self._scheduler.call_later(self._interval, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        try:
            self._callback()
        except Exception:
            logger.exception("Periodic callback %r failed", self._callback)
        if not self._cancelled:
            self._schedule()

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class Scheduler:
    """Single-threaded scheduler backed by the running event loop.

    Every timer and task created through the scheduler runs on the same loop,
    so callbacks never overlap and shared state needs no locking.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def time(self) -> float:
        """Monotonic seconds used for cooldowns and durations."""

        return self.loop.time()

    def now(self) -> datetime:
        """Timezone-aware local wall-clock time."""

        return datetime.now().astimezone()

    def call_later(self, delay: float, callback: Callable[..., object], *args: Any) -> Cancellable:
        return self.loop.call_later(max(0.0, float(delay)), callback, *args)

    def call_every(self, interval: float, callback: Callable[[], object]) -> PeriodicTask:
        return PeriodicTask(self, interval, callback)

    def create_task(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: Optional[str] = None,
    ) -> "asyncio.Task[Any]":
        return self.loop.create_task(coro, name=name)


__all__ = ["Cancellable", "PeriodicTask", "Scheduler"]
