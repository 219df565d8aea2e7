"""Test doubles shared by the ShopGuard test-suite."""

from __future__ import annotations

import heapq
import itertools
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

import numpy as np

from shop_guard.surveillance.models import new_identifier
from shop_guard.surveillance.recording import FinishedClip
from shop_guard.surveillance.scheduler import PeriodicTask


class _ManualHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _ManualTask:
    """Stand-in for an asyncio task that never runs its coroutine."""

    def __init__(self, coro: Any) -> None:
        self._coro = coro
        self._done = False
        coro.close()

    def done(self) -> bool:
        return self._done

    def cancel(self) -> None:
        self._done = True

    def finish(self) -> None:
        self._done = True


class ManualScheduler:
    """Deterministic scheduler advanced explicitly by tests."""

    def __init__(self, start: datetime) -> None:
        self._start = start
        self._elapsed = 0.0
        self._queue: list[tuple[float, int, _ManualHandle, Callable[..., object], tuple]] = []
        self._counter = itertools.count()
        self.tasks: list[_ManualTask] = []

    def time(self) -> float:
        return self._elapsed

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def call_later(self, delay: float, callback: Callable[..., object], *args: Any) -> _ManualHandle:
        handle = _ManualHandle()
        due = self._elapsed + max(0.0, float(delay))
        heapq.heappush(self._queue, (due, next(self._counter), handle, callback, args))
        return handle

    def call_every(self, interval: float, callback: Callable[[], object]) -> PeriodicTask:
        return PeriodicTask(self, interval, callback)  # type: ignore[arg-type]

    def create_task(self, coro: Any, *, name: str | None = None) -> _ManualTask:
        task = _ManualTask(coro)
        self.tasks.append(task)
        return task

    def advance(self, seconds: float) -> None:
        target = self._elapsed + float(seconds)
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback, args = heapq.heappop(self._queue)
            self._elapsed = max(self._elapsed, due)
            if not handle.cancelled:
                callback(*args)
        self._elapsed = target

    def pending(self) -> int:
        return sum(1 for entry in self._queue if not entry[2].cancelled)


class StaticCamera:
    """Camera returning a fixed frame; tracks whether it was closed."""

    def __init__(self, frame: np.ndarray | None = None) -> None:
        self.frame = frame if frame is not None else np.zeros((48, 64, 3), dtype=np.uint8)
        self.closed = False

    @property
    def resolution(self) -> tuple[int, int] | None:
        return None

    async def get_frame(self) -> np.ndarray:
        return self.frame

    async def close(self) -> None:
        self.closed = True


class FakeRecorder:
    """Recorder writing raw frame bytes so tests can control the clip size."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._path: Path | None = None
        self._frames: list[bytes] = []
        self.discarded = 0

    @property
    def recording(self) -> bool:
        return self._path is not None

    def begin(self, path: Path | None = None) -> Path:
        self._path = path or self.directory / f"clip-{new_identifier()}.bin"
        self._frames = []
        return self._path

    def write(self, frame: np.ndarray) -> None:
        self._frames.append(np.asarray(frame).tobytes())

    def finish(self) -> FinishedClip:
        path = self._path
        assert path is not None
        self._path = None
        payload = b"".join(self._frames)
        if payload:
            path.write_bytes(payload)
        return FinishedClip(path=path, size_bytes=len(payload))

    def discard(self) -> None:
        if self._path is not None:
            self.discarded += 1
        self._path = None
        self._frames = []

