"""Frame sampling loop feeding the motion scorer."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional

import numpy as np

from ..camera import BaseCamera
from .models import FrameSample
from .scheduler import PeriodicTask, Scheduler

logger = logging.getLogger(__name__)

DEFAULT_SURFACE_SIZE = (640, 480)
DEFAULT_SAMPLE_FPS = 15
WATCHDOG_INTERVAL_S = 5.0


class FrameSampler:
    """Pull successive frames from a camera at a steady cadence."""

    def __init__(
        self,
        camera: BaseCamera,
        scheduler: Scheduler,
        *,
        fps: int = DEFAULT_SAMPLE_FPS,
        watchdog_interval: float = WATCHDOG_INTERVAL_S,
    ) -> None:
        if fps < 1:
            raise ValueError("Sampling fps must be positive")
        self._camera = camera
        self._scheduler = scheduler
        self._interval = 1.0 / float(fps)
        self._watchdog_interval = float(watchdog_interval)
        self._surface: tuple[int, int] = DEFAULT_SURFACE_SIZE
        self._native_known = False
        native = camera.resolution
        if native is not None and native[0] > 0 and native[1] > 0:
            self._surface = (int(native[0]), int(native[1]))
            self._native_known = True
        self._on_frame: Optional[Callable[[FrameSample], object]] = None
        self._task: Optional["asyncio.Task[Any]"] = None
        self._watchdog: Optional[PeriodicTask] = None
        self.capture_errors = 0
        self.restarts = 0

    # ------------------------------------------------------------------
    @property
    def surface_size(self) -> tuple[int, int]:
        return self._surface

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    def _fit_surface(self, frame: np.ndarray) -> np.ndarray:
        array = np.asarray(frame)
        if array.ndim < 2:
            raise ValueError(f"Unsupported frame shape {array.shape}")
        height, width = array.shape[:2]
        if not self._native_known and width > 0 and height > 0:
            self._surface = (int(width), int(height))
            self._native_known = True
            logger.debug("Capture surface sized to %dx%d", width, height)
        target_w, target_h = self._surface
        if (width, height) == (target_w, target_h):
            return array
        if width == 0 or height == 0:
            channels = array.shape[2:] if array.ndim == 3 else ()
            return np.zeros((target_h, target_w, *channels), dtype=np.uint8)
        rows = np.arange(target_h) * height // target_h
        cols = np.arange(target_w) * width // target_w
        return array[rows][:, cols]

    async def capture(self) -> FrameSample:
        """Grab one snapshot sized to the capture surface."""

        frame = await self._camera.get_frame()
        snapshot = self._fit_surface(frame)
        return FrameSample(timestamp=datetime.now(timezone.utc), frame=snapshot)

    async def frames(self) -> AsyncIterator[FrameSample]:
        """Yield frames forever; a failed capture is logged and skipped."""

        while True:
            try:
                sample = await self.capture()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.capture_errors += 1
                logger.error("Failed to capture frame: %s", exc)
            else:
                yield sample
            await asyncio.sleep(self._interval)

    # ------------------------------------------------------------------
    def start(self, on_frame: Callable[[FrameSample], object]) -> None:
        """Deliver each sampled frame to *on_frame* until :meth:`stop`."""

        self._on_frame = on_frame
        if not self.running:
            self._spawn()
        if self._watchdog is None:
            self._watchdog = self._scheduler.call_every(self._watchdog_interval, self._check_alive)

    async def stop(self) -> None:
        """Cancel sampling and wait until no capture is in flight."""

        self._on_frame = None
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        if isinstance(task, asyncio.Future):
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _spawn(self) -> None:
        self._task = self._scheduler.create_task(self._run(), name="shop-guard-frame-sampler")

    def _check_alive(self) -> None:
        if self._on_frame is None:
            return
        if self._task is None or self._task.done():
            self.restarts += 1
            logger.info("Restarting frame sampling with fallback scheduler")
            self._spawn()

    async def _run(self) -> None:
        try:
            async for sample in self.frames():
                callback = self._on_frame
                if callback is None:
                    return
                try:
                    callback(sample)
                except Exception:
                    logger.exception("Frame handler failed")
        except asyncio.CancelledError:  # pragma: no cover - task shutdown
            pass


__all__ = ["DEFAULT_SURFACE_SIZE", "FrameSampler", "WATCHDOG_INTERVAL_S"]
