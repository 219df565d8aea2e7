"""Camera source abstractions."""
from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)

# User visible identifiers for camera backends.
CAMERA_SOURCES: dict[str, str] = {
    "auto": "Automatic (OpenCV with synthetic fallback)",
    "opencv": "OpenCV (USB webcam)",
    "synthetic": "Synthetic test pattern",
}

DEFAULT_CAMERA_CHOICE = "auto"

_CAMERA_ALIASES = {
    "webcam": "opencv",
    "usb": "opencv",
    "test": "synthetic",
}


class CameraError(RuntimeError):
    """Raised when the camera cannot be initialised or read."""


class PermissionDeniedError(CameraError):
    """Raised when access to the camera device is refused."""


class BaseCamera(ABC):
    """Abstract camera capable of producing RGB frames."""

    @property
    def resolution(self) -> tuple[int, int] | None:
        """Native ``(width, height)`` when the backend knows it up front."""

        return None

    @abstractmethod
    async def get_frame(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


def summarise_exception(exc: BaseException) -> str:
    """Flatten an exception and its causes into one log-friendly line."""

    messages: list[str] = []
    current: BaseException | None = exc
    visited: set[int] = set()
    while current is not None and id(current) not in visited:
        visited.add(id(current))
        text = str(current).strip() or type(current).__name__
        if text not in messages:
            messages.append(text)
        current = current.__cause__ or current.__context__
    return " | ".join(messages)


def _check_device_access(index: int) -> None:
    device = Path(f"/dev/video{index}")
    if device.exists() and not os.access(device, os.R_OK):
        raise PermissionDeniedError(f"Permission denied for {device}")


def _camera_index() -> int:
    raw = os.getenv("SHOPGUARD_CAMERA_INDEX")
    if not raw:
        return 0
    try:
        return max(0, int(raw))
    except ValueError:
        logger.warning("Invalid SHOPGUARD_CAMERA_INDEX value %r; using 0", raw)
        return 0


class OpenCVCamera(BaseCamera):
    """USB webcam read through OpenCV; blocking calls run in a worker thread."""

    def __init__(
        self,
        index: int | None = None,
        resolution: tuple[int, int] | None = None,
        *,
        fps: int | None = None,
    ) -> None:
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise CameraError("OpenCV is not installed") from exc

        device_index = _camera_index() if index is None else index
        _check_device_access(device_index)
        capture = cv2.VideoCapture(device_index)
        if not capture.isOpened():
            capture.release()
            raise CameraError(f"Unable to open webcam {device_index}")
        requested = {
            cv2.CAP_PROP_FRAME_WIDTH: resolution[0] if resolution else None,
            cv2.CAP_PROP_FRAME_HEIGHT: resolution[1] if resolution else None,
            cv2.CAP_PROP_FPS: fps if fps and fps > 0 else None,
        }
        for prop, value in requested.items():
            if value is not None:
                capture.set(prop, float(value))
        self._cv2 = cv2
        self._capture = capture
        self._index = device_index

    @property
    def resolution(self) -> tuple[int, int] | None:
        width = int(self._capture.get(self._cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(self._capture.get(self._cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        return (width, height) if width > 0 and height > 0 else None

    def _read_rgb(self) -> np.ndarray:
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise CameraError(f"Webcam {self._index} returned no frame")
        return self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

    async def get_frame(self) -> np.ndarray:
        return await asyncio.to_thread(self._read_rgb)

    async def close(self) -> None:
        await asyncio.to_thread(self._capture.release)


class SyntheticCamera(BaseCamera):
    """Dim shop-floor scene crossed by a bright block every few seconds.

    Useful for exercising motion detection without hardware.
    """

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        *,
        resolution: tuple[int, int] | None = None,
        fps: int | None = None,
        crossing_s: float = 6.0,
    ) -> None:
        if resolution is not None:
            width, height = resolution
        self._width = int(width)
        self._height = int(height)
        self._crossing = max(0.5, float(crossing_s))
        self._origin = time.monotonic()
        shade = np.linspace(30, 70, self._height, dtype=np.float32).reshape(-1, 1, 1)
        self._floor = np.broadcast_to(shade, (self._height, self._width, 3)).astype(np.uint8)

    @property
    def resolution(self) -> tuple[int, int] | None:
        return (self._width, self._height)

    async def get_frame(self) -> np.ndarray:
        frame = self._floor.copy()
        phase = ((time.monotonic() - self._origin) % self._crossing) / self._crossing
        block = max(1, self._width // 5)
        left = int(phase * (self._width + block)) - block
        lo, hi = max(0, left), min(self._width, left + block)
        if hi > lo:
            frame[self._height // 4 :, lo:hi] = 230
        return frame

def _normalise_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv("SHOPGUARD_CAMERA", DEFAULT_CAMERA_CHOICE)
    normalised = choice.strip().lower()
    return _CAMERA_ALIASES.get(normalised, normalised)


def create_camera(
    choice: str | None = None,
    *,
    resolution: tuple[int, int] | None = None,
    fps: int | None = None,
) -> BaseCamera:
    """Instantiate the camera backend named by *choice*."""

    selection = _normalise_choice(choice)
    if selection not in CAMERA_SOURCES:
        raise CameraError(f"Unknown camera source {choice!r}")
    if selection == "synthetic":
        return SyntheticCamera(resolution=resolution, fps=fps)
    if selection == "opencv":
        return OpenCVCamera(resolution=resolution, fps=fps)
    try:
        return OpenCVCamera(resolution=resolution, fps=fps)
    except PermissionDeniedError:
        raise
    except CameraError as exc:
        logger.warning("Falling back to synthetic camera: %s", summarise_exception(exc))
        return SyntheticCamera(resolution=resolution, fps=fps)


async def open_camera(
    choice: str | None = None,
    *,
    resolution: tuple[int, int] | None = None,
    fps: int | None = None,
) -> BaseCamera:
    """Create a camera without blocking the event loop."""

    return await asyncio.to_thread(create_camera, choice, resolution=resolution, fps=fps)


def identify_camera(camera: BaseCamera) -> str:
    if isinstance(camera, OpenCVCamera):
        return "opencv"
    if isinstance(camera, SyntheticCamera):
        return "synthetic"
    return type(camera).__name__.lower()


__all__ = [
    "BaseCamera",
    "CAMERA_SOURCES",
    "CameraError",
    "DEFAULT_CAMERA_CHOICE",
    "OpenCVCamera",
    "PermissionDeniedError",
    "SyntheticCamera",
    "create_camera",
    "identify_camera",
    "open_camera",
    "summarise_exception",
]
