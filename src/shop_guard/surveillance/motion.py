"""Frame differencing used to decide whether motion is present."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import logging
import math

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_SENSITIVITY = 25
MIN_SENSITIVITY = 5
MAX_SENSITIVITY = 50
SENSITIVITY_STEP = 5

MOTION_PERCENT_THRESHOLD = 15.0
# Value passed by an older call-site of the scorer; kept for reference only.
LEGACY_MOTION_PERCENT_THRESHOLD = 5.0


def validate_sensitivity(value: object) -> int:
    """Return *value* as an integer sensitivity, raising ``ValueError`` if invalid."""

    if isinstance(value, bool):
        raise ValueError("Sensitivity must be numeric")
    try:
        numeric = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError("Sensitivity must be numeric") from exc
    if not math.isfinite(numeric) or not numeric.is_integer():
        raise ValueError("Sensitivity must be a whole number")
    sensitivity = int(numeric)
    if sensitivity < MIN_SENSITIVITY or sensitivity > MAX_SENSITIVITY:
        raise ValueError(
            f"Sensitivity must be between {MIN_SENSITIVITY} and {MAX_SENSITIVITY}"
        )
    if sensitivity % SENSITIVITY_STEP:
        raise ValueError(f"Sensitivity must be a multiple of {SENSITIVITY_STEP}")
    return sensitivity


def sampling_stride(sensitivity: float) -> int:
    """Pixel stride used when comparing frames; higher sensitivity samples denser."""

    return max(1, int(math.floor(10 - float(sensitivity) / 10)))


def _as_pixels(frame: np.ndarray | Sequence) -> np.ndarray:
    array = np.asarray(frame)
    if array.ndim == 2:
        return array.reshape(-1, 1)
    if array.ndim == 3:
        return array.reshape(-1, array.shape[2])
    raise ValueError(f"Unsupported frame shape for motion detection: {array.shape}")


def _brightness(pixels: np.ndarray) -> np.ndarray:
    channels = pixels.shape[1]
    if channels >= 3:
        return pixels[:, :3].astype(np.float32).sum(axis=1) / 3.0
    return pixels[:, 0].astype(np.float32)


@dataclass(frozen=True, slots=True)
class MotionScore:
    """Detailed result of comparing two frames."""

    sampled: int
    changed: int
    percent_changed: float
    motion: bool


class MotionScorer:
    """Stateless comparison of consecutive frames."""

    def measure(
        self,
        previous: np.ndarray | None,
        current: np.ndarray,
        sensitivity: float,
        percent_threshold: float = MOTION_PERCENT_THRESHOLD,
    ) -> MotionScore:
        if previous is None:
            return MotionScore(sampled=0, changed=0, percent_changed=0.0, motion=False)
        before = _as_pixels(previous)
        after = _as_pixels(current)
        if before.shape != after.shape:
            logger.debug(
                "Frame shape changed from %s to %s; skipping comparison",
                before.shape,
                after.shape,
            )
            return MotionScore(sampled=0, changed=0, percent_changed=0.0, motion=False)

        stride = sampling_stride(sensitivity)
        before = before[::stride]
        after = after[::stride]
        sampled = int(before.shape[0])
        if sampled == 0:
            return MotionScore(sampled=0, changed=0, percent_changed=0.0, motion=False)

        delta = np.abs(_brightness(after) - _brightness(before))
        changed = int(np.count_nonzero(delta > float(sensitivity)))
        percent = changed / float(sampled) * 100.0
        return MotionScore(
            sampled=sampled,
            changed=changed,
            percent_changed=percent,
            motion=percent > float(percent_threshold),
        )

    def score(
        self,
        previous: np.ndarray | None,
        current: np.ndarray,
        sensitivity: float,
        percent_threshold: float = MOTION_PERCENT_THRESHOLD,
    ) -> bool:
        """Return ``True`` when *current* differs enough from *previous*."""

        return self.measure(previous, current, sensitivity, percent_threshold).motion


def detect_motion(
    previous: np.ndarray | None,
    current: np.ndarray,
    sensitivity: float = DEFAULT_SENSITIVITY,
    percent_threshold: float = MOTION_PERCENT_THRESHOLD,
) -> bool:
    return MotionScorer().score(previous, current, sensitivity, percent_threshold)


__all__ = [
    "DEFAULT_SENSITIVITY",
    "LEGACY_MOTION_PERCENT_THRESHOLD",
    "MAX_SENSITIVITY",
    "MIN_SENSITIVITY",
    "MOTION_PERCENT_THRESHOLD",
    "MotionScore",
    "MotionScorer",
    "SENSITIVITY_STEP",
    "detect_motion",
    "sampling_stride",
    "validate_sensitivity",
]
