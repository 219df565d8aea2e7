"""Alarm playback and temporary deactivation bookkeeping."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

import logging
import math

from .models import DeactivationWindow

logger = logging.getLogger(__name__)

MIN_DEACTIVATION_MINUTES = 5
MAX_DEACTIVATION_MINUTES = 120
DEFAULT_DEACTIVATION_MINUTES = 30


class AlarmOutput(Protocol):
    """Device capable of playing the looping alert."""

    def play(self) -> None:  # pragma: no cover - interface only
        ...

    def pause(self) -> None:  # pragma: no cover - interface only
        ...

    def rewind(self) -> None:  # pragma: no cover - interface only
        ...


class LoggingAlarmOutput:
    """Alarm output that only records playback changes.

    Audible playback is performed by the dashboard client, which polls the
    alarm state exposed through the status endpoint.
    """

    def __init__(self) -> None:
        self.playing = False
        self.rewinds = 0

    def play(self) -> None:
        if not self.playing:
            logger.warning("Alarm sounding")
        self.playing = True

    def pause(self) -> None:
        if self.playing:
            logger.info("Alarm silenced")
        self.playing = False

    def rewind(self) -> None:
        self.rewinds += 1


class AlarmTimer:
    """Looping audible alert started and stopped by the controller."""

    def __init__(self, output: AlarmOutput | None = None) -> None:
        self._output: AlarmOutput = output if output is not None else LoggingAlarmOutput()
        self._active = False
        self._started_at: Optional[datetime] = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    def start(self, now: datetime | None = None) -> bool:
        """Play the alert from the beginning; returns ``True`` on a fresh start."""

        self._output.rewind()
        if self._active:
            return False
        self._output.play()
        self._active = True
        self._started_at = now
        return True

    def stop(self) -> bool:
        """Halt and rewind the alert; returns ``True`` if it was playing."""

        was_active = self._active
        self._output.pause()
        self._output.rewind()
        self._active = False
        self._started_at = None
        return was_active

    def to_dict(self) -> dict[str, object]:
        return {
            "active": self._active,
            "started_at": self._started_at.isoformat() if self._started_at else None,
        }


def clamp_deactivation_minutes(value: object) -> int:
    """Clamp *value* to the accepted range, falling back to the default."""

    try:
        minutes = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_DEACTIVATION_MINUTES
    if not math.isfinite(minutes) or int(minutes) == 0:
        return DEFAULT_DEACTIVATION_MINUTES
    return max(MIN_DEACTIVATION_MINUTES, min(MAX_DEACTIVATION_MINUTES, int(minutes)))


class DeactivationTimer:
    """Holds the optional window during which motion scoring is suspended."""

    def __init__(self) -> None:
        self._window: Optional[DeactivationWindow] = None

    @property
    def window(self) -> Optional[DeactivationWindow]:
        return self._window

    @property
    def active(self) -> bool:
        return self._window is not None

    def open(self, minutes: object, now: datetime) -> DeactivationWindow:
        duration = clamp_deactivation_minutes(minutes)
        self._window = DeactivationWindow(end_time=now + timedelta(minutes=duration))
        return self._window

    def clear(self) -> bool:
        had_window = self._window is not None
        self._window = None
        return had_window

    def expire(self, now: datetime) -> bool:
        """Clear the window if it has elapsed; ``True`` when it was cleared."""

        if self._window is None or not self._window.expired(now):
            return False
        self._window = None
        return True

    def remaining_seconds(self, now: datetime) -> float:
        if self._window is None:
            return 0.0
        return self._window.remaining(now).total_seconds()


__all__ = [
    "AlarmOutput",
    "AlarmTimer",
    "DEFAULT_DEACTIVATION_MINUTES",
    "DeactivationTimer",
    "LoggingAlarmOutput",
    "MAX_DEACTIVATION_MINUTES",
    "MIN_DEACTIVATION_MINUTES",
    "clamp_deactivation_minutes",
]
