"""Data structures shared by the surveillance components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional

import logging
import uuid

import numpy as np

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from ..camera import BaseCamera
    from .recording import ClipRecorder

logger = logging.getLogger(__name__)


def new_identifier() -> str:
    return uuid.uuid4().hex[:12]


class SurveillanceState(str, Enum):
    """Exclusive states of the surveillance controller."""

    INACTIVE = "inactive"
    REQUESTING = "requesting"
    ACTIVE = "active"
    DENIED = "denied"
    MOTION_DETECTED = "motion_detected"
    RECORDING = "recording"


class EventKind(str, Enum):
    """Kinds of entries written to the event log."""

    LOGIN = "login"
    LOGOUT = "logout"
    MOTION_DETECTED = "motion_detected"
    ALARM_TRIGGERED = "alarm_triggered"
    ALARM_DISMISSED = "alarm_dismissed"
    TEMPORARY_DEACTIVATION = "temporary_deactivation"
    RECORDING_SAVED = "recording_saved"
    RECORDING_FAILED = "recording_failed"


@dataclass(frozen=True, slots=True)
class TriggerEvent:
    """Immutable event log entry."""

    kind: EventKind
    details: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=new_identifier)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.kind.value,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> "TriggerEvent":
        return cls(
            id=str(payload["id"]),
            timestamp=datetime.fromisoformat(str(payload["timestamp"])),
            kind=EventKind(str(payload["type"])),
            details=str(payload.get("details") or ""),
        )


@dataclass(frozen=True, slots=True)
class RecordingArtifact:
    """A finalised motion recording."""

    path: str
    duration_s: float
    size_bytes: int
    detected_motion: bool = True
    thumb_path: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=new_identifier)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "path": self.path,
            "duration_s": float(self.duration_s),
            "size_bytes": int(self.size_bytes),
            "detected_motion": bool(self.detected_motion),
            "thumb_path": self.thumb_path,
        }


@dataclass(frozen=True, slots=True)
class DeactivationWindow:
    """Period during which motion scoring is suspended."""

    end_time: datetime

    def expired(self, now: datetime) -> bool:
        return now >= self.end_time

    def remaining(self, now: datetime) -> timedelta:
        return max(timedelta(0), self.end_time - now)

    def to_dict(self) -> dict[str, object]:
        return {"end_time": self.end_time.isoformat()}


@dataclass(slots=True)
class FrameSample:
    """A single frame pulled from the live source."""

    timestamp: datetime
    frame: np.ndarray


@dataclass(slots=True)
class CameraSession:
    """Resources held while the camera is active."""

    camera: "BaseCamera"
    recorder: Optional["ClipRecorder"] = None
    last_frame: np.ndarray | None = None

    async def release(self) -> None:
        self.last_frame = None
        recorder = self.recorder
        self.recorder = None
        if recorder is not None:
            try:
                recorder.discard()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.exception("Failed to discard recorder state")
        try:
            await self.camera.close()
        except Exception as exc:  # pragma: no cover - best effort cleanup
            logger.warning("Failed to close camera: %s", exc)


__all__ = [
    "CameraSession",
    "DeactivationWindow",
    "EventKind",
    "FrameSample",
    "RecordingArtifact",
    "SurveillanceState",
    "TriggerEvent",
    "new_identifier",
]
