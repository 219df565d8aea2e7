"""Motion surveillance for ShopGuard."""

from .controller import SensitivityLockedError, SurveillanceController, SurveillanceError
from .models import (
    CameraSession,
    DeactivationWindow,
    EventKind,
    FrameSample,
    RecordingArtifact,
    SurveillanceState,
    TriggerEvent,
)
from .motion import MotionScorer, detect_motion
from .notifications import Notification, NotificationChannel, NotificationLevel
from .recording import RecorderUnavailableError, RecordingOutcome, RecordingPipeline, VideoClipRecorder
from .sampler import FrameSampler
from .schedule import ShopHours, ShopScheduleOracle
from .scheduler import Scheduler
from .sinks import EventSink, PersistenceError, RecordingSink
from .timers import AlarmTimer, DeactivationTimer

__all__ = [
    "AlarmTimer",
    "CameraSession",
    "DeactivationTimer",
    "DeactivationWindow",
    "EventKind",
    "EventSink",
    "FrameSample",
    "FrameSampler",
    "MotionScorer",
    "Notification",
    "NotificationChannel",
    "NotificationLevel",
    "PersistenceError",
    "RecorderUnavailableError",
    "RecordingArtifact",
    "RecordingOutcome",
    "RecordingPipeline",
    "RecordingSink",
    "Scheduler",
    "SensitivityLockedError",
    "ShopHours",
    "ShopScheduleOracle",
    "SurveillanceController",
    "SurveillanceError",
    "SurveillanceState",
    "TriggerEvent",
    "VideoClipRecorder",
    "detect_motion",
]
