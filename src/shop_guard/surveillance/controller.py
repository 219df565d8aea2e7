"""State machine coordinating camera, motion scoring, alarm and recording."""
from __future__ import annotations

from datetime import timezone
from typing import Awaitable, Callable, Optional

import logging

from ..camera import BaseCamera, PermissionDeniedError, identify_camera, summarise_exception
from .models import (
    CameraSession,
    DeactivationWindow,
    EventKind,
    FrameSample,
    SurveillanceState,
    TriggerEvent,
)
from .motion import DEFAULT_SENSITIVITY, MOTION_PERCENT_THRESHOLD, MotionScorer, validate_sensitivity
from .notifications import NotificationChannel
from .recording import (
    RECORDING_DURATION_S,
    ClipRecorder,
    RecorderUnavailableError,
    RecordingOutcome,
    RecordingPipeline,
)
from .sampler import DEFAULT_SAMPLE_FPS, WATCHDOG_INTERVAL_S, FrameSampler
from .schedule import ShopHours, ShopScheduleOracle
from .scheduler import PeriodicTask, Scheduler
from .sinks import EventSink, PersistenceError, RecordingSink
from .timers import (
    DEFAULT_DEACTIVATION_MINUTES,
    AlarmTimer,
    DeactivationTimer,
    clamp_deactivation_minutes,
)

logger = logging.getLogger(__name__)

MOTION_COOLDOWN_S = 3.0
DEACTIVATION_CHECK_INTERVAL_S = 10.0

CameraFactory = Callable[[], Awaitable[BaseCamera]]
RecorderFactory = Callable[[BaseCamera], ClipRecorder]
HoursProvider = Callable[[], Optional[ShopHours]]

_CAMERA_STATES = (
    SurveillanceState.ACTIVE,
    SurveillanceState.MOTION_DETECTED,
    SurveillanceState.RECORDING,
)
_ALARM_STATES = (SurveillanceState.MOTION_DETECTED, SurveillanceState.RECORDING)


class SurveillanceError(RuntimeError):
    """Raised when an operation is not valid in the current state."""


class SensitivityLockedError(SurveillanceError):
    """Raised when sensitivity is changed outside the ``active`` state."""


class SurveillanceController:
    """Owns the camera session and is the only writer of surveillance state.

    Every entry point runs on the scheduler's event loop: frame ticks, timer
    callbacks and user commands never interleave, so the controller keeps no
    locks.
    """

    def __init__(
        self,
        camera_factory: CameraFactory,
        scheduler: Scheduler,
        events: EventSink,
        recordings: RecordingSink,
        hours_provider: HoursProvider,
        *,
        recorder_factory: RecorderFactory | None = None,
        alarm: AlarmTimer | None = None,
        notifications: NotificationChannel | None = None,
        oracle: ShopScheduleOracle | None = None,
        scorer: MotionScorer | None = None,
        sensitivity: int = DEFAULT_SENSITIVITY,
        deactivation_minutes: int = DEFAULT_DEACTIVATION_MINUTES,
        percent_threshold: float = MOTION_PERCENT_THRESHOLD,
        cooldown_s: float = MOTION_COOLDOWN_S,
        recording_duration_s: float = RECORDING_DURATION_S,
        expiry_check_interval_s: float = DEACTIVATION_CHECK_INTERVAL_S,
        sample_fps: int = DEFAULT_SAMPLE_FPS,
        watchdog_interval_s: float = WATCHDOG_INTERVAL_S,
    ) -> None:
        self._camera_factory = camera_factory
        self._scheduler = scheduler
        self._events = events
        self._recordings = recordings
        self._hours_provider = hours_provider
        self._recorder_factory = recorder_factory
        self._alarm = alarm if alarm is not None else AlarmTimer()
        self._notifications = notifications if notifications is not None else NotificationChannel()
        self._oracle = oracle if oracle is not None else ShopScheduleOracle()
        self._scorer = scorer if scorer is not None else MotionScorer()
        self._sensitivity = validate_sensitivity(sensitivity)
        self._deactivation_minutes = clamp_deactivation_minutes(deactivation_minutes)
        self._percent_threshold = float(percent_threshold)
        self._cooldown = float(cooldown_s)
        self._recording_duration = float(recording_duration_s)
        self._expiry_interval = float(expiry_check_interval_s)
        self._sample_fps = int(sample_fps)
        self._watchdog_interval = float(watchdog_interval_s)

        self._state = SurveillanceState.INACTIVE
        self._session: CameraSession | None = None
        self._sampler: FrameSampler | None = None
        self._pipeline: RecordingPipeline | None = None
        self._periodic: PeriodicTask | None = None
        self._deactivation = DeactivationTimer()
        self._last_trigger: float | None = None
        self._shop_open: bool | None = None
        self._awaiting_response = False
        self._generation = 0

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def state(self) -> SurveillanceState:
        return self._state

    @property
    def session(self) -> CameraSession | None:
        return self._session

    @property
    def sensitivity(self) -> int:
        return self._sensitivity

    @property
    def deactivation_minutes(self) -> int:
        return self._deactivation_minutes

    @property
    def deactivation_window(self) -> DeactivationWindow | None:
        return self._deactivation.window

    @property
    def alarm(self) -> AlarmTimer:
        return self._alarm

    @property
    def notifications(self) -> NotificationChannel:
        return self._notifications

    @property
    def sampler(self) -> FrameSampler | None:
        return self._sampler

    @property
    def awaiting_response(self) -> bool:
        return self._awaiting_response

    @property
    def shop_open(self) -> bool:
        if self._session is None:
            # Nothing refreshes the gate without a session; evaluate afresh.
            return self._evaluate_hours()
        if self._shop_open is None:
            return self.refresh_schedule(announce=False)
        return self._shop_open

    @property
    def recording(self) -> bool:
        return self._pipeline is not None and self._pipeline.is_recording

    @property
    def sensitivity_locked(self) -> bool:
        return self._state is not SurveillanceState.ACTIVE or self.recording

    @property
    def scoring_enabled(self) -> bool:
        """Motion verdicts count only with a live session, shop closed and no pause."""

        if self._session is None or self._state not in _CAMERA_STATES:
            return False
        return not self.shop_open and not self._deactivation.active

    # ------------------------------------------------------------------
    # Camera lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> SurveillanceState:
        """Acquire the camera and begin sampling frames."""

        if self._state not in (SurveillanceState.INACTIVE, SurveillanceState.DENIED):
            return self._state
        self._generation += 1
        generation = self._generation
        self._state = SurveillanceState.REQUESTING
        try:
            camera = await self._camera_factory()
        except PermissionDeniedError as exc:
            if generation == self._generation:
                self._state = SurveillanceState.DENIED
                logger.warning("Camera permission denied: %s", exc)
                self._notifications.error("Could not access camera. Please check permissions.")
            return self._state
        except Exception as exc:
            if generation == self._generation:
                self._state = SurveillanceState.DENIED
                logger.error("Error starting camera: %s", summarise_exception(exc))
                self._notifications.error("Error accessing camera")
            return self._state

        if generation != self._generation or self._state is not SurveillanceState.REQUESTING:
            # Stopped while the camera was being acquired.
            try:
                await camera.close()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                logger.warning("Failed to close abandoned camera: %s", exc)
            return self._state

        recorder = self._create_recorder(camera)
        self._session = CameraSession(camera=camera, recorder=recorder)
        self._pipeline = RecordingPipeline(
            recorder,
            self._recordings,
            self._scheduler,
            duration_s=self._recording_duration,
            on_complete=self._on_recording_complete,
        )
        self._sampler = FrameSampler(
            camera,
            self._scheduler,
            fps=self._sample_fps,
            watchdog_interval=self._watchdog_interval,
        )
        self._state = SurveillanceState.ACTIVE
        logger.info("Camera activated (%s)", identify_camera(camera))
        self._notifications.success("Camera activated")
        self._shop_open = None
        self.refresh_schedule()
        self._sampler.start(self.process_frame)
        self._periodic = self._scheduler.call_every(self._expiry_interval, self._on_periodic_check)
        return self._state

    async def stop(self) -> SurveillanceState:
        """Release every camera resource; safe to call in any state."""

        self._generation += 1
        previous = self._state
        self._state = SurveillanceState.INACTIVE
        sampler = self._sampler
        self._sampler = None
        session = self._session
        self._session = None
        if self._periodic is not None:
            self._periodic.cancel()
            self._periodic = None
        pipeline = self._pipeline
        self._pipeline = None
        if pipeline is not None and pipeline.is_recording:
            pipeline.stop()
        self._stop_alarm("Alarm dismissed")
        self._awaiting_response = False
        self._deactivation.clear()
        self._last_trigger = None
        if sampler is not None:
            await sampler.stop()
        if session is not None:
            await session.release()
        if previous is not SurveillanceState.INACTIVE:
            logger.info("Camera stopped (was %s)", previous.value)
        return self._state

    async def permission_revoked(self) -> SurveillanceState:
        """React to the camera permission being withdrawn mid-session."""

        if self._state is not SurveillanceState.INACTIVE:
            self._notifications.error("Camera permission revoked")
        return await self.stop()

    def _create_recorder(self, camera: BaseCamera) -> ClipRecorder | None:
        if self._recorder_factory is None:
            return None
        try:
            return self._recorder_factory(camera)
        except RecorderUnavailableError as exc:
            logger.warning("Recording disabled for this session: %s", exc)
        except Exception:
            logger.exception("Failed to create recorder")
        self._notifications.warning("Recording unavailable; motion alarms remain active")
        return None

    # ------------------------------------------------------------------
    # Frame handling
    # ------------------------------------------------------------------
    def process_frame(self, sample: FrameSample) -> bool:
        """Handle one sampler tick; returns the motion verdict."""

        session = self._session
        if session is None or self._state not in _CAMERA_STATES:
            return False
        previous = session.last_frame
        session.last_frame = sample.frame
        if self._pipeline is not None and self._pipeline.is_recording:
            self._pipeline.feed(sample.frame)
        if not self.scoring_enabled:
            return False
        verdict = self._scorer.score(
            previous,
            sample.frame,
            self._sensitivity,
            self._percent_threshold,
        )
        if verdict:
            self.report_motion()
        return verdict

    def report_motion(self) -> bool:
        """Apply gating to a positive verdict; ``True`` when a trigger is accepted."""

        if self._deactivation.active or not self.scoring_enabled:
            return False
        now = self._scheduler.time()
        if self._last_trigger is not None and now - self._last_trigger < self._cooldown:
            return False
        if self._state is not SurveillanceState.ACTIVE:
            return False
        self._last_trigger = now
        self._state = SurveillanceState.MOTION_DETECTED
        self._awaiting_response = True
        self._emit(EventKind.MOTION_DETECTED, "Motion detected in the shop")
        self._start_alarm()
        pipeline = self._pipeline
        if pipeline is not None and (pipeline.start() or pipeline.is_recording):
            self._state = SurveillanceState.RECORDING
        return True

    # ------------------------------------------------------------------
    # Alarm and deactivation
    # ------------------------------------------------------------------
    def respond_to_alarm(self, present: bool, minutes: object | None = None) -> DeactivationWindow | None:
        """Dismiss the alarm; when *present*, pause detection for a while."""

        if not self._awaiting_response and self._state not in _ALARM_STATES:
            raise SurveillanceError("There is no alarm to respond to")
        self._awaiting_response = False
        self._stop_alarm("Alarm dismissed")
        if self._state in _ALARM_STATES:
            self._state = SurveillanceState.ACTIVE
        if not present:
            self._notifications.warning("Alert acknowledged - Shop may be at risk")
            return None
        if minutes is not None:
            self._deactivation_minutes = clamp_deactivation_minutes(minutes)
        window = self._deactivation.open(self._deactivation_minutes, self._scheduler.now())
        self._emit(
            EventKind.TEMPORARY_DEACTIVATION,
            f"Motion detection disabled for {self._deactivation_minutes} minutes",
        )
        self._notifications.success(
            f"Motion detection temporarily disabled for {self._deactivation_minutes} minutes"
        )
        return window

    def check_deactivation(self) -> bool:
        """Clear an elapsed deactivation window; ``True`` when one ended."""

        if not self._deactivation.expire(self._scheduler.now()):
            return False
        self._emit(EventKind.TEMPORARY_DEACTIVATION, "Temporary deactivation period ended")
        self._notifications.info("Temporary deactivation period ended. Motion detection resumed.")
        return True

    def set_deactivation_minutes(self, value: object) -> int:
        self._deactivation_minutes = clamp_deactivation_minutes(value)
        return self._deactivation_minutes

    def set_sensitivity(self, value: object) -> int:
        sensitivity = validate_sensitivity(value)
        if self.sensitivity_locked:
            raise SensitivityLockedError(
                f"Sensitivity can only be changed while the camera is active (state: {self._state.value})"
            )
        self._sensitivity = sensitivity
        logger.info("Motion sensitivity set to %d", sensitivity)
        return sensitivity

    def _start_alarm(self) -> None:
        self._alarm.start(self._scheduler.now())
        self._emit(EventKind.ALARM_TRIGGERED, "Alarm triggered due to motion detection")
        self._notifications.warning("Motion detected! Are you at the shop?")

    def _stop_alarm(self, details: str | None = None) -> None:
        """Silence the alarm; *details* logs a dismissal event when given."""

        if self._alarm.stop() and details is not None:
            self._emit(EventKind.ALARM_DISMISSED, details)

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------
    def refresh_schedule(self, *, announce: bool = True) -> bool:
        """Re-evaluate shop hours and toggle the scoring gate accordingly."""

        is_open = self._evaluate_hours()
        changed = is_open != self._shop_open
        self._shop_open = is_open
        if changed and announce and self._state in _CAMERA_STATES:
            if is_open:
                self._notifications.info("Shop is open - camera in normal mode")
            else:
                self._notifications.info("Shop is closed - security monitoring active")
        return is_open

    def _evaluate_hours(self) -> bool:
        hours = self._hours_provider()
        if hours is None:
            return True
        return self._oracle.is_open(hours.opening, hours.closing, self._scheduler.now())

    def _on_periodic_check(self) -> None:
        self.check_deactivation()
        self.refresh_schedule()

    # ------------------------------------------------------------------
    # Recording outcome
    # ------------------------------------------------------------------
    def _on_recording_complete(self, outcome: RecordingOutcome) -> None:
        if outcome.artifact is not None:
            self._emit(EventKind.RECORDING_SAVED, f"Motion recording saved ({outcome.artifact.id})")
            self._notifications.success("Motion recording saved")
        else:
            detail = outcome.error or "Recording failed"
            self._emit(EventKind.RECORDING_FAILED, detail)
            self._notifications.warning(f"Failed to save recording: {detail}")
        if self._state is SurveillanceState.RECORDING:
            self._state = SurveillanceState.ACTIVE
            self._stop_alarm()
            logger.info("Alarm silenced after the motion recording finished")

    # ------------------------------------------------------------------
    def _emit(self, kind: EventKind, details: str) -> TriggerEvent | None:
        event = TriggerEvent(
            kind=kind,
            details=details,
            timestamp=self._scheduler.now().astimezone(timezone.utc),
        )
        try:
            return self._events.append(event)
        except PersistenceError as exc:
            logger.error("Failed to record %s event: %s", kind.value, exc)
            self._notifications.warning(f"Failed to record event: {exc}")
            return None

    def snapshot(self) -> dict[str, object]:
        """Serialisable status for observers; never mutates state."""

        now = self._scheduler.now()
        window = self._deactivation.window
        sampler = self._sampler
        session = self._session
        return {
            "state": self._state.value,
            "camera": identify_camera(session.camera) if session is not None else None,
            "shop_open": self.shop_open,
            "scoring_enabled": self.scoring_enabled,
            "sensitivity": self._sensitivity,
            "sensitivity_locked": self.sensitivity_locked,
            "deactivation_minutes": self._deactivation_minutes,
            "deactivation": {
                "active": window is not None,
                "end_time": window.end_time.isoformat() if window is not None else None,
                "remaining_seconds": self._deactivation.remaining_seconds(now),
            },
            "alarm": self._alarm.to_dict(),
            "awaiting_response": self._awaiting_response,
            "recording": {
                "available": self._pipeline is not None and self._pipeline.available,
                "active": self.recording,
            },
            "surface": list(sampler.surface_size) if sampler is not None else None,
        }


__all__ = [
    "CameraFactory",
    "DEACTIVATION_CHECK_INTERVAL_S",
    "HoursProvider",
    "MOTION_COOLDOWN_S",
    "RecorderFactory",
    "SensitivityLockedError",
    "SurveillanceController",
    "SurveillanceError",
]
