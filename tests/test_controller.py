from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import numpy as np
import pytest

from shop_guard.camera import PermissionDeniedError
from shop_guard.surveillance import (
    EventKind,
    EventSink,
    FrameSample,
    NotificationChannel,
    RecordingSink,
    SensitivityLockedError,
    ShopHours,
    SurveillanceController,
    Scheduler,
    SurveillanceError,
    SurveillanceState,
)
from shop_guard.surveillance.recording import RecorderUnavailableError

from tests.support import FakeRecorder, ManualScheduler, StaticCamera

DARK = np.zeros((48, 64, 3), dtype=np.uint8)
BRIGHT = np.full((48, 64, 3), 255, dtype=np.uint8)


class Harness:
    def __init__(
        self,
        scheduler: ManualScheduler,
        tmp_path: Path,
        *,
        hours: ShopHours | None = ShopHours(),
        camera_error: Exception | None = None,
        recorder_error: Exception | None = None,
        events: EventSink | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.camera = StaticCamera()
        self.events = events if events is not None else EventSink()
        self.recordings = RecordingSink()
        self.notifications = NotificationChannel()
        self.hours = hours
        self.recorders: list[FakeRecorder] = []
        self._camera_error = camera_error
        self._recorder_error = recorder_error
        self._tmp_path = tmp_path
        self.controller = SurveillanceController(
            self._open_camera,
            scheduler,  # type: ignore[arg-type]
            self.events,
            self.recordings,
            lambda: self.hours,
            recorder_factory=self._make_recorder,
            notifications=self.notifications,
        )

    async def _open_camera(self) -> StaticCamera:
        if self._camera_error is not None:
            raise self._camera_error
        return self.camera

    def _make_recorder(self, camera: object) -> FakeRecorder:
        if self._recorder_error is not None:
            raise self._recorder_error
        recorder = FakeRecorder(self._tmp_path)
        self.recorders.append(recorder)
        return recorder

    def feed(self, frame: np.ndarray) -> bool:
        return self.controller.process_frame(FrameSample(timestamp=self.scheduler.now(), frame=frame))

    def trigger(self) -> None:
        self.feed(DARK)
        self.feed(BRIGHT)

    def kinds(self) -> list[EventKind]:
        return [event.kind for event in self.events.events()]

    def messages(self) -> list[str]:
        return [item.message for item in self.notifications.recent()]


@pytest.fixture
def harness(scheduler: ManualScheduler, tmp_path: Path) -> Harness:
    return Harness(scheduler, tmp_path)


@pytest.mark.anyio
async def test_start_activates_camera(harness: Harness) -> None:
    state = await harness.controller.start()

    assert state is SurveillanceState.ACTIVE
    assert harness.controller.session is not None
    assert harness.controller.shop_open is False
    assert harness.controller.scoring_enabled is True
    assert harness.controller.sampler is not None
    assert "Camera activated" in harness.messages()
    assert "Shop is closed - security monitoring active" in harness.messages()


@pytest.mark.anyio
async def test_start_is_ignored_while_active(harness: Harness) -> None:
    await harness.controller.start()
    session = harness.controller.session

    assert await harness.controller.start() is SurveillanceState.ACTIVE
    assert harness.controller.session is session


@pytest.mark.anyio
async def test_permission_denied(scheduler: ManualScheduler, tmp_path: Path) -> None:
    harness = Harness(scheduler, tmp_path, camera_error=PermissionDeniedError("denied"))

    state = await harness.controller.start()

    assert state is SurveillanceState.DENIED
    assert harness.controller.session is None
    assert "Could not access camera. Please check permissions." in harness.messages()


@pytest.mark.anyio
async def test_other_camera_errors_also_deny(scheduler: ManualScheduler, tmp_path: Path) -> None:
    harness = Harness(scheduler, tmp_path, camera_error=RuntimeError("no device"))

    assert await harness.controller.start() is SurveillanceState.DENIED
    assert "Error accessing camera" in harness.messages()


@pytest.mark.anyio
async def test_denied_camera_can_be_retried(scheduler: ManualScheduler, tmp_path: Path) -> None:
    harness = Harness(scheduler, tmp_path, camera_error=PermissionDeniedError("denied"))
    await harness.controller.start()

    harness._camera_error = None
    assert await harness.controller.start() is SurveillanceState.ACTIVE


@pytest.mark.anyio
async def test_recorder_unavailable_keeps_alarms(scheduler: ManualScheduler, tmp_path: Path) -> None:
    harness = Harness(scheduler, tmp_path, recorder_error=RecorderUnavailableError("no codec"))
    await harness.controller.start()

    harness.trigger()

    assert harness.controller.state is SurveillanceState.MOTION_DETECTED
    assert harness.controller.alarm.active is True
    assert harness.controller.recording is False


@pytest.mark.anyio
async def test_first_frame_never_triggers(harness: Harness) -> None:
    await harness.controller.start()

    assert harness.feed(BRIGHT) is False
    assert harness.controller.state is SurveillanceState.ACTIVE
    assert harness.events.events() == []


@pytest.mark.anyio
async def test_motion_triggers_alarm_and_recording(harness: Harness) -> None:
    await harness.controller.start()

    harness.trigger()

    assert harness.controller.state is SurveillanceState.RECORDING
    assert harness.controller.alarm.active is True
    assert harness.controller.awaiting_response is True
    assert harness.kinds() == [EventKind.MOTION_DETECTED, EventKind.ALARM_TRIGGERED]
    assert harness.events.events()[0].details == "Motion detected in the shop"
    assert harness.controller.recording is True


@pytest.mark.anyio
async def test_recording_completes_after_duration(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()
    harness.feed(BRIGHT)
    harness.feed(DARK)

    harness.scheduler.advance(15.0)

    assert harness.controller.state is SurveillanceState.ACTIVE
    assert harness.controller.alarm.active is False
    assert harness.kinds() == [
        EventKind.MOTION_DETECTED,
        EventKind.ALARM_TRIGGERED,
        EventKind.RECORDING_SAVED,
    ]
    artifacts = harness.recordings.artifacts()
    assert len(artifacts) == 1
    assert artifacts[0].duration_s == 15.0
    assert artifacts[0].size_bytes == 2 * BRIGHT.nbytes
    assert artifacts[0].detected_motion is True
    assert Path(artifacts[0].path).exists()


@pytest.mark.anyio
async def test_empty_recording_reports_failure(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()

    harness.scheduler.advance(15.0)

    assert harness.recordings.artifacts() == []
    assert EventKind.RECORDING_FAILED in harness.kinds()
    assert any(message.startswith("Failed to save recording") for message in harness.messages())
    assert harness.controller.state is SurveillanceState.ACTIVE


@pytest.mark.anyio
async def test_cooldown_suppresses_rapid_triggers(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()
    harness.controller.respond_to_alarm(False)
    assert harness.controller.state is SurveillanceState.ACTIVE

    harness.scheduler.advance(1.0)
    harness.trigger()
    assert harness.kinds().count(EventKind.MOTION_DETECTED) == 1
    assert harness.controller.state is SurveillanceState.ACTIVE

    harness.scheduler.advance(2.5)
    harness.trigger()
    assert harness.kinds().count(EventKind.MOTION_DETECTED) == 2


@pytest.mark.anyio
async def test_no_second_trigger_while_alarm_unanswered(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()

    harness.scheduler.advance(5.0)
    harness.trigger()

    assert harness.kinds().count(EventKind.MOTION_DETECTED) == 1


@pytest.mark.anyio
async def test_not_present_response_keeps_monitoring(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()

    assert harness.controller.respond_to_alarm(False) is None

    assert harness.controller.alarm.active is False
    assert harness.controller.deactivation_window is None
    assert harness.controller.awaiting_response is False
    assert "Alert acknowledged - Shop may be at risk" in harness.messages()
    assert harness.kinds()[-1] is EventKind.ALARM_DISMISSED


@pytest.mark.anyio
async def test_responding_without_alarm_is_rejected(harness: Harness) -> None:
    await harness.controller.start()
    with pytest.raises(SurveillanceError):
        harness.controller.respond_to_alarm(True)


@pytest.mark.anyio
async def test_deactivation_suppresses_motion_until_expiry(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()

    window = harness.controller.respond_to_alarm(True, 5)

    assert window is not None
    assert harness.controller.scoring_enabled is False
    assert harness.events.events()[-1].details == "Motion detection disabled for 5 minutes"

    harness.scheduler.advance(60.0)
    harness.trigger()
    assert harness.kinds().count(EventKind.MOTION_DETECTED) == 1
    assert harness.controller.report_motion() is False

    harness.scheduler.advance(5 * 60.0)
    ended = [event for event in harness.events.events() if event.details == "Temporary deactivation period ended"]
    assert len(ended) == 1
    assert harness.controller.deactivation_window is None
    assert harness.controller.scoring_enabled is True

    harness.scheduler.advance(60.0)
    assert harness.controller.check_deactivation() is False

    harness.trigger()
    assert harness.kinds().count(EventKind.MOTION_DETECTED) == 2


@pytest.mark.anyio
async def test_deactivation_minutes_are_clamped(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()
    start = harness.scheduler.now()

    window = harness.controller.respond_to_alarm(True, 500)

    assert window is not None
    assert (window.end_time - start).total_seconds() == 120 * 60
    assert harness.controller.deactivation_minutes == 120


@pytest.mark.anyio
async def test_dismissal_during_recording_finishes_clip(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()
    harness.controller.respond_to_alarm(False)

    assert harness.controller.state is SurveillanceState.ACTIVE
    assert harness.controller.recording is True
    assert harness.controller.sensitivity_locked is True

    harness.feed(BRIGHT)
    harness.scheduler.advance(15.0)

    assert len(harness.recordings) == 1
    assert harness.controller.state is SurveillanceState.ACTIVE
    assert harness.controller.sensitivity_locked is False


@pytest.mark.anyio
async def test_sensitivity_only_changes_while_active(harness: Harness) -> None:
    with pytest.raises(SensitivityLockedError):
        harness.controller.set_sensitivity(30)

    await harness.controller.start()
    assert harness.controller.set_sensitivity(30) == 30
    assert harness.controller.sensitivity == 30

    with pytest.raises(ValueError):
        harness.controller.set_sensitivity(51)

    harness.trigger()
    with pytest.raises(SensitivityLockedError):
        harness.controller.set_sensitivity(35)
    assert harness.controller.sensitivity == 30


@pytest.mark.anyio
async def test_open_shop_disables_scoring(scheduler: ManualScheduler, tmp_path: Path) -> None:
    harness = Harness(scheduler, tmp_path, hours=ShopHours(opening="18:00", closing="23:00"))
    await harness.controller.start()

    assert harness.controller.shop_open is True
    assert "Shop is open - camera in normal mode" in harness.messages()
    harness.trigger()
    assert harness.events.events() == []
    assert harness.controller.state is SurveillanceState.ACTIVE


@pytest.mark.anyio
async def test_missing_hours_mean_open(scheduler: ManualScheduler, tmp_path: Path) -> None:
    harness = Harness(scheduler, tmp_path, hours=None)
    await harness.controller.start()

    assert harness.controller.shop_open is True
    assert harness.controller.scoring_enabled is False


@pytest.mark.anyio
async def test_closing_time_enables_scoring(scheduler: ManualScheduler, tmp_path: Path) -> None:
    harness = Harness(scheduler, tmp_path, hours=ShopHours(opening="09:00", closing="20:01"))
    await harness.controller.start()
    assert harness.controller.shop_open is True

    harness.scheduler.advance(60.0)

    assert harness.controller.shop_open is False
    assert harness.controller.scoring_enabled is True
    harness.trigger()
    assert EventKind.MOTION_DETECTED in harness.kinds()


@pytest.mark.anyio
async def test_stop_releases_everything(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()
    harness.feed(BRIGHT)

    state = await harness.controller.stop()

    assert state is SurveillanceState.INACTIVE
    assert harness.camera.closed is True
    assert harness.controller.session is None
    assert harness.controller.sampler is None
    assert harness.controller.alarm.active is False
    assert harness.controller.awaiting_response is False
    assert harness.controller.recording is False
    assert len(harness.recordings) == 1
    assert harness.scheduler.pending() == 0

    assert await harness.controller.stop() is SurveillanceState.INACTIVE
    assert harness.kinds().count(EventKind.ALARM_DISMISSED) == 1


@pytest.mark.anyio
async def test_restart_discards_previous_baseline(harness: Harness) -> None:
    await harness.controller.start()
    harness.feed(DARK)
    await harness.controller.stop()

    await harness.controller.start()
    assert harness.feed(BRIGHT) is False
    assert harness.events.events() == []


@pytest.mark.anyio
async def test_stop_clears_deactivation_window(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()
    harness.controller.respond_to_alarm(True, 10)

    await harness.controller.stop()

    assert harness.controller.deactivation_window is None


@pytest.mark.anyio
async def test_permission_revoked_ends_inactive(harness: Harness) -> None:
    await harness.controller.start()

    state = await harness.controller.permission_revoked()

    assert state is SurveillanceState.INACTIVE
    assert harness.camera.closed is True
    assert "Camera permission revoked" in harness.messages()


@pytest.mark.anyio
async def test_frames_ignored_when_inactive(harness: Harness) -> None:
    assert harness.feed(BRIGHT) is False
    assert harness.controller.report_motion() is False
    assert harness.events.events() == []


@pytest.mark.anyio
async def test_event_log_write_failure_is_reported(scheduler: ManualScheduler, tmp_path: Path) -> None:
    log_path = tmp_path / "events.jsonl"
    events = EventSink(log_path)
    harness = Harness(scheduler, tmp_path, events=events)
    # A directory in place of the log file makes every append fail.
    log_path.mkdir()
    await harness.controller.start()

    harness.trigger()

    assert harness.controller.state is SurveillanceState.RECORDING
    assert any(message.startswith("Failed to record event") for message in harness.messages())
    assert EventKind.MOTION_DETECTED in harness.kinds()


@pytest.mark.anyio
async def test_snapshot_reports_state(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()
    harness.controller.respond_to_alarm(True, 5)

    snapshot = harness.controller.snapshot()

    assert snapshot["state"] == "active"
    assert snapshot["shop_open"] is False
    assert snapshot["deactivation"]["active"] is True  # type: ignore[index]
    assert snapshot["deactivation"]["remaining_seconds"] == 300.0  # type: ignore[index]
    assert snapshot["recording"] == {"available": True, "active": True}
    assert snapshot["surface"] == [640, 480]


def test_scheduler_fixture_is_after_hours(scheduler: ManualScheduler) -> None:
    assert scheduler.now().hour == 20
    assert isinstance(scheduler.now(), datetime)


@pytest.mark.anyio
async def test_stop_while_requesting_closes_late_camera(scheduler: ManualScheduler, tmp_path: Path) -> None:
    harness = Harness(scheduler, tmp_path)
    released = asyncio.Event()

    async def _slow_camera() -> StaticCamera:
        await released.wait()
        return harness.camera

    harness.controller._camera_factory = _slow_camera
    starting = asyncio.create_task(harness.controller.start())
    await asyncio.sleep(0)
    assert harness.controller.state is SurveillanceState.REQUESTING

    assert await harness.controller.stop() is SurveillanceState.INACTIVE
    released.set()
    assert await starting is SurveillanceState.INACTIVE

    assert harness.camera.closed is True
    assert harness.controller.session is None
    assert harness.controller.sampler is None
    assert scheduler.pending() == 0


@pytest.mark.anyio
async def test_stop_from_denied(scheduler: ManualScheduler, tmp_path: Path) -> None:
    harness = Harness(scheduler, tmp_path, camera_error=PermissionDeniedError("denied"))
    await harness.controller.start()
    assert harness.controller.state is SurveillanceState.DENIED

    assert await harness.controller.stop() is SurveillanceState.INACTIVE
    assert await harness.controller.stop() is SurveillanceState.INACTIVE
    assert harness.events.events() == []


@pytest.mark.anyio
async def test_shop_open_is_current_after_stop(harness: Harness) -> None:
    await harness.controller.start()
    assert harness.controller.shop_open is False
    await harness.controller.stop()

    harness.hours = ShopHours(opening="18:00", closing="23:00")

    assert harness.controller.shop_open is True
    assert harness.controller.snapshot()["shop_open"] is True


@pytest.mark.anyio
async def test_recording_end_silences_alarm_without_dismissal(harness: Harness) -> None:
    await harness.controller.start()
    harness.trigger()
    harness.feed(BRIGHT)

    harness.scheduler.advance(15.0)

    assert harness.controller.alarm.active is False
    assert EventKind.ALARM_DISMISSED not in harness.kinds()


class _SlowCamera(StaticCamera):
    def __init__(self) -> None:
        super().__init__()
        self.reading = False
        self.closed_during_read = False

    async def get_frame(self):
        self.reading = True
        try:
            await asyncio.sleep(0.05)
            return self.frame
        finally:
            self.reading = False

    async def close(self) -> None:
        self.closed_during_read = self.closed_during_read or self.reading
        await super().close()


@pytest.mark.anyio
async def test_stop_waits_for_in_flight_capture(tmp_path: Path) -> None:
    camera = _SlowCamera()

    async def _open() -> _SlowCamera:
        return camera

    controller = SurveillanceController(
        _open,
        Scheduler(),
        EventSink(),
        RecordingSink(),
        lambda: ShopHours(),
        recorder_factory=lambda cam: FakeRecorder(tmp_path),
    )
    await controller.start()
    await asyncio.sleep(0.02)
    assert camera.reading is True

    await controller.stop()

    assert camera.closed is True
    assert camera.closed_during_read is False
