"""FastAPI application exposing the ShopGuard controls."""
from __future__ import annotations

import logging
import os
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from .camera import BaseCamera, open_camera
from .config import ConfigManager
from .surveillance import (
    AlarmTimer,
    EventKind,
    EventSink,
    NotificationChannel,
    PersistenceError,
    RecordingSink,
    Scheduler,
    SensitivityLockedError,
    SurveillanceController,
    SurveillanceError,
    TriggerEvent,
    VideoClipRecorder,
)
from .surveillance.controller import CameraFactory
from .surveillance.recording import RECORDING_DURATION_S
from .version import APP_VERSION

DATA_DIR = Path(os.environ.get("SHOPGUARD_DATA_DIR", "data"))


class SensitivityPayload(BaseModel):
    sensitivity: int


class DeactivationPayload(BaseModel):
    minutes: float


class AlarmResponsePayload(BaseModel):
    present: bool
    minutes: float | None = None


class ShopHoursPayload(BaseModel):
    opening: str = Field(min_length=3, max_length=5)
    closing: str = Field(min_length=3, max_length=5)


class SessionPayload(BaseModel):
    name: str | None = Field(default=None, max_length=128)


def create_app(
    config_path: Path | str | None = None,
    *,
    data_dir: Path | str | None = None,
    camera_factory: CameraFactory | None = None,
) -> FastAPI:
    app = FastAPI(title="ShopGuard", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    base_dir = Path(data_dir) if data_dir is not None else DATA_DIR
    config_manager = ConfigManager(Path(config_path) if config_path is not None else base_dir / "config.json")
    recordings_dir = base_dir / "recordings"

    scheduler = Scheduler()
    notifications = NotificationChannel()
    events = EventSink(base_dir / "events.jsonl")
    recordings = RecordingSink()
    recordings.restore(recordings_dir, duration_s=RECORDING_DURATION_S)
    settings = config_manager.get_settings()

    async def _default_camera_factory() -> BaseCamera:
        current = config_manager.get_settings()
        return await open_camera(current.camera, fps=current.sample_fps)

    def _recorder_factory(camera: BaseCamera) -> VideoClipRecorder:
        current = config_manager.get_settings()
        return VideoClipRecorder(recordings_dir, fps=current.sample_fps, encoding=current.encoding)

    controller = SurveillanceController(
        camera_factory if camera_factory is not None else _default_camera_factory,
        scheduler,
        events,
        recordings,
        config_manager.get_shop_hours,
        recorder_factory=_recorder_factory,
        alarm=AlarmTimer(),
        notifications=notifications,
        sensitivity=settings.sensitivity,
        deactivation_minutes=settings.deactivation_minutes,
        sample_fps=settings.sample_fps,
    )
    app.state.controller = controller
    app.state.config_manager = config_manager
    app.state.events = events
    app.state.recordings = recordings
    app.state.notifications = notifications

    def _status() -> dict[str, object]:
        payload = controller.snapshot()
        payload["shop_hours"] = config_manager.get_shop_hours().to_dict()
        return payload

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await controller.stop()

    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        return _status()

    @app.post("/api/camera/start")
    async def start_camera() -> dict[str, object]:
        await controller.start()
        return _status()

    @app.post("/api/camera/stop")
    async def stop_camera() -> dict[str, object]:
        await controller.stop()
        return _status()

    @app.post("/api/camera/revoke")
    async def revoke_camera() -> dict[str, object]:
        await controller.permission_revoked()
        return _status()

    @app.post("/api/surveillance/sensitivity")
    async def set_sensitivity(payload: SensitivityPayload) -> dict[str, object]:
        try:
            value = controller.set_sensitivity(payload.sensitivity)
        except SensitivityLockedError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        config_manager.update(sensitivity=value)
        return _status()

    @app.post("/api/surveillance/deactivation")
    async def set_deactivation(payload: DeactivationPayload) -> dict[str, object]:
        minutes = controller.set_deactivation_minutes(payload.minutes)
        config_manager.update(deactivation_minutes=minutes)
        return _status()

    @app.post("/api/alarm/respond")
    async def respond_to_alarm(payload: AlarmResponsePayload) -> dict[str, object]:
        try:
            controller.respond_to_alarm(payload.present, payload.minutes)
        except SurveillanceError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _status()

    @app.get("/api/shop/hours")
    async def get_shop_hours() -> dict[str, str]:
        return config_manager.get_shop_hours().to_dict()

    @app.post("/api/shop/hours")
    async def set_shop_hours(payload: ShopHoursPayload) -> dict[str, str]:
        try:
            hours = config_manager.set_shop_hours(payload.opening, payload.closing)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        controller.refresh_schedule()
        return hours.to_dict()

    @app.get("/api/events")
    async def list_events(limit: int | None = None) -> dict[str, object]:
        entries = events.tail(limit)
        return {"events": [entry.to_dict() for entry in entries]}

    @app.get("/api/notifications")
    async def list_notifications(limit: int | None = 20) -> dict[str, object]:
        return {"notifications": [item.to_dict() for item in notifications.recent(limit)]}

    @app.get("/api/recordings")
    async def list_recordings() -> dict[str, object]:
        return {"recordings": [item.to_dict() for item in recordings.artifacts()]}

    @app.get("/api/recordings/{recording_id}")
    async def download_recording(recording_id: str) -> FileResponse:
        artifact = recordings.get(recording_id)
        if artifact is None:
            raise HTTPException(status_code=404, detail="Recording not found")
        path = Path(artifact.path)
        if not path.exists():
            raise HTTPException(status_code=404, detail="Recording file missing")
        return FileResponse(path, media_type="video/mp4", filename=path.name)

    @app.delete("/api/recordings/{recording_id}")
    async def delete_recording(recording_id: str) -> dict[str, object]:
        if not recordings.remove(recording_id):
            raise HTTPException(status_code=404, detail="Recording not found")
        notifications.success("Recording deleted")
        return {"deleted": recording_id}

    def _record_session(kind: EventKind, details: str) -> dict[str, object]:
        event = TriggerEvent(kind=kind, details=details)
        try:
            events.append(event)
        except PersistenceError as exc:
            notifications.warning(f"Failed to record event: {exc}")
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return event.to_dict()

    @app.post("/api/session/login")
    async def record_login(payload: SessionPayload) -> dict[str, object]:
        name = (payload.name or "User").strip() or "User"
        return _record_session(EventKind.LOGIN, f"{name} logged in")

    @app.post("/api/session/logout")
    async def record_logout(payload: SessionPayload) -> dict[str, object]:
        name = (payload.name or "User").strip() or "User"
        logger.info("%s logged out; stopping camera", name)
        await controller.stop()
        return _record_session(EventKind.LOGOUT, f"{name} logged out")

    return app


__all__ = ["create_app"]
