"""Configuration management for ShopGuard."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

from .camera import CAMERA_SOURCES, DEFAULT_CAMERA_CHOICE
from .surveillance.motion import DEFAULT_SENSITIVITY, validate_sensitivity
from .surveillance.schedule import ShopHours
from .surveillance.timers import (
    DEFAULT_DEACTIVATION_MINUTES,
    MAX_DEACTIVATION_MINUTES,
    MIN_DEACTIVATION_MINUTES,
)

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_FPS = 15
DEFAULT_ENCODING = "h264"


@dataclass(frozen=True, slots=True)
class ShopGuardSettings:
    """User supplied options consumed by the surveillance controller."""

    shop_hours: ShopHours = field(default_factory=ShopHours)
    camera: str = DEFAULT_CAMERA_CHOICE
    sample_fps: int = DEFAULT_SAMPLE_FPS
    sensitivity: int = DEFAULT_SENSITIVITY
    deactivation_minutes: int = DEFAULT_DEACTIVATION_MINUTES
    encoding: str = DEFAULT_ENCODING

    def __post_init__(self) -> None:
        if not isinstance(self.shop_hours, ShopHours):
            object.__setattr__(self, "shop_hours", ShopHours(**dict(self.shop_hours)))
        camera = str(self.camera).strip().lower()
        if camera not in CAMERA_SOURCES:
            raise ValueError(f"Unknown camera source {self.camera!r}")
        object.__setattr__(self, "camera", camera)
        if self.sample_fps < 1 or self.sample_fps > 60:
            raise ValueError("Sample fps must be between 1 and 60")
        object.__setattr__(self, "sensitivity", validate_sensitivity(self.sensitivity))
        minutes = int(self.deactivation_minutes)
        if minutes < MIN_DEACTIVATION_MINUTES or minutes > MAX_DEACTIVATION_MINUTES:
            raise ValueError(
                "Deactivation duration must be between "
                f"{MIN_DEACTIVATION_MINUTES} and {MAX_DEACTIVATION_MINUTES} minutes"
            )
        object.__setattr__(self, "deactivation_minutes", minutes)
        if not str(self.encoding).strip():
            raise ValueError("Encoding must not be empty")

    def to_dict(self) -> dict[str, Any]:
        return {
            "shop_hours": self.shop_hours.to_dict(),
            "camera": self.camera,
            "sample_fps": int(self.sample_fps),
            "sensitivity": int(self.sensitivity),
            "deactivation_minutes": int(self.deactivation_minutes),
            "encoding": self.encoding,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ShopGuardSettings":
        data: dict[str, Any] = dict(payload)
        hours = data.get("shop_hours")
        if isinstance(hours, Mapping):
            data["shop_hours"] = ShopHours(**dict(hours))
        known = {name for name in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            logger.debug("Ignoring unknown settings keys: %s", sorted(unknown))
        return cls(**{key: value for key, value in data.items() if key in known})


DEFAULT_SETTINGS = ShopGuardSettings()


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._settings = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> ShopGuardSettings:
        if not self._path.exists():
            return DEFAULT_SETTINGS
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return ShopGuardSettings.from_dict(payload)
        except (ValueError, TypeError) as exc:
            logger.warning("Invalid configuration in %s: %s; using defaults", self._path, exc)
            return DEFAULT_SETTINGS

    def _save(self, settings: ShopGuardSettings) -> None:
        self._path.write_text(
            json.dumps(settings.to_dict(), indent=2, sort_keys=True),
            encoding="utf-8",
        )

    def get_settings(self) -> ShopGuardSettings:
        with self._lock:
            return self._settings

    def get_shop_hours(self) -> ShopHours:
        with self._lock:
            return self._settings.shop_hours

    def set_shop_hours(self, opening: str, closing: str) -> ShopHours:
        hours = ShopHours(opening=opening, closing=closing)
        self.update(shop_hours=hours)
        return hours

    def update(self, **changes: Any) -> ShopGuardSettings:
        with self._lock:
            settings = replace(self._settings, **changes)
            self._save(settings)
            self._settings = settings
            return settings


__all__ = ["ConfigManager", "DEFAULT_SETTINGS", "ShopGuardSettings"]
