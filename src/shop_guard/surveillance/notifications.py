"""Non-blocking user notifications."""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque

logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_LOG_LEVELS = {
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.SUCCESS: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True, slots=True)
class Notification:
    level: NotificationLevel
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, str]:
        return {
            "level": self.level.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[Notification], object]


class NotificationChannel:
    """Fan out notifications to subscribers without ever raising."""

    def __init__(self, *, max_entries: int = 100) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._entries: Deque[Notification] = deque(maxlen=max_entries)
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, level: NotificationLevel | str, message: str) -> Notification:
        notification = Notification(level=NotificationLevel(level), message=message)
        logger.log(_LOG_LEVELS[notification.level], "%s", message)
        with self._lock:
            self._entries.append(notification)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(notification)
            except Exception:
                logger.exception("Notification subscriber %r failed", callback)
        return notification

    def info(self, message: str) -> Notification:
        return self.publish(NotificationLevel.INFO, message)

    def success(self, message: str) -> Notification:
        return self.publish(NotificationLevel.SUCCESS, message)

    def warning(self, message: str) -> Notification:
        return self.publish(NotificationLevel.WARNING, message)

    def error(self, message: str) -> Notification:
        return self.publish(NotificationLevel.ERROR, message)

    def recent(self, limit: int | None = None) -> list[Notification]:
        with self._lock:
            entries = list(self._entries)
        if limit is not None and len(entries) > max(1, int(limit)):
            entries = entries[-max(1, int(limit)) :]
        return entries


__all__ = ["Notification", "NotificationChannel", "NotificationLevel"]
