"""Append-only event log and bounded recording store."""
from __future__ import annotations

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Iterable

from .models import RecordingArtifact, TriggerEvent

logger = logging.getLogger(__name__)

MAX_RECORDINGS = 5


class PersistenceError(RuntimeError):
    """Raised when an event or recording cannot be stored."""


class EventSink:
    """Append-only event log preserving insertion order.

    Entries are kept in memory and, when *path* is supplied, mirrored to a
    JSON-lines file so the log survives restarts of the dashboard.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 1000,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[TriggerEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    def append(self, event: TriggerEvent) -> TriggerEvent:
        """Record *event*; raises ``PersistenceError`` if the file mirror fails.

        The entry stays in memory even when the file write fails.
        """

        with self._lock:
            self._entries.append(event)
            self._append_persistent(event)
        return event

    def events(self) -> list[TriggerEvent]:
        with self._lock:
            return list(self._entries)

    def tail(self, limit: int | None = None) -> list[TriggerEvent]:
        entries = self.events()
        if limit is not None:
            limit_value = max(1, int(limit))
            if len(entries) > limit_value:
                entries = entries[-limit_value:]
        return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _append_persistent(self, event: TriggerEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(event.to_dict(), sort_keys=True))
                handle.write("\n")
        except OSError as exc:
            logger.warning("Unable to persist event log entry: %s", exc)
            raise PersistenceError(f"Unable to write event log {self._path}: {exc}") from exc

    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - filesystem errors are rare
            logger.warning("Unable to read event log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                self._entries.append(TriggerEvent.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError):
                logger.debug("Skipping malformed event log line: %r", line)


class RecordingSink:
    """Keeps the newest recordings, evicting the oldest beyond *capacity*."""

    def __init__(self, capacity: int = MAX_RECORDINGS, *, manage_files: bool = True) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = int(capacity)
        self._manage_files = manage_files
        self._items: list[RecordingArtifact] = []
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, artifact: RecordingArtifact) -> list[RecordingArtifact]:
        """Store *artifact* as the newest entry and return any evicted ones."""

        if self._manage_files and not Path(artifact.path).exists():
            raise PersistenceError(f"Recording file {artifact.path} does not exist")
        with self._lock:
            items = [artifact, *self._items]
            self._items = items[: self._capacity]
            evicted = items[self._capacity :]
        for old in evicted:
            self._remove_files(old)
        return evicted

    def restore(
        self,
        directory: Path | str,
        *,
        duration_s: float,
        pattern: str = "*.mp4",
    ) -> list[RecordingArtifact]:
        """Adopt clips already on disk, keeping the newest and deleting the rest.

        Clip ids are the file stems, so they survive restarts. Returns the
        evicted artifacts.
        """

        folder = Path(directory)
        if not folder.is_dir():
            return []
        found: list[RecordingArtifact] = []
        for media in folder.glob(pattern):
            try:
                stat = media.stat()
            except OSError as exc:
                logger.warning("Skipping unreadable recording %s: %s", media, exc)
                continue
            thumb = media.with_suffix(".jpg")
            found.append(
                RecordingArtifact(
                    path=str(media),
                    duration_s=float(duration_s),
                    size_bytes=int(stat.st_size),
                    thumb_path=str(thumb) if thumb.exists() else None,
                    timestamp=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
                    id=media.stem,
                )
            )
        with self._lock:
            known = {item.id for item in self._items}
            merged = self._items + [item for item in found if item.id not in known]
            merged.sort(key=lambda item: item.timestamp, reverse=True)
            self._items = merged[: self._capacity]
            evicted = merged[self._capacity :]
        for old in evicted:
            self._remove_files(old)
        if found:
            logger.info(
                "Restored %d recording(s) from %s, evicted %d",
                len(found) - len(evicted),
                folder,
                len(evicted),
            )
        return evicted

    def remove(self, artifact_id: str) -> bool:
        with self._lock:
            for index, item in enumerate(self._items):
                if item.id == artifact_id:
                    removed = self._items.pop(index)
                    break
            else:
                return False
        self._remove_files(removed)
        return True

    def get(self, artifact_id: str) -> RecordingArtifact | None:
        with self._lock:
            for item in self._items:
                if item.id == artifact_id:
                    return item
        return None

    def artifacts(self) -> list[RecordingArtifact]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _remove_files(self, artifact: RecordingArtifact) -> None:
        if not self._manage_files:
            return
        paths: Iterable[str | None] = (artifact.path, artifact.thumb_path)
        for raw in paths:
            if not raw:
                continue
            path = Path(raw)
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Failed to remove recording file %s: %s", path, exc)


__all__ = ["EventSink", "MAX_RECORDINGS", "PersistenceError", "RecordingSink"]
