"""Short motion-triggered recordings."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from fractions import Fraction
from pathlib import Path
from typing import Callable, Optional, Protocol

import logging

import av
import numpy as np
import simplejpeg

from .models import RecordingArtifact, new_identifier
from .scheduler import Cancellable, Scheduler
from .sinks import PersistenceError, RecordingSink

logger = logging.getLogger(__name__)

RECORDING_DURATION_S = 15.0
THUMBNAIL_QUALITY = 80

_CODEC_FALLBACKS = {
    "h264": ("libx264", "h264", "mpeg4"),
    "hevc": ("libx265", "hevc", "libx264", "h264"),
}
_CODEC_ALIASES = {"libx264": "h264", "h265": "hevc", "libx265": "hevc"}


class RecorderUnavailableError(RuntimeError):
    """Raised when no recorder can be created for the session."""


def codec_candidates(encoding: str) -> list[str]:
    """Encoder names to try for *encoding*, best first."""

    name = encoding.strip().lower()
    family = _CODEC_ALIASES.get(name, name)
    if family in _CODEC_FALLBACKS:
        return list(_CODEC_FALLBACKS[family])
    return [name, *_CODEC_FALLBACKS["h264"]]


def available_codec(encoding: str) -> str | None:
    """Return the first encoder for *encoding* that PyAV can open, if any."""

    for name in codec_candidates(encoding):
        try:
            av.codec.Codec(name, "w")
        except Exception:
            continue
        return name
    return None


def to_rgb24(frame: np.ndarray) -> np.ndarray:
    """Coerce grey, single-channel or RGBA frames into contiguous ``uint8`` RGB."""

    array = np.asarray(frame)
    if array.ndim == 2:
        array = array[:, :, np.newaxis]
    if array.ndim != 3:
        raise ValueError(f"Cannot record frame with shape {array.shape}")
    channels = array.shape[2]
    if channels == 1:
        array = np.repeat(array, 3, axis=2)
    elif channels >= 3:
        array = array[:, :, :3]
    else:
        raise ValueError(f"Cannot record frame with {channels} channels")
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    return np.ascontiguousarray(array)


@dataclass(frozen=True, slots=True)
class FinishedClip:
    path: Path
    size_bytes: int
    thumb_path: Path | None = None


class ClipRecorder(Protocol):
    """Media recorder fed with frames by the recording pipeline."""

    @property
    def recording(self) -> bool:  # pragma: no cover - interface only
        ...

    def begin(self, path: Path | None = None) -> Path:  # pragma: no cover - interface only
        ...

    def write(self, frame: np.ndarray) -> None:  # pragma: no cover - interface only
        ...

    def finish(self) -> FinishedClip:  # pragma: no cover - interface only
        ...

    def discard(self) -> None:  # pragma: no cover - interface only
        ...


class VideoClipRecorder:
    """Encode one motion clip at a time into MP4 files inside *directory*.

    The container is opened on the first frame so the stream matches the
    capture surface; that first frame is also kept for the JPEG thumbnail.
    Later frames of a different size are resampled to the stream size.
    """

    def __init__(
        self,
        directory: Path | str,
        *,
        fps: int = 15,
        encoding: str = "h264",
        thumbnails: bool = True,
    ) -> None:
        codec = available_codec(encoding)
        if codec is None:
            raise RecorderUnavailableError(f"No encoder available for {encoding!r}")
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._fps = max(1, int(fps))
        self._codec = codec
        self._thumbnails = thumbnails
        self._path: Path | None = None
        self._container: av.container.OutputContainer | None = None
        self._stream: av.video.stream.VideoStream | None = None
        self._pts = 0
        self._poster: np.ndarray | None = None

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def codec(self) -> str:
        return self._codec

    @property
    def recording(self) -> bool:
        return self._path is not None

    def begin(self, path: Path | None = None) -> Path:
        if self._path is not None:
            raise RuntimeError("Recorder is already capturing")
        if path is None:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            path = self._directory / f"motion-{stamp}-{new_identifier()[:6]}.mp4"
        self._path = Path(path)
        self._pts = 0
        self._poster = None
        return self._path

    def write(self, frame: np.ndarray) -> None:
        if self._path is None:
            raise RuntimeError("Recorder has not been started")
        rgb = to_rgb24(frame)
        # yuv420p needs even dimensions.
        height, width = rgb.shape[0] & ~1, rgb.shape[1] & ~1
        if width == 0 or height == 0:
            return
        if self._stream is None:
            self._open_stream(self._path, width, height)
            self._poster = rgb.copy()
        self._encode(rgb)

    def finish(self) -> FinishedClip:
        if self._path is None:
            raise RuntimeError("Recorder has not been started")
        path, poster = self._path, self._poster
        self._reset()
        size_bytes = path.stat().st_size if path.exists() else 0
        if size_bytes <= 0:
            path.unlink(missing_ok=True)
            return FinishedClip(path=path, size_bytes=0)
        thumb_path: Path | None = None
        if self._thumbnails and poster is not None:
            thumb_path = path.with_suffix(".jpg")
            try:
                thumb_path.write_bytes(
                    simplejpeg.encode_jpeg(poster, quality=THUMBNAIL_QUALITY, colorspace="RGB")
                )
            except Exception:
                logger.exception("Failed to write thumbnail for %s", path.name)
                thumb_path = None
        return FinishedClip(path=path, size_bytes=size_bytes, thumb_path=thumb_path)

    def discard(self) -> None:
        path = self._path
        try:
            self._reset()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.exception("Failed to close encoder while discarding clip")
        if path is not None:
            path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    def _open_stream(self, path: Path, width: int, height: int) -> None:
        container = av.open(path.as_posix(), mode="w")
        try:
            stream = container.add_stream(self._codec, rate=self._fps)
        except Exception:
            container.close()
            raise
        stream.width = width
        stream.height = height
        stream.pix_fmt = "yuv420p"
        stream.time_base = Fraction(1, self._fps)
        try:  # pragma: no cover - codec options availability varies
            stream.codec_context.options.update({"preset": "veryfast", "crf": "23"})
        except Exception:
            logger.debug("Encoder %s ignores preset options", self._codec)
        self._container = container
        self._stream = stream

    def _encode(self, rgb: np.ndarray) -> None:
        assert self._stream is not None and self._container is not None
        width, height = self._stream.width, self._stream.height
        if rgb.shape[:2] != (height, width):
            rows = np.arange(height) * rgb.shape[0] // height
            cols = np.arange(width) * rgb.shape[1] // width
            rgb = np.ascontiguousarray(rgb[rows][:, cols])
        video_frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
        video_frame.pts = self._pts
        self._pts += 1
        for packet in self._stream.encode(video_frame):
            self._container.mux(packet)

    def _reset(self) -> None:
        stream, container = self._stream, self._container
        self._path = None
        self._stream = None
        self._container = None
        self._poster = None
        if stream is not None and container is not None:
            for packet in stream.encode():
                container.mux(packet)
            container.close()


@dataclass(frozen=True, slots=True)
class RecordingOutcome:
    """Result of finalising a recording."""

    artifact: RecordingArtifact | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.artifact is not None


class RecordingPipeline:
    """Capture a fixed-length clip and hand it to the recording store."""

    def __init__(
        self,
        recorder: ClipRecorder | None,
        sink: RecordingSink,
        scheduler: Scheduler,
        *,
        duration_s: float = RECORDING_DURATION_S,
        on_complete: Optional[Callable[[RecordingOutcome], object]] = None,
    ) -> None:
        if duration_s <= 0:
            raise ValueError("Recording duration must be positive")
        self._recorder = recorder
        self._sink = sink
        self._scheduler = scheduler
        self._duration = float(duration_s)
        self._on_complete = on_complete
        self._recording = False
        self._timer: Cancellable | None = None
        self._frames = 0

    @property
    def available(self) -> bool:
        return self._recorder is not None

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def duration_s(self) -> float:
        return self._duration

    def start(self) -> bool:
        """Begin capturing; no-op when already recording or no recorder exists."""

        if self._recording or self._recorder is None:
            return False
        try:
            if self._recorder.recording:
                self._recorder.discard()
            self._recorder.begin()
        except Exception:
            logger.exception("Failed to start recording")
            return False
        self._recording = True
        self._frames = 0
        self._timer = self._scheduler.call_later(self._duration, self._on_timeout)
        logger.info("Motion recording started for %.0f seconds", self._duration)
        return True

    def feed(self, frame: np.ndarray) -> None:
        if not self._recording or self._recorder is None:
            return
        try:
            self._recorder.write(frame)
        except Exception:
            logger.exception("Failed to write frame to recording")
        else:
            self._frames += 1

    def stop(self) -> RecordingOutcome | None:
        """Finalise the clip, persist it and report the outcome."""

        if not self._recording or self._recorder is None:
            return None
        self._cancel_timer()
        self._recording = False
        outcome = self._finalise(self._recorder)
        if self._on_complete is not None:
            try:
                self._on_complete(outcome)
            except Exception:
                logger.exception("Recording completion handler failed")
        return outcome

    def cancel(self) -> None:
        """Drop any in-flight clip without persisting it."""

        self._cancel_timer()
        if self._recording and self._recorder is not None:
            self._recorder.discard()
        self._recording = False

    # ------------------------------------------------------------------
    def _on_timeout(self) -> None:
        self._timer = None
        self.stop()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _finalise(self, recorder: ClipRecorder) -> RecordingOutcome:
        try:
            clip = recorder.finish()
        except Exception as exc:
            logger.exception("Failed to finalise recording")
            return RecordingOutcome(error=f"Failed to finalise recording: {exc}")
        if clip.size_bytes <= 0:
            logger.warning("Recording produced no media after %d frames", self._frames)
            return RecordingOutcome(error="Recording captured no media")
        artifact = RecordingArtifact(
            path=str(clip.path),
            duration_s=self._duration,
            size_bytes=clip.size_bytes,
            detected_motion=True,
            thumb_path=str(clip.thumb_path) if clip.thumb_path else None,
            id=Path(clip.path).stem,
        )
        try:
            evicted = self._sink.add(artifact)
        except PersistenceError as exc:
            logger.error("Failed to save recording: %s", exc)
            return RecordingOutcome(error=f"Failed to save recording: {exc}")
        for old in evicted:
            logger.info("Evicted recording %s", old.id)
        logger.info("Motion recording saved: id=%s size=%d", artifact.id, artifact.size_bytes)
        return RecordingOutcome(artifact=artifact)


__all__ = [
    "ClipRecorder",
    "FinishedClip",
    "RECORDING_DURATION_S",
    "RecorderUnavailableError",
    "RecordingOutcome",
    "RecordingPipeline",
    "THUMBNAIL_QUALITY",
    "VideoClipRecorder",
    "available_codec",
    "codec_candidates",
    "to_rgb24",
]
