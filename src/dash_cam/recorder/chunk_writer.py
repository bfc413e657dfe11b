"""Capture-and-encode backends producing one chunk file at a time."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

import numpy as np

from ..camera import BaseCamera, CameraError, summarise_exception
from ..config import PipelineConfig
from ..events import ErrorCode
from .video import VideoEncoder

logger = logging.getLogger(__name__)

MAX_FILESIZE_REACHED = "max_filesize_reached"
MAX_DURATION_REACHED = "max_duration_reached"


class RecorderError(RuntimeError):
    """Raised when a chunk cannot be opened for writing."""


@dataclass(slots=True)
class ChunkResult:
    """Outcome delivered by a recorder once its chunk file is closed."""

    path: Path
    start_ms: int
    duration_ms: int
    frame_count: int
    error: str | None = None


class RecorderListener(Protocol):
    def on_frame(self, frame: np.ndarray, timestamp_ms: int) -> None: ...

    def on_limit_reached(self, reason: str) -> None: ...

    def on_error(self, code: ErrorCode, detail: str) -> None: ...


class ChunkRecorder(Protocol):
    """Writes one chunk; closing is asynchronous."""

    def start(self, path: Path, start_ms: int) -> None: ...

    def stop(self, on_closed: Callable[[ChunkResult], None]) -> None: ...


RecorderFactory = Callable[[BaseCamera, PipelineConfig, RecorderListener], ChunkRecorder]


class AvChunkRecorder:
    """Pull frames from a camera on a thread and encode them with PyAV.

    Presentation timestamps follow the wall clock so that the media duration
    of a chunk matches the time it covers even when frames are dropped.
    """

    def __init__(
        self,
        camera: BaseCamera,
        config: PipelineConfig,
        listener: RecorderListener,
        *,
        encoding: str = "h264",
        max_file_size: int | None = None,
        max_duration_ms: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._camera = camera
        self._config = config
        self._listener = listener
        self._encoding = encoding
        self._max_file_size = max_file_size
        self._max_duration_ms = max_duration_ms
        self._clock = clock
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._on_closed: Callable[[ChunkResult], None] | None = None
        self._result: ChunkResult | None = None
        self._encoder: VideoEncoder | None = None
        self._path: Path | None = None
        self._start_ms = 0

    def start(self, path: Path, start_ms: int) -> None:
        if self._thread is not None:
            raise RecorderError("Recorder has already been started")
        try:
            self._encoder = VideoEncoder(
                path=path,
                fps=int(self._config.frame_rate),
                width=int(self._config.width),
                height=int(self._config.height),
                encoding=self._encoding,
                bit_rate=int(self._config.bit_rate),
            )
        except Exception as exc:
            raise RecorderError(f"Unable to open {path}: {summarise_exception(exc)}") from exc
        self._path = path
        self._start_ms = int(start_ms)
        self._thread = threading.Thread(
            target=self._run, name=f"chunk-recorder-{path.stem}", daemon=True
        )
        self._thread.start()

    def stop(self, on_closed: Callable[[ChunkResult], None]) -> None:
        with self._lock:
            result = self._result
            if result is None:
                self._on_closed = on_closed
        self._stop_event.set()
        if result is not None:
            on_closed(result)

    # ------------------------------------------------------------------
    def _run(self) -> None:
        encoder = self._encoder
        assert encoder is not None and self._path is not None
        fps = float(self._config.frame_rate)
        period = 1.0 / fps
        started = self._clock()
        limit_reported = False
        error: str | None = None
        try:
            while not self._stop_event.is_set():
                frame_started = self._clock()
                try:
                    frame = self._camera.capture()
                except CameraError as exc:
                    error = str(exc)
                    self._listener.on_error(exc.code, error)
                    break
                elapsed = frame_started - started
                try:
                    encoder.encode(frame, pts=int(round(elapsed * fps)))
                except Exception as exc:
                    error = summarise_exception(exc)
                    self._listener.on_error(ErrorCode.MEDIA_RECORDER_ERROR, error)
                    break
                self._listener.on_frame(frame, self._start_ms + int(elapsed * 1000))
                if not limit_reported:
                    reason = self._limit_reason(encoder)
                    if reason is not None:
                        limit_reported = True
                        self._listener.on_limit_reached(reason)
                remaining = period - (self._clock() - frame_started)
                if remaining > 0:
                    self._stop_event.wait(remaining)
        except Exception as exc:
            error = summarise_exception(exc)
            logger.exception("Chunk recorder for %s failed", self._path)
            self._listener.on_error(ErrorCode.MEDIA_RECORDER_ERROR, error)
        finally:
            try:
                encoder.close()
            except Exception as exc:
                logger.exception("Unable to finalise %s", self._path)
                error = error or summarise_exception(exc)
            self._finish(
                ChunkResult(
                    path=self._path,
                    start_ms=self._start_ms,
                    duration_ms=encoder.duration_ms,
                    frame_count=encoder.frame_count,
                    error=error,
                )
            )

    def _limit_reason(self, encoder: VideoEncoder) -> str | None:
        if self._max_duration_ms is not None and encoder.duration_ms >= self._max_duration_ms:
            return MAX_DURATION_REACHED
        if self._max_file_size is not None and self._path is not None:
            try:
                size = self._path.stat().st_size
            except OSError:
                return None
            if size >= self._max_file_size:
                return MAX_FILESIZE_REACHED
        return None

    def _finish(self, result: ChunkResult) -> None:
        with self._lock:
            self._result = result
            callback = self._on_closed
            self._on_closed = None
        if callback is not None:
            callback(result)


def default_recorder_factory(
    camera: BaseCamera, config: PipelineConfig, listener: RecorderListener
) -> ChunkRecorder:
    return AvChunkRecorder(camera, config, listener)


__all__ = [
    "MAX_DURATION_REACHED",
    "MAX_FILESIZE_REACHED",
    "AvChunkRecorder",
    "ChunkRecorder",
    "ChunkResult",
    "RecorderError",
    "RecorderFactory",
    "RecorderListener",
    "default_recorder_factory",
]
