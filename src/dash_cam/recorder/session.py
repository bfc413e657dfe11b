"""Recording session controller rotating chunks for one camera."""
from __future__ import annotations

import logging
import os
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

import numpy as np

from ..camera import BaseCamera, CameraError, summarise_exception
from ..config import ConfigStore, PipelineConfig
from ..events import ErrorCode, EventBus, InfoCode, NoticeCode, Notification
from ..scheduler import ScheduledTask, SerialScheduler
from ..storage.index import ORIGINAL_VIDEO_DIR, ChunkIndex, chunk_file_name
from ..storage.trimmer import StorageTrimmer
from ..telemetry import TelemetrySample, format_capture_sample, read_telemetry
from .capture import (
    DEFAULT_CAPTURE_MODULES,
    CaptureContext,
    CaptureModule,
    CaptureModuleSpec,
    FrameConsumer,
    PeriodicCapture,
    Rotatable,
    SnapshotCapable,
    SnapshotMetadata,
    build_capture_modules,
)
from .chunk_writer import (
    ChunkRecorder,
    ChunkResult,
    RecorderFactory,
    default_recorder_factory,
)

logger = logging.getLogger(__name__)

HEALTH_INTERVAL_S = 30.0

CameraFactory = Callable[[int, PipelineConfig], BaseCamera]


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    ROTATING = "rotating"
    STOPPING = "stopping"
    FAULTED = "faulted"


class StartFault(RuntimeError):
    """Raised internally when a session cannot start."""

    def __init__(self, code: ErrorCode, detail: str) -> None:
        super().__init__(detail)
        self.code = code


class _FrameCounter:
    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def increment(self) -> None:
        with self._lock:
            self._value += 1

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class _RecorderEvents:
    """Routes callbacks of one recorder generation back to the session."""

    def __init__(self, session: "RecordingSession", generation: int) -> None:
        self._session = session
        self._generation = generation

    def on_frame(self, frame: np.ndarray, timestamp_ms: int) -> None:
        self._session._handle_frame(self._generation, frame, timestamp_ms)

    def on_limit_reached(self, reason: str) -> None:
        self._session._dispatch(lambda: self._session._handle_limit(self._generation, reason))

    def on_error(self, code: ErrorCode, detail: str) -> None:
        self._session._dispatch(
            lambda: self._session._handle_recorder_error(self._generation, code, detail)
        )


def _default_storage_check(media_root: Path) -> bool:
    return media_root.is_dir() and os.access(media_root, os.W_OK)


class RecordingSession:
    """Own the capture and encode session of one camera.

    Every state change runs on the camera's :class:`SerialScheduler`; the
    public methods only enqueue work there and return immediately.
    """

    def __init__(
        self,
        camera_id: int,
        *,
        index: ChunkIndex,
        events: EventBus,
        scheduler: SerialScheduler,
        camera_factory: CameraFactory,
        recorder_factory: RecorderFactory = default_recorder_factory,
        trimmer: StorageTrimmer | None = None,
        config_store: ConfigStore | None = None,
        capture_modules: Sequence[CaptureModuleSpec] = DEFAULT_CAPTURE_MODULES,
        permission_check: Callable[[int], bool] | None = None,
        storage_check: Callable[[Path], bool] = _default_storage_check,
        telemetry: Callable[[], TelemetrySample] = read_telemetry,
        wall_clock: Callable[[], float] = time.time,
        health_interval_s: float = HEALTH_INTERVAL_S,
        start_delay_ms: int = 0,
    ) -> None:
        self.camera_id = int(camera_id)
        self._index = index
        self._events = events
        self._scheduler = scheduler
        self._camera_factory = camera_factory
        self._recorder_factory = recorder_factory
        self._trimmer = trimmer
        self._config_store = config_store
        self._module_specs = tuple(capture_modules)
        self._permission_check = permission_check
        self._storage_check = storage_check
        self._telemetry = telemetry
        self._wall_clock = wall_clock
        self._health_interval_s = float(health_interval_s)
        self._start_delay_ms = max(0, int(start_delay_ms))

        self._state = SessionState.IDLE
        self._config: PipelineConfig | None = None
        self._camera: BaseCamera | None = None
        self._recorder: ChunkRecorder | None = None
        self._modules: list[CaptureModule] = []
        self._generation = 0
        self._running = False
        self._closing = False
        self._stopping = False
        self._faulted = False
        self._paused = False
        self._pending_start: PipelineConfig | None = None
        self._rotation_task: ScheduledTask | None = None
        self._health_task: ScheduledTask | None = None
        self._trim_task: ScheduledTask | None = None
        self._frames = _FrameCounter()
        self._frames_at_sample = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        """``True`` while a session exists, including while paused."""

        return self._running or self._state in (SessionState.STARTING, SessionState.STOPPING)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def config(self) -> PipelineConfig | None:
        return self._config

    @property
    def frame_count(self) -> int:
        return self._frames.value

    @property
    def modules(self) -> list[CaptureModule]:
        return list(self._modules)

    def status(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "state": self._state.value,
            "active": self.is_active,
            "paused": self._paused,
            "frames": self._frames.value,
            "config": self._config.to_query() if self._config is not None else None,
            "audio": False,
        }

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def start(self, config: PipelineConfig | None = None, *, delay_ms: int | None = None) -> None:
        """Start recording with *config*, or the last saved configuration."""

        delay = self._start_delay_ms if delay_ms is None else max(0, int(delay_ms))
        self._scheduler.call_later(delay / 1000.0, lambda: self._start(config), name="start")

    def stop(self) -> None:
        self._dispatch(self._stop)

    def cut_off(self, after_ms: int = 0) -> None:
        self._dispatch(lambda: self._cut_off(after_ms))

    def pause(self) -> None:
        self._dispatch(self._pause)

    def resume(self) -> None:
        self._dispatch(self._resume)

    def snapshot(self, metadata: SnapshotMetadata | None = None) -> SnapshotMetadata:
        request = metadata if metadata is not None else SnapshotMetadata(camera_id=self.camera_id)
        self._dispatch(lambda: self._snapshot(request))
        return request

    def report_unhandled(self, exc: BaseException) -> None:
        """Treat an exception escaping the worker as fatal for this session."""

        self._fault(ErrorCode.UNHANDLED_EXCEPTION_ERROR, summarise_exception(exc) or repr(exc))

    def _dispatch(self, callback: Callable[[], None]) -> None:
        if self._scheduler.in_worker():
            callback()
        else:
            self._scheduler.submit(callback)

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------
    def _resolve_config(self, config: PipelineConfig | None) -> PipelineConfig:
        if config is not None:
            return config
        if self._config is not None:
            return self._config
        if self._config_store is not None:
            saved = self._config_store.load_config(self.camera_id)
            if saved is not None:
                return saved
        return PipelineConfig.default_for(self.camera_id)

    def _start(self, config: PipelineConfig | None) -> None:
        if self._stopping:
            self._pending_start = config or self._pending_start or self._config
            logger.info("Camera %s is stopping; start deferred", self.camera_id)
            return
        if self._running:
            if config is not None and config != self._config:
                logger.info("Camera %s restarting to apply a new configuration", self.camera_id)
                self._pending_start = config
                self._stop_session(faulted=False)
            else:
                logger.info("Camera %s is already recording", self.camera_id)
            return

        resolved = self._resolve_config(config)
        self._state = SessionState.STARTING
        self._faulted = False
        camera: BaseCamera | None = None
        try:
            media_root = self._index.media_root
            if not self._storage_check(media_root):
                raise StartFault(ErrorCode.MEDIA_STORAGE_ERROR, f"Media root {media_root} is not writable")
            if self._permission_check is not None and not self._permission_check(self.camera_id):
                raise StartFault(
                    ErrorCode.CAMERA_PERMISSION_NOT_GRANTED,
                    f"Permission to access camera {self.camera_id} was not granted",
                )
            try:
                camera = self._camera_factory(self.camera_id, resolved)
            except CameraError as exc:
                raise StartFault(exc.code, str(exc)) from exc
            try:
                characteristics = camera.characteristics()
            except Exception as exc:
                raise StartFault(
                    ErrorCode.SERVICE_START_ERROR,
                    f"Unable to read camera characteristics: {summarise_exception(exc)}",
                ) from exc
        except StartFault as fault:
            self._close_camera(camera)
            self._events.publish(Notification.error(self.camera_id, fault.code, str(fault)))
            self._state = SessionState.FAULTED
            self._events.publish(
                Notification.notice(self.camera_id, NoticeCode.SERVICE_STOPPED, "start failed")
            )
            return

        logger.info("Camera %s started (%s)", self.camera_id, characteristics or "no characteristics")
        self._camera = camera
        self._running = True
        self._apply_config(resolved)
        self._frames_at_sample = self._frames.value
        self._health_task = self._scheduler.call_every(
            self._health_interval_s, self._health_interval_s, self._health_sample, name="health"
        )
        if resolved.self_trimming and self._trimmer is not None:
            length_s = float(resolved.chunk_length_s)
            self._trim_task = self._scheduler.call_every(
                length_s / 2.0, length_s, self._self_trim, name="self-trim"
            )
        self._events.publish(
            Notification.notice(self.camera_id, NoticeCode.SERVICE_STARTED, resolved.to_query())
        )
        self._cut_off(0)

    def _apply_config(self, config: PipelineConfig) -> None:
        previous = self._config
        self._config = config
        if config.record_audio and (previous is None or not previous.record_audio):
            logger.warning("Camera %s: audio capture is not supported, recording video only", self.camera_id)
        if not self._modules:
            context = CaptureContext(self.camera_id, self._index, self._events, self._dispatch)
            self._modules = build_capture_modules(self._module_specs, context, config)
        elif previous != config:
            for module in self._modules:
                module.on_config_changed(config)
        if self._config_store is not None:
            try:
                self._config_store.save_config(self.camera_id, config)
            except OSError as exc:
                logger.warning("Unable to persist configuration for camera %s: %s", self.camera_id, exc)

    def _stop(self) -> None:
        self._pending_start = None
        self._stop_session(faulted=False)

    def _stop_session(self, *, faulted: bool) -> None:
        if not self._running:
            return
        self._faulted = self._faulted or faulted
        self._cancel_tasks()
        self._stopping = True
        self._state = SessionState.STOPPING
        if self._recorder is not None:
            self._close_chunk()
        elif not self._closing:
            self._finish_stop()

    def _finish_stop(self) -> None:
        self._close_camera(self._camera)
        self._camera = None
        self._running = False
        self._stopping = False
        self._state = SessionState.FAULTED if self._faulted else SessionState.IDLE
        self._events.publish(Notification.notice(self.camera_id, NoticeCode.SERVICE_STOPPED))
        pending, self._pending_start = self._pending_start, None
        if pending is not None:
            self._start(pending)

    def _close_camera(self, camera: BaseCamera | None) -> None:
        if camera is None:
            return
        try:
            camera.close()
        except Exception:
            logger.exception("Unable to close camera %s", self.camera_id)

    def _cancel_tasks(self) -> None:
        for task in (self._rotation_task, self._health_task, self._trim_task):
            if task is not None:
                task.cancel()
        self._rotation_task = None
        self._health_task = None
        self._trim_task = None

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------
    def _cut_off(self, after_ms: int) -> None:
        if not self._running or self._stopping or self._config is None:
            return
        if self._rotation_task is not None:
            self._rotation_task.cancel()
        self._rotation_task = self._scheduler.call_every(
            max(0, int(after_ms)) / 1000.0,
            float(self._config.chunk_length_s),
            self._rotate,
            name="rotate",
        )

    def _rotate(self) -> None:
        if not self._running or self._stopping:
            return
        if self._recorder is not None:
            self._close_chunk()
            return
        if self._closing or self._paused:
            return
        self._open_chunk()

    def _open_chunk(self) -> None:
        assert self._camera is not None and self._config is not None
        start_ms = int(self._wall_clock() * 1000)
        path = self._index.directory(ORIGINAL_VIDEO_DIR) / chunk_file_name(self.camera_id, start_ms)
        self._generation += 1
        listener = _RecorderEvents(self, self._generation)
        try:
            recorder = self._recorder_factory(self._camera, self._config, listener)
            recorder.start(path, start_ms)
        except Exception as exc:
            self._fault(ErrorCode.START_RECORDING_EXCEPTION, summarise_exception(exc))
            return
        self._recorder = recorder
        self._state = SessionState.RECORDING
        for module in self._modules:
            if isinstance(module, Rotatable):
                module.on_chunk_started(path, start_ms)
        logger.debug("Camera %s recording %s", self.camera_id, path)

    def _close_chunk(self) -> None:
        recorder = self._recorder
        if recorder is None:
            return
        self._recorder = None
        self._closing = True
        self._generation += 1
        if not self._stopping:
            self._state = SessionState.ROTATING
        recorder.stop(lambda result: self._dispatch_close(result))

    def _dispatch_close(self, result: ChunkResult) -> None:
        self._scheduler.submit(lambda: self._on_chunk_closed(result), name="chunk-closed")

    def _on_chunk_closed(self, result: ChunkResult) -> None:
        self._closing = False
        self._register_chunk(result)
        if self._stopping:
            self._finish_stop()
            return
        if not self._running:
            return
        if self._paused:
            self._state = SessionState.IDLE
            return
        self._open_chunk()

    def _register_chunk(self, result: ChunkResult) -> None:
        path = Path(result.path)
        if result.frame_count <= 0 or not path.exists():
            logger.warning("Discarding empty chunk %s", path)
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Unable to remove empty chunk %s: %s", path, exc)
            return
        try:
            record = self._index.register(
                camera_id=self.camera_id,
                start_ms=result.start_ms,
                duration_ms=result.duration_ms,
                path=path,
            )
        except Exception as exc:
            logger.exception("Unable to index chunk %s", path)
            self._events.publish(
                Notification.error(
                    self.camera_id, ErrorCode.ERROR_SAVING_CREATION_TIME, summarise_exception(exc)
                )
            )
            return
        for module in self._modules:
            if isinstance(module, Rotatable):
                try:
                    module.on_chunk_closed(record)
                except Exception:
                    logger.exception("Capture module %s failed on chunk close", module.name)
        self._events.publish(
            Notification.notice(
                self.camera_id,
                NoticeCode.CUT_OFF_COMPLETED,
                str(path),
                metadata=record.to_dict(),
            )
        )

    # ------------------------------------------------------------------
    # Pause / resume / snapshot
    # ------------------------------------------------------------------
    def _pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        self._cut_off(0)

    def _resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        self._cut_off(0)

    def _snapshot(self, metadata: SnapshotMetadata) -> None:
        module = next((m for m in self._modules if isinstance(m, SnapshotCapable)), None)
        if module is None or not self._running or self._camera is None:
            logger.warning("Camera %s is not running; snapshot request dropped", self.camera_id)
            return
        module.request_snapshot(metadata)
        if self._recorder is None:
            try:
                frame = self._camera.capture()
            except CameraError as exc:
                self._fault(exc.code, str(exc))
                return
            module.capture_now(frame, int(self._wall_clock() * 1000))

    # ------------------------------------------------------------------
    # Recorder callbacks
    # ------------------------------------------------------------------
    def _handle_frame(self, generation: int, frame: np.ndarray, timestamp_ms: int) -> None:
        if generation != self._generation:
            return
        self._frames.increment()
        for module in self._modules:
            try:
                if isinstance(module, FrameConsumer):
                    module.on_frame(frame, timestamp_ms)
                if isinstance(module, PeriodicCapture) and module.due(timestamp_ms):
                    module.capture(frame, timestamp_ms)
            except Exception:
                logger.exception("Capture module %s failed", module.name)

    def _handle_limit(self, generation: int, reason: str) -> None:
        if generation != self._generation:
            return
        logger.info("Camera %s recorder reported %s; rotating", self.camera_id, reason)
        self._cut_off(0)

    def _handle_recorder_error(self, generation: int, code: ErrorCode, detail: str) -> None:
        if generation != self._generation:
            logger.debug("Ignoring stale recorder error for camera %s: %s", self.camera_id, detail)
            return
        self._fault(code, detail)

    def _fault(self, code: ErrorCode, detail: str) -> None:
        """Report a hardware fault and stop; recovery is left to the watchdog."""

        self._events.publish(Notification.error(self.camera_id, code, detail))
        if self._running:
            self._stop_session(faulted=True)
        else:
            self._state = SessionState.FAULTED

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------
    def _health_sample(self) -> None:
        if not self._running or self._config is None:
            return
        frames = self._frames.value
        fps = (frames - self._frames_at_sample) / self._health_interval_s
        self._frames_at_sample = frames
        try:
            sample = self._telemetry()
        except Exception:
            logger.debug("Telemetry read failed", exc_info=True)
            sample = TelemetrySample()
        message = format_capture_sample(fps, sample)
        self._events.publish(Notification.info(self.camera_id, InfoCode.CAPTURE_SAMPLE, message))
        if self._paused:
            return
        if fps < self._config.frame_rate / 2:
            self._events.publish(
                Notification.error(
                    self.camera_id,
                    ErrorCode.ERROR_LOW_FPS,
                    f"Capture rate {fps:.2f} fps below {self._config.frame_rate / 2:.1f} fps",
                )
            )

    def _self_trim(self) -> None:
        if self._trimmer is None:
            return
        result = self._trimmer.trim_if_short(camera_id=self.camera_id)
        if result.performed:
            logger.info(
                "Camera %s self-trim removed %d files (%d bytes)",
                self.camera_id,
                len(result.deleted),
                result.reclaimed_bytes,
            )


__all__ = ["HEALTH_INTERVAL_S", "RecordingSession", "SessionState", "StartFault"]
