"""Pluggable capture sub-tasks that ride along with a recording session."""
from __future__ import annotations

import collections
import logging
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Mapping, Protocol, Sequence, runtime_checkable

import numpy as np

from ..config import PipelineConfig
from ..events import ErrorCode, EventBus, NoticeCode, Notification
from ..storage.index import SNAPSHOT_DIR, ChunkIndex, ChunkKind, ChunkRecord, chunk_file_name
from .video import write_jpeg, write_vtt

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SnapshotMetadata:
    """Description of a still capture request and, later, its result."""

    camera_id: int
    filename: str | None = None
    taken_time_ms: int = 0
    sequence_index: int = 0
    sequence_length: int = 1
    triggered_by: str = "command"
    face_detected: int = -1
    quality: int = 0
    width: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _run_inline(callback: Callable[[], None]) -> None:
    callback()


@dataclass(slots=True)
class CaptureContext:
    """Services a capture module may use.

    ``dispatch`` moves slow work (JPEG encoding, index writes) off the capture
    thread; sessions pass their camera worker here.
    """

    camera_id: int
    index: ChunkIndex
    events: EventBus
    dispatch: Callable[[Callable[[], None]], None] = _run_inline


# ----------------------------------------------------------------------
# Capabilities
# ----------------------------------------------------------------------
@runtime_checkable
class FrameConsumer(Protocol):
    def on_frame(self, frame: np.ndarray, timestamp_ms: int) -> None: ...


@runtime_checkable
class Rotatable(Protocol):
    def on_chunk_started(self, path: Path, start_ms: int) -> None: ...

    def on_chunk_closed(self, record: ChunkRecord) -> None: ...


@runtime_checkable
class SnapshotCapable(Protocol):
    def request_snapshot(self, metadata: SnapshotMetadata) -> None: ...

    def capture_now(self, frame: np.ndarray, timestamp_ms: int) -> None: ...


@runtime_checkable
class PeriodicCapture(Protocol):
    interval_ms: int

    def due(self, timestamp_ms: int) -> bool: ...

    def capture(self, frame: np.ndarray, timestamp_ms: int) -> None: ...


class CaptureModule:
    """Common state shared by the concrete modules."""

    name = "module"

    def __init__(self, context: CaptureContext, config: PipelineConfig) -> None:
        self.context = context
        self.config = config

    def on_config_changed(self, config: PipelineConfig) -> None:
        self.config = config

    def close(self) -> None:
        return None

    def _report_error(self, detail: str) -> None:
        self.context.events.publish(
            Notification.error(self.context.camera_id, ErrorCode.CAPTURE_MODULE_ERROR, detail)
        )


# ----------------------------------------------------------------------
# Still capture
# ----------------------------------------------------------------------
def save_snapshot(
    context: CaptureContext,
    config: PipelineConfig,
    metadata: SnapshotMetadata,
    frame: np.ndarray,
    timestamp_ms: int,
) -> ChunkRecord:
    """Write *frame* as a JPEG, index it and announce the capture."""

    if metadata.taken_time_ms == 0:
        metadata.taken_time_ms = int(timestamp_ms)
    folder = context.index.directory(SNAPSHOT_DIR)
    name = metadata.filename or chunk_file_name(
        context.camera_id, metadata.taken_time_ms, suffix=".jpg"
    )
    path = folder / Path(name).name
    quality = metadata.quality or config.jpeg_quality
    write_jpeg(path, frame, quality=quality, size=(config.jpeg_width, config.jpeg_height))
    metadata.width = int(config.jpeg_width)
    record = context.index.register(
        camera_id=context.camera_id,
        start_ms=metadata.taken_time_ms,
        duration_ms=0,
        path=path,
        kind=ChunkKind.SNAPSHOT,
    )
    payload = metadata.to_dict()
    payload["path"] = str(path)
    context.events.publish(
        Notification.notice(
            context.camera_id,
            NoticeCode.CAPTURE_COMPLETED,
            str(path),
            metadata=payload,
        )
    )
    return record


class SnapshotModule(CaptureModule):
    """Fulfil snapshot requests with the next captured frame."""

    name = "snapshot"

    def __init__(self, context: CaptureContext, config: PipelineConfig) -> None:
        super().__init__(context, config)
        self._pending: Deque[SnapshotMetadata] = collections.deque()
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def request_snapshot(self, metadata: SnapshotMetadata) -> None:
        with self._lock:
            self._pending.append(metadata)

    def on_frame(self, frame: np.ndarray, timestamp_ms: int) -> None:
        with self._lock:
            if not self._pending:
                return
            metadata = self._pending.popleft()
        self.context.dispatch(lambda: self._save(metadata, frame, timestamp_ms))

    def capture_now(self, frame: np.ndarray, timestamp_ms: int) -> None:
        """Serve every pending request from *frame*, outside a recording."""

        while True:
            with self._lock:
                if not self._pending:
                    return
                metadata = self._pending.popleft()
            self._save(metadata, frame, timestamp_ms)

    def _save(self, metadata: SnapshotMetadata, frame: np.ndarray, timestamp_ms: int) -> None:
        try:
            save_snapshot(self.context, self.config, metadata, frame, timestamp_ms)
        except Exception as exc:
            logger.exception("Snapshot for camera %s failed", self.context.camera_id)
            self._report_error(f"Snapshot failed: {exc}")


class RepeatCaptureModule(CaptureModule):
    """Save a still every ``interval_ms`` while recording."""

    name = "repeat"

    def __init__(
        self, context: CaptureContext, config: PipelineConfig, *, interval_ms: int = 60_000
    ) -> None:
        super().__init__(context, config)
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.interval_ms = int(interval_ms)
        self._last_ms: int | None = None
        self._sequence = 0

    def due(self, timestamp_ms: int) -> bool:
        return self._last_ms is None or timestamp_ms - self._last_ms >= self.interval_ms

    def capture(self, frame: np.ndarray, timestamp_ms: int) -> None:
        self._last_ms = int(timestamp_ms)
        metadata = SnapshotMetadata(
            camera_id=self.context.camera_id,
            sequence_index=self._sequence,
            triggered_by="repeat",
        )
        self._sequence += 1
        self.context.dispatch(lambda: self._save(metadata, frame, timestamp_ms))

    def _save(self, metadata: SnapshotMetadata, frame: np.ndarray, timestamp_ms: int) -> None:
        try:
            save_snapshot(self.context, self.config, metadata, frame, timestamp_ms)
        except Exception as exc:
            logger.exception("Repeat capture for camera %s failed", self.context.camera_id)
            self._report_error(f"Repeat capture failed: {exc}")


# ----------------------------------------------------------------------
# Per-chunk sidecar tracks
# ----------------------------------------------------------------------
class _CueTrack(CaptureModule):
    suffix = ".vtt"
    sample_interval_ms = 1000

    def __init__(self, context: CaptureContext, config: PipelineConfig) -> None:
        super().__init__(context, config)
        self._chunk_start_ms: int | None = None
        self._cues: list[tuple[int, int, str]] = []
        self._next_sample_ms = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return True

    def on_chunk_started(self, path: Path, start_ms: int) -> None:
        with self._lock:
            self._chunk_start_ms = int(start_ms)
            self._cues = []
            self._next_sample_ms = int(start_ms)

    def on_frame(self, frame: np.ndarray, timestamp_ms: int) -> None:
        if not self.enabled:
            return
        with self._lock:
            if self._chunk_start_ms is None or timestamp_ms < self._next_sample_ms:
                self._count_frame()
                return
            self._count_frame()
            self._next_sample_ms = timestamp_ms + self.sample_interval_ms
            relative = timestamp_ms - self._chunk_start_ms
        text = self._sample(frame)
        if text is None:
            return
        with self._lock:
            self._cues.append((relative, relative + self.sample_interval_ms, text))

    def on_chunk_closed(self, record: ChunkRecord) -> None:
        with self._lock:
            cues = list(self._cues)
            self._cues = []
            self._chunk_start_ms = None
        if not cues:
            return
        try:
            write_vtt(Path(f"{record.path}{self.suffix}"), cues)
        except OSError as exc:
            logger.warning("Unable to write %s track for %s: %s", self.name, record.path, exc)

    def _count_frame(self) -> None:
        return None

    def _sample(self, frame: np.ndarray) -> str | None:  # pragma: no cover - interface only
        raise NotImplementedError


class FaceTrackModule(_CueTrack):
    """Record per-second face counts as a ``.vtt`` track beside each chunk."""

    name = "faces"
    suffix = ".vtt"

    def __init__(
        self,
        context: CaptureContext,
        config: PipelineConfig,
        *,
        face_counter: Callable[[np.ndarray], int | None] | None = None,
    ) -> None:
        super().__init__(context, config)
        self._face_counter = face_counter

    @property
    def enabled(self) -> bool:
        return bool(self.config.do_face_detection) and self._face_counter is not None

    def _sample(self, frame: np.ndarray) -> str | None:
        assert self._face_counter is not None
        count = self._face_counter(frame)
        if count is None:
            return None
        return f"faces={int(count)}"


class StatsTrackModule(_CueTrack):
    """Record the frames captured in each second as a ``.stats.vtt`` track."""

    name = "stats"
    suffix = ".stats.vtt"

    def __init__(self, context: CaptureContext, config: PipelineConfig) -> None:
        super().__init__(context, config)
        self._frames = 0

    def _count_frame(self) -> None:
        self._frames += 1

    def _sample(self, frame: np.ndarray) -> str | None:
        with self._lock:
            frames, self._frames = self._frames, 0
        height, width = frame.shape[:2]
        return f"frames={frames} size={width}x{height}"


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------
CAPTURE_MODULES: dict[str, Callable[..., CaptureModule]] = {
    SnapshotModule.name: SnapshotModule,
    RepeatCaptureModule.name: RepeatCaptureModule,
    FaceTrackModule.name: FaceTrackModule,
    StatsTrackModule.name: StatsTrackModule,
}


@dataclass(frozen=True, slots=True)
class CaptureModuleSpec:
    """Static declaration of a capture module and its parameters."""

    name: str
    params: Mapping[str, Any] = field(default_factory=dict)
    cameras: tuple[int, ...] | None = None

    def applies_to(self, camera_id: int) -> bool:
        return self.cameras is None or int(camera_id) in self.cameras


DEFAULT_CAPTURE_MODULES: tuple[CaptureModuleSpec, ...] = (
    CaptureModuleSpec("snapshot"),
    CaptureModuleSpec("faces"),
    CaptureModuleSpec("stats"),
)


def build_capture_modules(
    specs: Sequence[CaptureModuleSpec],
    context: CaptureContext,
    config: PipelineConfig,
) -> list[CaptureModule]:
    modules: list[CaptureModule] = []
    for spec in specs:
        if not spec.applies_to(context.camera_id):
            continue
        factory = CAPTURE_MODULES.get(spec.name)
        if factory is None:
            raise ValueError(f"Unknown capture module: {spec.name}")
        modules.append(factory(context, config, **dict(spec.params)))
    return modules


__all__ = [
    "CAPTURE_MODULES",
    "DEFAULT_CAPTURE_MODULES",
    "CaptureContext",
    "CaptureModule",
    "CaptureModuleSpec",
    "FaceTrackModule",
    "FrameConsumer",
    "PeriodicCapture",
    "RepeatCaptureModule",
    "Rotatable",
    "SnapshotCapable",
    "SnapshotMetadata",
    "SnapshotModule",
    "StatsTrackModule",
    "build_capture_modules",
    "save_snapshot",
]
