from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator

import numpy as np
import pytest

from dash_cam.camera import BaseCamera, CameraError
from dash_cam.config import PipelineConfig
from dash_cam.events import EventBus, Notification
from dash_cam.recorder.chunk_writer import ChunkResult, RecorderError, RecorderListener
from dash_cam.scheduler import ScheduledTask
from dash_cam.storage.index import ChunkIndex
from dash_cam.supervisor import Supervisor
from dash_cam.telemetry import TelemetrySample

BASE_TIME_S = 1_700_000_000.0


class ManualScheduler:
    """Deterministic stand-in for ``SerialScheduler`` driven by ``advance``."""

    def __init__(self, name: str = "manual") -> None:
        self.name = name
        self.clock = 0.0
        self.started = False
        self._tasks: list[ScheduledTask] = []
        self._on_error: Callable[[BaseException], None] | None = None
        self._in_worker = False

    def set_error_handler(self, handler: Callable[[BaseException], None] | None) -> None:
        self._on_error = handler

    def now(self) -> float:
        return self.clock

    def start(self) -> None:
        self.started = True

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

    def in_worker(self) -> bool:
        return self._in_worker

    def submit(self, callback, *, name: str | None = None) -> ScheduledTask:
        return self.call_later(0.0, callback, name=name)

    def call_later(self, delay_s: float, callback, *, name: str | None = None) -> ScheduledTask:
        task = ScheduledTask(callback, self.clock + max(0.0, float(delay_s)), None, name)
        self._tasks.append(task)
        return task

    def call_every(
        self, initial_s: float, interval_s: float, callback, *, name: str | None = None
    ) -> ScheduledTask:
        task = ScheduledTask(
            callback, self.clock + max(0.0, float(initial_s)), float(interval_s), name
        )
        self._tasks.append(task)
        return task

    def pending(self) -> list[ScheduledTask]:
        return [task for task in self._tasks if not task.cancelled]

    def advance(self, seconds: float = 0.0) -> None:
        target = self.clock + seconds
        while True:
            due = [task for task in self._tasks if not task.cancelled and task.due <= target]
            if not due:
                break
            task = min(due, key=lambda item: item.due)
            self._tasks.remove(task)
            self.clock = max(self.clock, task.due)
            self._in_worker = True
            try:
                task.callback()
            except Exception as exc:
                if self._on_error is None:
                    raise
                self._on_error(exc)
            finally:
                self._in_worker = False
            if task.interval is not None and not task.cancelled:
                task.due += task.interval
                self._tasks.append(task)
        self.clock = target
        self._tasks = [task for task in self._tasks if not task.cancelled]


class FakeCamera(BaseCamera):
    def __init__(self, width: int = 32, height: int = 24) -> None:
        self.width = width
        self.height = height
        self.closed = False
        self.fail_capture: CameraError | None = None
        self.captures = 0

    def capture(self) -> np.ndarray:
        if self.fail_capture is not None:
            raise self.fail_capture
        self.captures += 1
        return np.full((self.height, self.width, 3), 128, dtype=np.uint8)

    def characteristics(self) -> dict[str, object]:
        return {"model": "fake", "width": self.width, "height": self.height}

    def close(self) -> None:
        self.closed = True


class FakeRecorder:
    def __init__(self, factory: "FakeRecorderFactory", listener: RecorderListener) -> None:
        self.factory = factory
        self.listener = listener
        self.path: Path | None = None
        self.start_ms = 0
        self.frames = 0
        self.stopped = False
        self.pending_close: Callable[[], None] | None = None

    def start(self, path: Path, start_ms: int) -> None:
        if self.factory.fail_start:
            raise RecorderError("encoder unavailable")
        self.path = path
        self.start_ms = int(start_ms)
        self.frames = self.factory.frames_per_chunk
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00" * self.factory.chunk_bytes)

    def emit_frames(self, count: int) -> None:
        frame = np.zeros((24, 32, 3), dtype=np.uint8)
        for index in range(count):
            self.frames += 1
            self.listener.on_frame(frame, self.start_ms + index * 100)

    def stop(self, on_closed: Callable[[ChunkResult], None]) -> None:
        self.stopped = True
        assert self.path is not None
        result = ChunkResult(
            path=self.path,
            start_ms=self.start_ms,
            duration_ms=int(self.factory.clock() * 1000) - self.start_ms,
            frame_count=self.frames,
        )
        if self.factory.defer_close:
            self.pending_close = lambda: on_closed(result)
        else:
            on_closed(result)


class FakeRecorderFactory:
    def __init__(self, clock: Callable[[], float]) -> None:
        self.clock = clock
        self.recorders: list[FakeRecorder] = []
        self.fail_start = False
        self.defer_close = False
        self.frames_per_chunk = 1
        self.chunk_bytes = 2048

    def __call__(
        self, camera: BaseCamera, config: PipelineConfig, listener: RecorderListener
    ) -> FakeRecorder:
        recorder = FakeRecorder(self, listener)
        self.recorders.append(recorder)
        return recorder

    @property
    def current(self) -> FakeRecorder:
        return self.recorders[-1]


class EventRecorder:
    def __init__(self, bus: EventBus) -> None:
        self.notifications: list[Notification] = []
        bus.subscribe(self.notifications.append)

    def errors(self) -> list[Notification]:
        return [item for item in self.notifications if item.error_code is not None]

    def notices(self, code=None) -> list[Notification]:
        return [
            item
            for item in self.notifications
            if item.notice_code is not None and (code is None or item.notice_code == code)
        ]


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def wall_clock(scheduler: ManualScheduler) -> Callable[[], float]:
    return lambda: BASE_TIME_S + scheduler.clock


@pytest.fixture
def index(tmp_path: Path) -> Iterator[ChunkIndex]:
    index = ChunkIndex(tmp_path / "media")
    yield index
    index.close()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def camera() -> FakeCamera:
    return FakeCamera()


@pytest.fixture
def recorders(wall_clock: Callable[[], float]) -> FakeRecorderFactory:
    return FakeRecorderFactory(wall_clock)


@pytest.fixture
def killed() -> list[tuple[str, ...]]:
    return []


@pytest.fixture
def supervisor(tmp_path, bus, scheduler, camera, recorders, wall_clock, killed):
    def process_killer(names):
        killed.append(tuple(names))
        return list(names)

    supervisor = Supervisor(
        tmp_path / "media",
        events=bus,
        camera_factory=lambda camera_id, config: camera,
        recorder_factory=recorders,
        capture_modules=(),
        scheduler_factory=lambda name: scheduler,
        start_delays_ms={},
        process_killer=process_killer,
        session_options={
            "telemetry": TelemetrySample,
            "wall_clock": wall_clock,
            "health_interval_s": 3600,
        },
        watchdog_options={"clock": lambda: scheduler.clock},
    )
    yield supervisor
    supervisor.index.close()
