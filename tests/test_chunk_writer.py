from __future__ import annotations

import threading

import av
import pytest

from dash_cam.camera import CameraError, SyntheticCamera
from dash_cam.config import PipelineConfig
from dash_cam.events import ErrorCode
from dash_cam.recorder.chunk_writer import (
    MAX_DURATION_REACHED,
    AvChunkRecorder,
    ChunkResult,
    RecorderError,
)

from conftest import FakeCamera

SMALL = PipelineConfig(width=32, height=24, frame_rate=20, bit_rate=200_000)


class Listener:
    def __init__(self) -> None:
        self.frames: list[int] = []
        self.limits: list[str] = []
        self.errors: list[tuple[ErrorCode, str]] = []
        self.limit_reached = threading.Event()

    def on_frame(self, frame, timestamp_ms: int) -> None:
        self.frames.append(timestamp_ms)

    def on_limit_reached(self, reason: str) -> None:
        self.limits.append(reason)
        self.limit_reached.set()

    def on_error(self, code: ErrorCode, detail: str) -> None:
        self.errors.append((code, detail))


def _stop(recorder: AvChunkRecorder) -> ChunkResult:
    closed = threading.Event()
    results: list[ChunkResult] = []

    def on_closed(result: ChunkResult) -> None:
        results.append(result)
        closed.set()

    recorder.stop(on_closed)
    assert closed.wait(10), "recorder did not close"
    return results[0]


def test_recorder_writes_chunk_and_reports_duration_limit(tmp_path) -> None:
    listener = Listener()
    recorder = AvChunkRecorder(
        SyntheticCamera(resolution=(32, 24)), SMALL, listener, max_duration_ms=300
    )
    path = tmp_path / "0_1000.mp4"

    recorder.start(path, 1_000)
    assert listener.limit_reached.wait(10)
    result = _stop(recorder)

    assert listener.limits == [MAX_DURATION_REACHED]
    assert result.error is None
    assert result.start_ms == 1_000
    assert result.frame_count == len(listener.frames)
    assert result.duration_ms >= 300
    assert listener.frames[0] >= 1_000
    with av.open(path.as_posix()) as container:
        assert container.streams.video[0].codec_context.width == 32


def test_camera_failure_is_reported_and_chunk_closed(tmp_path) -> None:
    camera = FakeCamera()
    camera.fail_capture = CameraError("unplugged", code=ErrorCode.CAMERA_DISCONNECTED)
    listener = Listener()
    recorder = AvChunkRecorder(camera, SMALL, listener)

    recorder.start(tmp_path / "0_5.mp4", 5)
    result = _stop(recorder)

    assert listener.errors == [(ErrorCode.CAMERA_DISCONNECTED, "unplugged")]
    assert result.error == "unplugged"
    assert result.frame_count == 0


def test_recorder_cannot_start_twice(tmp_path) -> None:
    recorder = AvChunkRecorder(SyntheticCamera(resolution=(32, 24)), SMALL, Listener())
    recorder.start(tmp_path / "0_1.mp4", 1)
    try:
        with pytest.raises(RecorderError):
            recorder.start(tmp_path / "0_2.mp4", 2)
    finally:
        _stop(recorder)
