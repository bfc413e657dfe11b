from __future__ import annotations

from pathlib import Path

import av
import numpy as np
import pytest
import simplejpeg

from dash_cam.recorder.video import (
    VideoEncoder,
    encode_frames_to_mp4,
    ensure_rgb_frame,
    format_vtt_timestamp,
    write_jpeg,
    write_vtt,
)


def test_encoder_reports_duration_and_frames(tmp_path: Path) -> None:
    path = tmp_path / "clip.mp4"
    frame = np.zeros((24, 32, 3), dtype=np.uint8)

    with VideoEncoder(path=path, fps=5, width=32, height=24) as encoder:
        for _ in range(10):
            encoder.encode(frame)
        assert encoder.frame_count == 10
        assert encoder.duration_ms == 2_000

    with av.open(path.as_posix()) as container:
        decoded = sum(1 for _ in container.decode(video=0))
    assert decoded == 10


def test_explicit_timestamps_skip_missing_frames(tmp_path: Path) -> None:
    frame = np.zeros((24, 32, 3), dtype=np.uint8)

    with VideoEncoder(path=tmp_path / "gaps.mp4", fps=10, width=32, height=24) as encoder:
        encoder.encode(frame, pts=0)
        encoder.encode(frame, pts=5)
        encoder.encode(frame, pts=3)

        assert encoder.frame_count == 3
        assert encoder.duration_ms == 700


def test_encode_frames_requires_input(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        encode_frames_to_mp4(tmp_path / "empty.mp4", [], fps=5)


def test_ensure_rgb_frame_expands_and_crops() -> None:
    gray = np.full((5, 7), 300, dtype=np.int32)

    rgb = ensure_rgb_frame(gray)

    assert rgb.shape == (4, 6, 3)
    assert rgb.dtype == np.uint8
    assert int(rgb.max()) == 255
    assert ensure_rgb_frame(gray, even=False).shape == (5, 7, 3)


def test_write_jpeg_resizes_to_requested_size(tmp_path: Path) -> None:
    frame = np.random.default_rng(0).integers(0, 255, size=(24, 32, 3), dtype=np.uint8)
    path = tmp_path / "stills" / "0_1.jpg"

    written = write_jpeg(path, frame, quality=60, size=(16, 12))

    assert written == path.stat().st_size
    decoded = simplejpeg.decode_jpeg(path.read_bytes(), colorspace="RGB")
    assert decoded.shape == (12, 16, 3)


@pytest.mark.parametrize(
    ("ms", "text"),
    [(0, "00:00:00.000"), (61_005, "00:01:01.005"), (3_723_004, "01:02:03.004"), (-5, "00:00:00.000")],
)
def test_format_vtt_timestamp(ms: int, text: str) -> None:
    assert format_vtt_timestamp(ms) == text


def test_write_vtt(tmp_path: Path) -> None:
    path = tmp_path / "0_1.mp4.vtt"

    write_vtt(path, [(0, 1_000, "faces=1"), (1_000, 2_000, "faces=0")])

    assert path.read_text(encoding="utf-8").splitlines() == [
        "WEBVTT",
        "",
        "00:00:00.000 --> 00:00:01.000",
        "faces=1",
        "",
        "00:00:01.000 --> 00:00:02.000",
        "faces=0",
    ]
