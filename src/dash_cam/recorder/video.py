"""Encoding helpers for chunks, snapshots and telemetry sidecars."""
from __future__ import annotations

from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Iterable, Sequence

import av
import numpy as np
import simplejpeg

DEFAULT_JPEG_QUALITY = 85

# Encoder names tried in order for each configured codec; mpeg4 is always built in.
_ENCODER_FALLBACKS: dict[str, tuple[str, ...]] = {
    "h264": ("libx264", "h264"),
    "hevc": ("libx265", "hevc"),
}
_CODEC_ALIASES = {"avc": "h264", "libx264": "h264", "h265": "hevc", "libx265": "hevc"}


def ensure_rgb_frame(frame: np.ndarray | Sequence, *, even: bool = True) -> np.ndarray:
    """Coerce *frame* to a contiguous ``uint8`` RGB array.

    Grey frames are expanded to three channels and alpha is dropped. With
    *even* set the frame is cropped to even dimensions for yuv420p.
    """

    array = np.asarray(frame)
    if array.ndim == 2:
        array = array[:, :, np.newaxis]
    if array.ndim != 3:
        raise ValueError(f"Cannot encode a frame with shape {array.shape}")
    channels = array.shape[2]
    if channels == 1:
        array = np.broadcast_to(array, array.shape[:2] + (3,))
    elif channels > 3:
        array = array[:, :, :3]
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    if even:
        array = array[: array.shape[0] // 2 * 2, : array.shape[1] // 2 * 2]
    return np.ascontiguousarray(array)


def _encoder_names(encoding: str) -> list[str]:
    codec = _CODEC_ALIASES.get(encoding.lower(), encoding.lower())
    names = list(_ENCODER_FALLBACKS.get(codec, (codec,)))
    if codec == "hevc":
        names.extend(_ENCODER_FALLBACKS["h264"])
    names.append("mpeg4")
    return names


@dataclass(slots=True)
class VideoEncoder:
    """Incrementally encode frames into an MP4 chunk.

    Every ``gop`` frames is a keyframe and B-frames are disabled so that
    chunks can be cut and concatenated on packet boundaries.
    """

    path: Path
    fps: int
    width: int
    height: int
    encoding: str = "h264"
    bit_rate: int | None = None
    gop: int | None = None
    _container: av.container.OutputContainer | None = field(init=False, default=None)
    _stream: av.video.stream.VideoStream | None = field(init=False, default=None)
    _frame_index: int = field(init=False, default=0)
    _next_pts: int = field(init=False, default=0)

    def __post_init__(self) -> None:
        if self.fps <= 0:
            raise ValueError("fps must be positive")
        self._open()

    # ------------------------------------------------------------------
    def _open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        container = av.open(self.path.as_posix(), mode="w")
        stream = None
        for codec in _encoder_names(self.encoding):
            try:
                stream = container.add_stream(codec, rate=self.fps)
            except (av.FFmpegError, ValueError):
                continue
            else:
                break
        if stream is None:
            container.close()
            raise RuntimeError(f"No compatible encoder available for {self.encoding!r}")
        stream.width = int(self.width)
        stream.height = int(self.height)
        stream.pix_fmt = "yuv420p"
        stream.time_base = Fraction(1, int(self.fps))
        if self.bit_rate:
            stream.codec_context.bit_rate = int(self.bit_rate)
        gop = int(self.gop) if self.gop else int(self.fps)
        stream.codec_context.gop_size = max(1, gop)
        stream.codec_context.max_b_frames = 0
        if stream.codec_context.name == "libx264":
            stream.codec_context.options = {
                "preset": "veryfast",
                "bf": "0",
                "g": str(max(1, gop)),
                "keyint_min": str(max(1, gop)),
                "sc_threshold": "0",
            }
        self._container = container
        self._stream = stream

    # ------------------------------------------------------------------
    @property
    def frame_count(self) -> int:
        return self._frame_index

    @property
    def duration_ms(self) -> int:
        """Media time covered so far, including the last frame's display period."""

        return int(self._next_pts * 1000 / self.fps)

    def encode(self, frame: np.ndarray | Sequence, *, pts: int | None = None) -> None:
        """Encode *frame* at *pts* ticks of ``1/fps`` (the next free tick by default)."""

        if self._stream is None or self._container is None:
            raise RuntimeError("Video encoder has been closed")
        rgb = ensure_rgb_frame(frame, even=True)
        video_frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
        tick = self._next_pts if pts is None else max(int(pts), self._next_pts)
        video_frame.pts = tick
        self._next_pts = tick + 1
        self._frame_index += 1
        for packet in self._stream.encode(video_frame):
            self._container.mux(packet)

    # ------------------------------------------------------------------
    def close(self) -> None:
        if self._stream is None or self._container is None:
            return
        try:
            for packet in self._stream.encode():
                self._container.mux(packet)
        finally:
            self._container.close()
            self._stream = None
            self._container = None

    # ------------------------------------------------------------------
    def __enter__(self) -> "VideoEncoder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def encode_frames_to_mp4(
    path: Path,
    frames: Iterable[np.ndarray | Sequence],
    *,
    fps: int,
    encoding: str = "h264",
    gop: int | None = None,
) -> int:
    """Encode *frames* into an MP4 file at *path* and return the frame count."""

    iterator = iter(frames)
    try:
        first = ensure_rgb_frame(next(iterator), even=True)
    except StopIteration:
        raise ValueError("At least one frame is required for encoding") from None
    height, width = first.shape[:2]
    with VideoEncoder(
        path=path, fps=int(fps), width=width, height=height, encoding=encoding, gop=gop
    ) as encoder:
        encoder.encode(first)
        for frame in iterator:
            encoder.encode(frame)
        return encoder.frame_count


def write_jpeg(
    path: Path,
    frame: np.ndarray | Sequence,
    *,
    quality: int = 0,
    size: tuple[int, int] | None = None,
) -> int:
    """Persist *frame* as a JPEG and return the number of bytes written.

    A *quality* of ``0`` selects the encoder default.
    """

    rgb = ensure_rgb_frame(frame, even=False)
    if size is not None:
        rgb = _fit_frame(rgb, size)
    effective_quality = DEFAULT_JPEG_QUALITY if quality <= 0 else max(1, min(100, int(quality)))
    payload = simplejpeg.encode_jpeg(rgb, quality=effective_quality, colorspace="RGB")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return len(payload)


def _fit_frame(frame: np.ndarray, size: tuple[int, int]) -> np.ndarray:
    width, height = int(size[0]), int(size[1])
    src_height, src_width = frame.shape[:2]
    if (src_width, src_height) == (width, height) or width <= 0 or height <= 0:
        return frame
    # Nearest-neighbour resample.
    rows = (np.arange(height) * src_height // height).clip(0, src_height - 1)
    cols = (np.arange(width) * src_width // width).clip(0, src_width - 1)
    return np.ascontiguousarray(frame[rows][:, cols])


def format_vtt_timestamp(ms: int) -> str:
    ms = max(0, int(ms))
    hours, remainder = divmod(ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    seconds, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def write_vtt(path: Path, cues: Iterable[tuple[int, int, str]]) -> None:
    """Write ``(start_ms, end_ms, text)`` cues as a WebVTT track."""

    lines = ["WEBVTT", ""]
    for start_ms, end_ms, text in cues:
        lines.append(f"{format_vtt_timestamp(start_ms)} --> {format_vtt_timestamp(end_ms)}")
        lines.append(str(text))
        lines.append("")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines), encoding="utf-8")


__all__ = [
    "VideoEncoder",
    "encode_frames_to_mp4",
    "ensure_rgb_frame",
    "format_vtt_timestamp",
    "write_jpeg",
    "write_vtt",
]
