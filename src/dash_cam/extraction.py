"""Build a single clip covering an arbitrary time range from recorded chunks."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Iterable

import av

from .config import CAMERA_IDS
from .storage.index import (
    EXTRACTED_VIDEO_DIR,
    ChunkIndex,
    ChunkKind,
    ChunkRecord,
    chunk_file_name,
)

logger = logging.getLogger(__name__)

MIN_CHUNK_DURATION_MS = 1000
MAX_BRIDGED_GAP_MS = 3000

_MICROSECONDS = 1_000_000


@dataclass(frozen=True, slots=True)
class ExtractionPlan:
    """Chunks and cut points selected for one extraction."""

    camera_id: int
    start_ms: int
    end_ms: int
    chunks: tuple[ChunkRecord, ...]
    head_ms: int
    tail_ms: int
    gap_ms: int
    bridged_gap_ms: int

    @property
    def last_cut_ms(self) -> int:
        """Local time in the last chunk at which copying stops."""

        return self.tail_ms + self.bridged_gap_ms


@dataclass(slots=True)
class ExtractionResult:
    """Outcome of an extraction request."""

    success: bool
    reason: str
    camera_id: int | None = None
    start_ms: int = 0
    end_ms: int = 0
    path: str | None = None
    gap_ms: int = 0
    chunk_count: int = 0
    duration_ms: int = 0
    packet_count: int = 0
    sources: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "reason": self.reason,
            "camera_id": self.camera_id,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "path": self.path,
            "gap_ms": self.gap_ms,
            "chunk_count": self.chunk_count,
            "duration_ms": self.duration_ms,
            "packet_count": self.packet_count,
            "sources": list(self.sources),
        }


class ExtractionError(RuntimeError):
    """Raised while planning when a request cannot be served."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class ClipExtractor:
    """Stitch the chunks overlapping ``[start_ms, end_ms)`` into one MP4.

    Packets are copied without re-encoding. The first output packet is the
    first keyframe at or after the requested start, and each following chunk
    continues at the presentation end of the previous one.
    """

    def __init__(
        self,
        index: ChunkIndex,
        *,
        min_chunk_duration_ms: int = MIN_CHUNK_DURATION_MS,
        max_bridged_gap_ms: int = MAX_BRIDGED_GAP_MS,
    ) -> None:
        self._index = index
        self._min_chunk_duration_ms = int(min_chunk_duration_ms)
        self._max_bridged_gap_ms = int(max_bridged_gap_ms)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def plan(self, start_ms: int, end_ms: int, camera_id: int) -> ExtractionPlan:
        start_ms = int(start_ms)
        end_ms = int(end_ms)
        if end_ms <= start_ms:
            raise ExtractionError("invalid_range", "end must be after start")
        chunks = self._index.query_overlapping(
            start_ms,
            end_ms,
            camera_id=camera_id,
            kind=ChunkKind.ORIGINAL,
            min_duration_ms=self._min_chunk_duration_ms,
        )
        if not chunks:
            raise ExtractionError(
                "no_overlap", f"No recordings for camera {camera_id} in [{start_ms}, {end_ms})"
            )
        first, last = chunks[0], chunks[-1]
        head_ms = min(max(0, start_ms - first.start_ms), first.duration_ms)
        if len(chunks) == 1:
            tail_ms = end_ms - first.start_ms
        else:
            tail_ms = end_ms - last.start_ms
        tail_ms = min(tail_ms, last.duration_ms)
        if len(chunks) == 1 and tail_ms < head_ms:
            raise ExtractionError("invalid_range", "Requested range ends before it starts")

        covered_ms = sum(chunk.duration_ms for chunk in chunks) - head_ms
        covered_ms -= last.duration_ms - tail_ms
        gap_ms = max(0, (end_ms - start_ms) - covered_ms)
        bridged = gap_ms if gap_ms < self._max_bridged_gap_ms else 0
        if gap_ms:
            logger.info(
                "Extraction for camera %s has %d ms without footage%s",
                camera_id,
                gap_ms,
                " (bridged)" if bridged else "",
            )
        return ExtractionPlan(
            camera_id=int(camera_id),
            start_ms=start_ms,
            end_ms=end_ms,
            chunks=tuple(chunks),
            head_ms=head_ms,
            tail_ms=tail_ms,
            gap_ms=gap_ms,
            bridged_gap_ms=bridged,
        )

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------
    def extract(self, start_ms: int, end_ms: int, camera_id: int) -> ExtractionResult:
        """Produce ``extractedVideo/ex_<camera>_<start>.mp4`` for the range."""

        try:
            plan = self.plan(start_ms, end_ms, camera_id)
        except ExtractionError as exc:
            logger.warning("Extraction rejected: %s", exc)
            return ExtractionResult(
                success=False,
                reason=exc.reason,
                camera_id=int(camera_id),
                start_ms=int(start_ms),
                end_ms=int(end_ms),
            )
        output = self._index.directory(EXTRACTED_VIDEO_DIR) / chunk_file_name(
            plan.camera_id, plan.start_ms, extracted=True
        )
        with self._index.reserve(plan.camera_id, plan.start_ms, plan.end_ms):
            return self._remux(plan, output)

    def extract_all(
        self, start_ms: int, end_ms: int, cameras: Iterable[int] = CAMERA_IDS
    ) -> list[ExtractionResult]:
        """Extract the range once per camera."""

        return [self.extract(start_ms, end_ms, camera_id) for camera_id in cameras]

    def _remux(self, plan: ExtractionPlan, output_path: Path) -> ExtractionResult:
        result = ExtractionResult(
            success=False,
            reason="remux_error",
            camera_id=plan.camera_id,
            start_ms=plan.start_ms,
            end_ms=plan.end_ms,
            path=str(output_path),
            gap_ms=plan.gap_ms,
            chunk_count=len(plan.chunks),
            sources=[chunk.path for chunk in plan.chunks],
        )
        error: str | None = None
        cursor = Fraction(0)
        output = av.open(output_path.as_posix(), mode="w")
        try:
            out_stream = None
            last_dts: Fraction | None = None
            final = len(plan.chunks) - 1
            for position, chunk in enumerate(plan.chunks):
                local_start = Fraction(plan.head_ms, 1000) if position == 0 else Fraction(0)
                local_stop = Fraction(plan.last_cut_ms, 1000) if position == final else None
                with av.open(chunk.path) as source:
                    if not source.streams.video:
                        raise ValueError(f"{chunk.path} has no video stream")
                    in_stream = source.streams.video[0]
                    if out_stream is None:
                        out_stream = output.add_stream_from_template(in_stream)
                    time_base = in_stream.time_base
                    rate = in_stream.average_rate or in_stream.guessed_rate
                    frame_period = 1 / Fraction(rate) if rate else time_base
                    origin = in_stream.start_time or 0
                    if local_start > 0:
                        source.seek(int(local_start * _MICROSECONDS), backward=True)
                    first_local: Fraction | None = None
                    chunk_end = cursor
                    for packet in source.demux(in_stream):
                        if packet.pts is None or packet.dts is None:
                            continue
                        local = (packet.pts - origin) * time_base
                        if first_local is None:
                            if local < local_start or not packet.is_keyframe:
                                continue
                            first_local = local
                        if local_stop is not None and local >= local_stop:
                            break
                        out_time = cursor + (local - first_local)
                        out_dts = out_time - (packet.pts - packet.dts) * time_base
                        if last_dts is not None and out_dts <= last_dts:
                            out_dts = last_dts + time_base
                        last_dts = out_dts
                        duration = packet.duration * time_base if packet.duration else frame_period
                        chunk_end = max(chunk_end, out_time + duration)
                        packet.pts = int(round(out_time / time_base))
                        packet.dts = int(round(out_dts / time_base))
                        packet.stream = out_stream
                        output.mux(packet)
                        result.packet_count += 1
                    cursor = chunk_end
        except (av.FFmpegError, OSError, ValueError) as exc:
            error = str(exc)
            logger.exception("Extraction into %s failed", output_path)
        finally:
            output.close()

        result.duration_ms = int(cursor * 1000)
        if result.packet_count == 0:
            output_path.unlink(missing_ok=True)
            result.path = None
            result.reason = "remux_error" if error else "no_packets"
            return result
        self._index.register(
            camera_id=plan.camera_id,
            start_ms=plan.start_ms,
            duration_ms=result.duration_ms,
            path=output_path,
            kind=ChunkKind.EXTRACTED,
        )
        if error is None:
            result.success = True
            result.reason = "ok"
        logger.info(
            "Extracted %s from %d chunks (%d ms)",
            output_path,
            len(plan.chunks),
            result.duration_ms,
        )
        return result


__all__ = [
    "MAX_BRIDGED_GAP_MS",
    "MIN_CHUNK_DURATION_MS",
    "ClipExtractor",
    "ExtractionError",
    "ExtractionPlan",
    "ExtractionResult",
]
