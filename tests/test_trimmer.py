from __future__ import annotations

import threading
from collections import namedtuple
from pathlib import Path

import pytest

from dash_cam.events import EventBus, NoticeCode
from dash_cam.storage import trimmer as trimmer_module
from dash_cam.storage.index import (
    ORIGINAL_VIDEO_DIR,
    ORIGINAL_VIDEO_PATTERN,
    ChunkIndex,
    ChunkRecord,
    chunk_file_name,
)
from dash_cam.storage.trimmer import StorageTrimmer

from conftest import EventRecorder

Usage = namedtuple("Usage", "total used free")


class FakeDisk:
    """Disk whose free space shrinks with the media files stored on it."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity

    def __call__(self, root: Path) -> Usage:
        used = sum(
            path.stat().st_size
            for path in Path(root).rglob("*")
            if path.is_file() and path.suffix in {".mp4", ".vtt", ".jpg"}
        )
        return Usage(self.capacity, used, self.capacity - used)


def _fill(index: ChunkIndex, count: int, size: int, camera_id: int = 0) -> list[ChunkRecord]:
    records = []
    for position in range(count):
        start_ms = position * 30_000
        path = index.directory(ORIGINAL_VIDEO_DIR) / chunk_file_name(camera_id, start_ms)
        path.write_bytes(b"\x00" * size)
        records.append(
            index.register(camera_id=camera_id, start_ms=start_ms, duration_ms=30_000, path=path)
        )
    return records


def test_no_trimming_when_enough_space(index: ChunkIndex) -> None:
    _fill(index, 3, 1_000)
    trimmer = StorageTrimmer(index, disk_usage=FakeDisk(10_000))

    first = trimmer.trim_if_short(1_000, 2_000)
    second = trimmer.trim_if_short(1_000, 2_000)

    assert first.reason == second.reason == "enough_space"
    assert not first.performed
    assert index.count() == 3


def test_trim_deletes_oldest_chunks_and_sidecars(index: ChunkIndex, bus: EventBus) -> None:
    records = _fill(index, 5, 1_000)
    sidecar = Path(f"{records[0].path}.vtt")
    sidecar.write_text("WEBVTT\n", encoding="utf-8")
    recorder = EventRecorder(bus)
    trimmer = StorageTrimmer(index, events=bus, disk_usage=FakeDisk(5_600))

    result = trimmer.trim_if_short(1_000, 2_500, camera_id=0)

    assert result.performed
    assert result.reason == "trimmed"
    assert result.deleted == [records[0].path, records[1].path]
    assert result.reclaimed_bytes == 2_000
    assert not sidecar.exists()
    assert not Path(records[0].path).exists()
    assert [record.start_ms for record in index.list()] == [60_000, 90_000, 120_000]
    assert result.available_after is not None and result.available_after >= 2_500
    assert len(recorder.notices(NoticeCode.SERVICE_IS_TRIMMING)) == 1


def test_trim_skips_reserved_chunks(index: ChunkIndex) -> None:
    records = _fill(index, 4, 1_000)
    trimmer = StorageTrimmer(index, disk_usage=FakeDisk(4_500))

    with index.reserve(0, 0, 1):
        result = trimmer.trim_if_short(1_000, 1_500)

    assert result.deleted == [records[1].path]
    assert Path(records[0].path).exists()


def test_trim_reports_exhausted_when_nothing_is_left(index: ChunkIndex) -> None:
    _fill(index, 2, 1_000)
    trimmer = StorageTrimmer(index, disk_usage=FakeDisk(2_100))

    result = trimmer.trim_if_short(1_000, 50_000)

    assert result.reason == "exhausted"
    assert len(result.deleted) == 2
    assert index.count() == 0


def test_concurrent_trim_returns_busy(index: ChunkIndex) -> None:
    _fill(index, 2, 1_000)
    trimmer = StorageTrimmer(index, disk_usage=FakeDisk(2_100))

    assert trimmer_module._TRIM_LOCK.acquire(blocking=False)
    try:
        result = trimmer.trim_if_short(1_000, 2_000)
    finally:
        trimmer_module._TRIM_LOCK.release()

    assert result.reason == "busy"
    assert index.count() == 2


class LockstepDisk(FakeDisk):
    """Both callers read the disk before either trims; the trim then waits for the other caller."""

    def __init__(self, capacity: int) -> None:
        super().__init__(capacity)
        self.first_read = threading.Barrier(2, timeout=5)
        self.one_finished = threading.Event()
        self._calls: dict[int, int] = {}
        self._lock = threading.Lock()

    def __call__(self, root: Path) -> Usage:
        usage = super().__call__(root)
        with self._lock:
            calls = self._calls.get(threading.get_ident(), 0) + 1
            self._calls[threading.get_ident()] = calls
        if calls == 1:
            self.first_read.wait()
        else:
            self.one_finished.wait(5)
        return usage


def test_concurrent_trims_run_a_single_pass(index: ChunkIndex) -> None:
    _fill(index, 3, 1_000)
    disk = LockstepDisk(3_100)
    trimmer = StorageTrimmer(index, disk_usage=disk)
    reasons: list[str] = []
    start = threading.Barrier(2, timeout=5)

    def trim() -> None:
        start.wait()
        result = trimmer.trim_if_short(1_000, 2_000)
        reasons.append(result.reason)
        disk.one_finished.set()

    workers = [threading.Thread(target=trim) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(10)

    assert sorted(reasons) == ["busy", "trimmed"]
    assert index.count() == 1
    assert not trimmer_module._TRIM_LOCK.locked()


def test_trim_purges_dangling_entries_before_deleting(index: ChunkIndex) -> None:
    records = _fill(index, 3, 1_000)
    Path(records[0].path).unlink()
    trimmer = StorageTrimmer(index, disk_usage=FakeDisk(2_500))

    result = trimmer.trim_if_short(1_000, 1_500)

    assert result.deleted == [records[1].path]
    assert index.get(records[0].path) is None


def test_trim_by_pattern_keeps_newest_within_budget(index: ChunkIndex) -> None:
    records = _fill(index, 5, 100)
    trimmer = StorageTrimmer(index, disk_usage=FakeDisk(10_000))

    result = trimmer.trim_by_pattern(ORIGINAL_VIDEO_PATTERN, 400, 200)

    assert result.reason == "trimmed"
    assert result.deleted == [records[2].path, records[1].path, records[0].path]
    assert [record.path for record in index.list()] == [records[3].path, records[4].path]


def test_trim_by_pattern_below_budget_is_noop(index: ChunkIndex) -> None:
    _fill(index, 5, 100)
    trimmer = StorageTrimmer(index, disk_usage=FakeDisk(10_000))

    result = trimmer.trim_by_pattern(ORIGINAL_VIDEO_PATTERN, 1_000, 200)

    assert result.reason == "within_budget"
    assert index.count() == 5


@pytest.mark.parametrize(("max_size", "target"), [(100, 200), (0, 1)])
def test_trim_by_pattern_rejects_inverted_budget(
    index: ChunkIndex, max_size: int, target: int
) -> None:
    _fill(index, 2, 100)
    trimmer = StorageTrimmer(index, disk_usage=FakeDisk(10_000))

    result = trimmer.trim_by_pattern(ORIGINAL_VIDEO_PATTERN, max_size, target)

    assert result.reason == "invalid_budget"
    assert index.count() == 2
