"""Persistent index of recorded chunks, extracted clips and snapshots."""
from __future__ import annotations

import contextlib
import fnmatch
import itertools
import logging
import re
import sqlite3
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from threading import RLock
from typing import Iterable, Iterator, Sequence

logger = logging.getLogger(__name__)

ORIGINAL_VIDEO_DIR = "originalVideo"
EXTRACTED_VIDEO_DIR = "extractedVideo"
SNAPSHOT_DIR = "snapshots"

ORIGINAL_VIDEO_PATTERN = "*/[01]_*.mp4"
EXTRACTED_VIDEO_PATTERN = "*/ex_[01]_*.mp4"
SNAPSHOT_PATTERN = "*/[01]_*.jpg"

_CHUNK_NAME = re.compile(r"^(?:ex_)?(?P<camera>\d+)_(?P<start>\d+)\.(?:mp4|jpg)$")


class ChunkKind(str, Enum):
    ORIGINAL = "original"
    EXTRACTED = "extracted"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True, slots=True)
class ChunkRecord:
    """One indexed media file."""

    id: int
    camera_id: int
    start_ms: int
    duration_ms: int
    path: str
    size_bytes: int
    kind: ChunkKind = ChunkKind.ORIGINAL

    @property
    def end_ms(self) -> int:
        return self.start_ms + self.duration_ms

    def overlaps(self, start_ms: int, end_ms: int) -> bool:
        return self.start_ms < end_ms and self.end_ms > start_ms

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        payload["end_ms"] = self.end_ms
        return payload


def chunk_file_name(camera_id: int, start_ms: int, *, extracted: bool = False, suffix: str = ".mp4") -> str:
    """Return the canonical ``<camera>_<epochMs>`` file name."""

    prefix = "ex_" if extracted else ""
    return f"{prefix}{int(camera_id)}_{int(start_ms)}{suffix}"


def parse_chunk_name(name: str) -> tuple[int, int] | None:
    """Return ``(camera_id, start_ms)`` encoded in a chunk file name."""

    match = _CHUNK_NAME.match(Path(name).name)
    if match is None:
        return None
    return int(match.group("camera")), int(match.group("start"))


def matches_pattern(path: Path | str, pattern: str) -> bool:
    """Match ``<parent>/<name>`` of *path* against a glob *pattern*."""

    candidate = Path(path)
    relative = f"{candidate.parent.name}/{candidate.name}"
    return fnmatch.fnmatchcase(relative, pattern)


class ChunkIndex:
    """SQLite backed record of media files under a media root."""

    def __init__(self, media_root: Path | str, *, db_path: Path | str | None = None) -> None:
        self._media_root = Path(media_root)
        self._media_root.mkdir(parents=True, exist_ok=True)
        self._db_path = Path(db_path) if db_path is not None else self._media_root / "index.db"
        self._mutex = RLock()
        self._camera_locks: dict[int, RLock] = {}
        self._reservations: dict[int, tuple[int | None, int, int]] = {}
        self._reservation_ids = itertools.count(1)
        self._conn: sqlite3.Connection | None = None
        self._ensure_schema()

    @property
    def media_root(self) -> Path:
        return self._media_root

    def directory(self, name: str) -> Path:
        folder = self._media_root / name
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------
    def camera_lock(self, camera_id: int) -> RLock:
        """Return the lock serialising index edits for *camera_id*."""

        with self._mutex:
            lock = self._camera_locks.get(int(camera_id))
            if lock is None:
                lock = RLock()
                self._camera_locks[int(camera_id)] = lock
            return lock

    @contextlib.contextmanager
    def reserve(self, camera_id: int | None, start_ms: int, end_ms: int) -> Iterator[int]:
        """Protect chunks overlapping ``[start_ms, end_ms)`` from trimming."""

        with self._mutex:
            token = next(self._reservation_ids)
            self._reservations[token] = (camera_id, int(start_ms), int(end_ms))
        try:
            yield token
        finally:
            with self._mutex:
                self._reservations.pop(token, None)

    def is_reserved(self, record: ChunkRecord) -> bool:
        with self._mutex:
            windows = list(self._reservations.values())
        for camera_id, start_ms, end_ms in windows:
            if camera_id is not None and camera_id != record.camera_id:
                continue
            if record.overlaps(start_ms, end_ms):
                return True
        return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def register(
        self,
        *,
        camera_id: int,
        start_ms: int,
        duration_ms: int,
        path: Path | str,
        kind: ChunkKind = ChunkKind.ORIGINAL,
    ) -> ChunkRecord:
        """Insert or replace the record for *path*."""

        file_path = Path(path)
        size_bytes = file_path.stat().st_size if file_path.exists() else 0
        with self.camera_lock(camera_id), self._mutex:
            with self._connect() as conn:
                conn.execute("DELETE FROM chunks WHERE path = ?", (str(file_path),))
                cursor = conn.execute(
                    """
                    INSERT INTO chunks (camera_id, kind, start_ms, duration_ms, path, size_bytes)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(camera_id),
                        ChunkKind(kind).value,
                        int(start_ms),
                        max(0, int(duration_ms)),
                        str(file_path),
                        int(size_bytes),
                    ),
                )
                conn.commit()
        record = ChunkRecord(
            id=int(cursor.lastrowid),
            camera_id=int(camera_id),
            start_ms=int(start_ms),
            duration_ms=max(0, int(duration_ms)),
            path=str(file_path),
            size_bytes=int(size_bytes),
            kind=ChunkKind(kind),
        )
        logger.debug("Indexed %s", record)
        return record

    def remove(self, records: Iterable[ChunkRecord | str | Path]) -> int:
        """Drop index rows without touching the files themselves."""

        paths = [item.path if isinstance(item, ChunkRecord) else str(item) for item in records]
        if not paths:
            return 0
        removed = 0
        with self._mutex:
            with self._connect() as conn:
                for path in paths:
                    cursor = conn.execute("DELETE FROM chunks WHERE path = ?", (path,))
                    removed += cursor.rowcount
                conn.commit()
        return removed

    def remove_dead_entries(self) -> int:
        """Drop rows whose backing file no longer exists."""

        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute("SELECT path FROM chunks").fetchall()
        dead = [row["path"] for row in rows if not Path(row["path"]).exists()]
        removed = self.remove(dead)
        if removed:
            logger.info("Removed %d dead index entries", removed)
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def query_overlapping(
        self,
        start_ms: int,
        end_ms: int,
        *,
        camera_id: int | None = None,
        kind: ChunkKind = ChunkKind.ORIGINAL,
        min_duration_ms: int = 0,
    ) -> list[ChunkRecord]:
        """Return chunks overlapping ``[start_ms, end_ms)`` in start order.

        Entries whose file has disappeared are purged from the index as they
        are encountered.
        """

        query = (
            "SELECT * FROM chunks WHERE kind = ? AND start_ms + duration_ms > ? AND start_ms < ?"
        )
        params: list[object] = [ChunkKind(kind).value, int(start_ms), int(end_ms)]
        if camera_id is not None:
            query += " AND camera_id = ?"
            params.append(int(camera_id))
        query += " ORDER BY start_ms ASC, id ASC"
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        records: list[ChunkRecord] = []
        dangling: list[str] = []
        for row in rows:
            record = self._row_to_record(row)
            if not Path(record.path).exists():
                dangling.append(record.path)
                continue
            if record.duration_ms < min_duration_ms:
                logger.debug("Skipping short chunk %s (%d ms)", record.path, record.duration_ms)
                continue
            records.append(record)
        if dangling:
            logger.info("Purging %d dangling index entries", len(dangling))
            self.remove(dangling)
        return records

    def list(
        self,
        *,
        camera_id: int | None = None,
        kind: ChunkKind | None = None,
        pattern: str | None = None,
        newest_first: bool = False,
        purge_dangling: bool = False,
    ) -> list[ChunkRecord]:
        query = "SELECT * FROM chunks"
        clauses: list[str] = []
        params: list[object] = []
        if camera_id is not None:
            clauses.append("camera_id = ?")
            params.append(int(camera_id))
        if kind is not None:
            clauses.append("kind = ?")
            params.append(ChunkKind(kind).value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        direction = "DESC" if newest_first else "ASC"
        query += f" ORDER BY start_ms {direction}, id {direction}"
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        records = [self._row_to_record(row) for row in rows]
        if pattern is not None:
            records = [record for record in records if matches_pattern(record.path, pattern)]
        if purge_dangling:
            dangling = [record for record in records if not Path(record.path).exists()]
            if dangling:
                self.remove(dangling)
                records = [record for record in records if record not in dangling]
        return records

    def get(self, path: Path | str) -> ChunkRecord | None:
        with self._mutex:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM chunks WHERE path = ?", (str(path),)).fetchone()
        return self._row_to_record(row) if row is not None else None

    def latest(self, camera_id: int, *, kind: ChunkKind = ChunkKind.ORIGINAL) -> ChunkRecord | None:
        with self._mutex:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM chunks WHERE camera_id = ? AND kind = ?
                    ORDER BY start_ms DESC, id DESC LIMIT 1
                    """,
                    (int(camera_id), ChunkKind(kind).value),
                ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def total_size(self, *, pattern: str | None = None, kind: ChunkKind | None = None) -> int:
        return sum(record.size_bytes for record in self.list(kind=kind, pattern=pattern))

    def count(self) -> int:
        with self._mutex:
            with self._connect() as conn:
                return int(conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0])

    def close(self) -> None:
        """Close the database connection; the next query reopens it."""

        with self._mutex:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._conn = conn
        return self._conn

    def _ensure_schema(self) -> None:
        with self._mutex, self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    camera_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    start_ms INTEGER NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    path TEXT NOT NULL UNIQUE,
                    size_bytes INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_chunks_camera_start ON chunks(camera_id, start_ms)"
            )

    def _row_to_record(self, row: sqlite3.Row) -> ChunkRecord:
        return ChunkRecord(
            id=int(row["id"]),
            camera_id=int(row["camera_id"]),
            start_ms=int(row["start_ms"]),
            duration_ms=int(row["duration_ms"]),
            path=str(row["path"]),
            size_bytes=int(row["size_bytes"]),
            kind=ChunkKind(row["kind"]),
        )


def sort_oldest_first(records: Sequence[ChunkRecord]) -> list[ChunkRecord]:
    return sorted(records, key=lambda record: (record.start_ms, record.id))


__all__ = [
    "EXTRACTED_VIDEO_DIR",
    "EXTRACTED_VIDEO_PATTERN",
    "ORIGINAL_VIDEO_DIR",
    "ORIGINAL_VIDEO_PATTERN",
    "SNAPSHOT_DIR",
    "SNAPSHOT_PATTERN",
    "ChunkIndex",
    "ChunkKind",
    "ChunkRecord",
    "chunk_file_name",
    "matches_pattern",
    "parse_chunk_name",
    "sort_oldest_first",
]
