"""Free-space management for the media root."""
from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from ..events import EventBus, NoticeCode, Notification
from .index import (
    ORIGINAL_VIDEO_PATTERN,
    ChunkIndex,
    ChunkRecord,
    sort_oldest_first,
)

logger = logging.getLogger(__name__)

GIB = 1024**3
MIN_FREE_BYTES = 1 * GIB
SPACE_AFTER_TRIM_BYTES = 2 * GIB

SIDECAR_SUFFIXES = (".vtt", ".stats.vtt")

# Shared by every trimmer in the process.
_TRIM_LOCK = threading.Lock()


@dataclass(slots=True)
class TrimResult:
    """Outcome of a trimming pass."""

    performed: bool
    reason: str
    deleted: list[str] = field(default_factory=list)
    reclaimed_bytes: int = 0
    available_before: int | None = None
    available_after: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "performed": self.performed,
            "reason": self.reason,
            "deleted": list(self.deleted),
            "reclaimed_bytes": self.reclaimed_bytes,
            "available_before": self.available_before,
            "available_after": self.available_after,
        }


def sidecar_paths(path: Path | str) -> list[Path]:
    """Return the auxiliary subtitle/telemetry tracks stored beside *path*."""

    return [Path(f"{path}{suffix}") for suffix in SIDECAR_SUFFIXES]


class StorageTrimmer:
    """Delete the oldest media until enough free space is available."""

    def __init__(
        self,
        index: ChunkIndex,
        *,
        events: EventBus | None = None,
        disk_usage: Callable[[Path], object] = shutil.disk_usage,
    ) -> None:
        self._index = index
        self._events = events
        self._disk_usage = disk_usage

    @property
    def index(self) -> ChunkIndex:
        return self._index

    def available_bytes(self) -> int:
        usage = self._disk_usage(self._index.media_root)
        return int(getattr(usage, "free"))

    # ------------------------------------------------------------------
    # Trimming policies
    # ------------------------------------------------------------------
    def trim_if_short(
        self,
        min_free: int = MIN_FREE_BYTES,
        target_free: int = SPACE_AFTER_TRIM_BYTES,
        *,
        pattern: str = ORIGINAL_VIDEO_PATTERN,
        camera_id: int | None = None,
    ) -> TrimResult:
        """Reclaim space when fewer than *min_free* bytes are available.

        Only one pass runs at a time per process; concurrent callers return
        immediately with ``reason="busy"``.
        """

        available = self.available_bytes()
        if available >= min_free:
            return TrimResult(
                performed=False,
                reason="enough_space",
                available_before=available,
                available_after=available,
            )
        if not _TRIM_LOCK.acquire(blocking=False):
            logger.info("Trimming is already in progress, skipping")
            return TrimResult(performed=False, reason="busy", available_before=available)
        try:
            need = int(target_free) - available
            logger.info(
                "Available space %.1f MiB below %.1f MiB; trimming %.1f MiB",
                available / 1024**2,
                min_free / 1024**2,
                need / 1024**2,
            )
            self._notify_trimming(camera_id, f"Trimming {need} bytes")
            result = TrimResult(performed=True, reason="trimmed", available_before=available)
            candidates = sort_oldest_first(
                self._index.list(pattern=pattern, purge_dangling=True)
            )
            for record in candidates:
                if result.reclaimed_bytes >= need:
                    break
                if self._index.is_reserved(record):
                    logger.debug("Skipping %s reserved by an extraction", record.path)
                    continue
                freed = self.delete_media(record)
                if freed is None:
                    continue
                result.deleted.append(record.path)
                result.reclaimed_bytes += freed
            if result.reclaimed_bytes < need:
                result.reason = "exhausted"
            result.available_after = self.available_bytes()
            return result
        finally:
            _TRIM_LOCK.release()

    def trim_by_pattern(
        self,
        pattern: str,
        max_size_before_trim: int,
        target_free_after_trim: int,
    ) -> TrimResult:
        """Apply a size budget to the media matching *pattern*.

        The newest files are kept up to ``max_size_before_trim -
        target_free_after_trim`` bytes. Older files are deleted only once the
        total reaches ``max_size_before_trim``.
        """

        keep_budget = int(max_size_before_trim) - int(target_free_after_trim)
        if keep_budget < 0:
            logger.error("Free space after trimming must not exceed the size budget")
            return TrimResult(performed=False, reason="invalid_budget")
        newest_first = list(reversed(sort_oldest_first(
            self._index.list(pattern=pattern, purge_dangling=True)
        )))
        total = 0
        trim_from: int | None = None
        need_trimming = False
        for position, record in enumerate(newest_first):
            total += record.size_bytes
            if trim_from is None:
                if total > keep_budget:
                    trim_from = position
                else:
                    continue
            if total >= max_size_before_trim:
                need_trimming = True
                break
        if not need_trimming or trim_from is None:
            logger.debug(
                "Pattern %s needs no trimming, total size %.1f MiB",
                pattern,
                total / 1024**2,
            )
            return TrimResult(performed=False, reason="within_budget")

        logger.info(
            "Trimming pattern %s from position %d to %d",
            pattern,
            trim_from,
            len(newest_first) - 1,
        )
        self._notify_trimming(None, f"Trimming {pattern}")
        result = TrimResult(performed=True, reason="trimmed")
        for record in newest_first[trim_from:]:
            if self._index.is_reserved(record):
                continue
            freed = self.delete_media(record)
            if freed is not None:
                result.deleted.append(record.path)
                result.reclaimed_bytes += freed
        return result

    def remove_dead_index_entries(self) -> int:
        return self._index.remove_dead_entries()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def delete_media(self, record: ChunkRecord) -> int | None:
        """Delete *record*, its sidecars and its index row.

        Returns the number of bytes freed or ``None`` when the file could not
        be removed.
        """

        path = Path(record.path)
        with self._index.camera_lock(record.camera_id):
            freed = 0
            try:
                freed = path.stat().st_size
                path.unlink()
            except FileNotFoundError:
                freed = 0
            except OSError as exc:
                logger.warning("Unable to delete %s: %s", path, exc)
                return None
            for sidecar in sidecar_paths(path):
                try:
                    sidecar.unlink()
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.warning("Unable to delete sidecar %s: %s", sidecar, exc)
            self._index.remove([record])
        logger.debug("Trimmed %s (%d bytes)", path, freed)
        return freed

    def _notify_trimming(self, camera_id: int | None, message: str) -> None:
        if self._events is None:
            return
        self._events.publish(
            Notification.notice(
                -1 if camera_id is None else camera_id,
                NoticeCode.SERVICE_IS_TRIMMING,
                message,
            )
        )


__all__ = [
    "MIN_FREE_BYTES",
    "SIDECAR_SUFFIXES",
    "SPACE_AFTER_TRIM_BYTES",
    "StorageTrimmer",
    "TrimResult",
    "sidecar_paths",
]
