"""Chunk index and storage trimming."""

from .index import (
    EXTRACTED_VIDEO_PATTERN,
    ORIGINAL_VIDEO_PATTERN,
    SNAPSHOT_PATTERN,
    ChunkIndex,
    ChunkKind,
    ChunkRecord,
)
from .trimmer import MIN_FREE_BYTES, SPACE_AFTER_TRIM_BYTES, StorageTrimmer, TrimResult

__all__ = [
    "EXTRACTED_VIDEO_PATTERN",
    "MIN_FREE_BYTES",
    "ORIGINAL_VIDEO_PATTERN",
    "SNAPSHOT_PATTERN",
    "SPACE_AFTER_TRIM_BYTES",
    "ChunkIndex",
    "ChunkKind",
    "ChunkRecord",
    "StorageTrimmer",
    "TrimResult",
]
