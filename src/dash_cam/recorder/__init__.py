"""Chunked recording sessions and their capture modules."""

from .capture import (
    DEFAULT_CAPTURE_MODULES,
    CaptureModuleSpec,
    SnapshotMetadata,
)
from .chunk_writer import AvChunkRecorder, ChunkResult, default_recorder_factory
from .session import RecordingSession, SessionState

__all__ = [
    "DEFAULT_CAPTURE_MODULES",
    "AvChunkRecorder",
    "CaptureModuleSpec",
    "ChunkResult",
    "RecordingSession",
    "SessionState",
    "SnapshotMetadata",
    "default_recorder_factory",
]
