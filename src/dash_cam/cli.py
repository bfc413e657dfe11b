"""Command line helpers for maintaining and serving the dashcam media store."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Sequence

from .app import resolve_media_root
from .config import CAMERA_IDS
from .extraction import ClipExtractor
from .storage.index import ORIGINAL_VIDEO_PATTERN, ChunkIndex, ChunkKind
from .storage.trimmer import MIN_FREE_BYTES, SPACE_AFTER_TRIM_BYTES, StorageTrimmer
from .version import APP_VERSION


def _format_bytes(value: int | None) -> str:
    if value is None:
        return "unknown"
    size = float(value)
    for unit in ("B", "KiB", "MiB"):
        if size < 1024:
            return f"{int(size)} B" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the dash-cam CLI."""

    parser = argparse.ArgumentParser(
        prog="dash-cam",
        description="Dash cam recording service helpers",
    )
    parser.add_argument(
        "--media-root",
        default=None,
        help="Media directory (defaults to $DASHCAM_MEDIA_ROOT or data/media).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    extract = sub.add_parser("extract", help="Build a clip covering a time range.")
    extract.add_argument("--start-ms", type=int, required=True)
    extract.add_argument("--end-ms", type=int, required=True)
    extract.add_argument(
        "--camera",
        type=int,
        choices=CAMERA_IDS,
        default=None,
        help="Camera id; every camera when omitted.",
    )

    trim = sub.add_parser("trim", help="Delete old recordings to reclaim space.")
    trim.add_argument("--min-free", type=int, default=MIN_FREE_BYTES)
    trim.add_argument("--target-free", type=int, default=SPACE_AFTER_TRIM_BYTES)
    trim.add_argument("--pattern", default=ORIGINAL_VIDEO_PATTERN)
    trim.add_argument(
        "--max-size",
        type=int,
        default=None,
        help="Apply a size budget to the pattern instead of a free-space floor.",
    )

    sub.add_parser("cleanup-index", help="Drop index entries whose files are missing.")
    sub.add_parser("status", help="Summarise the indexed media.")

    serve = sub.add_parser("serve", help="Run the recording service and HTTP API.")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument(
        "--camera-source",
        default=None,
        help="Camera backend (auto, picamera, opencv, synthetic).",
    )
    serve.add_argument(
        "--no-autostart",
        action="store_true",
        help="Wait for a start command instead of recording immediately.",
    )
    return parser


def _emit(args: argparse.Namespace, payload: dict[str, object], lines: Sequence[str]) -> None:
    if args.json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
        return
    for line in lines:
        print(line)


def _cmd_extract(args: argparse.Namespace, index: ChunkIndex) -> int:
    extractor = ClipExtractor(index)
    if args.camera is None:
        results = extractor.extract_all(args.start_ms, args.end_ms)
    else:
        results = [extractor.extract(args.start_ms, args.end_ms, args.camera)]
    lines: list[str] = []
    for result in results:
        if result.success:
            lines.append(
                f"Camera {result.camera_id}: {result.path} "
                f"({result.duration_ms / 1000:.1f}s from {result.chunk_count} chunks, "
                f"gap {result.gap_ms} ms)"
            )
        else:
            lines.append(f"Camera {result.camera_id}: failed ({result.reason})")
    _emit(args, {"results": [result.to_dict() for result in results]}, lines)
    return 0 if any(result.success for result in results) else 1


def _cmd_trim(args: argparse.Namespace, index: ChunkIndex) -> int:
    trimmer = StorageTrimmer(index)
    if args.max_size is not None:
        result = trimmer.trim_by_pattern(args.pattern, args.max_size, args.target_free)
    else:
        result = trimmer.trim_if_short(args.min_free, args.target_free, pattern=args.pattern)
    lines = [
        f"Trim {result.reason}: deleted {len(result.deleted)} files, "
        f"reclaimed {_format_bytes(result.reclaimed_bytes)}"
    ]
    lines.extend(f" - {path}" for path in result.deleted)
    _emit(args, result.to_dict(), lines)
    return 0 if result.reason != "invalid_budget" else 2


def _cmd_cleanup(args: argparse.Namespace, index: ChunkIndex) -> int:
    removed = index.remove_dead_entries()
    _emit(args, {"removed": removed}, [f"Removed {removed} dead index entries"])
    return 0


def _cmd_status(args: argparse.Namespace, index: ChunkIndex) -> int:
    trimmer = StorageTrimmer(index)
    try:
        available: int | None = trimmer.available_bytes()
    except OSError:
        available = None
    cameras: dict[str, object] = {}
    lines = [
        f"Dash cam media status (version {APP_VERSION})",
        f"Media root: {index.media_root}",
        f"Available space: {_format_bytes(available)}",
    ]
    for camera_id in CAMERA_IDS:
        summary: dict[str, object] = {}
        for kind in ChunkKind:
            records = index.list(camera_id=camera_id, kind=kind)
            summary[kind.value] = {
                "count": len(records),
                "bytes": sum(record.size_bytes for record in records),
            }
        latest = index.latest(camera_id)
        summary["latest"] = latest.to_dict() if latest is not None else None
        cameras[str(camera_id)] = summary
        original = summary[ChunkKind.ORIGINAL.value]
        assert isinstance(original, dict)
        lines.append(
            f"Camera {camera_id}: {original['count']} chunks, "
            f"{_format_bytes(int(original['bytes']))}"
        )
    payload = {
        "version": APP_VERSION,
        "media_root": str(index.media_root),
        "available_bytes": available,
        "cameras": cameras,
    }
    _emit(args, payload, lines)
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:  # pragma: no cover - runs a server
    import uvicorn

    from .app import create_app

    app = create_app(
        args.media_root,
        camera_choice=args.camera_source,
        autostart=not args.no_autostart,
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")
    return 0


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "serve":
        return _cmd_serve(args)

    index = ChunkIndex(resolve_media_root(args.media_root))
    handlers = {
        "extract": _cmd_extract,
        "trim": _cmd_trim,
        "cleanup-index": _cmd_cleanup,
        "status": _cmd_status,
    }
    try:
        return handlers[args.command](args, index)
    finally:
        index.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``dash-cam`` console script."""

    return run(argv)


__all__ = ["build_parser", "main", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
