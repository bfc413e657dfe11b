"""FastAPI application exposing the dashcam recording service."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from .storage.index import (
    EXTRACTED_VIDEO_DIR,
    ORIGINAL_VIDEO_PATTERN,
    ChunkKind,
)
from .storage.trimmer import MIN_FREE_BYTES, SPACE_AFTER_TRIM_BYTES
from .supervisor import Supervisor, UnknownCameraError
from .version import APP_VERSION

DEFAULT_MEDIA_ROOT = Path("data/media")


def resolve_media_root(media_root: Path | str | None = None) -> Path:
    if media_root is not None:
        return Path(media_root)
    return Path(os.environ.get("DASHCAM_MEDIA_ROOT", DEFAULT_MEDIA_ROOT))


class CommandPayload(BaseModel):
    params: dict[str, Any] = Field(default_factory=dict)


class ExtractPayload(BaseModel):
    start_ms: int = Field(ge=0)
    end_ms: int = Field(ge=0)
    camera_id: int | None = None


class TrimPayload(BaseModel):
    min_free_bytes: int = Field(default=MIN_FREE_BYTES, ge=0)
    target_free_bytes: int = Field(default=SPACE_AFTER_TRIM_BYTES, ge=0)
    pattern: str = ORIGINAL_VIDEO_PATTERN
    max_size_bytes: int | None = Field(default=None, ge=0)


def create_app(
    media_root: Path | str | None = None,
    *,
    supervisor: Supervisor | None = None,
    camera_choice: str | None = None,
    autostart: bool = True,
) -> FastAPI:
    app = FastAPI(title="Dash Cam", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    if supervisor is None:
        supervisor = Supervisor(resolve_media_root(media_root), camera_choice=camera_choice)
    app.state.supervisor = supervisor

    def _camera_or_404(camera_id: int) -> int:
        try:
            return supervisor.camera(camera_id).camera_id
        except UnknownCameraError as exc:
            raise HTTPException(status_code=404, detail=f"Unknown camera {camera_id}") from exc

    def _dispatch(verb: str, camera_id: int | None, params: dict[str, Any]) -> dict[str, object]:
        try:
            targets = supervisor.dispatch(verb, camera_id, **params)
        except UnknownCameraError as exc:
            raise HTTPException(status_code=404, detail=f"Unknown camera {camera_id}") from exc
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"command": verb, "cameras": targets}

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        supervisor.start()
        if autostart:
            supervisor.enable_all()
        logger.info("Dash cam service started with media root %s", supervisor.media_root)

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        await run_in_threadpool(supervisor.close)

    # ------------------------------------------------------------------
    # Status and commands
    # ------------------------------------------------------------------
    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        status = await run_in_threadpool(supervisor.status)
        status["version"] = APP_VERSION
        return status

    @app.post("/api/cameras/{camera_id}/commands/{verb}")
    async def post_camera_command(
        camera_id: int, verb: str, payload: CommandPayload | None = None
    ) -> dict[str, object]:
        _camera_or_404(camera_id)
        params = payload.params if payload is not None else {}
        return _dispatch(verb, camera_id, params)

    @app.post("/api/commands/{verb}")
    async def post_command(verb: str, payload: CommandPayload | None = None) -> dict[str, object]:
        params = payload.params if payload is not None else {}
        return _dispatch(verb, None, params)

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------
    @app.post("/api/extract")
    async def post_extract(payload: ExtractPayload) -> dict[str, object]:
        if payload.end_ms <= payload.start_ms:
            raise HTTPException(status_code=400, detail="end_ms must be greater than start_ms")
        extractor = supervisor.extractor
        if payload.camera_id is None:
            results = await run_in_threadpool(
                extractor.extract_all, payload.start_ms, payload.end_ms, supervisor.camera_ids
            )
        else:
            camera_id = _camera_or_404(payload.camera_id)
            results = [
                await run_in_threadpool(
                    extractor.extract, payload.start_ms, payload.end_ms, camera_id
                )
            ]
        return {
            "success": any(result.success for result in results),
            "results": [result.to_dict() for result in results],
        }

    @app.get("/api/chunks")
    async def list_chunks(
        camera_id: int | None = None, kind: str | None = None, limit: int = 100
    ) -> dict[str, object]:
        try:
            chunk_kind = ChunkKind(kind) if kind else None
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unknown kind {kind!r}") from exc
        if camera_id is not None:
            _camera_or_404(camera_id)
        records = await run_in_threadpool(
            lambda: supervisor.index.list(camera_id=camera_id, kind=chunk_kind, newest_first=True)
        )
        return {"chunks": [record.to_dict() for record in records[: max(1, limit)]]}

    @app.get("/api/clips/{name}")
    async def download_clip(name: str) -> FileResponse:
        folder = supervisor.media_root / EXTRACTED_VIDEO_DIR
        path = folder / Path(name).name
        if not path.is_file():
            raise HTTPException(status_code=404, detail="Clip not found")
        return FileResponse(path, media_type="video/mp4", filename=path.name)

    @app.post("/api/trim")
    async def post_trim(payload: TrimPayload | None = None) -> dict[str, object]:
        request = payload or TrimPayload()
        trimmer = supervisor.trimmer
        if request.max_size_bytes is not None:
            result = await run_in_threadpool(
                trimmer.trim_by_pattern,
                request.pattern,
                request.max_size_bytes,
                request.target_free_bytes,
            )
        else:
            result = await run_in_threadpool(
                lambda: trimmer.trim_if_short(
                    request.min_free_bytes,
                    request.target_free_bytes,
                    pattern=request.pattern,
                )
            )
        return result.to_dict()

    @app.get("/api/events")
    async def list_events(limit: int = 100, camera_id: int | None = None) -> dict[str, object]:
        return {"events": supervisor.event_log.tail(limit, camera_id=camera_id)}

    return app


__all__ = ["create_app", "resolve_media_root"]
