"""Frame sources for the road and cabin cameras."""
from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Callable

import numpy as np

from .events import ErrorCode

logger = logging.getLogger(__name__)

# Backend identifiers accepted by ``create_camera`` and ``DASHCAM_CAMERA``.
CAMERA_SOURCES: dict[str, str] = {
    "auto": "CSI sensor, generated frames when no sensor is attached",
    "picamera": "CSI sensor via Picamera2",
    "opencv": "USB camera via OpenCV",
    "synthetic": "Generated road and cabin frames",
}

DEFAULT_CAMERA_CHOICE = "auto"

_CAMERA_ALIASES = {
    "csi": "picamera",
    "picamera2": "picamera",
    "usb": "opencv",
    "fake": "synthetic",
}

# Camera 0 looks out of the windscreen, camera 1 into the cabin.
CAMERA_FACING = {0: "road", 1: "cabin"}


class CameraError(RuntimeError):
    """A camera could not be opened or stopped delivering frames."""

    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.CAMERA_ERROR) -> None:
        super().__init__(message)
        self.code = code


def summarise_exception(exc: BaseException) -> str:
    """Join the distinct messages found along an exception's cause chain."""

    messages: list[str] = []
    current: BaseException | None = exc
    visited: set[int] = set()
    while current is not None and id(current) not in visited:
        visited.add(id(current))
        message = str(current).strip()
        if message and message not in messages:
            messages.append(message)
        current = current.__cause__ or current.__context__
    return " | ".join(messages)


def error_code_for_detail(detail: str | None) -> ErrorCode:
    """Map a low level failure message onto an :class:`ErrorCode`."""

    if not detail:
        return ErrorCode.CAMERA_ERROR
    lower = detail.lower()
    if "permission" in lower or "not permitted" in lower:
        return ErrorCode.CAMERA_PERMISSION_NOT_GRANTED
    if "busy" in lower or "in use" in lower:
        return ErrorCode.CAMERA_ERROR
    if "disconnected" in lower or "no such device" in lower:
        return ErrorCode.CAMERA_DISCONNECTED
    if "pipeline handler" in lower or "camera manager" in lower:
        return ErrorCode.ERROR_SYSTEM_CAMERA_SERVICE
    return ErrorCode.CAMERA_ACCESS_EXCEPTION


class BaseCamera(ABC):
    """A source of RGB frames for one recording session."""

    camera_id: int = 0

    @abstractmethod
    def capture(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    def characteristics(self) -> dict[str, object]:
        """Static properties of the opened sensor, logged when a session starts."""

        return {"camera_id": self.camera_id, "facing": CAMERA_FACING.get(self.camera_id)}

    def close(self) -> None:  # pragma: no cover - optional override
        return None


class Picamera2Camera(BaseCamera):
    """CSI ribbon sensor driven through libcamera's Picamera2 bindings."""

    def __init__(
        self,
        camera_id: int = 0,
        resolution: tuple[int, int] | None = None,
        *,
        fps: int | None = None,
    ) -> None:
        try:
            from picamera2 import Picamera2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise CameraError(
                f"Picamera2 bindings missing for camera {camera_id}: {summarise_exception(exc)}",
                code=ErrorCode.CAMERA_ACCESS_EXCEPTION,
            ) from exc

        self.camera_id = int(camera_id)
        self._device = None
        try:  # pragma: no cover - hardware dependent
            self._device = Picamera2(self.camera_id)
            self._device.configure(self._video_configuration(resolution, fps))
            self._device.start()
        except Exception as exc:  # pragma: no cover - hardware dependent
            detail = summarise_exception(exc)
            logger.error("Camera %s failed to open: %s", self.camera_id, detail)
            self._release()
            raise CameraError(
                f"Camera {self.camera_id} failed to open: {detail}",
                code=error_code_for_detail(detail),
            ) from exc

    def _video_configuration(
        self, resolution: tuple[int, int] | None, fps: int | None
    ):  # pragma: no cover - hardware dependent
        stream: dict[str, object] = {"format": "RGB888"}
        if resolution is not None:
            stream["size"] = tuple(int(value) for value in resolution)
        controls: dict[str, object] = {}
        if fps:
            frame_us = max(1, round(1_000_000 / fps))
            controls["FrameDurationLimits"] = (frame_us, frame_us)
        return self._device.create_video_configuration(
            main=stream, controls=controls, buffer_count=4
        )

    def capture(self) -> np.ndarray:  # pragma: no cover - hardware dependent
        if self._device is None:
            raise CameraError(
                f"Camera {self.camera_id} is closed", code=ErrorCode.CAMERA_STATE_ERROR
            )
        try:
            frame = self._device.capture_array("main")
        except Exception as exc:
            detail = summarise_exception(exc)
            raise CameraError(detail, code=error_code_for_detail(detail)) from exc
        # RGB888 arrives in BGR byte order.
        return np.ascontiguousarray(frame[..., 2::-1])

    def characteristics(self) -> dict[str, object]:  # pragma: no cover - hardware dependent
        info = super().characteristics()
        try:
            properties = self._device.camera_properties
        except Exception as exc:
            raise CameraError(
                f"Camera {self.camera_id} properties unavailable",
                code=ErrorCode.SERVICE_START_ERROR,
            ) from exc
        info["model"] = properties.get("Model")
        info["pixel_array"] = properties.get("PixelArraySize")
        info["rotation"] = properties.get("Rotation")
        return info

    def _release(self) -> None:  # pragma: no cover - hardware dependent
        device, self._device = self._device, None
        if device is None:
            return
        try:
            device.stop()
        finally:
            device.close()

    def close(self) -> None:  # pragma: no cover - hardware dependent
        self._release()


class OpenCVCamera(BaseCamera):
    """USB camera read through OpenCV's V4L2 capture."""

    def __init__(
        self,
        camera_id: int = 0,
        resolution: tuple[int, int] | None = None,
        *,
        fps: int | None = None,
    ) -> None:
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise CameraError(
                "opencv-python-headless is not installed",
                code=ErrorCode.CAMERA_ACCESS_EXCEPTION,
            ) from exc

        self.camera_id = int(camera_id)
        self._cv2 = cv2
        self._device = cv2.VideoCapture(self.camera_id)
        if not self._device.isOpened():
            raise CameraError(
                f"No USB camera at /dev/video{self.camera_id}",
                code=ErrorCode.CAMERA_ACCESS_EXCEPTION,
            )
        requested: list[tuple[int, float]] = []
        if resolution is not None:
            requested.append((cv2.CAP_PROP_FRAME_WIDTH, float(resolution[0])))
            requested.append((cv2.CAP_PROP_FRAME_HEIGHT, float(resolution[1])))
        if fps:
            requested.append((cv2.CAP_PROP_FPS, float(fps)))
        for prop, value in requested:
            if not self._device.set(prop, value):
                logger.warning("Camera %s ignored property %s=%s", self.camera_id, prop, value)

    def capture(self) -> np.ndarray:  # pragma: no cover - hardware dependent
        ok, frame = self._device.read()
        if not ok or frame is None:
            raise CameraError(
                f"Camera {self.camera_id} disconnected", code=ErrorCode.CAMERA_DISCONNECTED
            )
        return self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

    def characteristics(self) -> dict[str, object]:  # pragma: no cover - hardware dependent
        cv2 = self._cv2
        info = super().characteristics()
        info["model"] = self._device.getBackendName()
        info["size"] = (
            int(self._device.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(self._device.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        info["fps"] = self._device.get(cv2.CAP_PROP_FPS)
        return info

    def close(self) -> None:  # pragma: no cover - hardware dependent
        self._device.release()


class SyntheticCamera(BaseCamera):
    """Generated frames: a scrolling lane marking for the road, a flat tone for the cabin."""

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        *,
        camera_id: int = 0,
        resolution: tuple[int, int] | None = None,
        fps: int | None = None,
    ) -> None:
        if resolution is not None:
            width, height = resolution
        self.camera_id = int(camera_id)
        self._width = int(width)
        self._height = int(height)
        self._fps = fps
        self._started = time.monotonic()
        self._frames = 0
        self.closed = False

    def capture(self) -> np.ndarray:
        if self.closed:
            raise CameraError(
                f"Camera {self.camera_id} is closed", code=ErrorCode.CAMERA_STATE_ERROR
            )
        self._frames += 1
        frame = np.empty((self._height, self._width, 3), dtype=np.uint8)
        rows = np.linspace(40, 140, self._height, dtype=np.uint8)[:, np.newaxis]
        frame[...] = rows[..., np.newaxis]
        if CAMERA_FACING.get(self.camera_id) == "road":
            half = max(1, self._width // 40)
            lane = slice(self._width // 2 - half, self._width // 2 + half)
            travelled = int((time.monotonic() - self._started) * self._height)
            dashes = ((np.arange(self._height) + travelled) // max(1, self._height // 6)) % 2 == 0
            frame[dashes, lane, :] = 230
        else:
            frame[..., 0] = np.clip(frame[..., 0].astype(np.int16) + 30, 0, 255).astype(np.uint8)
        # Frame counter in the top-left corner, one bit per 4px square.
        for bit in range(min(16, self._width // 4)):
            if self._frames >> bit & 1:
                frame[:4, bit * 4 : bit * 4 + 4, :] = 255
        return frame

    def characteristics(self) -> dict[str, object]:
        info = super().characteristics()
        info.update(model="synthetic", size=(self._width, self._height), fps=self._fps)
        return info

    def close(self) -> None:
        self.closed = True


_BACKENDS: dict[str, Callable[..., BaseCamera]] = {
    "picamera": lambda camera_id, **kw: Picamera2Camera(camera_id, **kw),
    "opencv": lambda camera_id, **kw: OpenCVCamera(camera_id, **kw),
    "synthetic": lambda camera_id, **kw: SyntheticCamera(camera_id=camera_id, **kw),
}


def _resolve_choice(choice: str | None) -> str:
    if choice is None:
        choice = os.getenv("DASHCAM_CAMERA", DEFAULT_CAMERA_CHOICE)
    key = choice.strip().lower()
    return _CAMERA_ALIASES.get(key, key)


def create_camera(
    choice: str | None = None,
    *,
    camera_id: int = 0,
    resolution: tuple[int, int] | None = None,
    fps: int | None = None,
) -> BaseCamera:
    """Open the frame source for *camera_id*.

    *choice* defaults to ``DASHCAM_CAMERA``. ``"auto"`` opens the CSI sensor
    and falls back to :class:`SyntheticCamera` when Picamera2 cannot open it.
    """

    resolved = _resolve_choice(choice)
    options = {"resolution": resolution, "fps": fps}
    if resolved == "auto":
        try:
            return Picamera2Camera(int(camera_id), **options)
        except CameraError as exc:
            logger.warning("Camera %s: no CSI sensor (%s), using synthetic frames", camera_id, exc)
            return SyntheticCamera(camera_id=int(camera_id), **options)
    backend = _BACKENDS.get(resolved)
    if backend is None:
        raise CameraError(f"Unknown camera choice: {choice}", code=ErrorCode.SERVICE_START_ERROR)
    return backend(int(camera_id), **options)


__all__ = [
    "CAMERA_FACING",
    "CAMERA_SOURCES",
    "DEFAULT_CAMERA_CHOICE",
    "BaseCamera",
    "CameraError",
    "OpenCVCamera",
    "Picamera2Camera",
    "SyntheticCamera",
    "create_camera",
    "error_code_for_detail",
    "summarise_exception",
]
