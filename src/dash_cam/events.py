"""Typed notifications exchanged between recording components."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable

logger = logging.getLogger(__name__)


class ErrorCode(IntEnum):
    """Fault codes reported by a recording session."""

    CAMERA_ACCESS_EXCEPTION = 0
    CAMERA_PERMISSION_NOT_GRANTED = 1
    CAMERA_ERROR = 2
    CAMERA_STATE_ERROR = 3
    CAPTURE_SESSION_CONFIGURE_FAILED = 4
    CAPTURE_SESSION_CONFIGURE_EXCEPTION = 5
    SERVICE_START_ERROR = 6
    MEDIA_STORAGE_ERROR = 7
    CAMERA_DISCONNECTED = 8
    MEDIA_RECORDER_ERROR = 9
    START_RECORDING_EXCEPTION = 10
    ERROR_SYSTEM_CAMERA_SERVICE = 11
    CAPTURE_MODULE_ERROR = 12
    VIDEO_IS_BLACK_ERROR = 13
    UNHANDLED_EXCEPTION_ERROR = 14
    ERROR_SAVING_CREATION_TIME = 15
    ERROR_LOW_FPS = 16


class NoticeCode(IntEnum):
    """Lifecycle notices emitted by a recording session."""

    CUT_OFF_COMPLETED = 0
    CAPTURE_COMPLETED = 1
    SERVICE_STARTED = 2
    SERVICE_STOPPED = 3
    SERVICE_IS_TRIMMING = 4


class InfoCode(IntEnum):
    """Informational samples emitted by a recording session."""

    CAPTURE_SAMPLE = 0


class FaultKind(str, Enum):
    """Coarse fault classes used to pick a recovery strategy."""

    HARDWARE_ACCESS = "hardware_access"
    TRANSIENT_HARDWARE = "transient_hardware"
    FATAL_SYSTEM_SERVICE = "fatal_system_service"
    CONFIGURATION = "configuration"
    STORAGE = "storage"
    RECORDER = "recorder"
    LOW_FPS = "low_fps"
    UNHANDLED = "unhandled"


_FAULT_KINDS: dict[ErrorCode, FaultKind] = {
    ErrorCode.CAMERA_ACCESS_EXCEPTION: FaultKind.HARDWARE_ACCESS,
    ErrorCode.CAMERA_PERMISSION_NOT_GRANTED: FaultKind.HARDWARE_ACCESS,
    ErrorCode.CAMERA_ERROR: FaultKind.TRANSIENT_HARDWARE,
    ErrorCode.CAMERA_STATE_ERROR: FaultKind.TRANSIENT_HARDWARE,
    ErrorCode.CAMERA_DISCONNECTED: FaultKind.TRANSIENT_HARDWARE,
    ErrorCode.VIDEO_IS_BLACK_ERROR: FaultKind.TRANSIENT_HARDWARE,
    ErrorCode.ERROR_SYSTEM_CAMERA_SERVICE: FaultKind.FATAL_SYSTEM_SERVICE,
    ErrorCode.CAPTURE_SESSION_CONFIGURE_FAILED: FaultKind.CONFIGURATION,
    ErrorCode.CAPTURE_SESSION_CONFIGURE_EXCEPTION: FaultKind.CONFIGURATION,
    ErrorCode.SERVICE_START_ERROR: FaultKind.CONFIGURATION,
    ErrorCode.CAPTURE_MODULE_ERROR: FaultKind.CONFIGURATION,
    ErrorCode.MEDIA_STORAGE_ERROR: FaultKind.STORAGE,
    ErrorCode.ERROR_SAVING_CREATION_TIME: FaultKind.STORAGE,
    ErrorCode.MEDIA_RECORDER_ERROR: FaultKind.RECORDER,
    ErrorCode.START_RECORDING_EXCEPTION: FaultKind.RECORDER,
    ErrorCode.ERROR_LOW_FPS: FaultKind.LOW_FPS,
    ErrorCode.UNHANDLED_EXCEPTION_ERROR: FaultKind.UNHANDLED,
}


def classify_fault(code: ErrorCode | int) -> FaultKind:
    """Return the :class:`FaultKind` for an error *code*."""

    return _FAULT_KINDS[ErrorCode(code)]


@dataclass(slots=True)
class Notification:
    """Message broadcast by a session to the watchdog and other listeners."""

    camera_id: int
    message: str | None = None
    error_code: ErrorCode | None = None
    notice_code: NoticeCode | None = None
    info_code: InfoCode | None = None
    metadata: dict[str, object] | None = None
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def error(
        cls, camera_id: int, code: ErrorCode, message: str | None = None
    ) -> "Notification":
        return cls(camera_id=camera_id, message=message, error_code=ErrorCode(code))

    @classmethod
    def notice(
        cls,
        camera_id: int,
        code: NoticeCode,
        message: str | None = None,
        *,
        metadata: dict[str, object] | None = None,
    ) -> "Notification":
        return cls(
            camera_id=camera_id,
            message=message,
            notice_code=NoticeCode(code),
            metadata=metadata,
        )

    @classmethod
    def info(cls, camera_id: int, code: InfoCode, message: str) -> "Notification":
        return cls(camera_id=camera_id, message=message, info_code=InfoCode(code))

    @property
    def fault_kind(self) -> FaultKind | None:
        if self.error_code is None:
            return None
        return classify_fault(self.error_code)

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "camera_id": self.camera_id,
            "timestamp_ms": self.timestamp_ms,
            "message": self.message,
        }
        if self.error_code is not None:
            payload["error_code"] = self.error_code.name
            payload["fault_kind"] = classify_fault(self.error_code).value
        if self.notice_code is not None:
            payload["notice_code"] = self.notice_code.name
        if self.info_code is not None:
            payload["info_code"] = self.info_code.name
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


Subscriber = Callable[[Notification], None]


class EventBus:
    """Synchronous publish/subscribe channel for :class:`Notification` values."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* and return a function that removes it again."""

        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._subscribers.remove(callback)
                except ValueError:
                    pass

        return _unsubscribe

    def publish(self, notification: Notification) -> None:
        if notification.error_code is not None:
            logger.error(
                "Camera %s fault %s: %s",
                notification.camera_id,
                notification.error_code.name,
                notification.message,
            )
        else:
            logger.debug("Camera %s notification %s", notification.camera_id, notification.to_dict())
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(notification)
            except Exception:
                logger.exception("Notification subscriber %r failed", callback)


__all__ = [
    "ErrorCode",
    "EventBus",
    "FaultKind",
    "InfoCode",
    "NoticeCode",
    "Notification",
    "classify_fault",
]
