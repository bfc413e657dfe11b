"""Fault escalation and recovery for camera recording sessions."""
from __future__ import annotations

import collections
import logging
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Iterable, Protocol

from .events import ErrorCode, FaultKind, InfoCode, NoticeCode, Notification, classify_fault
from .scheduler import ScheduledTask, SerialScheduler
from .telemetry import parse_capture_sample

logger = logging.getLogger(__name__)

GRACE_DELAY_S = 5.0
ERROR_WINDOW_S = 30.0
MAX_ERRORS = 10
LIVENESS_INTERVAL_S = 10.0
LOW_FPS_WARNING = 10.0

DEFAULT_DAEMON_NAMES: tuple[str, ...] = ("cameraserver", "mediaserver")


class WatchdogState(str, Enum):
    HEALTHY = "healthy"
    RESTART_PENDING = "restart_pending"
    REBOOT_PENDING = "reboot_pending"


@dataclass(frozen=True, slots=True)
class CameraFault:
    """One fault observed for a camera."""

    camera_id: int
    code: ErrorCode
    timestamp_ms: int
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "camera_id": self.camera_id,
            "code": self.code.name,
            "timestamp_ms": self.timestamp_ms,
            "detail": self.detail,
        }


class RecoveryActions(Protocol):
    """Operations the watchdog may invoke on the recording service."""

    def is_enabled(self, camera_id: int) -> bool: ...

    def is_session_active(self, camera_id: int) -> bool: ...

    def start(self, camera_id: int) -> None: ...

    def restart(self, camera_id: int) -> None: ...

    def reboot(self, camera_id: int) -> None: ...


def kill_processes(
    names: Iterable[str],
    *,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    timeout: float = 5.0,
) -> list[str]:
    """Send ``pkill -f`` for each process name and return those that matched."""

    killed: list[str] = []
    for name in names:
        try:
            result = runner(
                ["pkill", "-f", name],
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            logger.warning("pkill is not available; unable to stop %s", name)
            continue
        except subprocess.TimeoutExpired:
            logger.warning("Timed out stopping %s", name)
            continue
        if result.returncode == 0:
            logger.info("Killed processes matching %s", name)
            killed.append(name)
        else:
            logger.debug("No processes matched %s", name)
    return killed


class Watchdog:
    """Decide between restart and reboot for one camera.

    Faults are not acted upon immediately: a grace timer gives the session
    time to finish closing, and the ``SERVICE_STOPPED`` notice short-cuts the
    timer once the close has completed. All state lives on the camera's
    scheduler thread.
    """

    def __init__(
        self,
        camera_id: int,
        *,
        scheduler: SerialScheduler,
        actions: RecoveryActions,
        clock: Callable[[], float] = time.time,
        grace_delay_s: float = GRACE_DELAY_S,
        error_window_s: float = ERROR_WINDOW_S,
        max_errors: int = MAX_ERRORS,
        liveness_interval_s: float = LIVENESS_INTERVAL_S,
    ) -> None:
        self.camera_id = int(camera_id)
        self._scheduler = scheduler
        self._actions = actions
        self._clock = clock
        self._grace_delay_s = float(grace_delay_s)
        self._error_window_ms = int(error_window_s * 1000)
        self._max_errors = int(max_errors)
        self._liveness_interval_s = float(liveness_interval_s)
        self._state = WatchdogState.HEALTHY
        self._errors: Deque[CameraFault] = collections.deque()
        self._timer: ScheduledTask | None = None
        self._liveness_task: ScheduledTask | None = None
        self._storage_blocked = False
        self._last_fps: float | None = None

    # ------------------------------------------------------------------
    @property
    def state(self) -> WatchdogState:
        return self._state

    @property
    def errors(self) -> list[CameraFault]:
        return list(self._errors)

    @property
    def storage_blocked(self) -> bool:
        return self._storage_blocked

    def status(self) -> dict[str, object]:
        return {
            "state": self._state.value,
            "recent_errors": len(self._errors),
            "storage_blocked": self._storage_blocked,
            "last_fps": self._last_fps,
        }

    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._liveness_task is not None:
            return
        self._liveness_task = self._scheduler.call_every(
            self._liveness_interval_s,
            self._liveness_interval_s,
            self._check_liveness,
            name=f"watchdog-{self.camera_id}",
        )

    def stop(self) -> None:
        for task in (self._liveness_task, self._timer):
            if task is not None:
                task.cancel()
        self._liveness_task = None
        self._timer = None
        self._state = WatchdogState.HEALTHY

    def on_notification(self, notification: Notification) -> None:
        """EventBus subscriber; hands the notification to the camera's worker."""

        if notification.camera_id != self.camera_id:
            return
        if self._scheduler.in_worker():
            self.handle(notification)
        else:
            self._scheduler.submit(lambda: self.handle(notification), name="watchdog-event")

    def on_storage_mounted(self) -> None:
        if self._storage_blocked:
            logger.info("Storage available again for camera %s", self.camera_id)
        self._storage_blocked = False

    # ------------------------------------------------------------------
    def handle(self, notification: Notification) -> None:
        if notification.error_code is not None:
            self._on_fault(notification.error_code, notification.message)
        elif notification.notice_code == NoticeCode.SERVICE_STOPPED:
            self._on_stopped()
        elif notification.info_code == InfoCode.CAPTURE_SAMPLE:
            self._on_sample(notification.message)

    def _on_fault(self, code: ErrorCode, detail: str | None) -> None:
        now_ms = int(self._clock() * 1000)
        self._errors.append(CameraFault(self.camera_id, ErrorCode(code), now_ms, detail))
        self._prune(now_ms)
        kind = classify_fault(code)
        if kind is FaultKind.STORAGE:
            logger.warning(
                "Camera %s storage fault %s; waiting for storage to be mounted",
                self.camera_id,
                ErrorCode(code).name,
            )
            self._storage_blocked = True
            return
        if kind is FaultKind.FATAL_SYSTEM_SERVICE or len(self._errors) > self._max_errors:
            self._request_reboot(len(self._errors))
            return
        if self._state is WatchdogState.HEALTHY:
            logger.info(
                "Camera %s fault %s; restart in %.1fs",
                self.camera_id,
                ErrorCode(code).name,
                self._grace_delay_s,
            )
            self._state = WatchdogState.RESTART_PENDING
            self._arm_timer()

    def _request_reboot(self, error_count: int) -> None:
        if self._state is WatchdogState.REBOOT_PENDING:
            return
        logger.warning(
            "Camera %s escalating to reboot (%d recent errors)", self.camera_id, error_count
        )
        self._state = WatchdogState.REBOOT_PENDING
        self._arm_timer()

    def _arm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._scheduler.call_later(
            self._grace_delay_s, self._run_recovery, name=f"recovery-{self.camera_id}"
        )

    def _on_stopped(self) -> None:
        if self._state is WatchdogState.HEALTHY:
            return
        logger.debug("Camera %s stopped; running %s now", self.camera_id, self._state.value)
        self._run_recovery()

    def _run_recovery(self) -> None:
        state = self._state
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._state = WatchdogState.HEALTHY
        if state is WatchdogState.REBOOT_PENDING:
            self._errors.clear()
            self._actions.reboot(self.camera_id)
        elif state is WatchdogState.RESTART_PENDING:
            self._actions.restart(self.camera_id)

    def _on_sample(self, message: str | None) -> None:
        parsed = parse_capture_sample(message)
        if parsed is None:
            return
        fps, power, temperature = parsed
        self._last_fps = fps
        if fps < LOW_FPS_WARNING:
            logger.warning(
                "Camera %s capture rate %.2f fps (power %.1f W, %.1f C)",
                self.camera_id,
                fps,
                power,
                temperature,
            )

    def _prune(self, now_ms: int) -> None:
        cutoff = now_ms - self._error_window_ms
        while self._errors and self._errors[0].timestamp_ms < cutoff:
            self._errors.popleft()

    def _check_liveness(self) -> None:
        if self._state is not WatchdogState.HEALTHY or self._storage_blocked:
            return
        if not self._actions.is_enabled(self.camera_id):
            return
        if self._actions.is_session_active(self.camera_id):
            return
        logger.info("Camera %s has no active session; starting", self.camera_id)
        self._actions.start(self.camera_id)


__all__ = [
    "DEFAULT_DAEMON_NAMES",
    "CameraFault",
    "RecoveryActions",
    "Watchdog",
    "WatchdogState",
    "kill_processes",
]
