from __future__ import annotations

import logging
import subprocess

import pytest

from dash_cam.events import ErrorCode, InfoCode, NoticeCode, Notification
from dash_cam.watchdog import Watchdog, WatchdogState, kill_processes


class FakeActions:
    def __init__(self) -> None:
        self.enabled = True
        self.active = False
        self.calls: list[tuple[str, int]] = []

    def is_enabled(self, camera_id: int) -> bool:
        return self.enabled

    def is_session_active(self, camera_id: int) -> bool:
        return self.active

    def start(self, camera_id: int) -> None:
        self.calls.append(("start", camera_id))

    def restart(self, camera_id: int) -> None:
        self.calls.append(("restart", camera_id))

    def reboot(self, camera_id: int) -> None:
        self.calls.append(("reboot", camera_id))


@pytest.fixture
def actions() -> FakeActions:
    return FakeActions()


@pytest.fixture
def watchdog(scheduler, actions) -> Watchdog:
    return Watchdog(1, scheduler=scheduler, actions=actions, clock=lambda: scheduler.clock)


def _fault(watchdog: Watchdog, code: ErrorCode = ErrorCode.CAMERA_ERROR) -> None:
    watchdog.handle(Notification.error(1, code, "failure"))


def test_fault_restarts_after_grace_delay(watchdog, scheduler, actions) -> None:
    _fault(watchdog)
    assert watchdog.state is WatchdogState.RESTART_PENDING

    scheduler.advance(4.9)
    assert actions.calls == []

    scheduler.advance(0.1)
    assert actions.calls == [("restart", 1)]
    assert watchdog.state is WatchdogState.HEALTHY


def test_service_stopped_runs_pending_recovery_at_once(watchdog, scheduler, actions) -> None:
    _fault(watchdog, ErrorCode.MEDIA_RECORDER_ERROR)

    watchdog.handle(Notification.notice(1, NoticeCode.SERVICE_STOPPED))
    assert actions.calls == [("restart", 1)]

    scheduler.advance(10)
    assert actions.calls == [("restart", 1)]


def test_service_stopped_without_fault_is_ignored(watchdog, actions) -> None:
    watchdog.handle(Notification.notice(1, NoticeCode.SERVICE_STOPPED))

    assert actions.calls == []


def test_ten_faults_in_window_still_restart(watchdog, scheduler, actions) -> None:
    for _ in range(10):
        _fault(watchdog)

    assert watchdog.state is WatchdogState.RESTART_PENDING
    scheduler.advance(5)
    assert actions.calls == [("restart", 1)]


def test_more_than_ten_faults_escalate_to_reboot(watchdog, scheduler, actions) -> None:
    for _ in range(11):
        _fault(watchdog)

    assert watchdog.state is WatchdogState.REBOOT_PENDING
    scheduler.advance(5)

    assert actions.calls == [("reboot", 1)]
    assert watchdog.errors == []
    assert watchdog.state is WatchdogState.HEALTHY


def test_faults_outside_window_are_forgotten(watchdog, scheduler, actions) -> None:
    for _ in range(10):
        _fault(watchdog)
    scheduler.advance(31)

    _fault(watchdog)

    assert len(watchdog.errors) == 1
    assert watchdog.state is WatchdogState.RESTART_PENDING
    scheduler.advance(5)
    assert actions.calls == [("restart", 1), ("restart", 1)]


def test_system_service_fault_reboots_immediately(watchdog, scheduler, actions) -> None:
    _fault(watchdog, ErrorCode.ERROR_SYSTEM_CAMERA_SERVICE)

    assert watchdog.state is WatchdogState.REBOOT_PENDING
    scheduler.advance(5)
    assert actions.calls == [("reboot", 1)]


def test_storage_fault_blocks_restarts_until_mounted(watchdog, scheduler, actions) -> None:
    watchdog.start()
    _fault(watchdog, ErrorCode.MEDIA_STORAGE_ERROR)

    assert watchdog.storage_blocked
    assert watchdog.state is WatchdogState.HEALTHY
    scheduler.advance(30)
    assert actions.calls == []

    watchdog.on_storage_mounted()
    scheduler.advance(10)
    assert actions.calls == [("start", 1)]


def test_liveness_starts_enabled_idle_camera(watchdog, scheduler, actions) -> None:
    watchdog.start()
    actions.active = True
    scheduler.advance(10)
    assert actions.calls == []

    actions.enabled = False
    actions.active = False
    scheduler.advance(10)
    assert actions.calls == []

    actions.enabled = True
    scheduler.advance(10)
    assert actions.calls == [("start", 1)]

    watchdog.stop()
    scheduler.advance(30)
    assert actions.calls == [("start", 1)]


def test_notifications_for_other_cameras_are_ignored(watchdog, scheduler) -> None:
    watchdog.on_notification(Notification.error(0, ErrorCode.CAMERA_ERROR, "other"))
    scheduler.advance(0)

    assert watchdog.state is WatchdogState.HEALTHY

    watchdog.on_notification(Notification.error(1, ErrorCode.CAMERA_ERROR, "mine"))
    assert watchdog.state is WatchdogState.HEALTHY
    scheduler.advance(0)
    assert watchdog.state is WatchdogState.RESTART_PENDING


def test_low_capture_rate_sample_is_logged(watchdog, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="dash_cam.watchdog"):
        watchdog.handle(Notification.info(1, InfoCode.CAPTURE_SAMPLE, "4.50,3.2,61.00"))

    assert "4.50 fps" in caplog.text
    assert watchdog.status()["last_fps"] == pytest.approx(4.5)
    assert watchdog.state is WatchdogState.HEALTHY


def test_kill_processes_reports_matches() -> None:
    commands: list[list[str]] = []

    def runner(command, **kwargs):
        commands.append(command)
        name = command[-1]
        if name == "missing-tool":
            raise FileNotFoundError(command[0])
        if name == "slow":
            raise subprocess.TimeoutExpired(command, kwargs["timeout"])
        return subprocess.CompletedProcess(command, 0 if name == "cameraserver" else 1, "", "")

    killed = kill_processes(
        ["cameraserver", "mediaserver", "missing-tool", "slow"], runner=runner
    )

    assert killed == ["cameraserver"]
    assert commands[0] == ["pkill", "-f", "cameraserver"]
    assert len(commands) == 4
