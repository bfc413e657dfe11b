from __future__ import annotations

import logging

import pytest

from dash_cam.events import (
    ErrorCode,
    EventBus,
    FaultKind,
    NoticeCode,
    Notification,
    classify_fault,
)


@pytest.mark.parametrize(
    ("code", "kind"),
    [
        (ErrorCode.CAMERA_ACCESS_EXCEPTION, FaultKind.HARDWARE_ACCESS),
        (ErrorCode.CAMERA_DISCONNECTED, FaultKind.TRANSIENT_HARDWARE),
        (ErrorCode.ERROR_SYSTEM_CAMERA_SERVICE, FaultKind.FATAL_SYSTEM_SERVICE),
        (ErrorCode.CAPTURE_SESSION_CONFIGURE_FAILED, FaultKind.CONFIGURATION),
        (ErrorCode.MEDIA_STORAGE_ERROR, FaultKind.STORAGE),
        (ErrorCode.MEDIA_RECORDER_ERROR, FaultKind.RECORDER),
        (ErrorCode.ERROR_LOW_FPS, FaultKind.LOW_FPS),
        (ErrorCode.UNHANDLED_EXCEPTION_ERROR, FaultKind.UNHANDLED),
    ],
)
def test_error_codes_map_to_fault_kinds(code: ErrorCode, kind: FaultKind) -> None:
    assert classify_fault(code) is kind


def test_every_error_code_is_classified() -> None:
    for code in ErrorCode:
        assert isinstance(classify_fault(int(code)), FaultKind)


def test_notification_payload_uses_code_names() -> None:
    notice = Notification.notice(1, NoticeCode.CUT_OFF_COMPLETED, "chunk", metadata={"a": 1})
    payload = notice.to_dict()

    assert payload["notice_code"] == "CUT_OFF_COMPLETED"
    assert payload["metadata"] == {"a": 1}
    assert "error_code" not in payload

    error = Notification.error(0, ErrorCode.CAMERA_ERROR, "boom").to_dict()
    assert error["error_code"] == "CAMERA_ERROR"
    assert error["fault_kind"] == "transient_hardware"


def test_event_bus_isolates_failing_subscribers(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    received: list[Notification] = []

    def broken(_: Notification) -> None:
        raise RuntimeError("subscriber failed")

    bus.subscribe(broken)
    unsubscribe = bus.subscribe(received.append)

    with caplog.at_level(logging.ERROR):
        bus.publish(Notification.notice(0, NoticeCode.SERVICE_STARTED))

    assert len(received) == 1
    assert "subscriber" in caplog.text

    unsubscribe()
    bus.publish(Notification.notice(0, NoticeCode.SERVICE_STOPPED))
    assert len(received) == 1
