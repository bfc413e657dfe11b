from __future__ import annotations

import threading
import time
from typing import Iterator

import pytest

from dash_cam.scheduler import ScheduledTask, SerialScheduler

WAIT_S = 2.0


@pytest.fixture
def worker() -> Iterator[SerialScheduler]:
    scheduler = SerialScheduler("camera-test")
    scheduler.start()
    yield scheduler
    scheduler.shutdown(wait=True)


def test_delayed_tasks_run_in_due_order(worker: SerialScheduler) -> None:
    order: list[str] = []
    done = threading.Event()

    def finish() -> None:
        order.append("late")
        done.set()

    worker.call_later(0.10, finish)
    worker.call_later(0.02, lambda: order.append("soon"))
    worker.submit(lambda: order.append("now"))

    assert done.wait(WAIT_S)
    assert order == ["now", "soon", "late"]


def test_tasks_due_together_keep_submission_order(worker: SerialScheduler) -> None:
    order: list[int] = []
    done = threading.Event()
    gate = threading.Event()

    worker.submit(lambda: gate.wait(WAIT_S))
    for position in range(5):
        worker.submit(lambda position=position: order.append(position))
    worker.submit(done.set)
    gate.set()

    assert done.wait(WAIT_S)
    assert order == [0, 1, 2, 3, 4]


def test_repeating_task_reschedules_until_cancelled_from_callback(
    worker: SerialScheduler,
) -> None:
    runs: list[float] = []
    handle: list[ScheduledTask] = []
    finished = threading.Event()

    def tick() -> None:
        runs.append(time.monotonic())
        if len(runs) == 3:
            handle[0].cancel()
            finished.set()

    handle.append(worker.call_every(0.0, 0.02, tick))

    assert finished.wait(WAIT_S)
    time.sleep(0.1)
    assert len(runs) == 3
    assert handle[0].cancelled
    assert all(later >= earlier for earlier, later in zip(runs, runs[1:]))


def test_cancelled_task_never_runs(worker: SerialScheduler) -> None:
    ran: list[str] = []
    done = threading.Event()

    task = worker.call_later(0.02, lambda: ran.append("cut_off"))
    task.cancel()
    worker.call_later(0.08, done.set)

    assert done.wait(WAIT_S)
    assert ran == []


def test_cancel_and_replace_runs_only_the_replacement(worker: SerialScheduler) -> None:
    ran: list[str] = []
    done = threading.Event()

    first = worker.call_later(0.05, lambda: ran.append("first"))
    first.cancel()
    worker.call_later(0.02, lambda: ran.append("second"))
    worker.call_later(0.10, done.set)

    assert done.wait(WAIT_S)
    assert ran == ["second"]


def test_in_worker_is_true_only_on_the_worker_thread(worker: SerialScheduler) -> None:
    seen: list[bool] = []
    done = threading.Event()

    def record_thread() -> None:
        seen.append(worker.in_worker())
        done.set()

    worker.submit(record_thread)

    assert done.wait(WAIT_S)
    assert seen == [True]
    assert worker.in_worker() is False


def test_failing_task_reports_error_and_loop_continues(caplog) -> None:
    errors: list[BaseException] = []
    scheduler = SerialScheduler("camera-errors", on_error=errors.append)
    scheduler.start()
    done = threading.Event()

    def explode() -> None:
        raise RuntimeError("encoder vanished")

    try:
        with caplog.at_level("ERROR", logger="dash_cam.scheduler"):
            scheduler.submit(explode, name="explode")
            scheduler.submit(done.set)
            assert done.wait(WAIT_S)
    finally:
        scheduler.shutdown(wait=True)

    assert [str(exc) for exc in errors] == ["encoder vanished"]
    assert "Task explode failed" in caplog.text


def test_failing_error_handler_does_not_stop_the_loop() -> None:
    def broken_handler(exc: BaseException) -> None:
        raise ValueError("handler broke")

    scheduler = SerialScheduler("camera-handler", on_error=broken_handler)
    scheduler.start()
    done = threading.Event()
    try:
        scheduler.submit(lambda: 1 / 0)
        scheduler.submit(done.set)
        assert done.wait(WAIT_S)
    finally:
        scheduler.shutdown(wait=True)


def test_shutdown_joins_thread_and_cancels_pending_tasks() -> None:
    scheduler = SerialScheduler("camera-shutdown")
    scheduler.start()
    started = threading.Event()
    scheduler.submit(started.set)
    assert started.wait(WAIT_S)
    thread = next(item for item in threading.enumerate() if item.name == "camera-shutdown")
    pending = scheduler.call_later(30.0, lambda: None)

    scheduler.shutdown(wait=True)

    assert not thread.is_alive()
    assert pending.cancelled
    assert scheduler.in_worker() is False


def test_start_is_idempotent(worker: SerialScheduler) -> None:
    worker.start()

    names = [item.name for item in threading.enumerate()]
    assert names.count("camera-test") == 1


def test_repeating_interval_must_be_positive(worker: SerialScheduler) -> None:
    with pytest.raises(ValueError):
        worker.call_every(0.0, 0.0, lambda: None)
