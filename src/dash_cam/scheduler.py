"""Single worker thread executing immediate, delayed and repeating tasks."""
from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Handle returned by :class:`SerialScheduler` for cancelling a task."""

    __slots__ = ("callback", "due", "interval", "name", "_cancelled")

    def __init__(
        self,
        callback: Callable[[], None],
        due: float,
        interval: float | None = None,
        name: str | None = None,
    ) -> None:
        self.callback = callback
        self.due = due
        self.interval = interval
        self.name = name or getattr(callback, "__name__", "task")
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        state = "cancelled" if self._cancelled else "pending"
        return f"<ScheduledTask {self.name} due={self.due:.3f} {state}>"


class SerialScheduler:
    """Run callbacks one at a time on a dedicated daemon thread.

    All work submitted to one scheduler is serialised, which makes it the
    single execution context for everything that mutates a camera's state.
    """

    def __init__(
        self,
        name: str,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_error: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._name = name
        self._clock = clock
        self._on_error = on_error
        self._queue: list[tuple[float, int, ScheduledTask]] = []
        self._counter = itertools.count()
        self._condition = threading.Condition()
        self._thread: threading.Thread | None = None
        self._running = False

    @property
    def name(self) -> str:
        return self._name

    def set_error_handler(self, handler: Callable[[BaseException], None] | None) -> None:
        self._on_error = handler

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._condition:
            if self._thread is not None and self._thread.is_alive():
                return
            self._running = True
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def shutdown(self, *, wait: bool = True, timeout: float | None = 5.0) -> None:
        with self._condition:
            self._running = False
            for _, _, task in self._queue:
                task.cancel()
            self._queue.clear()
            self._condition.notify_all()
            thread = self._thread
            self._thread = None
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def in_worker(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def submit(self, callback: Callable[[], None], *, name: str | None = None) -> ScheduledTask:
        return self.call_later(0.0, callback, name=name)

    def call_later(
        self, delay_s: float, callback: Callable[[], None], *, name: str | None = None
    ) -> ScheduledTask:
        task = ScheduledTask(callback, self._clock() + max(0.0, float(delay_s)), None, name)
        self._push(task)
        return task

    def call_every(
        self,
        initial_s: float,
        interval_s: float,
        callback: Callable[[], None],
        *,
        name: str | None = None,
    ) -> ScheduledTask:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        task = ScheduledTask(
            callback, self._clock() + max(0.0, float(initial_s)), float(interval_s), name
        )
        self._push(task)
        return task

    def _push(self, task: ScheduledTask) -> None:
        with self._condition:
            heapq.heappush(self._queue, (task.due, next(self._counter), task))
            self._condition.notify()

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------
    def _next_task(self) -> ScheduledTask | None:
        with self._condition:
            while self._running:
                if not self._queue:
                    self._condition.wait()
                    continue
                due, _, task = self._queue[0]
                if task.cancelled:
                    heapq.heappop(self._queue)
                    continue
                wait_time = due - self._clock()
                if wait_time > 0:
                    self._condition.wait(wait_time)
                    continue
                heapq.heappop(self._queue)
                return task
        return None

    def _run(self) -> None:
        while True:
            task = self._next_task()
            if task is None:
                return
            try:
                task.callback()
            except Exception as exc:
                logger.exception("Task %s failed on %s", task.name, self._name)
                handler = self._on_error
                if handler is not None:
                    try:
                        handler(exc)
                    except Exception:
                        logger.exception("Error handler failed on %s", self._name)
            if task.interval is not None and not task.cancelled:
                task.due = max(task.due + task.interval, self._clock())
                self._push(task)


__all__ = ["ScheduledTask", "SerialScheduler"]
