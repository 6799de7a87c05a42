from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[Exception], None]


class ScheduledTask(Protocol):
    interval_seconds: float

    def start(self) -> bool: ...

    def cancel(self, wait: bool = True) -> None: ...

    def join(self, timeout_seconds: float = 5.0) -> None: ...


ScheduleFactory = Callable[[float, Callable[[], None], str], ScheduledTask]


class RepeatingTask:
    """Runs a callback every ``interval_seconds`` on a daemon thread.

    The first run happens one full period after ``start()``. ``cancel()`` sets
    the stop event; with ``wait=True`` it also joins the thread, unless called
    from the task's own thread.
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], None],
        name: str = "worklog-repeating-task",
        on_error: ErrorCallback | None = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = float(interval_seconds)
        self._callback = callback
        self._name = name
        self._on_error = on_error
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> bool:
        with self._lock:
            if self._thread is not None:
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run_loop, name=self._name, daemon=True)
            self._thread.start()
            return True

    def cancel(self, wait: bool = True) -> None:
        self._stop_event.set()
        if wait:
            self.join()

    def join(self, timeout_seconds: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=timeout_seconds)

    def _run_loop(self) -> None:
        next_due = time.monotonic() + self.interval_seconds

        while not self._stop_event.is_set():
            now = time.monotonic()
            if now < next_due:
                if self._stop_event.wait(next_due - now):
                    break

            try:
                self._callback()
            except Exception as exc:  # noqa: BLE001
                if self._on_error is not None:
                    self._on_error(exc)
                else:
                    logger.exception("Scheduled task %s failed", self._name)

            next_due = max(next_due + self.interval_seconds, time.monotonic() + 0.05)


def repeating_task(interval_seconds: float, callback: Callable[[], None], name: str) -> RepeatingTask:
    return RepeatingTask(interval_seconds, callback, name=name)
