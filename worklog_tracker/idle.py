from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional, Protocol

from .database import WorklogDatabase
from .scheduling import ScheduledTask, ScheduleFactory, repeating_task
from .settings import (
    IDLE_ALERT_ENABLED_KEY,
    IDLE_ALERT_END_HOUR_KEY,
    IDLE_ALERT_INTERVAL_KEY,
    IDLE_ALERT_START_HOUR_KEY,
    TrackerSettings,
)
from .win32_idle import system_idle_seconds

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SECONDS = 30.0
ACTIVITY_THRESHOLD_SECONDS = 60.0

AlertCallback = Callable[[], None]
IdleSecondsProvider = Callable[[], Optional[float]]


class RunningTimer(Protocol):
    @property
    def is_running(self) -> bool: ...


def _now() -> datetime:
    return datetime.now().astimezone()


class IdleActivityMonitor:
    """Prompts the user to start tracking when they are active but no timer runs.

    Each poll re-evaluates every condition; the only remembered state is the
    last alert time and the alert-window flag set by the presentation layer.
    """

    def __init__(
        self,
        db: WorklogDatabase,
        timer: RunningTimer,
        idle_seconds: IdleSecondsProvider = system_idle_seconds,
        schedule: ScheduleFactory = repeating_task,
        clock: Callable[[], datetime] = _now,
    ):
        self._db = db
        self._timer = timer
        self._idle_seconds = idle_seconds
        self._schedule = schedule
        self._clock = clock
        self._lock = threading.Lock()
        self._task: ScheduledTask | None = None
        self._listeners: list[AlertCallback] = []

        self.last_alert_time: datetime | None = None
        self.alert_window_open = False

        settings = TrackerSettings.load(db)
        self.enabled = settings.idle_alert_enabled
        self.alert_interval_minutes = settings.idle_alert_interval_minutes
        self.start_hour = settings.idle_alert_start_hour
        self.end_hour = settings.idle_alert_end_hour
        logger.info(
            "Idle alerts enabled=%s interval=%gmin hours=%d-%d",
            self.enabled,
            self.alert_interval_minutes,
            self.start_hour,
            self.end_hour,
        )

    def add_listener(self, callback: AlertCallback) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: AlertCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    @property
    def is_running(self) -> bool:
        return self._task is not None

    def start(self) -> bool:
        with self._lock:
            if self._task is not None:
                return False
            self._task = self._schedule(CHECK_INTERVAL_SECONDS, self.check_conditions, "worklog-idle-monitor")
            self._task.start()
        logger.info("Idle activity monitoring started")
        self.check_conditions()
        return True

    def stop(self) -> None:
        with self._lock:
            task = self._task
            self._task = None
        if task is None:
            return
        task.cancel(wait=True)
        logger.info("Idle activity monitoring stopped")

    def check_conditions(self) -> bool:
        """Evaluate every alert condition once; returns True when an alert fired."""
        reason = self._blocking_reason()
        if reason is not None:
            logger.debug("No idle alert: %s", reason)
            return False

        self.last_alert_time = self._clock()
        logger.info("User active with no timer running; requesting idle alert")
        for callback in list(self._listeners):
            try:
                callback()
            except Exception:  # noqa: BLE001
                logger.exception("Idle alert listener failed")
        return True

    def _blocking_reason(self) -> str | None:
        if not self.enabled:
            return "disabled"
        if self.alert_window_open:
            return "alert window already open"
        if self._timer.is_running:
            return "timer running"

        now = self._clock()
        if now.weekday() >= 5:
            return "weekend"
        if now.hour < self.start_hour or now.hour >= self.end_hour:
            return "outside working hours"

        idle = self._idle_seconds()
        if idle is None:
            return "idle time unavailable"
        if idle > ACTIVITY_THRESHOLD_SECONDS:
            return f"user idle for {idle:.0f}s"

        if self.last_alert_time is not None:
            minutes_since = (now - self.last_alert_time).total_seconds() / 60
            if minutes_since < self.alert_interval_minutes:
                return f"last alert {minutes_since:.1f}min ago"
        return None

    def set_alert_window_open(self, is_open: bool) -> None:
        self.alert_window_open = bool(is_open)
        logger.debug("Alert window open: %s", self.alert_window_open)

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)
        self._db.set_setting(IDLE_ALERT_ENABLED_KEY, "true" if self.enabled else "false")
        logger.info("Idle alerts enabled: %s", self.enabled)

    def set_alert_interval(self, minutes: float) -> None:
        if minutes <= 0:
            raise ValueError("Alert interval must be positive.")
        self.alert_interval_minutes = float(minutes)
        self._db.set_setting(IDLE_ALERT_INTERVAL_KEY, f"{self.alert_interval_minutes:g}")
        logger.info("Idle alert interval set to %g minutes", self.alert_interval_minutes)

    def set_working_hours(self, start_hour: int, end_hour: int) -> None:
        if not (0 <= start_hour < end_hour <= 24):
            raise ValueError("Working hours must satisfy 0 <= start < end <= 24.")
        self.start_hour = int(start_hour)
        self.end_hour = int(end_hour)
        self._db.set_setting(IDLE_ALERT_START_HOUR_KEY, str(self.start_hour))
        self._db.set_setting(IDLE_ALERT_END_HOUR_KEY, str(self.end_hour))
        logger.info("Idle alert working hours set to %d-%d", self.start_hour, self.end_hour)

    def reset_last_alert_time(self) -> None:
        """Restart the cooldown from now, e.g. when the user dismisses the alert."""
        self.last_alert_time = self._clock()
