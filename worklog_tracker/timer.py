from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable

from .database import WorklogDatabase
from .models import Activity, DailySummary, SessionDraft, SessionStatus, SummaryStatus, TimerState, WorkSession
from .scheduling import ScheduledTask, ScheduleFactory, repeating_task

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0
CHECKPOINT_EVERY_TICKS = 10
DEFAULT_NOTIFICATION_INTERVAL_MINUTES = 60.0
RECOVERY_MARKER = "[To verify - recovered after crash]"

Clock = Callable[[], datetime]
PendingEvents = list[tuple[str, tuple[Any, ...]]]


def _now() -> datetime:
    return datetime.now().astimezone()


class TimerListener:
    """Observer for timer events. Override only what you need.

    Events are delivered after the engine releases its lock, so a listener
    may call back into the engine (for example ``stop()`` from
    ``on_notification_required``).
    """

    def on_started(self, session_id: int, task_key: str, task_title: str, task_type: str) -> None:
        pass

    def on_tick(self, elapsed_seconds: int) -> None:
        pass

    def on_stopped(self, session_id: int, duration_seconds: int) -> None:
        pass

    def on_paused(self, elapsed_seconds: int) -> None:
        pass

    def on_resumed(self, elapsed_seconds: int) -> None:
        pass

    def on_notification_required(self) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


class TimerEngine:
    """Tracks a single active work session.

    Every mutation (start, stop, pause, resume, tick) runs under one lock.
    Scheduled callbacks carry a token; a callback whose token was retired by
    stop or pause returns without touching the session, and retired threads
    are joined after the lock is released, before the public call returns.
    """

    def __init__(
        self,
        db: WorklogDatabase,
        notification_interval_minutes: float = DEFAULT_NOTIFICATION_INTERVAL_MINUTES,
        schedule: ScheduleFactory = repeating_task,
        clock: Clock = _now,
    ):
        if notification_interval_minutes <= 0:
            raise ValueError("notification_interval_minutes must be positive")
        self._db = db
        self._schedule = schedule
        self._clock = clock
        self._notification_interval_minutes = float(notification_interval_minutes)
        self._lock = threading.RLock()
        self._listeners: list[TimerListener] = []

        self._is_running = False
        self._is_paused = False
        self._is_shut_down = False
        self._session_id: int | None = None
        self._task_key: str | None = None
        self._start_time: datetime | None = None
        self._elapsed_seconds = 0

        self._tick_task: ScheduledTask | None = None
        self._tick_token: object | None = None
        self._notification_task: ScheduledTask | None = None
        self._notification_token: object | None = None

        self.recovered_session_id = self._recover_active_session()

    # Listeners

    def add_listener(self, listener: TimerListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: TimerListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _dispatch(self, events: PendingEvents) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for event, args in events:
            for listener in listeners:
                handler = getattr(listener, event, None)
                if handler is None:
                    continue
                try:
                    handler(*args)
                except Exception:  # noqa: BLE001
                    logger.exception("Timer listener %r failed on %s", listener, event)

    # State

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    @property
    def elapsed_seconds(self) -> int:
        return self._elapsed_seconds

    @property
    def notification_interval_minutes(self) -> float:
        return self._notification_interval_minutes

    def state(self) -> TimerState:
        with self._lock:
            return TimerState(
                is_running=self._is_running,
                is_paused=self._is_paused,
                session_id=self._session_id,
                task_key=self._task_key,
                start_time=self._start_time,
                elapsed_seconds=self._elapsed_seconds,
            )

    def current_session(self) -> WorkSession | None:
        with self._lock:
            if self._session_id is None:
                return None
            return self._db.get_session(self._session_id)

    # Transitions

    def start(
        self,
        task_key: str,
        task_title: str = "",
        task_type: str = "",
        activity: Activity | None = None,
        start_time: datetime | None = None,
    ) -> int:
        if not task_key or not task_key.strip():
            raise ValueError("A task must be selected before starting the timer.")
        task_key = task_key.strip()

        events: PendingEvents = []
        retired: list[ScheduledTask] = []
        try:
            with self._lock:
                if self._is_shut_down:
                    raise RuntimeError("Timer engine has been shut down.")
                if self._is_running:
                    self._stop_locked(retired, events)

                started_at = start_time or self._clock()
                session_id = self._db.create_session(
                    SessionDraft(
                        task_key=task_key,
                        task_title=task_title,
                        task_type=task_type,
                        start_time=started_at,
                        activity_id=activity.id if activity else None,
                        activity_name=activity.name if activity else None,
                        activity_value=activity.value if activity else None,
                        duration_seconds=0,
                        status=SessionStatus.DRAFT,
                    )
                )
                self._is_running = True
                self._is_paused = False
                self._session_id = session_id
                self._task_key = task_key
                self._start_time = started_at
                self._elapsed_seconds = 0

                self._start_tick()
                self._start_notification_timer()
                logger.info("Timer started for %s (session %s)", task_key, session_id)
                events.append(("on_started", (session_id, task_key, task_title, task_type)))

                # The session is open; failed bookkeeping must not lose its id.
                try:
                    self._db.add_recent_issue(task_key, task_title, task_type)
                    self._refresh_summary(started_at)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Bookkeeping after starting session %s failed: %s", session_id, exc)
                    events.append(("on_error", (exc,)))
        finally:
            self._join(retired)
            self._dispatch(events)
        return session_id

    def stop(self) -> int | None:
        events: PendingEvents = []
        retired: list[ScheduledTask] = []
        try:
            with self._lock:
                if not self._is_running:
                    return None
                session_id = self._session_id
                self._stop_locked(retired, events)
        finally:
            self._join(retired)
            self._dispatch(events)
        return session_id

    def pause(self) -> None:
        events: PendingEvents = []
        retired: list[ScheduledTask] = []
        with self._lock:
            if not self._is_running or self._is_paused:
                return
            self._cancel_timers(retired)
            self._is_paused = True
            logger.info("Timer paused at %ss", self._elapsed_seconds)
            events.append(("on_paused", (self._elapsed_seconds,)))
        self._join(retired)
        self._dispatch(events)

    def resume(self) -> None:
        events: PendingEvents = []
        with self._lock:
            if not self._is_running or not self._is_paused:
                return
            self._is_paused = False
            self._start_tick()
            self._start_notification_timer()
            logger.info("Timer resumed at %ss", self._elapsed_seconds)
            events.append(("on_resumed", (self._elapsed_seconds,)))
        self._dispatch(events)

    def tick(self) -> None:
        events: PendingEvents = []
        with self._lock:
            self._tick_locked(events)
        self._dispatch(events)

    def set_notification_interval(self, minutes: float) -> None:
        if minutes <= 0:
            raise ValueError("Notification interval must be positive.")
        retired: list[ScheduledTask] = []
        with self._lock:
            self._notification_interval_minutes = float(minutes)
            logger.info("Notification interval updated to %g minutes", minutes)
            if self._is_running and self._notification_task is not None:
                self._cancel_notification_timer(retired)
                self._start_notification_timer()
        self._join(retired)

    def shutdown(self) -> None:
        """Stop ticking for process exit without closing the session.

        The engine reports Idle afterwards and refuses new starts; the open
        session is picked up by crash recovery on the next startup.
        """
        retired: list[ScheduledTask] = []
        with self._lock:
            self._cancel_timers(retired)
            if self._is_running:
                logger.info("Timer shut down with session %s still open", self._session_id)
            self._clear_state()
            self._is_shut_down = True
        self._join(retired)

    # Internals

    def _stop_locked(self, retired: list[ScheduledTask], events: PendingEvents) -> None:
        session_id = self._session_id
        assert session_id is not None, "running timer without a session"
        started_at = self._start_time
        duration = self._elapsed_seconds

        # Persistence errors propagate with the engine still running so the stop can be retried.
        self._db.update_session(session_id, end_time=self._clock(), duration_seconds=duration)

        self._cancel_timers(retired)
        self._clear_state()

        logger.info("Timer stopped (session %s, %ss)", session_id, duration)
        events.append(("on_stopped", (session_id, duration)))

        if started_at is not None:
            try:
                self._refresh_summary(started_at)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Summary refresh after stopping session %s failed: %s", session_id, exc)
                events.append(("on_error", (exc,)))

    def _clear_state(self) -> None:
        self._is_running = False
        self._is_paused = False
        self._session_id = None
        self._task_key = None
        self._start_time = None
        self._elapsed_seconds = 0

    def _tick_locked(self, events: PendingEvents) -> None:
        if not self._is_running or self._is_paused:
            return
        self._elapsed_seconds += 1
        events.append(("on_tick", (self._elapsed_seconds,)))
        if self._elapsed_seconds % CHECKPOINT_EVERY_TICKS == 0:
            self._checkpoint(events)

    def _checkpoint(self, events: PendingEvents) -> None:
        session_id = self._session_id
        if session_id is None:
            return
        try:
            self._db.update_session(session_id, duration_seconds=self._elapsed_seconds)
            if self._start_time is not None:
                self._refresh_summary(self._start_time)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Checkpoint failed for session %s at %ss: %s", session_id, self._elapsed_seconds, exc)
            events.append(("on_error", (exc,)))

    def _refresh_summary(self, started_at: datetime) -> None:
        day = started_at.date().isoformat()
        sessions = self._db.get_sessions_by_date(day)
        total_minutes = sum(session.duration_seconds for session in sessions) / 60
        self._db.upsert_daily_summary(
            DailySummary(
                date=day,
                total_minutes=total_minutes,
                adjusted_minutes=None,
                status=SummaryStatus.PENDING,
                sent_at=None,
            )
        )

    def _start_tick(self) -> None:
        token = object()
        self._tick_token = token
        self._tick_task = self._schedule(TICK_SECONDS, lambda: self._scheduled_tick(token), "worklog-timer-tick")
        self._tick_task.start()

    def _scheduled_tick(self, token: object) -> None:
        events: PendingEvents = []
        with self._lock:
            if token is not self._tick_token:
                return
            self._tick_locked(events)
        self._dispatch(events)

    def _start_notification_timer(self) -> None:
        token = object()
        self._notification_token = token
        self._notification_task = self._schedule(
            self._notification_interval_minutes * 60,
            lambda: self._scheduled_notification(token),
            "worklog-timer-notification",
        )
        self._notification_task.start()

    def _scheduled_notification(self, token: object) -> None:
        with self._lock:
            if token is not self._notification_token:
                return
            logger.debug("Asking whether work on %s continues", self._task_key)
        self._dispatch([("on_notification_required", ())])

    def _cancel_notification_timer(self, retired: list[ScheduledTask]) -> None:
        task = self._notification_task
        self._notification_task = None
        self._notification_token = None
        if task is not None:
            task.cancel(wait=False)
            retired.append(task)

    def _cancel_timers(self, retired: list[ScheduledTask]) -> None:
        self._cancel_notification_timer(retired)
        task = self._tick_task
        self._tick_task = None
        self._tick_token = None
        if task is not None:
            task.cancel(wait=False)
            retired.append(task)

    @staticmethod
    def _join(tasks: list[ScheduledTask]) -> None:
        for task in tasks:
            task.join()

    def _recover_active_session(self) -> int | None:
        recovered: int | None = None
        active = self._db.get_active_session()
        while active is not None:
            comment = active.comment or ""
            if RECOVERY_MARKER not in comment:
                comment = f"{comment} {RECOVERY_MARKER}".strip()
            # At most one session may be open at a time, so the orphan is closed
            # at its last checkpoint; time after that checkpoint is unknown.
            ended_at = active.start_time + timedelta(seconds=active.duration_seconds)
            self._db.update_session(active.id, comment=comment, end_time=ended_at)
            logger.warning(
                "Recovered unfinished session %s for %s (%ss checkpointed); flagged for review",
                active.id,
                active.task_key,
                active.duration_seconds,
            )
            if recovered is None:
                recovered = active.id
            active = self._db.get_active_session()
        return recovered


def format_elapsed(seconds: int) -> str:
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
