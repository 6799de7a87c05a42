from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from datetime import date
from typing import Iterable, Sequence

from .database import WorklogDatabase, day_key
from .errors import TaskGroupNotFoundError
from .models import (
    AdjustedSession,
    DailyAdjustment,
    DailySummary,
    GroupKey,
    SessionStatus,
    SummaryStatus,
    TaskGroup,
    WorkSession,
)

logger = logging.getLogger(__name__)

QUARTER_HOUR_MINUTES = 15
DEFAULT_MAX_DAILY_HOURS = 7.5

_ANY_ACTIVITY = object()


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def round_to_quarter_hour(minutes: float) -> int:
    return round_half_up(minutes / QUARTER_HOUR_MINUTES) * QUARTER_HOUR_MINUTES


def group_sessions_by_task(sessions: Iterable[WorkSession]) -> list[TaskGroup]:
    """Group sessions by (task key, activity id), in order of first appearance."""
    groups: dict[GroupKey, TaskGroup] = {}
    for session in sessions:
        group = groups.get(session.group_key)
        if group is None:
            group = TaskGroup(
                task_key=session.task_key,
                task_title=session.task_title,
                task_type=session.task_type,
                activity_id=session.activity_id,
                activity_name=session.activity_name,
                activity_value=session.activity_value,
            )
            groups[session.group_key] = group
        group.sessions.append(session)
        group.original_total_seconds += session.duration_seconds
        group.adjusted_total_seconds += session.duration_seconds
    return list(groups.values())


def distribute_remainder_to_groups(groups: Sequence[TaskGroup], difference: float) -> float:
    """Spread ``difference`` minutes over the groups in quarter-hour steps.

    Groups are visited largest first and round-robin; a negative step skips any
    group that would drop below zero. Stops once less than one quarter hour is
    left, and returns that residual.
    """
    if not groups:
        return difference

    ordered = sorted(groups, key=lambda group: group.adjusted_total_seconds, reverse=True)
    remaining = difference
    index = 0
    skipped_in_a_row = 0

    while abs(remaining) >= QUARTER_HOUR_MINUTES:
        group = ordered[index]
        step = QUARTER_HOUR_MINUTES if remaining > 0 else -QUARTER_HOUR_MINUTES

        if step < 0 and group.adjusted_total_seconds < QUARTER_HOUR_MINUTES * 60:
            skipped_in_a_row += 1
            if skipped_in_a_row >= len(ordered):
                break
        else:
            group.adjusted_total_seconds += step * 60
            group.was_adjusted = True
            remaining -= step
            skipped_in_a_row = 0

        index = (index + 1) % len(ordered)

    return remaining


def apportion_seconds(durations: Sequence[int], target_seconds: int) -> list[int]:
    """Scale ``durations`` to sum to ``target_seconds``, each within a second of exact.

    Every value is rounded to the nearest second; any rounding drift is then
    corrected one second at a time on the values with the largest rounding
    remainder, earliest first on ties.
    """
    count = len(durations)
    if count == 0:
        return []

    total = sum(durations)
    if total == 0:
        base, extra = divmod(int(target_seconds), count)
        return [base + (1 if index < extra else 0) for index in range(count)]

    exact = [duration * target_seconds / total for duration in durations]
    rounded = [round_half_up(value) for value in exact]
    drift = int(target_seconds) - sum(rounded)
    if drift:
        direction = 1 if drift > 0 else -1
        order = sorted(range(count), key=lambda i: (exact[i] - rounded[i]) * direction, reverse=True)
        for i in order[: abs(drift)]:
            rounded[i] += direction
    return rounded


class DailyReconciliationEngine:
    """Scales a day's recorded time toward the daily cap.

    Stateless between calls; every call reloads the day's sessions. Calls that
    touch the same date are serialized by a per-date lock.
    """

    def __init__(self, db: WorklogDatabase, max_daily_hours: float = DEFAULT_MAX_DAILY_HOURS):
        self._db = db
        self._cap_minutes = 0.0
        self.set_max_daily_hours(max_daily_hours)
        self._locks_guard = threading.Lock()
        # day -> [lock, number of callers using it]; entries go away when unused.
        self._day_locks: dict[str, list] = {}

    @property
    def cap_minutes(self) -> float:
        return self._cap_minutes

    @property
    def max_daily_hours(self) -> float:
        return self._cap_minutes / 60

    def set_max_daily_hours(self, hours: float) -> None:
        if hours <= 0:
            raise ValueError("max_daily_hours must be positive")
        self._cap_minutes = float(hours) * 60
        logger.info("Daily cap set to %g hours (%g minutes)", hours, self._cap_minutes)

    @contextmanager
    def _day_lock(self, day: str):
        with self._locks_guard:
            entry = self._day_locks.get(day)
            if entry is None:
                entry = self._day_locks[day] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._day_locks[day]

    # Analysis

    def analyze_day(self, day: date | str) -> DailyAdjustment:
        key = day_key(day)
        with self._day_lock(key):
            sessions = self._db.get_sessions_by_date(key)
            return self.adjust_day_sessions(key, sessions)

    def analyze_pending_days(self) -> list[DailyAdjustment]:
        """Analyze every unsent day; only days over the cap are scaled."""
        adjustments = []
        for summary in self._db.get_pending_summaries():
            with self._day_lock(summary.date):
                sessions = self._db.get_sessions_by_date(summary.date)
                total_minutes = _total_minutes(sessions)
                if total_minutes > self._cap_minutes:
                    adjustments.append(self.adjust_day_sessions(summary.date, sessions))
                else:
                    adjustments.append(_unchanged(summary.date, sessions, total_minutes))
        return adjustments

    def adjust_day_sessions(self, day: str, sessions: Sequence[WorkSession]) -> DailyAdjustment:
        total_minutes = _total_minutes(sessions)
        if total_minutes == 0 or abs(total_minutes - self._cap_minutes) < 1:
            return _unchanged(day, sessions, total_minutes)

        groups = group_sessions_by_task(sessions)
        coefficient = self._cap_minutes / total_minutes

        adjusted_total = 0
        for group in groups:
            adjusted_minutes = round_to_quarter_hour(group.original_minutes * coefficient)
            group.adjusted_total_seconds = adjusted_minutes * 60
            group.was_adjusted = group.adjusted_total_seconds != group.original_total_seconds
            adjusted_total += adjusted_minutes

        difference = self._cap_minutes - adjusted_total
        if difference != 0:
            residual = distribute_remainder_to_groups(groups, difference)
            if residual:
                logger.debug("%s: %g minutes left below one quarter hour", day, residual)

        adjusted_sessions: list[AdjustedSession] = []
        for group in groups:
            durations = [session.duration_seconds for session in group.sessions]
            for session, seconds in zip(group.sessions, apportion_seconds(durations, group.adjusted_total_seconds)):
                adjusted_sessions.append(
                    AdjustedSession(
                        original=session,
                        adjusted=session.with_duration(seconds),
                        was_adjusted=seconds != session.duration_seconds,
                    )
                )

        logger.info(
            "%s: %.1f min scaled by %.4f toward %g min across %d task groups",
            day,
            total_minutes,
            coefficient,
            self._cap_minutes,
            len(groups),
        )
        return DailyAdjustment(
            date=day,
            original_total_minutes=total_minutes,
            adjusted_total_minutes=self._cap_minutes,
            sessions=adjusted_sessions,
            task_groups=groups,
            needs_adjustment=True,
        )

    # Persistence

    def apply_day_adjustment(self, adjustment: DailyAdjustment) -> None:
        if not adjustment.needs_adjustment:
            return
        with self._day_lock(adjustment.date):
            for item in adjustment.sessions:
                if item.was_adjusted:
                    self._db.update_session(
                        item.original.id,
                        duration_seconds=item.adjusted.duration_seconds,
                        status=SessionStatus.ADJUSTED,
                    )
            self._db.upsert_daily_summary(
                DailySummary(
                    date=adjustment.date,
                    total_minutes=adjustment.original_total_minutes,
                    adjusted_minutes=adjustment.adjusted_total_minutes,
                    status=SummaryStatus.READY,
                    sent_at=None,
                )
            )
        logger.info("Applied adjustment for %s", adjustment.date)

    def apply_adjustments(self, adjustments: Iterable[DailyAdjustment]) -> None:
        for adjustment in adjustments:
            self.apply_day_adjustment(adjustment)

    def update_task_group_duration(
        self,
        day: date | str,
        task_key: str,
        new_duration_seconds: int,
        activity_id: int | None | object = _ANY_ACTIVITY,
    ) -> list[WorkSession]:
        """Set one task group's total by hand, independent of the cap.

        Without ``activity_id`` every session of the task matches; pass ``None``
        to target only sessions without an activity.
        """
        if new_duration_seconds < 0:
            raise ValueError("Duration cannot be negative.")
        new_duration_seconds = int(new_duration_seconds)
        key = day_key(day)

        with self._day_lock(key):
            sessions = [
                session
                for session in self._db.get_sessions_by_date(key)
                if session.task_key == task_key
                and (activity_id is _ANY_ACTIVITY or session.activity_id == activity_id)
            ]
            if not sessions:
                raise TaskGroupNotFoundError(task_key, key)

            original_total = sum(session.duration_seconds for session in sessions)
            if original_total == 0:
                per_session = round_half_up(new_duration_seconds / len(sessions))
                new_durations = [per_session] * len(sessions)
            else:
                new_durations = []
                remaining = new_duration_seconds
                for index, session in enumerate(sessions):
                    if index == len(sessions) - 1:
                        new_durations.append(remaining)
                    else:
                        share = round_half_up(new_duration_seconds * session.duration_seconds / original_total)
                        new_durations.append(share)
                        remaining -= share

            updated = []
            for session, seconds in zip(sessions, new_durations):
                self._db.update_session(session.id, duration_seconds=seconds, status=SessionStatus.ADJUSTED)
                updated.append(session.with_duration(seconds))

            total_minutes = _total_minutes(self._db.get_sessions_by_date(key))
            self._db.upsert_daily_summary(
                DailySummary(
                    date=key,
                    total_minutes=total_minutes,
                    adjusted_minutes=total_minutes,
                    status=SummaryStatus.READY,
                    sent_at=None,
                )
            )

        logger.info("Set %s on %s to %ss", task_key, key, new_duration_seconds)
        return updated

    def reopen_day(self, day: date | str) -> list[WorkSession]:
        """Return a sent day to editing.

        Returns the sessions that were sent, with their export references, so
        the caller can remove the matching worklogs from the export system.
        """
        key = day_key(day)
        with self._day_lock(key):
            sessions = self._db.get_sessions_by_date(key)
            reopened = [session for session in sessions if session.status == SessionStatus.SENT]
            for session in reopened:
                self._db.update_session(session.id, status=SessionStatus.DRAFT, export_ref=None)

            self._db.upsert_daily_summary(
                DailySummary(
                    date=key,
                    total_minutes=_total_minutes(sessions),
                    adjusted_minutes=None,
                    status=SummaryStatus.PENDING,
                    sent_at=None,
                )
            )
        logger.info("Reopened %s (%d sessions back to draft)", key, len(reopened))
        return reopened

    # Display

    @staticmethod
    def adjustment_summary(adjustment: DailyAdjustment) -> str:
        original_hours = adjustment.original_total_minutes / 60
        adjusted_hours = adjustment.adjusted_total_minutes / 60
        if not adjustment.needs_adjustment:
            return f"{adjustment.date} - {original_hours:.2f}h (no adjustment needed)"
        return f"{adjustment.date} - {original_hours:.2f}h -> {adjusted_hours:.2f}h (adjusted)"


def format_minutes(minutes: float) -> str:
    total = round_half_up(max(0.0, minutes))
    hours, mins = divmod(total, 60)
    return f"{hours}h{mins:02d}"


def _total_minutes(sessions: Iterable[WorkSession]) -> float:
    return sum(session.duration_seconds for session in sessions) / 60


def _unchanged(day: str, sessions: Sequence[WorkSession], total_minutes: float) -> DailyAdjustment:
    return DailyAdjustment(
        date=day,
        original_total_minutes=total_minutes,
        adjusted_total_minutes=total_minutes,
        sessions=[AdjustedSession(original=session, adjusted=session, was_adjusted=False) for session in sessions],
        task_groups=group_sessions_by_task(sessions),
        needs_adjustment=False,
    )
