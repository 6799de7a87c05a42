from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Optional


class SessionStatus:
    DRAFT = "draft"
    ADJUSTED = "adjusted"
    SENT = "sent"

    ALL = (DRAFT, ADJUSTED, SENT)


class SummaryStatus:
    PENDING = "pending"
    READY = "ready"
    SENT = "sent"

    ALL = (PENDING, READY, SENT)


GroupKey = tuple[str, Optional[int]]


@dataclass(frozen=True)
class Activity:
    id: int
    name: str
    value: str


@dataclass(frozen=True)
class SessionDraft:
    task_key: str
    task_title: str
    task_type: str
    start_time: datetime
    activity_id: int | None = None
    activity_name: str | None = None
    activity_value: str | None = None
    end_time: datetime | None = None
    duration_seconds: int = 0
    comment: str | None = None
    status: str = SessionStatus.DRAFT
    export_ref: str | None = None


@dataclass(frozen=True)
class WorkSession:
    id: int
    task_key: str
    task_title: str
    task_type: str
    start_time: datetime
    end_time: datetime | None
    duration_seconds: int
    comment: str | None = None
    status: str = SessionStatus.DRAFT
    export_ref: str | None = None
    activity_id: int | None = None
    activity_name: str | None = None
    activity_value: str | None = None

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def day(self) -> date:
        return self.start_time.date()

    @property
    def group_key(self) -> GroupKey:
        return (self.task_key, self.activity_id)

    def with_duration(self, duration_seconds: int) -> WorkSession:
        return replace(self, duration_seconds=int(duration_seconds))


@dataclass(frozen=True)
class DailySummary:
    date: str
    total_minutes: float
    adjusted_minutes: float | None = None
    status: str = SummaryStatus.PENDING
    sent_at: str | None = None


@dataclass(frozen=True)
class RecentIssue:
    task_key: str
    task_title: str
    task_type: str
    last_used_at: str


@dataclass
class TaskGroup:
    """Sessions of one day sharing a task key and activity id."""

    task_key: str
    task_title: str
    task_type: str
    activity_id: int | None
    activity_name: str | None
    activity_value: str | None
    sessions: list[WorkSession] = field(default_factory=list)
    original_total_seconds: int = 0
    adjusted_total_seconds: int = 0
    was_adjusted: bool = False

    @property
    def key(self) -> GroupKey:
        return (self.task_key, self.activity_id)

    @property
    def original_minutes(self) -> float:
        return self.original_total_seconds / 60

    @property
    def adjusted_minutes(self) -> float:
        return self.adjusted_total_seconds / 60


@dataclass(frozen=True)
class AdjustedSession:
    original: WorkSession
    adjusted: WorkSession
    was_adjusted: bool


@dataclass(frozen=True)
class DailyAdjustment:
    date: str
    original_total_minutes: float
    adjusted_total_minutes: float
    sessions: list[AdjustedSession]
    task_groups: list[TaskGroup]
    needs_adjustment: bool


@dataclass(frozen=True)
class TimerState:
    is_running: bool
    is_paused: bool
    session_id: int | None
    task_key: str | None
    start_time: datetime | None
    elapsed_seconds: int
