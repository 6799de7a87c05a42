from __future__ import annotations


class WorklogError(Exception):
    """Base class for errors raised by worklog_tracker."""


class StorageError(WorklogError):
    """A read or write against the session store failed."""


class TaskGroupNotFoundError(WorklogError, LookupError):
    def __init__(self, task_key: str, day: str):
        super().__init__(f"No sessions found for {task_key} on {day}")
        self.task_key = task_key
        self.day = day


class ExportError(WorklogError):
    """User-friendly error from the time-booking service."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
