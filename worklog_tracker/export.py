"""Tempo worklog export for reconciled days."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable

import requests

from .adjustment import group_sessions_by_task
from .database import WorklogDatabase, day_key
from .errors import ExportError
from .models import DailySummary, SessionStatus, SummaryStatus, TaskGroup, WorkSession
from .timer import RECOVERY_MARKER

logger = logging.getLogger(__name__)

ACTIVITY_ATTRIBUTE_KEY = "_Activity_"
DEFAULT_TIMEOUT_SECONDS = 10


def _error_message(response: requests.Response, service: str) -> str:
    """Convert HTTP errors to user-friendly messages."""
    status = response.status_code

    messages = {
        401: f"{service}: Authentication failed. Check your API token!",
        403: f"{service}: Access denied. Check your permissions or API token!",
        404: f"{service}: Resource not found. Check the API base URL!",
        429: f"{service}: Too many requests. Wait a moment and try again.",
        500: f"{service}: Server error. The service may be temporarily unavailable.",
        502: f"{service}: Bad gateway. The service may be temporarily unavailable.",
        503: f"{service}: Service unavailable. Try again later.",
    }
    if status in messages:
        return messages[status]

    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            details = ", ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
            return f"{service}: {details}"
        if data.get("message"):
            return f"{service}: {data['message']}"
    return f"{service}: HTTP {status} - {response.reason}"


class TempoClient:
    """Client for the Tempo worklog REST API."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        account_id: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        if not api_token.strip():
            raise ValueError("Tempo API token is required.")
        if not account_id.strip():
            raise ValueError("Tempo account id is required.")
        self.base_url = base_url.rstrip("/")
        self.account_id = account_id.strip()
        self.timeout_seconds = timeout_seconds
        self._headers = {
            "Authorization": f"Bearer {api_token.strip()}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        if not url.startswith("http"):
            url = f"{self.base_url}/{url.lstrip('/')}"
        try:
            response = requests.request(
                method,
                url,
                headers=self._headers,
                timeout=self.timeout_seconds,
                **kwargs,
            )
        except requests.exceptions.ConnectionError:
            raise ExportError(f"Tempo: Cannot connect to {self.base_url}. Check your network!")
        except requests.exceptions.Timeout:
            raise ExportError("Tempo: Connection timed out. The server may be slow.")

        if not response.ok:
            logger.error("Tempo %s %s failed with HTTP %s", method, url, response.status_code)
            raise ExportError(_error_message(response, "Tempo"), response.status_code)
        return response

    def create_worklog(
        self,
        issue_key: str,
        time_spent_seconds: int,
        start_date: str,
        description: str = "",
        start_time: str | None = None,
        activity_value: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "issueKey": issue_key,
            "timeSpentSeconds": int(time_spent_seconds),
            "startDate": start_date,
            "description": description,
            "authorAccountId": self.account_id,
        }
        if start_time:
            payload["startTime"] = start_time
        if activity_value:
            payload["attributes"] = [{"key": ACTIVITY_ATTRIBUTE_KEY, "value": activity_value}]
        return self._request("POST", "/worklogs", json=payload).json()

    def update_worklog(self, worklog_id: int | str, **fields: Any) -> dict[str, Any]:
        return self._request("PUT", f"/worklogs/{worklog_id}", json=fields).json()

    def delete_worklog(self, worklog_id: int | str) -> None:
        self._request("DELETE", f"/worklogs/{worklog_id}")

    def get_worklogs(self, start_date: str, end_date: str) -> list[dict[str, Any]]:
        """Fetch the account's worklogs within a date range, following pagination."""
        worklogs: list[dict[str, Any]] = []
        url: str | None = f"/worklogs/user/{self.account_id}"
        params: dict[str, Any] = {"from": start_date, "to": end_date, "limit": 1000}

        while url:
            data = self._request("GET", url, params=params).json()
            worklogs.extend(data.get("results", []))
            url = data.get("metadata", {}).get("next")
            params = {}

        return worklogs


@dataclass(frozen=True)
class ExportResult:
    task_key: str
    activity_id: int | None
    seconds: int
    success: bool
    export_ref: str | None = None
    error: str | None = None


class DayExporter:
    """Sends one worklog per task group of a day and records the outcome."""

    def __init__(self, db: WorklogDatabase, client: TempoClient):
        self._db = db
        self._client = client

    def send_day(self, day: date | str) -> list[ExportResult]:
        key = day_key(day)
        sessions = self._db.get_sessions_by_date(key)
        unsent = [s for s in sessions if s.status != SessionStatus.SENT and not s.is_active]
        still_active = any(s.is_active for s in sessions)

        results = [self._send_group(key, group) for group in group_sessions_by_task(unsent)]

        if still_active or not all(result.success for result in results):
            logger.warning("%s not marked as sent: %d group(s) failed", key, sum(not r.success for r in results))
            return results

        previous = self._db.get_daily_summary(key)
        self._db.upsert_daily_summary(
            DailySummary(
                date=key,
                total_minutes=sum(s.duration_seconds for s in sessions) / 60,
                adjusted_minutes=previous.adjusted_minutes if previous else None,
                status=SummaryStatus.SENT,
                sent_at=datetime.now().astimezone().isoformat(),
            )
        )
        logger.info("%s sent to Tempo (%d worklogs)", key, len(results))
        return results

    def delete_exported(self, sessions: Iterable[WorkSession]) -> int:
        """Delete the worklogs behind the given sessions; returns how many were removed."""
        refs = []
        for session in sessions:
            if session.export_ref and session.export_ref not in refs:
                refs.append(session.export_ref)
        for ref in refs:
            self._client.delete_worklog(ref)
        return len(refs)

    def _send_group(self, day: str, group: TaskGroup) -> ExportResult:
        seconds = sum(session.duration_seconds for session in group.sessions)
        ref: str | None = None
        if seconds > 0:
            try:
                worklog = self._client.create_worklog(
                    issue_key=group.task_key,
                    time_spent_seconds=seconds,
                    start_date=day,
                    description=_description(group),
                    start_time=group.sessions[0].start_time.strftime("%H:%M:%S"),
                    activity_value=group.activity_value,
                )
            except ExportError as exc:
                logger.warning("Export of %s on %s failed: %s", group.task_key, day, exc)
                return ExportResult(group.task_key, group.activity_id, seconds, False, error=str(exc))
            ref = str(worklog.get("tempoWorklogId", "")) or None

        for session in group.sessions:
            self._db.update_session(session.id, export_ref=ref, status=SessionStatus.SENT)
        return ExportResult(group.task_key, group.activity_id, seconds, True, export_ref=ref)


def _description(group: TaskGroup) -> str:
    comments = []
    for session in group.sessions:
        text = (session.comment or "").replace(RECOVERY_MARKER, "").strip()
        if text and text not in comments:
            comments.append(text)
    return "; ".join(comments) or group.task_title
