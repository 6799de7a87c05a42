from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path

from .errors import StorageError
from .models import DailySummary, RecentIssue, SessionDraft, SessionStatus, SummaryStatus, WorkSession

_UPDATABLE_SESSION_FIELDS = (
    "task_key",
    "task_title",
    "task_type",
    "activity_id",
    "activity_name",
    "activity_value",
    "start_time",
    "end_time",
    "duration_seconds",
    "comment",
    "status",
    "export_ref",
)

_SESSION_COLUMNS = """
    id, task_key, task_title, task_type, activity_id, activity_name, activity_value,
    start_time, end_time, duration_seconds, comment, status, export_ref
"""


def day_key(day: date | str) -> str:
    if isinstance(day, datetime):
        return day.date().isoformat()
    if isinstance(day, date):
        return day.isoformat()
    return str(day).strip()[:10]


def _now_iso() -> str:
    return datetime.now().astimezone().isoformat()


class WorklogDatabase:
    """SQLite store for work sessions, daily summaries and settings."""

    def __init__(self, db_file: Path):
        self._db_file = Path(db_file)
        self._db_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_file

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_file, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def _connection(self):
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open {self._db_file}: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS work_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_key TEXT NOT NULL,
                    task_title TEXT NOT NULL DEFAULT '',
                    task_type TEXT NOT NULL DEFAULT '',
                    activity_id INTEGER,
                    activity_name TEXT,
                    activity_value TEXT,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    duration_seconds INTEGER NOT NULL DEFAULT 0,
                    comment TEXT,
                    status TEXT NOT NULL DEFAULT 'draft'
                        CHECK(status IN ('draft', 'adjusted', 'sent')),
                    export_ref TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_work_sessions_day
                ON work_sessions(substr(start_time, 1, 10));

                CREATE INDEX IF NOT EXISTS idx_work_sessions_status
                ON work_sessions(status);

                CREATE TABLE IF NOT EXISTS daily_summaries (
                    day TEXT PRIMARY KEY,
                    total_minutes REAL NOT NULL,
                    adjusted_minutes REAL,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK(status IN ('pending', 'ready', 'sent')),
                    sent_at TEXT
                );

                CREATE TABLE IF NOT EXISTS recent_issues (
                    task_key TEXT PRIMARY KEY,
                    task_title TEXT NOT NULL,
                    task_type TEXT NOT NULL,
                    last_used_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_recent_issues_last_used
                ON recent_issues(last_used_at DESC);

                CREATE TABLE IF NOT EXISTS app_settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )
            conn.commit()

    # Sessions

    def create_session(self, draft: SessionDraft) -> int:
        if not draft.task_key:
            raise ValueError("A session needs a task key.")
        now = _now_iso()
        with self._lock, self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO work_sessions(
                    task_key, task_title, task_type,
                    activity_id, activity_name, activity_value,
                    start_time, end_time, duration_seconds,
                    comment, status, export_ref,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    draft.task_key,
                    draft.task_title or "",
                    draft.task_type or "",
                    draft.activity_id,
                    draft.activity_name,
                    draft.activity_value,
                    draft.start_time.isoformat(),
                    draft.end_time.isoformat() if draft.end_time else None,
                    int(draft.duration_seconds),
                    draft.comment,
                    draft.status,
                    draft.export_ref,
                    now,
                    now,
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def update_session(self, session_id: int, **fields) -> None:
        unknown = set(fields) - set(_UPDATABLE_SESSION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        if "status" in fields and fields["status"] not in SessionStatus.ALL:
            raise ValueError(f"Invalid session status: {fields['status']}")

        columns = []
        values = []
        for name in _UPDATABLE_SESSION_FIELDS:
            if name not in fields:
                continue
            value = fields[name]
            if isinstance(value, datetime):
                value = value.isoformat()
            columns.append(f"{name} = ?")
            values.append(value)
        columns.append("updated_at = ?")
        values.append(_now_iso())

        with self._lock, self._connection() as conn:
            conn.execute(
                f"UPDATE work_sessions SET {', '.join(columns)} WHERE id = ?",
                (*values, int(session_id)),
            )
            conn.commit()

    def get_session(self, session_id: int) -> WorkSession | None:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM work_sessions WHERE id = ?",
                (int(session_id),),
            ).fetchone()
        return self._row_to_session(row) if row is not None else None

    def get_active_session(self) -> WorkSession | None:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM work_sessions
                WHERE end_time IS NULL
                ORDER BY start_time DESC, id DESC
                LIMIT 1
                """
            ).fetchone()
        return self._row_to_session(row) if row is not None else None

    def get_sessions_by_date(self, day: date | str) -> list[WorkSession]:
        with self._lock, self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM work_sessions
                WHERE substr(start_time, 1, 10) = ?
                ORDER BY start_time ASC, id ASC
                """,
                (day_key(day),),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def get_sessions_by_range(self, start_day: date | str, end_day: date | str) -> list[WorkSession]:
        with self._lock, self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM work_sessions
                WHERE substr(start_time, 1, 10) BETWEEN ? AND ?
                ORDER BY start_time ASC, id ASC
                """,
                (day_key(start_day), day_key(end_day)),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def delete_session(self, session_id: int) -> None:
        with self._lock, self._connection() as conn:
            conn.execute("DELETE FROM work_sessions WHERE id = ?", (int(session_id),))
            conn.commit()

    # Daily summaries

    def upsert_daily_summary(self, summary: DailySummary) -> None:
        if summary.status not in SummaryStatus.ALL:
            raise ValueError(f"Invalid summary status: {summary.status}")
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO daily_summaries(day, total_minutes, adjusted_minutes, status, sent_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(day) DO UPDATE SET
                    total_minutes = excluded.total_minutes,
                    adjusted_minutes = excluded.adjusted_minutes,
                    status = excluded.status,
                    sent_at = excluded.sent_at
                """,
                (
                    day_key(summary.date),
                    float(summary.total_minutes),
                    None if summary.adjusted_minutes is None else float(summary.adjusted_minutes),
                    summary.status,
                    summary.sent_at,
                ),
            )
            conn.commit()

    def get_daily_summary(self, day: date | str) -> DailySummary | None:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                """
                SELECT day, total_minutes, adjusted_minutes, status, sent_at
                FROM daily_summaries
                WHERE day = ?
                """,
                (day_key(day),),
            ).fetchone()
        return self._row_to_summary(row) if row is not None else None

    def get_pending_summaries(self) -> list[DailySummary]:
        with self._lock, self._connection() as conn:
            rows = conn.execute(
                """
                SELECT day, total_minutes, adjusted_minutes, status, sent_at
                FROM daily_summaries
                WHERE status != 'sent'
                ORDER BY day ASC
                """
            ).fetchall()
        return [self._row_to_summary(row) for row in rows]

    def get_summaries_by_range(self, start_day: date | str, end_day: date | str) -> list[DailySummary]:
        with self._lock, self._connection() as conn:
            rows = conn.execute(
                """
                SELECT day, total_minutes, adjusted_minutes, status, sent_at
                FROM daily_summaries
                WHERE day BETWEEN ? AND ?
                ORDER BY day DESC
                """,
                (day_key(start_day), day_key(end_day)),
            ).fetchall()
        return [self._row_to_summary(row) for row in rows]

    def delete_summary(self, day: date | str) -> None:
        with self._lock, self._connection() as conn:
            conn.execute("DELETE FROM daily_summaries WHERE day = ?", (day_key(day),))
            conn.commit()

    # Recent issues

    def add_recent_issue(self, task_key: str, task_title: str, task_type: str) -> None:
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO recent_issues(task_key, task_title, task_type, last_used_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(task_key) DO UPDATE SET
                    task_title = excluded.task_title,
                    task_type = excluded.task_type,
                    last_used_at = excluded.last_used_at
                """,
                (task_key, task_title or "", task_type or "", _now_iso()),
            )
            conn.commit()

    def list_recent_issues(self, limit: int = 10) -> list[RecentIssue]:
        with self._lock, self._connection() as conn:
            rows = conn.execute(
                """
                SELECT task_key, task_title, task_type, last_used_at
                FROM recent_issues
                ORDER BY last_used_at DESC, rowid DESC
                LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
        return [
            RecentIssue(
                task_key=str(row["task_key"]),
                task_title=str(row["task_title"]),
                task_type=str(row["task_type"]),
                last_used_at=str(row["last_used_at"]),
            )
            for row in rows
        ]

    # Settings

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                "SELECT value FROM app_settings WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return default
        return str(row["value"])

    def get_setting_float(self, key: str, default: float) -> float:
        value = self.get_setting(key)
        if value is None:
            return default
        try:
            parsed = float(value)
        except ValueError:
            return default
        if parsed <= 0:
            return default
        return parsed

    def get_setting_int(self, key: str, default: int) -> int:
        value = self.get_setting(key)
        if value is None:
            return default
        try:
            return int(value.strip())
        except ValueError:
            return default

    def get_setting_bool(self, key: str, default: bool) -> bool:
        value = self.get_setting(key)
        if value is None:
            return default
        return value.strip().lower() not in {"false", "0", "no", "off"}

    def set_setting(self, key: str, value: str) -> None:
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO app_settings(key, value)
                VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> WorkSession:
        end_time = row["end_time"]
        activity_id = row["activity_id"]
        return WorkSession(
            id=int(row["id"]),
            task_key=str(row["task_key"]),
            task_title=str(row["task_title"]),
            task_type=str(row["task_type"]),
            start_time=datetime.fromisoformat(str(row["start_time"])),
            end_time=datetime.fromisoformat(str(end_time)) if end_time else None,
            duration_seconds=int(row["duration_seconds"] or 0),
            comment=row["comment"],
            status=str(row["status"]),
            export_ref=row["export_ref"],
            activity_id=int(activity_id) if activity_id is not None else None,
            activity_name=row["activity_name"],
            activity_value=row["activity_value"],
        )

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> DailySummary:
        adjusted = row["adjusted_minutes"]
        return DailySummary(
            date=str(row["day"]),
            total_minutes=float(row["total_minutes"]),
            adjusted_minutes=float(adjusted) if adjusted is not None else None,
            status=str(row["status"]),
            sent_at=row["sent_at"],
        )
