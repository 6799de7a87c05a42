from __future__ import annotations

import argparse
import logging
import time
from datetime import date
from pathlib import Path

from . import __version__
from .adjustment import DailyReconciliationEngine, format_minutes
from .database import WorklogDatabase
from .errors import WorklogError
from .export import DayExporter, TempoClient
from .idle import IdleActivityMonitor
from .models import Activity, DailyAdjustment
from .paths import database_path, ensure_directories
from .settings import TrackerSettings
from .timer import TimerEngine, TimerListener, format_elapsed
from .win32_idle import system_idle_seconds

logger = logging.getLogger(__name__)


class _ConsoleListener(TimerListener):
    def on_started(self, session_id: int, task_key: str, task_title: str, task_type: str) -> None:
        print(f"Tracking {task_key} {task_title}".rstrip() + f" (session #{session_id}). Ctrl+C to stop.")

    def on_tick(self, elapsed_seconds: int) -> None:
        if elapsed_seconds % 60 == 0:
            print(f"  {format_elapsed(elapsed_seconds)}")

    def on_notification_required(self) -> None:
        print("Still working on this task? Ctrl+C to stop.")

    def on_stopped(self, session_id: int, duration_seconds: int) -> None:
        print(f"Stopped session #{session_id} after {format_elapsed(duration_seconds)}.")

    def on_error(self, error: Exception) -> None:
        print(f"Checkpoint failed: {error}")


def _open_database(args: argparse.Namespace) -> WorklogDatabase:
    if args.db:
        return WorklogDatabase(Path(args.db))
    ensure_directories()
    return WorklogDatabase(database_path())


def _print_adjustment(adjustment: DailyAdjustment) -> None:
    print(DailyReconciliationEngine.adjustment_summary(adjustment))
    for group in adjustment.task_groups:
        activity = f" [{group.activity_name}]" if group.activity_name else ""
        marker = "*" if group.was_adjusted else " "
        print(
            f" {marker} {group.task_key}{activity}: "
            f"{format_minutes(group.original_minutes)} -> {format_minutes(group.adjusted_minutes)}"
        )


def _cmd_track(db: WorklogDatabase, settings: TrackerSettings, args: argparse.Namespace) -> int:
    timer = TimerEngine(db, notification_interval_minutes=settings.notification_interval_minutes)
    if timer.recovered_session_id is not None:
        print(f"Session #{timer.recovered_session_id} was left open and has been flagged for review.")
    timer.add_listener(_ConsoleListener())

    activity = None
    if args.activity_id is not None:
        activity = Activity(id=args.activity_id, name=args.activity_name or "", value=args.activity_value or "")

    timer.start(args.task_key, args.title, args.type, activity=activity)
    try:
        while timer.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        timer.stop()
    return 0


class _StoredTimerState:
    """Reports a timer as running while the store holds an open session, whichever process owns it."""

    def __init__(self, db: WorklogDatabase):
        self._db = db

    @property
    def is_running(self) -> bool:
        return self._db.get_active_session() is not None


def _cmd_watch(db: WorklogDatabase) -> int:
    monitor = IdleActivityMonitor(db, _StoredTimerState(db), idle_seconds=system_idle_seconds)

    def prompt() -> None:
        print("You seem to be working but no timer is running. Start one with: worklog-tracker track <ISSUE>")

    monitor.add_listener(prompt)
    if not monitor.enabled:
        print("Idle alerts are disabled (idle_alert_enabled = false).")
    print(f"Watching for untracked work between {monitor.start_hour}:00 and {monitor.end_hour}:00. Ctrl+C to stop.")
    monitor.start()
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()
    return 0


def _cmd_sessions(db: WorklogDatabase, args: argparse.Namespace) -> int:
    sessions = db.get_sessions_by_date(args.day)
    if not sessions:
        print(f"No sessions on {args.day}.")
        return 0
    for session in sessions:
        end = session.end_time.strftime("%H:%M") if session.end_time else "..."
        comment = f"  {session.comment}" if session.comment else ""
        print(
            f"#{session.id} {session.start_time:%H:%M}-{end} {session.task_key:<12} "
            f"{format_elapsed(session.duration_seconds)} {session.status}{comment}"
        )
    return 0


def _cmd_analyze(engine: DailyReconciliationEngine, args: argparse.Namespace) -> int:
    if args.pending:
        for adjustment in engine.analyze_pending_days():
            _print_adjustment(adjustment)
        return 0
    _print_adjustment(engine.analyze_day(args.day))
    return 0


def _cmd_apply(engine: DailyReconciliationEngine, args: argparse.Namespace) -> int:
    adjustment = engine.analyze_day(args.day)
    _print_adjustment(adjustment)
    engine.apply_day_adjustment(adjustment)
    return 0


def _cmd_set_duration(engine: DailyReconciliationEngine, args: argparse.Namespace) -> int:
    kwargs = {}
    if args.no_activity:
        kwargs["activity_id"] = None
    elif args.activity_id is not None:
        kwargs["activity_id"] = args.activity_id
    updated = engine.update_task_group_duration(args.day, args.task_key, int(round(args.minutes * 60)), **kwargs)
    print(f"Updated {len(updated)} session(s) of {args.task_key} on {args.day}.")
    return 0


def _tempo_client(settings: TrackerSettings) -> TempoClient:
    return TempoClient(settings.tempo_base_url, settings.tempo_api_token, settings.tempo_account_id)


def _cmd_reopen(db: WorklogDatabase, settings: TrackerSettings, engine: DailyReconciliationEngine, args) -> int:
    reopened = engine.reopen_day(args.day)
    print(f"Reopened {args.day}: {len(reopened)} session(s) back to draft.")
    if args.delete_remote and reopened:
        removed = DayExporter(db, _tempo_client(settings)).delete_exported(reopened)
        print(f"Deleted {removed} worklog(s) from Tempo.")
    return 0


def _cmd_send(db: WorklogDatabase, settings: TrackerSettings, args: argparse.Namespace) -> int:
    results = DayExporter(db, _tempo_client(settings)).send_day(args.day)
    for result in results:
        status = f"ok ({result.export_ref})" if result.success else f"FAILED: {result.error}"
        print(f"{result.task_key}: {format_elapsed(result.seconds)} {status}")
    return 0 if all(result.success for result in results) else 1


def _cmd_recent(db: WorklogDatabase, settings: TrackerSettings) -> int:
    for issue in db.list_recent_issues(settings.recent_issues_count):
        print(f"{issue.task_key:<12} {issue.task_type:<8} {issue.task_title}")
    return 0


def _cmd_config(db: WorklogDatabase, args: argparse.Namespace) -> int:
    if args.key and args.value is not None:
        db.set_setting(args.key, args.value)
    settings = TrackerSettings.load(db)
    for name, value in vars(settings).items():
        if name == "tempo_api_token" and value:
            value = "********"
        print(f"{name} = {value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="worklog-tracker")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--db", help="Path to the SQLite database")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    track = sub.add_parser("track", help="Track a task in the foreground until Ctrl+C")
    track.add_argument("task_key")
    track.add_argument("--title", default="")
    track.add_argument("--type", default="")
    track.add_argument("--activity-id", type=int)
    track.add_argument("--activity-name")
    track.add_argument("--activity-value")

    today = date.today().isoformat()

    sub.add_parser("watch", help="Prompt to start tracking when you work without a timer")

    sessions = sub.add_parser("sessions", help="List the sessions of a day")
    sessions.add_argument("day", nargs="?", default=today)

    analyze = sub.add_parser("analyze", help="Show the adjustment toward the daily cap")
    analyze.add_argument("day", nargs="?", default=today)
    analyze.add_argument("--pending", action="store_true", help="Analyze every unsent day")

    apply = sub.add_parser("apply", help="Apply the adjustment for a day")
    apply.add_argument("day", nargs="?", default=today)

    set_duration = sub.add_parser("set-duration", help="Override a task group's total")
    set_duration.add_argument("day")
    set_duration.add_argument("task_key")
    set_duration.add_argument("minutes", type=float)
    set_duration.add_argument("--activity-id", type=int)
    set_duration.add_argument("--no-activity", action="store_true", help="Only sessions without an activity")

    reopen = sub.add_parser("reopen", help="Reopen a sent day for editing")
    reopen.add_argument("day")
    reopen.add_argument("--delete-remote", action="store_true", help="Also delete the worklogs from Tempo")

    send = sub.add_parser("send", help="Export a day to Tempo")
    send.add_argument("day", nargs="?", default=today)

    sub.add_parser("recent", help="List recently tracked issues")

    config = sub.add_parser("config", help="Show or change a setting")
    config.add_argument("key", nargs="?")
    config.add_argument("value", nargs="?")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.version:
        print(__version__)
        return 0
    if not args.command:
        parser.print_help()
        return 2

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        db = _open_database(args)
        settings = TrackerSettings.load(db)
        engine = DailyReconciliationEngine(db, max_daily_hours=settings.max_daily_hours)

        if args.command == "track":
            return _cmd_track(db, settings, args)
        if args.command == "watch":
            return _cmd_watch(db)
        if args.command == "sessions":
            return _cmd_sessions(db, args)
        if args.command == "analyze":
            return _cmd_analyze(engine, args)
        if args.command == "apply":
            return _cmd_apply(engine, args)
        if args.command == "set-duration":
            return _cmd_set_duration(engine, args)
        if args.command == "reopen":
            return _cmd_reopen(db, settings, engine, args)
        if args.command == "send":
            return _cmd_send(db, settings, args)
        if args.command == "recent":
            return _cmd_recent(db, settings)
        if args.command == "config":
            return _cmd_config(db, args)
    except (WorklogError, ValueError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}")
        return 1

    parser.error(f"Unknown command: {args.command}")
    return 2
