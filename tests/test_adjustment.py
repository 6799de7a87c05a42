from __future__ import annotations

import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from worklog_tracker.adjustment import (
    DailyReconciliationEngine,
    apportion_seconds,
    distribute_remainder_to_groups,
    format_minutes,
    group_sessions_by_task,
    round_to_quarter_hour,
)
from worklog_tracker.database import WorklogDatabase
from worklog_tracker.errors import TaskGroupNotFoundError
from worklog_tracker.models import DailySummary, SessionDraft, SessionStatus, SummaryStatus, TaskGroup

DAY = "2026-03-02"
MONDAY_8AM = datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)


def _group(task_key: str, minutes: int) -> TaskGroup:
    return TaskGroup(
        task_key=task_key,
        task_title="",
        task_type="",
        activity_id=None,
        activity_name=None,
        activity_value=None,
        original_total_seconds=minutes * 60,
        adjusted_total_seconds=minutes * 60,
    )


class QuantizationTests(unittest.TestCase):
    def test_round_to_quarter_hour(self) -> None:
        self.assertEqual(round_to_quarter_hour(73.3), 75)
        self.assertEqual(round_to_quarter_hour(7.5), 15)
        self.assertEqual(round_to_quarter_hour(7.4), 0)
        self.assertEqual(round_to_quarter_hour(22.5), 30)
        self.assertEqual(round_to_quarter_hour(300), 300)

    def test_format_minutes(self) -> None:
        self.assertEqual(format_minutes(450), "7h30")
        self.assertEqual(format_minutes(59.6), "1h00")
        self.assertEqual(format_minutes(5), "0h05")

    def test_apportion_seconds_sums_exactly(self) -> None:
        shares = apportion_seconds([1000, 2000, 3001], 4500)
        self.assertEqual(sum(shares), 4500)
        for original, share in zip([1000, 2000, 3001], shares):
            self.assertLessEqual(abs(share - original * 4500 / 6001), 1)

        self.assertEqual(apportion_seconds([0, 0, 0], 100), [34, 33, 33])
        self.assertEqual(apportion_seconds([], 100), [])


class RemainderDistributionTests(unittest.TestCase):
    def test_positive_difference_goes_largest_first(self) -> None:
        small, large, medium = _group("S", 30), _group("L", 120), _group("M", 60)

        residual = distribute_remainder_to_groups([small, large, medium], 40)

        self.assertEqual(residual, 10)
        self.assertEqual(large.adjusted_minutes, 135)
        self.assertEqual(medium.adjusted_minutes, 75)
        self.assertEqual(small.adjusted_minutes, 30)
        self.assertEqual([large.was_adjusted, medium.was_adjusted, small.was_adjusted], [True, True, False])

    def test_round_robin_wraps(self) -> None:
        first, second = _group("A", 60), _group("B", 45)

        residual = distribute_remainder_to_groups([first, second], 45)

        self.assertEqual(residual, 0)
        self.assertEqual(first.adjusted_minutes, 90)
        self.assertEqual(second.adjusted_minutes, 60)

    def test_negative_steps_skip_groups_below_a_quarter_hour(self) -> None:
        big, tiny = _group("BIG", 60), _group("TINY", 10)

        residual = distribute_remainder_to_groups([big, tiny], -40)

        self.assertEqual(residual, -10)
        self.assertEqual(big.adjusted_minutes, 30)
        self.assertEqual(tiny.adjusted_minutes, 10)
        self.assertFalse(tiny.was_adjusted)

    def test_stops_when_every_group_is_skipped(self) -> None:
        groups = [_group("A", 10), _group("B", 5)]
        self.assertEqual(distribute_remainder_to_groups(groups, -30), -30)
        self.assertEqual([g.adjusted_minutes for g in groups], [10, 5])

    def test_small_difference_is_residual(self) -> None:
        group = _group("A", 60)
        self.assertEqual(distribute_remainder_to_groups([group], -5), -5)
        self.assertEqual(group.adjusted_minutes, 60)
        self.assertFalse(group.was_adjusted)

    def test_ties_keep_input_order(self) -> None:
        runs = []
        for _ in range(3):
            groups = [_group("A", 60), _group("B", 60), _group("C", 60)]
            distribute_remainder_to_groups(groups, 30)
            runs.append([g.adjusted_minutes for g in groups])
        self.assertEqual(runs[0], [75, 75, 60])
        self.assertEqual(runs[0], runs[1])
        self.assertEqual(runs[1], runs[2])


class DailyReconciliationEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db = WorklogDatabase(Path(self._tmp.name) / "worklog.sqlite3")
        self.engine = DailyReconciliationEngine(self.db, max_daily_hours=7.5)
        self._cursor = MONDAY_8AM

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _add(self, task_key: str, seconds: int, activity_id: int | None = None, day_offset: int = 0) -> int:
        start = self._cursor + timedelta(days=day_offset)
        self._cursor += timedelta(seconds=seconds + 60)
        return self.db.create_session(
            SessionDraft(
                task_key=task_key,
                task_title=task_key,
                task_type="Task",
                start_time=start,
                end_time=start + timedelta(seconds=seconds),
                duration_seconds=seconds,
                activity_id=activity_id,
                activity_name=f"activity {activity_id}" if activity_id is not None else None,
                activity_value=f"act-{activity_id}" if activity_id is not None else None,
            )
        )

    def _groups(self, adjustment) -> dict:
        return {group.key: group for group in adjustment.task_groups}

    def test_scales_two_groups_down_to_the_cap(self) -> None:
        self._add("PROJ-1", 400 * 60)
        self._add("PROJ-2", 200 * 60)

        adjustment = self.engine.analyze_day(DAY)

        self.assertTrue(adjustment.needs_adjustment)
        self.assertEqual(adjustment.original_total_minutes, 600)
        self.assertEqual(adjustment.adjusted_total_minutes, 450)
        groups = self._groups(adjustment)
        self.assertEqual(groups[("PROJ-1", None)].adjusted_minutes, 300)
        self.assertEqual(groups[("PROJ-2", None)].adjusted_minutes, 150)

    def test_equal_groups_scale_without_remainder(self) -> None:
        self._add("PROJ-1", 300 * 60)
        self._add("PROJ-2", 300 * 60)

        adjustment = self.engine.analyze_day(DAY)

        minutes = [group.adjusted_minutes for group in adjustment.task_groups]
        self.assertEqual(minutes, [225, 225])
        self.assertEqual(sum(minutes), 450)

    def test_sub_quarter_residual_is_accepted(self) -> None:
        engine = DailyReconciliationEngine(self.db, max_daily_hours=220 / 60)
        for key in ("PROJ-1", "PROJ-2", "PROJ-3"):
            self._add(key, 100 * 60)

        adjustment = engine.analyze_day(DAY)

        self.assertTrue(adjustment.needs_adjustment)
        self.assertEqual([group.adjusted_minutes for group in adjustment.task_groups], [75, 75, 75])
        self.assertAlmostEqual(adjustment.adjusted_total_minutes, 220)

    def test_remainder_distribution_reaches_the_cap(self) -> None:
        self._add("PROJ-1", 250 * 60)
        self._add("PROJ-2", 200 * 60)
        self._add("PROJ-3", 150 * 60)

        adjustment = self.engine.analyze_day(DAY)

        # 187.5 -> 195, 150 -> 150, 112.5 -> 120 totals 465; one -15 step on the largest.
        minutes = [group.adjusted_minutes for group in adjustment.task_groups]
        self.assertEqual(minutes, [180, 150, 120])
        self.assertEqual(round(sum(group.adjusted_total_seconds for group in adjustment.task_groups) / 60), 450)
        for group in adjustment.task_groups:
            self.assertEqual(group.adjusted_minutes % 15, 0)

    def test_grows_a_short_day_toward_the_cap(self) -> None:
        self._add("PROJ-1", 300 * 60)

        adjustment = self.engine.analyze_day(DAY)

        self.assertTrue(adjustment.needs_adjustment)
        self.assertEqual(adjustment.task_groups[0].adjusted_minutes, 450)

    def test_within_a_minute_of_the_cap_is_a_noop(self) -> None:
        self._add("PROJ-1", 449 * 60 + 30)

        adjustment = self.engine.analyze_day(DAY)

        self.assertFalse(adjustment.needs_adjustment)
        self.assertEqual(adjustment.adjusted_total_minutes, adjustment.original_total_minutes)
        self.assertTrue(all(not item.was_adjusted for item in adjustment.sessions))

    def test_day_without_sessions_is_a_noop(self) -> None:
        adjustment = self.engine.analyze_day(DAY)
        self.assertFalse(adjustment.needs_adjustment)
        self.assertEqual(adjustment.sessions, [])
        self.assertEqual(
            DailyReconciliationEngine.adjustment_summary(adjustment),
            "2026-03-02 - 0.00h (no adjustment needed)",
        )

    def test_null_activity_groups_separately(self) -> None:
        self._add("PROJ-1", 100 * 60)
        self._add("PROJ-1", 100 * 60, activity_id=7)
        self._add("PROJ-1", 50 * 60)

        groups = group_sessions_by_task(self.db.get_sessions_by_date(DAY))

        self.assertEqual([group.key for group in groups], [("PROJ-1", None), ("PROJ-1", 7)])
        self.assertEqual(groups[0].original_minutes, 150)
        self.assertEqual(len(groups[0].sessions), 2)

    def test_sessions_scale_with_their_group(self) -> None:
        self._add("PROJ-1", 1000)
        self._add("PROJ-1", 2000)
        self._add("PROJ-1", 3001)
        self._add("PROJ-2", 30000)

        adjustment = self.engine.analyze_day(DAY)

        for group in adjustment.task_groups:
            ratio = group.adjusted_total_seconds / group.original_total_seconds
            items = [item for item in adjustment.sessions if item.original.group_key == group.key]
            self.assertEqual(sum(item.adjusted.duration_seconds for item in items), group.adjusted_total_seconds)
            for item in items:
                expected = item.original.duration_seconds * ratio
                self.assertLessEqual(abs(item.adjusted.duration_seconds - expected), 1)
                self.assertEqual(item.was_adjusted, item.adjusted.duration_seconds != item.original.duration_seconds)

    def test_analysis_is_deterministic(self) -> None:
        for key, minutes in (("A", 95), ("B", 95), ("C", 200), ("D", 33)):
            self._add(key, minutes * 60)

        first = self.engine.analyze_day(DAY)
        second = self.engine.analyze_day(DAY)

        self.assertEqual(
            [item.adjusted.duration_seconds for item in first.sessions],
            [item.adjusted.duration_seconds for item in second.sessions],
        )

    def test_apply_persists_adjusted_sessions_and_summary(self) -> None:
        first = self._add("PROJ-1", 400 * 60)
        second = self._add("PROJ-2", 200 * 60)

        adjustment = self.engine.analyze_day(DAY)
        self.engine.apply_day_adjustment(adjustment)

        stored = {s.id: s for s in self.db.get_sessions_by_date(DAY)}
        self.assertEqual(stored[first].duration_seconds, 300 * 60)
        self.assertEqual(stored[second].duration_seconds, 150 * 60)
        self.assertEqual({s.status for s in stored.values()}, {SessionStatus.ADJUSTED})

        summary = self.db.get_daily_summary(DAY)
        assert summary is not None
        self.assertEqual(summary.status, SummaryStatus.READY)
        self.assertEqual(summary.total_minutes, 600)
        self.assertEqual(summary.adjusted_minutes, 450)
        self.assertIsNone(summary.sent_at)
        self.assertEqual(
            DailyReconciliationEngine.adjustment_summary(adjustment),
            "2026-03-02 - 10.00h -> 7.50h (adjusted)",
        )

    def test_apply_noop_adjustment_writes_nothing(self) -> None:
        self._add("PROJ-1", 450 * 60)
        self.engine.apply_adjustments([self.engine.analyze_day(DAY)])
        self.assertIsNone(self.db.get_daily_summary(DAY))
        self.assertEqual(self.db.get_sessions_by_date(DAY)[0].status, SessionStatus.DRAFT)

    def test_analyze_pending_days_only_scales_days_over_the_cap(self) -> None:
        self._add("PROJ-1", 600 * 60)
        self._add("PROJ-2", 300 * 60, day_offset=1)
        self._add("PROJ-3", 900 * 60, day_offset=2)
        self.db.upsert_daily_summary(DailySummary(date="2026-03-02", total_minutes=600))
        self.db.upsert_daily_summary(DailySummary(date="2026-03-03", total_minutes=300))
        self.db.upsert_daily_summary(DailySummary(date="2026-03-04", total_minutes=900, status=SummaryStatus.SENT))

        adjustments = self.engine.analyze_pending_days()

        self.assertEqual([a.date for a in adjustments], ["2026-03-02", "2026-03-03"])
        self.assertEqual([a.needs_adjustment for a in adjustments], [True, False])

    def test_manual_override_splits_proportionally(self) -> None:
        first = self._add("PROJ-1", 600)
        second = self._add("PROJ-1", 300)
        other = self._add("PROJ-2", 1200)

        updated = self.engine.update_task_group_duration(DAY, "PROJ-1", 450)

        self.assertEqual([s.duration_seconds for s in updated], [300, 150])
        stored = {s.id: s for s in self.db.get_sessions_by_date(DAY)}
        self.assertEqual(stored[first].duration_seconds, 300)
        self.assertEqual(stored[second].duration_seconds, 150)
        self.assertEqual(stored[first].status, SessionStatus.ADJUSTED)
        self.assertEqual(stored[other].status, SessionStatus.DRAFT)

        summary = self.db.get_daily_summary(DAY)
        assert summary is not None
        self.assertEqual(summary.status, SummaryStatus.READY)
        self.assertEqual(summary.total_minutes, (450 + 1200) / 60)

    def test_manual_override_last_session_absorbs_remainder(self) -> None:
        self._add("PROJ-1", 100)
        self._add("PROJ-1", 100)
        self._add("PROJ-1", 100)

        updated = self.engine.update_task_group_duration(DAY, "PROJ-1", 1000)

        self.assertEqual([s.duration_seconds for s in updated], [333, 333, 334])

    def test_manual_override_of_empty_group_splits_evenly(self) -> None:
        self._add("PROJ-1", 0)
        self._add("PROJ-1", 0)

        updated = self.engine.update_task_group_duration(DAY, "PROJ-1", 900)

        self.assertEqual([s.duration_seconds for s in updated], [450, 450])

    def test_manual_override_filters_by_activity(self) -> None:
        plain = self._add("PROJ-1", 600)
        with_activity = self._add("PROJ-1", 600, activity_id=2)

        self.engine.update_task_group_duration(DAY, "PROJ-1", 60, activity_id=None)

        stored = {s.id: s for s in self.db.get_sessions_by_date(DAY)}
        self.assertEqual(stored[plain].duration_seconds, 60)
        self.assertEqual(stored[with_activity].duration_seconds, 600)

    def test_manual_override_without_sessions(self) -> None:
        self._add("PROJ-1", 600)
        with self.assertRaises(TaskGroupNotFoundError) as ctx:
            self.engine.update_task_group_duration(DAY, "PROJ-404", 60)
        self.assertIsInstance(ctx.exception, LookupError)
        with self.assertRaises(ValueError):
            self.engine.update_task_group_duration(DAY, "PROJ-1", -1)

    def test_reopen_day_returns_sent_sessions_to_draft(self) -> None:
        sent = self._add("PROJ-1", 600)
        draft = self._add("PROJ-2", 600)
        self.db.update_session(sent, status=SessionStatus.SENT, export_ref="5001")
        self.db.upsert_daily_summary(
            DailySummary(DAY, total_minutes=20, adjusted_minutes=20, status=SummaryStatus.SENT, sent_at="x")
        )

        reopened = self.engine.reopen_day(DAY)

        self.assertEqual([(s.id, s.export_ref) for s in reopened], [(sent, "5001")])
        stored = {s.id: s for s in self.db.get_sessions_by_date(DAY)}
        self.assertEqual(stored[sent].status, SessionStatus.DRAFT)
        self.assertIsNone(stored[sent].export_ref)
        self.assertEqual(stored[draft].status, SessionStatus.DRAFT)

        summary = self.db.get_daily_summary(DAY)
        assert summary is not None
        self.assertEqual(summary.status, SummaryStatus.PENDING)
        self.assertIsNone(summary.adjusted_minutes)
        self.assertIsNone(summary.sent_at)

    def test_same_date_reconciliation_is_serialized(self) -> None:
        self._add("PROJ-1", 600)
        held = threading.Event()
        release = threading.Event()
        finished = threading.Event()

        def hold_day() -> None:
            with self.engine._day_lock(DAY):
                held.set()
                release.wait(timeout=5)

        def override() -> None:
            self.engine.update_task_group_duration(DAY, "PROJ-1", 300)
            finished.set()

        holder = threading.Thread(target=hold_day)
        holder.start()
        self.assertTrue(held.wait(timeout=5))
        writer = threading.Thread(target=override)
        writer.start()
        try:
            self.assertFalse(finished.wait(timeout=0.3))
            stored = self.db.get_sessions_by_date(DAY)[0]
            self.assertEqual(stored.duration_seconds, 600)

            other_day = self.engine.analyze_day("2026-03-03")
            self.assertFalse(other_day.needs_adjustment)
        finally:
            release.set()
            holder.join(timeout=5)
            writer.join(timeout=5)

        self.assertTrue(finished.is_set())
        self.assertEqual(self.db.get_sessions_by_date(DAY)[0].duration_seconds, 300)
        self.assertEqual(self.engine._day_locks, {})

    def test_max_daily_hours_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            self.engine.set_max_daily_hours(0)
        self.engine.set_max_daily_hours(8)
        self.assertEqual(self.engine.cap_minutes, 480)


if __name__ == "__main__":
    unittest.main()
