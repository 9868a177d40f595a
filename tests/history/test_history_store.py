import asyncio
import copy
import os
import time
import unittest
from datetime import date, datetime, timedelta, timezone
from typing import Any
from unittest.mock import patch

from pomodoro_log.history.models import CountedValue, HistoryImportError, ImportData, PomodoroHistory
from pomodoro_log.history.store import (
    CSV_HEADER,
    HistoryStore,
    compute_historical_stats,
    create_csv_data,
    create_export_data,
    get_daily_groups,
    render_csv,
)
from pomodoro_log.history.utils import date_to_timestamp, day_start_ms, session_records
from pomodoro_log.storage.persistence import HISTORY_KEY, HistoryStorage

NOW = datetime(2024, 3, 13, 12, 0, tzinfo=timezone.utc)  # a Wednesday


def minute(*args: int, tz: timezone = timezone.utc) -> int:
    return date_to_timestamp(datetime(*args, tzinfo=tz))


def history_of(*records: tuple[int, int, int]) -> PomodoroHistory:
    return PomodoroHistory(
        completion_timestamps=[ts for ts, _, _ in records],
        durations=[CountedValue(value=d, count=1) for _, d, _ in records],
        timezones=[CountedValue(value=tz, count=1) for _, _, tz in records],
    )


class MemoryStore:
    """Key-value store that yields at every call, like a real async backend."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        await asyncio.sleep(0)
        return copy.deepcopy(self.data.get(key))

    async def set(self, key: str, value: Any) -> None:
        await asyncio.sleep(0)
        self.data[key] = copy.deepcopy(value)

    async def remove(self, key: str) -> None:
        await asyncio.sleep(0)
        self.data.pop(key, None)


class HistoryStoreTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.kv = MemoryStore()
        self.store = HistoryStore(HistoryStorage(self.kv))

    async def stored(self) -> PomodoroHistory:
        return await HistoryStorage(self.kv).load_history()

    async def put(self, history: PomodoroHistory) -> None:
        await HistoryStorage(self.kv).save_history(history)


class AddCompletedSessionTests(HistoryStoreTestCase):
    async def test_same_minute_is_recorded_once(self) -> None:
        with patch("time.time", return_value=NOW.timestamp() + 5):
            self.assertTrue(await self.store.add_completed_session(25))
        with patch("time.time", return_value=NOW.timestamp() + 50):
            self.assertFalse(await self.store.add_completed_session(25))

        history = await self.stored()
        self.assertEqual([date_to_timestamp(NOW)], history.completion_timestamps)
        self.assertEqual([CountedValue(value=25, count=1)], history.durations)

    async def test_concurrent_completions_in_one_minute_record_once(self) -> None:
        with patch("time.time", return_value=NOW.timestamp()):
            results = await asyncio.gather(
                self.store.add_completed_session(25),
                self.store.add_completed_session(25),
            )

        self.assertEqual([True, False], sorted(results, reverse=True))
        self.assertEqual(1, (await self.stored()).session_count)

    async def test_runs_grow_and_split(self) -> None:
        for offset, duration in enumerate([25, 25, 50]):
            with patch("time.time", return_value=NOW.timestamp() + offset * 60):
                await self.store.add_completed_session(duration)

        history = await self.stored()
        self.assertEqual(3, history.session_count)
        self.assertEqual([CountedValue(value=25, count=2), CountedValue(value=50, count=1)], history.durations)
        self.assertEqual(3, sum(run.count for run in history.timezones))

    async def test_clock_moving_backwards_keeps_timestamps_sorted(self) -> None:
        with patch("time.time", return_value=NOW.timestamp() + 600):
            await self.store.add_completed_session(25)
        with patch("time.time", return_value=NOW.timestamp()):
            await self.store.add_completed_session(50)

        history = await self.stored()
        self.assertEqual(sorted(history.completion_timestamps), history.completion_timestamps)
        self.assertEqual([50, 25], [record.duration for record in session_records(history)])

    async def test_misaligned_history_is_repaired_on_append(self) -> None:
        await self.put(
            PomodoroHistory(
                completion_timestamps=[100, 200],
                durations=[CountedValue(value=25, count=1)],
                timezones=[],
            )
        )

        with patch("time.time", return_value=NOW.timestamp()):
            await self.store.add_completed_session(25)

        history = await self.stored()
        self.assertTrue(history.is_aligned())
        self.assertEqual([CountedValue(value=25, count=3)], history.durations)

    async def test_stats_right_after_completion(self) -> None:
        with patch("time.time", return_value=NOW.timestamp()):
            await self.store.add_completed_session(25)
            stats = await self.store.get_historical_stats()

        self.assertEqual(1, stats.daily)
        self.assertEqual(1, stats.weekly)
        self.assertEqual(1, stats.monthly)
        self.assertEqual(1.0, stats.daily_avg)


class MergeHistoryTests(HistoryStoreTestCase):
    PAYLOAD = {"durations": [2, 25], "pomodoros": [100, 200], "timezones": [2, 0], "version": 1}

    async def test_import_into_empty_store(self) -> None:
        added = await self.store.import_history(self.PAYLOAD)

        history = await self.stored()
        self.assertEqual(2, added)
        self.assertEqual([100, 200], history.completion_timestamps)
        self.assertEqual([CountedValue(value=25, count=2)], history.durations)
        self.assertEqual([CountedValue(value=0, count=2)], history.timezones)

    async def test_merge_is_idempotent(self) -> None:
        await self.store.merge_history(self.PAYLOAD)
        once = await self.stored()

        added = await self.store.merge_history(self.PAYLOAD)

        self.assertEqual(0, added)
        self.assertEqual(once, await self.stored())

    async def test_imported_sessions_keep_their_own_values(self) -> None:
        await self.put(history_of((100, 25, 0), (300, 25, 0)))
        payload = {"durations": [1, 50], "pomodoros": [200], "timezones": [1, -60], "version": 1}

        self.assertEqual(1, await self.store.merge_history(payload))

        history = await self.stored()
        self.assertEqual(
            [(100, 25, 0), (200, 50, -60), (300, 25, 0)],
            [(r.timestamp, r.duration, r.timezone) for r in session_records(history)],
        )
        self.assertTrue(history.is_aligned())

    async def test_partial_overlap_adds_only_new_sessions(self) -> None:
        await self.put(history_of((100, 25, 0)))
        payload = {"durations": [3, 30], "pomodoros": [50, 100, 150], "timezones": [3, 0], "version": 1}

        self.assertEqual(2, await self.store.merge_history(payload))

        history = await self.stored()
        self.assertEqual([50, 100, 150], history.completion_timestamps)
        self.assertEqual([30, 25, 30], [r.duration for r in session_records(history)])

    async def test_malformed_payloads_are_rejected(self) -> None:
        bad_payloads = [
            {"durations": [2, 25], "pomodoros": [100, 200], "timezones": [2, 0]},
            {"durations": [2], "pomodoros": [100, 200], "timezones": [2, 0], "version": 1},
            {"durations": [1, 25], "pomodoros": [100, 200], "timezones": [2, 0], "version": 1},
            {"durations": [0, 25, 2, 25], "pomodoros": [100, 200], "timezones": [2, 0], "version": 1},
            ["not", "an", "object"],
        ]
        for payload in bad_payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(HistoryImportError):
                    await self.store.import_history(payload)

        self.assertIsNone(self.kv.data.get(HISTORY_KEY))


class DeduplicateHistoryTests(HistoryStoreTestCase):
    async def test_removes_duplicates_and_realigns_runs(self) -> None:
        await self.put(
            PomodoroHistory(
                completion_timestamps=[100, 100, 200],
                durations=[CountedValue(value=25, count=1), CountedValue(value=50, count=2)],
                timezones=[CountedValue(value=0, count=3)],
            )
        )

        removed = await self.store.deduplicate_history()

        history = await self.stored()
        self.assertEqual(1, removed)
        self.assertEqual([100, 200], history.completion_timestamps)
        self.assertEqual([CountedValue(value=25, count=1), CountedValue(value=50, count=1)], history.durations)
        self.assertEqual([CountedValue(value=0, count=2)], history.timezones)

    async def test_clean_history_is_untouched(self) -> None:
        await self.put(history_of((100, 25, 0), (200, 25, 0)))
        self.assertEqual(0, await self.store.deduplicate_history())

    async def test_dedup_racing_a_completion_loses_nothing(self) -> None:
        await self.put(
            PomodoroHistory(
                completion_timestamps=[100, 100],
                durations=[CountedValue(value=25, count=2)],
                timezones=[CountedValue(value=0, count=2)],
            )
        )

        with patch("time.time", return_value=NOW.timestamp()):
            await asyncio.gather(
                self.store.deduplicate_history(),
                self.store.add_completed_session(25),
            )

        history = await self.stored()
        self.assertEqual([100, date_to_timestamp(NOW)], history.completion_timestamps)
        self.assertTrue(history.is_aligned())


class ExportTests(HistoryStoreTestCase):
    async def test_export_flattens_runs(self) -> None:
        await self.put(history_of((100, 25, 0), (200, 25, 0), (300, 50, -60)))

        exported = await self.store.export_history()

        self.assertEqual(
            ImportData(durations=[2, 25, 1, 50], pomodoros=[100, 200, 300], timezones=[2, 0, 1, -60], version=1),
            exported,
        )

    async def test_export_then_import_elsewhere(self) -> None:
        await self.put(history_of((100, 25, 0), (300, 50, -60)))
        exported = (await self.store.export_history()).model_dump()

        other = HistoryStore(HistoryStorage(MemoryStore()))
        await other.import_history(exported)

        self.assertEqual(await self.store.get_history(), await other.get_history())

    def test_create_export_data_matches_timestamp_count(self) -> None:
        data = create_export_data(history_of((1, 25, 0)))
        self.assertEqual([1, 25], data.durations)
        self.assertEqual([1, 0], data.timezones)

    def test_csv_rows_use_session_timezone(self) -> None:
        ts = minute(2024, 3, 13, 9, 30)
        rows = create_csv_data(history_of((ts, 25, -60)))

        self.assertEqual(1, len(rows))
        row = rows[0]
        self.assertEqual("2024-03-13T10:30:00+01:00", row.iso_date)
        self.assertEqual("2024-03-13", row.date_str)
        self.assertEqual("10:30", row.time_str)
        self.assertEqual(ts * 60, row.timestamp)
        self.assertEqual(-60, row.timezone_offset)
        self.assertEqual(1500, row.duration)

    async def test_export_csv_renders_header_and_rows(self) -> None:
        ts = minute(2024, 3, 13, 9, 30)
        await self.put(history_of((ts, 25, 0)))

        lines = (await self.store.export_csv()).splitlines()

        self.assertEqual(",".join(CSV_HEADER), lines[0])
        self.assertEqual(f"2024-03-13T09:30:00+00:00,2024-03-13,09:30,{ts * 60},0,1500", lines[1])

    def test_render_csv_without_rows(self) -> None:
        self.assertEqual(",".join(CSV_HEADER) + "\n", render_csv([]))

    async def test_clear_history(self) -> None:
        await self.put(history_of((100, 25, 0)))
        await self.store.clear_history()
        self.assertEqual(0, (await self.stored()).session_count)


class StatisticsTests(unittest.TestCase):
    def test_counts_per_period(self) -> None:
        history = history_of(
            (minute(2024, 2, 20, 10, 0), 25, 0),
            (minute(2024, 3, 2, 10, 0), 25, 0),
            (minute(2024, 3, 11, 10, 0), 25, 0),
            (minute(2024, 3, 13, 9, 0), 25, 0),
        )

        stats = compute_historical_stats(history, NOW)

        self.assertEqual(1, stats.daily)
        self.assertEqual(2, stats.weekly)
        self.assertEqual(3, stats.monthly)

        days = (date_to_timestamp(NOW) - minute(2024, 2, 20, 10, 0)) / (24 * 60)
        self.assertAlmostEqual(4 / days, stats.daily_avg)
        self.assertAlmostEqual(4 / (days / 7), stats.weekly_avg)
        self.assertAlmostEqual(4 / max(days / (365.25 / 12), 1), stats.monthly_avg)

    def test_duplicates_count_once(self) -> None:
        ts = minute(2024, 3, 13, 9, 0)
        history = PomodoroHistory(
            completion_timestamps=[ts, ts],
            durations=[CountedValue(value=25, count=2)],
            timezones=[CountedValue(value=0, count=2)],
        )

        stats = compute_historical_stats(history, NOW)

        self.assertEqual(1, stats.daily)
        self.assertEqual(1.0, stats.daily_avg)

    def test_session_placed_by_its_recorded_timezone(self) -> None:
        # 23:30 UTC on the 12th was 01:30 on the 13th where it was recorded
        history = history_of((minute(2024, 3, 12, 23, 30), 25, -120))

        stats = compute_historical_stats(history, NOW)

        self.assertEqual(1, stats.daily)

    def test_recent_single_session_has_bounded_averages(self) -> None:
        history = history_of((date_to_timestamp(NOW) - 5, 25, 0))

        stats = compute_historical_stats(history, NOW)

        self.assertEqual(1.0, stats.daily_avg)
        self.assertEqual(1.0, stats.weekly_avg)
        self.assertEqual(1.0, stats.monthly_avg)

    def test_empty_history(self) -> None:
        stats = compute_historical_stats(PomodoroHistory(), NOW)
        self.assertEqual(0, stats.monthly)
        self.assertEqual(0.0, stats.daily_avg)


class DailyGroupsTests(unittest.TestCase):
    def setUp(self) -> None:
        env = patch.dict(os.environ, {"TZ": "UTC"})
        env.start()
        time.tzset()
        self.addCleanup(time.tzset)
        self.addCleanup(env.stop)

    def test_buckets_are_contiguous_and_zero_filled(self) -> None:
        history = history_of(
            (minute(2024, 3, 1, 10, 0), 25, 0),
            (minute(2024, 3, 11, 10, 0), 25, 0),
            (minute(2024, 3, 13, 8, 0), 25, 0),
            (minute(2024, 3, 13, 9, 0), 25, 0),
        )

        groups = get_daily_groups(history, date(2024, 3, 10), today=date(2024, 3, 13))

        self.assertEqual(
            {
                day_start_ms(date(2024, 3, 13)): 2,
                day_start_ms(date(2024, 3, 12)): 0,
                day_start_ms(date(2024, 3, 11)): 1,
                day_start_ms(date(2024, 3, 10)): 0,
            },
            groups,
        )

    def test_keys_are_local_midnight_in_milliseconds(self) -> None:
        self.assertEqual(
            int(datetime(2024, 3, 13, tzinfo=timezone.utc).timestamp() * 1000),
            day_start_ms(date(2024, 3, 13)),
        )

    def test_duplicate_timestamps_count_once(self) -> None:
        ts = minute(2024, 3, 13, 9, 0)
        history = PomodoroHistory(
            completion_timestamps=[ts, ts],
            durations=[CountedValue(value=25, count=2)],
            timezones=[CountedValue(value=0, count=2)],
        )

        groups = get_daily_groups(history, date(2024, 3, 13), today=date(2024, 3, 13))

        self.assertEqual({day_start_ms(date(2024, 3, 13)): 1}, groups)


if __name__ == "__main__":
    unittest.main()
