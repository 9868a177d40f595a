import unittest
from datetime import date, datetime, timedelta, timezone

from pomodoro_log.history.models import CountedValue, PomodoroHistory, SessionRecord
from pomodoro_log.history.utils import (
    aligned_values,
    binary_search,
    date_to_timestamp,
    decode_runs,
    encode_runs,
    flatten_runs,
    format_timezone_offset,
    get_time_period_boundaries,
    history_from_records,
    local_date,
    session_datetime,
    session_records,
    timezone_offset,
    unflatten_runs,
    update_counted_values,
)

UTC_PLUS_2 = timezone(timedelta(hours=2))


def minute(dt: datetime) -> int:
    return date_to_timestamp(dt)


class RunLengthTests(unittest.TestCase):
    def test_update_extends_matching_run(self) -> None:
        runs = [CountedValue(value=25, count=1)]
        update_counted_values(runs, 25)
        self.assertEqual([CountedValue(value=25, count=2)], runs)

    def test_update_starts_new_run_for_different_value(self) -> None:
        runs = [CountedValue(value=25, count=2)]
        update_counted_values(runs, 50)
        self.assertEqual([CountedValue(value=25, count=2), CountedValue(value=50, count=1)], runs)

    def test_encode_and_decode(self) -> None:
        values = [25, 25, 50, 25]
        runs = encode_runs(values)

        self.assertEqual(
            [
                CountedValue(value=25, count=2),
                CountedValue(value=50, count=1),
                CountedValue(value=25, count=1),
            ],
            runs,
        )
        self.assertEqual(values, decode_runs(runs))

    def test_flatten_produces_count_value_pairs(self) -> None:
        runs = [CountedValue(value=25, count=2), CountedValue(value=-60, count=1)]
        self.assertEqual([2, 25, 1, -60], flatten_runs(runs))

    def test_unflatten_merges_adjacent_equal_values(self) -> None:
        self.assertEqual([CountedValue(value=25, count=3)], unflatten_runs([1, 25, 2, 25]))

    def test_aligned_values_pads_with_last_value(self) -> None:
        runs = [CountedValue(value=25, count=2)]
        self.assertEqual([25, 25, 25, 25], aligned_values(runs, 4, 0))

    def test_aligned_values_pads_empty_with_fallback(self) -> None:
        self.assertEqual([-60, -60], aligned_values([], 2, -60))

    def test_aligned_values_truncates(self) -> None:
        runs = [CountedValue(value=25, count=2), CountedValue(value=50, count=3)]
        self.assertEqual([25, 25, 50], aligned_values(runs, 3, 0))

    def test_binary_search_returns_insertion_point(self) -> None:
        values = [100, 200, 300]
        self.assertEqual(0, binary_search(values, 50))
        self.assertEqual(1, binary_search(values, 200))
        self.assertEqual(2, binary_search(values, 250))
        self.assertEqual(3, binary_search(values, 400))


class RecordTests(unittest.TestCase):
    def test_session_records_decode_in_timestamp_order(self) -> None:
        history = PomodoroHistory(
            completion_timestamps=[100, 200, 300],
            durations=[CountedValue(value=25, count=2), CountedValue(value=50, count=1)],
            timezones=[CountedValue(value=0, count=1), CountedValue(value=-120, count=2)],
        )

        self.assertEqual(
            [
                SessionRecord(100, 25, 0),
                SessionRecord(200, 25, -120),
                SessionRecord(300, 50, -120),
            ],
            session_records(history),
        )

    def test_history_from_records_reencodes_runs(self) -> None:
        records = [SessionRecord(1, 25, 0), SessionRecord(2, 25, 0), SessionRecord(3, 50, 0)]

        history = history_from_records(records, version=1)

        self.assertEqual([1, 2, 3], history.completion_timestamps)
        self.assertEqual([CountedValue(value=25, count=2), CountedValue(value=50, count=1)], history.durations)
        self.assertEqual([CountedValue(value=0, count=3)], history.timezones)
        self.assertTrue(history.is_aligned())


class TimeTests(unittest.TestCase):
    def test_date_to_timestamp_is_whole_minutes(self) -> None:
        dt = datetime(1970, 1, 1, 0, 2, 59, tzinfo=timezone.utc)
        self.assertEqual(2, date_to_timestamp(dt))

    def test_timezone_offset_uses_minutes_to_reach_utc(self) -> None:
        self.assertEqual(-120, timezone_offset(datetime(2024, 3, 13, tzinfo=UTC_PLUS_2)))
        self.assertEqual(300, timezone_offset(datetime(2024, 3, 13, tzinfo=timezone(timedelta(hours=-5)))))
        self.assertEqual(0, timezone_offset(datetime(2024, 3, 13, tzinfo=timezone.utc)))

    def test_format_timezone_offset(self) -> None:
        self.assertEqual("+02:00", format_timezone_offset(-120))
        self.assertEqual("-05:30", format_timezone_offset(330))
        self.assertEqual("+00:00", format_timezone_offset(0))

    def test_local_date_uses_recorded_offset(self) -> None:
        # 23:30 UTC on the 12th is 01:30 on the 13th at UTC+2
        ts = minute(datetime(2024, 3, 12, 23, 30, tzinfo=timezone.utc))
        self.assertEqual(date(2024, 3, 13), local_date(ts, -120))
        self.assertEqual(date(2024, 3, 12), local_date(ts, 0))

    def test_session_datetime_renders_in_session_timezone(self) -> None:
        ts = minute(datetime(2024, 3, 13, 9, 30, tzinfo=timezone.utc))
        self.assertEqual("2024-03-13T11:30:00+02:00", session_datetime(ts, -120).isoformat())

    def test_period_boundaries_midweek(self) -> None:
        now = datetime(2024, 3, 13, 15, 45, tzinfo=timezone.utc)  # Wednesday

        bounds = get_time_period_boundaries(now)

        self.assertEqual(minute(datetime(2024, 3, 13, tzinfo=timezone.utc)), bounds.day_start)
        self.assertEqual(minute(datetime(2024, 3, 10, tzinfo=timezone.utc)), bounds.week_start)
        self.assertEqual(minute(datetime(2024, 3, 1, tzinfo=timezone.utc)), bounds.month_start)
        self.assertEqual(bounds.month_start, bounds.earliest)

    def test_period_boundaries_early_in_month(self) -> None:
        now = datetime(2024, 3, 2, 10, 0, tzinfo=timezone.utc)  # Saturday

        bounds = get_time_period_boundaries(now)

        self.assertEqual(minute(datetime(2024, 2, 25, tzinfo=timezone.utc)), bounds.week_start)
        self.assertEqual(minute(datetime(2024, 3, 1, tzinfo=timezone.utc)), bounds.month_start)
        self.assertEqual(bounds.week_start, bounds.earliest)

    def test_period_boundaries_on_sunday(self) -> None:
        now = datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc)
        bounds = get_time_period_boundaries(now)
        self.assertEqual(bounds.day_start, bounds.week_start)

    def test_period_boundaries_are_wall_clock_minutes(self) -> None:
        now = datetime(2024, 3, 13, 15, 45, tzinfo=UTC_PLUS_2)

        bounds = get_time_period_boundaries(now)

        # Local midnight, expressed as if the wall clock were UTC
        self.assertEqual(minute(datetime(2024, 3, 13, tzinfo=timezone.utc)), bounds.day_start)


if __name__ == "__main__":
    unittest.main()
