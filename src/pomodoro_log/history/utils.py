"""Time and run-length helpers for the session history."""

from __future__ import annotations

import time
from bisect import bisect_left
from datetime import date, datetime, timedelta, timezone
from typing import NamedTuple, Sequence

from pomodoro_log.history.models import CountedValue, PomodoroHistory, SessionRecord

MINUTES_PER_DAY = 24 * 60
DAYS_PER_WEEK = 7
DAYS_PER_MONTH = 365.25 / 12

_EPOCH = datetime(1970, 1, 1)


class PeriodBoundaries(NamedTuple):
    """Start of the current day, week and month as local wall-clock minutes."""

    day_start: int
    week_start: int
    month_start: int

    @property
    def earliest(self) -> int:
        return min(self.day_start, self.week_start, self.month_start)


def now_local() -> datetime:
    """Current time as an aware datetime in the machine's timezone."""
    return datetime.fromtimestamp(time.time()).astimezone()


def date_to_timestamp(dt: datetime) -> int:
    """Convert a datetime to whole minutes since the Unix epoch."""
    return int(dt.timestamp() // 60)


def timezone_offset(dt: datetime | None = None) -> int:
    """Minutes to add to local time to reach UTC (UTC+02:00 gives -120).

    This matches the convention of the interchange files, so exported
    histories stay compatible with earlier exports.
    """
    dt = dt or now_local()
    if dt.tzinfo is None:
        dt = dt.astimezone()
    offset = dt.utcoffset() or timedelta(0)
    return -round(offset.total_seconds() / 60)


def local_minute(timestamp: int, offset: int) -> int:
    """Wall-clock minute of a session recorded at ``timestamp`` with ``offset``."""
    return timestamp - offset


def local_date(timestamp: int, offset: int) -> date:
    """Calendar date a session fell on in the timezone it was recorded in."""
    return (_EPOCH + timedelta(minutes=local_minute(timestamp, offset))).date()


def format_timezone_offset(offset: int) -> str:
    """Render an offset as ``+HH:MM``/``-HH:MM``."""
    sign = "+" if offset <= 0 else "-"
    hours, minutes = divmod(abs(offset), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"


def get_time_period_boundaries(now: datetime) -> PeriodBoundaries:
    """Start of today, this week (Sunday) and this month in wall-clock minutes."""
    if now.tzinfo is None:
        now = now.astimezone()
    offset = timezone_offset(now)

    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    # weekday(): Monday is 0, weeks start on Sunday
    start_of_week = start_of_day - timedelta(days=(start_of_day.weekday() + 1) % 7)
    start_of_month = start_of_day.replace(day=1)

    return PeriodBoundaries(
        day_start=date_to_timestamp(start_of_day) - offset,
        week_start=date_to_timestamp(start_of_week) - offset,
        month_start=date_to_timestamp(start_of_month) - offset,
    )


def update_counted_values(runs: list[CountedValue], value: int) -> list[CountedValue]:
    """Extend the last run when it holds ``value``, otherwise start a new one."""
    if runs and runs[-1].value == value:
        runs[-1].count += 1
    else:
        runs.append(CountedValue(value=value, count=1))
    return runs


def encode_runs(values: Sequence[int]) -> list[CountedValue]:
    runs: list[CountedValue] = []
    for value in values:
        update_counted_values(runs, value)
    return runs


def decode_runs(runs: Sequence[CountedValue]) -> list[int]:
    values: list[int] = []
    for run in runs:
        values.extend([run.value] * run.count)
    return values


def flatten_runs(runs: Sequence[CountedValue]) -> list[int]:
    """Runs to the interchange layout ``[count, value, count, value, ...]``."""
    flat: list[int] = []
    for run in runs:
        flat.extend((run.count, run.value))
    return flat


def unflatten_runs(flat: Sequence[int]) -> list[CountedValue]:
    """Interchange pairs back to runs, merging adjacent equal values."""
    runs: list[CountedValue] = []
    for count, value in zip(flat[0::2], flat[1::2]):
        if runs and runs[-1].value == value:
            runs[-1].count += count
        else:
            runs.append(CountedValue(value=value, count=count))
    return runs


def aligned_values(runs: Sequence[CountedValue], length: int, fallback: int) -> list[int]:
    """Decode ``runs`` to exactly ``length`` values.

    Short sequences are padded with their last value (or ``fallback``) and
    long ones truncated, so histories written by older versions whose
    sequences drifted out of step can still be read.
    """
    values = decode_runs(runs)
    if len(values) >= length:
        return values[:length]
    pad = values[-1] if values else fallback
    return values + [pad] * (length - len(values))


def session_records(history: PomodoroHistory, fallback_offset: int | None = None) -> list[SessionRecord]:
    """Decode a history into one record per stored timestamp, in stored order."""
    count = history.session_count
    if fallback_offset is None:
        fallback_offset = timezone_offset()
    durations = aligned_values(history.durations, count, 0)
    offsets = aligned_values(history.timezones, count, fallback_offset)
    return [
        SessionRecord(timestamp=ts, duration=duration, timezone=offset)
        for ts, duration, offset in zip(history.completion_timestamps, durations, offsets)
    ]


def history_from_records(records: Sequence[SessionRecord], version: int) -> PomodoroHistory:
    return PomodoroHistory(
        completion_timestamps=[record.timestamp for record in records],
        durations=encode_runs([record.duration for record in records]),
        timezones=encode_runs([record.timezone for record in records]),
        version=version,
    )


def binary_search(values: Sequence[int], target: int) -> int:
    """Index of the first element >= ``target`` in an ascending sequence."""
    return bisect_left(values, target)


def day_start_ms(day: date) -> int:
    """Epoch milliseconds of local midnight on ``day``."""
    midnight = datetime(day.year, day.month, day.day).astimezone()
    return int(midnight.timestamp() * 1000)


def session_datetime(timestamp: int, offset: int) -> datetime:
    """Aware datetime for a minute timestamp in the session's own timezone."""
    tz = timezone(timedelta(minutes=-offset))
    return datetime.fromtimestamp(timestamp * 60, tz)
