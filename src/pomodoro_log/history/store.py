"""Run-length encoded session history with dedup, merge and statistics."""

from __future__ import annotations

import csv
import io
import logging
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from pomodoro_log.core.mutex import Mutex, with_mutex
from pomodoro_log.history.models import (
    CsvRow,
    HistoricalStats,
    ImportData,
    PomodoroHistory,
    SessionRecord,
)
from pomodoro_log.history.utils import (
    DAYS_PER_MONTH,
    DAYS_PER_WEEK,
    MINUTES_PER_DAY,
    aligned_values,
    binary_search,
    date_to_timestamp,
    day_start_ms,
    encode_runs,
    flatten_runs,
    get_time_period_boundaries,
    history_from_records,
    local_date,
    local_minute,
    now_local,
    session_datetime,
    session_records,
    timezone_offset,
    unflatten_runs,
    update_counted_values,
)

if TYPE_CHECKING:
    from pomodoro_log.storage.persistence import HistoryStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

CSV_HEADER = [
    "End (ISO 8601)",
    "End Date",
    "End Time (24 Hour)",
    "End Timestamp (Unix)",
    "End Timezone (UTC Offset Minutes)",
    "Duration (Seconds)",
]


class HistoryStore:
    """Owner of the completed-session log.

    Every read-modify-persist sequence and every statistics read runs under
    one ``Mutex``, so completions, imports and dedup requests that interleave
    at await points cannot clobber each other's writes. Operations must not
    call each other while holding the lock.

    Usage:
        store = HistoryStore(HistoryStorage(db))

        await store.add_completed_session(25)
        stats = await store.get_historical_stats()
        added = await store.merge_history(payload)
    """

    def __init__(self, storage: HistoryStorage, mutex: Mutex | None = None):
        self._storage = storage
        self._mutex = mutex or Mutex()

    async def _locked(self, fn: Callable[[], Awaitable[T]]) -> T:
        return await with_mutex(self._mutex, fn)

    async def get_history(self) -> PomodoroHistory:
        """Snapshot of the stored history."""
        return await self._locked(self._storage.load_history)

    async def add_completed_session(self, duration_minutes: int) -> bool:
        """Record a focus session ending now.

        Returns False when a session was already recorded in the current
        minute, which absorbs duplicate completion events.
        """

        async def add() -> bool:
            history = await self._storage.load_history()
            now = now_local()
            minute = date_to_timestamp(now)
            offset = timezone_offset(now)

            if not history.is_aligned():
                history = history_from_records(session_records(history, offset), history.version)

            timestamps = history.completion_timestamps
            if timestamps and timestamps[-1] == minute:
                logger.info(f"Session at minute {minute} already recorded, skipping")
                return False

            if not timestamps or timestamps[-1] < minute:
                timestamps.append(minute)
                update_counted_values(history.durations, duration_minutes)
                update_counted_values(history.timezones, offset)
            else:
                # Clock moved backwards; keep timestamps ascending
                records = session_records(history, offset)
                index = binary_search(timestamps, minute)
                if index < len(timestamps) and timestamps[index] == minute:
                    logger.info(f"Session at minute {minute} already recorded, skipping")
                    return False
                records.insert(index, SessionRecord(minute, duration_minutes, offset))
                history = history_from_records(records, history.version)

            await self._storage.save_history(history)
            logger.info(f"Recorded {duration_minutes} minute session ({history.session_count} total)")
            return True

        return await self._locked(add)

    async def get_historical_stats(self) -> HistoricalStats:
        """Counts for today, this week and this month plus long-run averages."""

        async def compute() -> HistoricalStats:
            history = await self._storage.load_history()
            return compute_historical_stats(history, now_local())

        return await self._locked(compute)

    async def deduplicate_history(self) -> int:
        """Drop repeated timestamps, keeping the first occurrence of each.

        Durations and timezones are re-encoded from the surviving sessions,
        so the run-length sequences stay in step with the timestamps.
        Returns the number of sessions removed.
        """

        async def dedup() -> int:
            history = await self._storage.load_history()
            records = session_records(history)
            kept = _unique_records(records)
            removed = len(records) - len(kept)

            if removed == 0 and history.is_aligned():
                return 0

            await self._storage.save_history(history_from_records(kept, history.version))
            logger.info(f"Removed {removed} duplicate sessions")
            return removed

        return await self._locked(dedup)

    async def merge_history(self, imported: ImportData | dict[str, Any]) -> int:
        """Merge an interchange payload into the log.

        Imported sessions whose timestamp already exists are skipped, so
        merging the same payload twice changes nothing. New sessions are
        inserted at their sorted position together with their own duration
        and timezone. Returns the number of sessions added.
        """
        data = ImportData.parse(imported)
        count = len(data.pomodoros)
        fallback = timezone_offset()
        durations = aligned_values(unflatten_runs(data.durations), count, 0)
        offsets = aligned_values(unflatten_runs(data.timezones), count, fallback)

        async def merge() -> int:
            history = await self._storage.load_history()
            records = session_records(history, fallback)
            timestamps = [record.timestamp for record in records]

            added = 0
            for timestamp, duration, offset in zip(data.pomodoros, durations, offsets):
                index = binary_search(timestamps, timestamp)
                if index < len(timestamps) and timestamps[index] == timestamp:
                    continue
                timestamps.insert(index, timestamp)
                records.insert(index, SessionRecord(timestamp, duration, offset))
                added += 1

            if added:
                await self._storage.save_history(history_from_records(records, history.version))
            logger.info(f"Merged history: {added} added, {count - added} already present")
            return added

        return await self._locked(merge)

    async def import_history(self, payload: ImportData | dict[str, Any]) -> int:
        return await self.merge_history(payload)

    async def export_history(self) -> ImportData:
        return create_export_data(await self.get_history())

    async def export_csv(self) -> str:
        return render_csv(create_csv_data(await self.get_history()))

    async def get_daily_counts(self, days: int) -> dict[int, int]:
        """Sessions per local day for the last ``days`` days (including today)."""
        history = await self.get_history()
        since = now_local().date() - timedelta(days=max(days, 1) - 1)
        return get_daily_groups(history, since)

    async def clear_history(self) -> None:
        await self._locked(self._storage.clear_history)
        logger.info("History cleared")


def _unique_records(records: list[SessionRecord]) -> list[SessionRecord]:
    seen: set[int] = set()
    unique: list[SessionRecord] = []
    for record in records:
        if record.timestamp in seen:
            continue
        seen.add(record.timestamp)
        unique.append(record)
    return unique


def compute_historical_stats(history: PomodoroHistory, now: datetime) -> HistoricalStats:
    """Aggregate a history as seen from ``now``.

    Each session is placed in local time using the timezone recorded with
    it, and compared against period starts in the caller's timezone.
    Duplicate timestamps count once.
    """
    sessions = sorted(_unique_records(session_records(history, timezone_offset(now))), key=lambda r: r.timestamp)
    if not sessions:
        return HistoricalStats()

    bounds = get_time_period_boundaries(now)
    daily = weekly = monthly = 0

    for record in reversed(sessions):
        minute = local_minute(record.timestamp, record.timezone)
        if minute < bounds.earliest:
            break
        if minute >= bounds.day_start:
            daily += 1
        if minute >= bounds.week_start:
            weekly += 1
        if minute >= bounds.month_start:
            monthly += 1

    total = len(sessions)
    days = max(0, date_to_timestamp(now) - sessions[0].timestamp) / MINUTES_PER_DAY

    return HistoricalStats(
        daily=daily,
        weekly=weekly,
        monthly=monthly,
        daily_avg=total / max(days, 1),
        weekly_avg=total / max(days / DAYS_PER_WEEK, 1),
        monthly_avg=total / max(days / DAYS_PER_MONTH, 1),
    )


def create_export_data(history: PomodoroHistory) -> ImportData:
    """History to the interchange layout, one duration/timezone per timestamp."""
    records = session_records(history)
    return ImportData(
        durations=flatten_runs(encode_runs([record.duration for record in records])),
        pomodoros=[record.timestamp for record in records],
        timezones=flatten_runs(encode_runs([record.timezone for record in records])),
        version=history.version,
    )


def create_csv_data(history: PomodoroHistory) -> list[CsvRow]:
    rows = []
    for record in session_records(history):
        end = session_datetime(record.timestamp, record.timezone)
        rows.append(
            CsvRow(
                iso_date=end.isoformat(),
                date_str=end.strftime("%Y-%m-%d"),
                time_str=end.strftime("%H:%M"),
                timestamp=record.timestamp * 60,
                timezone_offset=record.timezone,
                duration=record.duration * 60,
            )
        )
    return rows


def render_csv(rows: list[CsvRow]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for row in rows:
        writer.writerow(row.as_list())
    return buffer.getvalue()


def get_daily_groups(history: PomodoroHistory, since: date, today: date | None = None) -> dict[int, int]:
    """Bucket sessions into local days from ``today`` back to ``since``.

    Every day in the range gets a key (local midnight, epoch milliseconds),
    zero-filled, so charts can render a contiguous series.
    """
    today = today or now_local().date()
    groups: dict[int, int] = {}
    day = today
    while day >= since:
        groups[day_start_ms(day)] = 0
        day -= timedelta(days=1)

    for record in _unique_records(session_records(history)):
        day = local_date(record.timestamp, record.timezone)
        if since <= day <= today:
            groups[day_start_ms(day)] += 1

    return groups
