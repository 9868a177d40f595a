"""Completed-session history: run-length encoded log, merge and statistics."""

from pomodoro_log.history.models import (
    CountedValue,
    CsvRow,
    HistoricalStats,
    HistoryImportError,
    ImportData,
    PomodoroHistory,
)

__all__ = [
    "CountedValue",
    "CsvRow",
    "HistoricalStats",
    "HistoryImportError",
    "ImportData",
    "PomodoroHistory",
]
