"""Pydantic schemas for the session history and its interchange format."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator

CURRENT_VERSION = 1


class HistoryImportError(ValueError):
    """Raised when an imported history payload is malformed."""


class CountedValue(BaseModel):
    """A run of ``count`` consecutive sessions sharing ``value``."""

    value: int
    count: int = Field(ge=1)


class PomodoroHistory(BaseModel):
    """Run-length encoded log of completed focus sessions.

    ``completion_timestamps`` holds minutes since the Unix epoch. ``durations``
    (minutes) and ``timezones`` (offset minutes, see ``timezone_offset``) are
    run-length encoded and decode in timestamp order.
    """

    completion_timestamps: list[int] = Field(default_factory=list)
    durations: list[CountedValue] = Field(default_factory=list)
    timezones: list[CountedValue] = Field(default_factory=list)
    version: int = CURRENT_VERSION

    @property
    def session_count(self) -> int:
        return len(self.completion_timestamps)

    def is_aligned(self) -> bool:
        """Whether both run-length sequences cover exactly one value per timestamp."""
        total = self.session_count
        return (
            sum(run.count for run in self.durations) == total
            and sum(run.count for run in self.timezones) == total
        )


class HistoricalStats(BaseModel):
    """Session counts for the current day/week/month and long-run averages."""

    daily: int = 0
    weekly: int = 0
    monthly: int = 0
    daily_avg: float = 0.0
    weekly_avg: float = 0.0
    monthly_avg: float = 0.0


class ImportData(BaseModel):
    """Interchange format used for export and import.

    ``durations`` and ``timezones`` are flattened run-length pairs:
    ``[count, value, count, value, ...]``.
    """

    durations: list[int]
    pomodoros: list[int]
    timezones: list[int]
    version: int = Field(ge=1)

    @model_validator(mode="after")
    def _check_pairs(self) -> ImportData:
        for name in ("durations", "timezones"):
            flat = getattr(self, name)
            if len(flat) % 2:
                raise ValueError(f"{name} must hold [count, value] pairs")
            counts = flat[0::2]
            if any(count < 1 for count in counts):
                raise ValueError(f"{name} counts must be positive")
            if sum(counts) != len(self.pomodoros):
                raise ValueError(
                    f"{name} cover {sum(counts)} sessions but {len(self.pomodoros)} timestamps were given"
                )
        return self

    @classmethod
    def parse(cls, payload: Any) -> ImportData:
        """Validate a decoded JSON payload, raising ``HistoryImportError``."""
        if isinstance(payload, cls):
            return payload
        if not isinstance(payload, dict):
            raise HistoryImportError("Invalid history file format")

        missing = [key for key in ("durations", "pomodoros", "timezones", "version") if key not in payload]
        if missing:
            raise HistoryImportError(f"Invalid history file format: missing {', '.join(missing)}")

        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise HistoryImportError(f"Invalid history file format: {e.errors()[0]['msg']}") from e


@dataclass(frozen=True)
class SessionRecord:
    """One decoded session: end minute, duration minutes and timezone offset."""

    timestamp: int
    duration: int
    timezone: int


@dataclass(frozen=True)
class CsvRow:
    """A single CSV export row."""

    iso_date: str
    date_str: str
    time_str: str
    timestamp: int
    timezone_offset: int
    duration: int

    def as_list(self) -> list[Any]:
        return [
            self.iso_date,
            self.date_str,
            self.time_str,
            self.timestamp,
            self.timezone_offset,
            self.duration,
        ]
