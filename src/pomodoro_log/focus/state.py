"""Timer state model, validation and timing helpers."""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

STATE_VERSION = 1
TIMER_UPDATE_INTERVAL = 1.0  # seconds

REQUIRED_FIELDS = (
    "version",
    "timer_status",
    "timer_type",
    "last_completed_phase_type",
    "end_time",
    "remaining_time",
    "last_session_date",
)


class TimerError(Exception):
    """Raised for invalid timer state or timing input."""


class TimerType(str, Enum):
    """Phase types cycled through by the timer."""

    FOCUS = "focus"
    SHORT_BREAK = "short-break"
    LONG_BREAK = "long-break"

    @property
    def is_break(self) -> bool:
        return self is not TimerType.FOCUS


class TimerStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class TimerState(BaseModel):
    """The single persisted state of the phase engine.

    While running, ``end_time`` (epoch milliseconds) is authoritative and
    ``remaining_time`` is only a cached display value. While paused,
    ``remaining_time`` (seconds) is what a resume continues from.
    """

    version: int = STATE_VERSION
    timer_status: TimerStatus = TimerStatus.STOPPED
    timer_type: TimerType | None = None
    last_completed_phase_type: TimerType | None = None
    end_time: int | None = None
    remaining_time: int | None = Field(default=None, ge=0)
    initial_duration_minutes: int | None = Field(default=None, ge=1)
    sessions_today: int = Field(default=0, ge=0)
    sessions_since_last_long_break: int = Field(default=0, ge=0)
    last_session_date: str = ""

    @model_validator(mode="after")
    def _check_invariants(self) -> TimerState:
        if self.timer_status is TimerStatus.STOPPED:
            if self.timer_type is not None:
                raise ValueError("stopped timer cannot have a timer type")
        elif self.timer_type is None:
            raise ValueError(f"{self.timer_status.value} timer requires a timer type")

        if self.timer_status is TimerStatus.RUNNING and self.end_time is None:
            raise ValueError("running timer requires an end time")
        if self.timer_status is TimerStatus.PAUSED and self.remaining_time is None:
            raise ValueError("paused timer requires remaining time")
        return self

    @classmethod
    def default(cls, last_session_date: str = "") -> TimerState:
        return cls(last_session_date=last_session_date)

    @property
    def is_running(self) -> bool:
        return self.timer_status is TimerStatus.RUNNING

    @property
    def is_paused(self) -> bool:
        return self.timer_status is TimerStatus.PAUSED

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation for storage and transports."""
        return self.model_dump(mode="json")


def validate_timer_state(state: Any) -> bool:
    """Structural check: every required field is present."""
    if not isinstance(state, dict):
        return False
    return all(field in state for field in REQUIRED_FIELDS)


def current_time_ms() -> int:
    return int(time.time() * 1000)


def today_iso() -> str:
    """Local calendar date as ``YYYY-MM-DD``."""
    return datetime.fromtimestamp(time.time()).date().isoformat()


def calculate_remaining_time(end_time: Any, now_ms: int | None = None) -> int | None:
    """Whole seconds left until ``end_time``, never negative.

    Always derived from the absolute deadline, so a process that was frozen
    or restarted lands on the correct value (zero once the deadline passed).
    """
    if end_time is None:
        return None

    if isinstance(end_time, bool) or not isinstance(end_time, (int, float)):
        raise TimerError("Invalid end time provided")
    if math.isnan(end_time) or end_time <= 0:
        raise TimerError("Invalid end time provided")

    if now_ms is None:
        now_ms = current_time_ms()

    remaining_ms = end_time - now_ms
    remaining_seconds = max(0, math.floor(remaining_ms / 1000))

    if remaining_seconds == 0 and remaining_ms < -1000:
        logger.warning(
            f"Instant completion detected: deadline passed {-remaining_ms / 1000:.1f}s ago"
        )

    return int(remaining_seconds)


def badge_text(state: TimerState) -> str:
    """Compact status text: ``25m``, ``<1m`` in the last focus minute, ``-`` when paused."""
    if state.timer_type is None:
        return ""

    if state.is_paused:
        return "-"

    if state.is_running and state.remaining_time:
        if state.timer_type is TimerType.FOCUS and state.remaining_time < 60:
            return "<1m"
        return f"{math.ceil(state.remaining_time / 60)}m"

    return ""
