"""Focus timer: phase state, settings, the phase engine and its command surface."""

from pomodoro_log.focus.state import TimerError, TimerState, TimerStatus, TimerType

__all__ = ["TimerError", "TimerState", "TimerStatus", "TimerType"]
