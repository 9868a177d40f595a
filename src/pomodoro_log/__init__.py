"""Pomodoro Log - a resilient focus timer with a mergeable session history."""

__version__ = "0.1.0"
