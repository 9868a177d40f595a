"""Web routes for pomodoro-log."""

from pomodoro_log.web.routes import api

__all__ = ["api"]
