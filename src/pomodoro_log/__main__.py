"""Allow running as ``python -m pomodoro_log``."""

from pomodoro_log.cli.main import app

if __name__ == "__main__":
    app()
