"""Persistence adapters round-tripping timer state and history through the key-value store."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from pomodoro_log.focus.state import TimerState, validate_timer_state
from pomodoro_log.history.models import CURRENT_VERSION, PomodoroHistory
from pomodoro_log.history.utils import encode_runs
from pomodoro_log.storage.database import KeyValueStore, StorageError

logger = logging.getLogger(__name__)

TIMER_STATE_KEY = "timer"
HISTORY_KEY = "pomodoroHistory"


class TimerStateStorage:
    """Loads and saves the phase engine's ``TimerState``."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    async def save_state(self, state: TimerState) -> bool:
        """Persist ``state``. Failures are logged; the next save reconciles."""
        try:
            await self._store.set(TIMER_STATE_KEY, state.to_dict())
            return True
        except Exception as e:
            logger.error(f"Error saving timer state: {e}")
            return False

    async def load_state(self) -> TimerState | None:
        """Return the stored state, or None when absent or invalid."""
        try:
            stored = await self._store.get(TIMER_STATE_KEY)
        except Exception as e:
            logger.error(f"Error loading timer state: {e}")
            return None

        if stored is None:
            return None

        if not validate_timer_state(stored):
            logger.warning("Stored timer state is missing required fields, ignoring it")
            return None

        try:
            return TimerState.model_validate(stored)
        except ValidationError as e:
            logger.warning(f"Stored timer state is invalid, ignoring it: {e}")
            return None


class HistoryStorage:
    """Loads and saves the ``PomodoroHistory`` document."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    @staticmethod
    def create_empty_history() -> PomodoroHistory:
        return PomodoroHistory(version=CURRENT_VERSION)

    async def save_history(self, history: PomodoroHistory) -> None:
        try:
            await self._store.set(HISTORY_KEY, history.model_dump(mode="json"))
        except Exception as e:
            logger.error(f"Error saving history: {e}")
            raise

    async def load_history(self) -> PomodoroHistory:
        """Return the stored history, or an empty one if none exists yet.

        Raises ``StorageError`` when the stored document cannot be read, so a
        mutating caller never overwrites data it failed to load.
        """
        try:
            stored = await self._store.get(HISTORY_KEY)
        except Exception as e:
            logger.error(f"Error loading history: {e}")
            raise StorageError(f"Could not load history: {e}") from e

        if not stored:
            return self.create_empty_history()

        try:
            return PomodoroHistory.model_validate(_normalize_history(stored))
        except (ValidationError, TypeError, ValueError) as e:
            logger.error(f"Stored history is unreadable: {e}")
            raise StorageError(f"Stored history is unreadable: {e}") from e

    async def clear_history(self) -> None:
        try:
            await self._store.remove(HISTORY_KEY)
        except Exception as e:
            logger.error(f"Error clearing history: {e}")
            raise


def _normalize_history(stored: Any) -> dict[str, Any]:
    """Fill in missing arrays and upgrade the legacy per-session layout."""
    if not isinstance(stored, dict):
        raise TypeError(f"expected an object, got {type(stored).__name__}")

    # Version 0 stored one plain value per session under ``pomodoros``
    timestamps = stored.get("completion_timestamps")
    if not isinstance(timestamps, list):
        timestamps = stored.get("pomodoros")
    if not isinstance(timestamps, list):
        timestamps = []

    normalized = {
        "completion_timestamps": timestamps,
        "durations": _as_runs(stored.get("durations")),
        "timezones": _as_runs(stored.get("timezones")),
        "version": stored.get("version") or CURRENT_VERSION,
    }
    return normalized


def _as_runs(values: Any) -> list[Any]:
    if not isinstance(values, list):
        return []
    if values and all(isinstance(value, int) and not isinstance(value, bool) for value in values):
        return [run.model_dump() for run in encode_runs(values)]
    return values
