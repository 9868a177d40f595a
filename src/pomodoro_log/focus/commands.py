"""Closed command set exposing the phase engine and history store to transports."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pomodoro_log.focus.state import TimerType, badge_text
from pomodoro_log.history.utils import now_local

if TYPE_CHECKING:
    from pomodoro_log.focus.pomodoro import PomodoroTimer
    from pomodoro_log.history.store import HistoryStore

logger = logging.getLogger(__name__)

CommandResult = dict[str, Any]

DEFAULT_GROUP_DAYS = 30


class Command(str, Enum):
    """Actions accepted by ``CommandDispatcher.dispatch``."""

    TOGGLE_TIMER = "toggleTimer"
    GET_CURRENT_TIMER = "getCurrentTimer"
    GET_NEXT_PHASE_INFO = "getNextPhaseInfo"
    OPEN_HISTORY = "openHistory"
    EXPORT_HISTORY = "exportHistory"
    EXPORT_CSV = "exportCsv"
    IMPORT_HISTORY = "importHistory"
    CLEAR_HISTORY = "clearHistory"
    GET_HISTORICAL_STATS = "getHistoricalStats"
    DEDUPLICATE_HISTORY = "deduplicateHistory"
    GET_DAILY_GROUPS = "getDailyGroups"
    START_FOCUS = "startFocus"
    START_SHORT_BREAK = "startShortBreak"
    START_LONG_BREAK = "startLongBreak"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    RESET_CYCLE = "resetCycle"


class CommandDispatcher:
    """Routes ``{"action": name, ...}`` messages to the engine and the history store.

    Failures never propagate into the caller's transport; they come back as
    ``{"error": message}``.

    Usage:
        dispatcher = CommandDispatcher(timer, history)
        result = await dispatcher.dispatch({"action": "toggleTimer"})
    """

    def __init__(
        self,
        timer: PomodoroTimer,
        history: HistoryStore,
        open_history: Callable[[], Awaitable[None] | None] | None = None,
    ):
        self.timer = timer
        self.history = history
        self.open_history = open_history

        self._handlers: dict[Command, Callable[[dict[str, Any]], Awaitable[CommandResult]]] = {
            Command.TOGGLE_TIMER: self._toggle_timer,
            Command.GET_CURRENT_TIMER: self._get_current_timer,
            Command.GET_NEXT_PHASE_INFO: self._get_next_phase_info,
            Command.OPEN_HISTORY: self._open_history,
            Command.EXPORT_HISTORY: self._export_history,
            Command.EXPORT_CSV: self._export_csv,
            Command.IMPORT_HISTORY: self._import_history,
            Command.CLEAR_HISTORY: self._clear_history,
            Command.GET_HISTORICAL_STATS: self._get_historical_stats,
            Command.DEDUPLICATE_HISTORY: self._deduplicate_history,
            Command.GET_DAILY_GROUPS: self._get_daily_groups,
            Command.START_FOCUS: self._starter(TimerType.FOCUS),
            Command.START_SHORT_BREAK: self._starter(TimerType.SHORT_BREAK),
            Command.START_LONG_BREAK: self._starter(TimerType.LONG_BREAK),
            Command.PAUSE: self._pause,
            Command.RESUME: self._resume,
            Command.STOP: self._stop,
            Command.RESET_CYCLE: self._reset_cycle,
        }

    async def dispatch(self, message: Any) -> CommandResult:
        if not isinstance(message, dict) or not isinstance(message.get("action"), str):
            return {"error": "Message must be an object with an 'action' string"}

        try:
            command = Command(message["action"])
        except ValueError:
            return {"error": f"Unknown action: {message['action']}"}

        logger.debug(f"Dispatching {command.value}")
        try:
            return await self._handlers[command](message)
        except Exception as e:
            logger.error(f"Command {command.value} failed: {e}")
            return {"error": str(e)}

    def _timer_result(self) -> CommandResult:
        state = self.timer.get_current_state()
        return {"state": state.to_dict(), "badge": badge_text(state)}

    async def _toggle_timer(self, message: dict[str, Any]) -> CommandResult:
        await self.timer.toggle_timer_state()
        return self._timer_result()

    async def _get_current_timer(self, message: dict[str, Any]) -> CommandResult:
        return self._timer_result()

    async def _get_next_phase_info(self, message: dict[str, Any]) -> CommandResult:
        return await self.timer.get_next_phase_info()

    async def _open_history(self, message: dict[str, Any]) -> CommandResult:
        if not self.open_history:
            return {"opened": False}
        result = self.open_history()
        if asyncio.iscoroutine(result):
            await result
        return {"opened": True}

    async def _export_history(self, message: dict[str, Any]) -> CommandResult:
        return (await self.history.export_history()).model_dump()

    async def _export_csv(self, message: dict[str, Any]) -> CommandResult:
        return {"csv": await self.history.export_csv()}

    async def _import_history(self, message: dict[str, Any]) -> CommandResult:
        if "data" not in message:
            return {"error": "importHistory requires 'data'"}
        added = await self.history.import_history(message["data"])
        return {"added": added}

    async def _clear_history(self, message: dict[str, Any]) -> CommandResult:
        await self.history.clear_history()
        return {"cleared": True}

    async def _get_historical_stats(self, message: dict[str, Any]) -> CommandResult:
        return (await self.history.get_historical_stats()).model_dump()

    async def _deduplicate_history(self, message: dict[str, Any]) -> CommandResult:
        return {"removed": await self.history.deduplicate_history()}

    async def _get_daily_groups(self, message: dict[str, Any]) -> CommandResult:
        days = message.get("days", DEFAULT_GROUP_DAYS)
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            return {"error": "'days' must be a positive integer"}
        groups = await self.history.get_daily_counts(days)
        since = now_local().date() - timedelta(days=days - 1)
        return {"since": since.isoformat(), "groups": groups}

    def _starter(self, timer_type: TimerType) -> Callable[[dict[str, Any]], Awaitable[CommandResult]]:
        async def start(message: dict[str, Any]) -> CommandResult:
            await self.timer.start(timer_type)
            return self._timer_result()

        return start

    async def _pause(self, message: dict[str, Any]) -> CommandResult:
        await self.timer.pause()
        return self._timer_result()

    async def _resume(self, message: dict[str, Any]) -> CommandResult:
        await self.timer.resume()
        return self._timer_result()

    async def _stop(self, message: dict[str, Any]) -> CommandResult:
        await self.timer.stop()
        return self._timer_result()

    async def _reset_cycle(self, message: dict[str, Any]) -> CommandResult:
        await self.timer.reset_cycle()
        return self._timer_result()
