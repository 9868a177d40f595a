"""Pomodoro phase engine: a persisted state machine driven by an absolute deadline."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pomodoro_log.focus.state import (
    TIMER_UPDATE_INTERVAL,
    TimerError,
    TimerState,
    TimerStatus,
    TimerType,
    calculate_remaining_time,
    current_time_ms,
    today_iso,
    validate_timer_state,
)

if TYPE_CHECKING:
    from pomodoro_log.focus.settings import SettingsProvider
    from pomodoro_log.history.store import HistoryStore
    from pomodoro_log.storage.persistence import TimerStateStorage

logger = logging.getLogger(__name__)

# Fields cleared whenever the engine leaves an active phase
_INACTIVE = {
    "timer_status": TimerStatus.STOPPED,
    "timer_type": None,
    "end_time": None,
    "remaining_time": None,
    "initial_duration_minutes": None,
}


class PomodoroTimer:
    """Pomodoro timer with a persisted state machine and callbacks.

    The remaining time of a running phase is always recomputed from
    ``end_time``, so a process that is suspended or restarted picks up where
    the wall clock says it should. Every mutation is persisted before the
    operation returns.

    Public operations are serialized by one lock, so a command issued while
    a completion is being recorded acts on the completed state instead of
    being overwritten by it. ``on_state_change`` runs under that lock and
    must not call back into the timer.

    Usage:
        timer = PomodoroTimer(settings, history, TimerStateStorage(db))
        timer.on_phase_complete = lambda phase, state: print(f"{phase.value} complete!")

        await timer.initialize()
        await timer.toggle_timer_state()  # start the next phase
        await timer.toggle_timer_state()  # pause
        await timer.toggle_timer_state()  # resume
        await timer.stop()
    """

    def __init__(
        self,
        settings: SettingsProvider,
        history: HistoryStore,
        storage: TimerStateStorage,
        tick_interval: float = TIMER_UPDATE_INTERVAL,
    ):
        self._settings = settings
        self._history = history
        self._storage = storage
        self._tick_interval = tick_interval
        self._state = TimerState.default(today_iso())
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

        # Callbacks
        self.on_state_change: Callable[[TimerState], Awaitable[None] | None] | None = None
        self.on_phase_complete: Callable[[TimerType, TimerState], Awaitable[None] | None] | None = None

    @property
    def state(self) -> TimerState:
        """Get current timer state (copy)."""
        return self._state.model_copy()

    def get_current_state(self) -> TimerState:
        return self.state

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def is_paused(self) -> bool:
        return self._state.is_paused

    async def initialize(self, start_tick: bool = True) -> TimerState:
        """Restore the persisted state and resume ticking if a phase was running.

        A running phase whose deadline passed while no process was alive is
        completed by the first tick, exactly once. With ``start_tick=False``
        the caller drives ``tick()`` itself.
        """
        async with self._lock:
            today = today_iso()
            stored = await self._storage.load_state()
            if stored is None:
                logger.info("No valid timer state stored, starting stopped")
            self._state = stored or TimerState.default(today)

            updates: dict[str, Any] = {}
            if self._state.last_session_date != today:
                logger.info(f"Day rollover: {self._state.last_session_date or 'never'} -> {today}")
                updates.update(sessions_today=0, sessions_since_last_long_break=0, last_session_date=today)

            try:
                stats = await self._history.get_historical_stats()
                updates["sessions_today"] = stats.daily
            except Exception as e:
                logger.error(f"Error loading today's session count: {e}")

            state = await self._update_state(**updates)
            if state.is_running and start_tick:
                logger.info(f"Resuming running {state.timer_type.value} phase")
                self._start_interval()
            return state

    def get_next_type(self) -> TimerType:
        """Phase that follows the last completed one."""
        last = self._state.last_completed_phase_type
        if last is None or last.is_break:
            return TimerType.FOCUS

        interval = self._settings.get_long_break_interval()
        if interval > 0 and self._state.sessions_since_last_long_break >= interval:
            return TimerType.LONG_BREAK
        return TimerType.SHORT_BREAK

    async def get_next_phase_info(self) -> dict[str, Any]:
        sessions_today = self._state.sessions_today
        try:
            sessions_today = (await self._history.get_historical_stats()).daily
        except Exception as e:
            logger.error(f"Error loading today's session count: {e}")
        return {"type": self.get_next_type().value, "sessions_today": sessions_today}

    async def toggle_timer_state(self) -> TimerState:
        """Click semantics: pause if running, resume if paused, else start the next phase."""
        async with self._lock:
            if self._state.is_running:
                return await self._pause()
            if self._state.is_paused:
                return await self._resume()
            return await self._start(self.get_next_type())

    async def start(self, timer_type: TimerType | str | None = None) -> TimerState:
        """Start a phase. An active phase is discarded and restarted with ``timer_type``."""
        async with self._lock:
            return await self._start(timer_type)

    async def pause(self) -> TimerState:
        async with self._lock:
            return await self._pause()

    async def resume(self) -> TimerState:
        """Continue a paused phase. Without a paused phase to continue, the timer stops."""
        async with self._lock:
            return await self._resume()

    async def stop(self) -> TimerState:
        """Return to stopped. Session counters are kept."""
        async with self._lock:
            return await self._stop()

    async def reset_cycle(self) -> TimerState:
        """Forget progress towards the long break and start a fresh focus phase."""
        async with self._lock:
            self._clear_interval()
            await self._update_state(
                **_INACTIVE,
                sessions_since_last_long_break=0,
                last_completed_phase_type=None,
            )
            logger.info("Pomodoro cycle reset")
            return await self._start(TimerType.FOCUS)

    async def tick(self) -> None:
        """Recompute the remaining time and complete the phase at the deadline.

        ``on_phase_complete`` fires after the engine lock is released, so the
        callback may start the next phase.
        """
        async with self._lock:
            completed = await self._tick()
        if completed is not None:
            await self._fire(self.on_phase_complete, "on_phase_complete", completed, self.state)

    async def close(self) -> None:
        """Cancel the tick task and wait for it to finish."""
        task = self._task
        self._task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # Implementations below expect the engine lock to be held

    async def _start(self, timer_type: TimerType | str | None) -> TimerState:
        await self._settings.wait_for_initialization()

        timer_type = TimerType(timer_type) if timer_type else self.get_next_type()
        if self._state.timer_type is not None:
            logger.info(f"Restarting timer: {self._state.timer_type.value} -> {timer_type.value}")

        duration = self._settings.get_duration_minutes(timer_type)
        self._clear_interval()

        state = await self._update_state(
            timer_status=TimerStatus.RUNNING,
            timer_type=timer_type,
            end_time=current_time_ms() + duration * 60 * 1000,
            remaining_time=duration * 60,
            initial_duration_minutes=duration,
        )
        if state.is_running:
            logger.info(f"Timer started: {timer_type.value} ({duration} min)")
            self._start_interval()
        return state

    async def _pause(self) -> TimerState:
        if not self._state.is_running:
            logger.debug("Pause ignored, timer is not running")
            return self.state

        self._clear_interval()
        try:
            remaining = calculate_remaining_time(self._state.end_time)
        except TimerError as e:
            logger.error(f"Cannot pause: {e}")
            return await self._stop()

        state = await self._update_state(
            timer_status=TimerStatus.PAUSED,
            end_time=None,
            remaining_time=remaining,
        )
        logger.info(f"Timer paused with {remaining}s remaining")
        return state

    async def _resume(self) -> TimerState:
        state = self._state
        if state.is_running:
            return self.state
        if not state.is_paused or state.remaining_time is None or state.timer_type is None:
            logger.warning("Cannot resume: no paused phase, stopping timer")
            return await self._stop()

        state = await self._update_state(
            timer_status=TimerStatus.RUNNING,
            end_time=current_time_ms() + state.remaining_time * 1000,
        )
        if state.is_running:
            logger.info(f"Timer resumed: {state.timer_type.value} ({state.remaining_time}s remaining)")
            self._start_interval()
        return state

    async def _stop(self) -> TimerState:
        self._clear_interval()
        state = await self._update_state(**_INACTIVE)
        logger.info("Timer stopped")
        return state

    async def _tick(self) -> TimerType | None:
        if not self._state.is_running:
            return None

        try:
            remaining = calculate_remaining_time(self._state.end_time)
        except TimerError as e:
            logger.error(f"Invalid deadline, stopping timer: {e}")
            await self._stop()
            return None

        if remaining == 0:
            return await self._handle_timer_complete()
        if remaining != self._state.remaining_time:
            await self._update_state(remaining_time=remaining)
        return None

    def _start_interval(self) -> None:
        self._clear_interval()
        self._task = asyncio.create_task(self._tick_loop())

    def _clear_interval(self) -> None:
        task = self._task
        self._task = None
        # The tick task may clear itself on completion; it must not cancel its own work
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _tick_loop(self) -> None:
        """Main timer tick loop."""
        try:
            while self._state.is_running and self._task is asyncio.current_task():
                await asyncio.sleep(self._tick_interval)
                await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in timer tick loop: {e}")
            await self.stop()

    async def _handle_timer_complete(self) -> TimerType:
        """Record the finished phase and return to stopped.

        Runs under the engine lock, so a command arriving while the session
        is being recorded waits and then acts on the stopped state.
        """
        self._clear_interval()
        state = self._state
        completed = state.timer_type
        duration = state.initial_duration_minutes or self._settings.get_duration_minutes(completed)
        today = today_iso()

        since_long_break = state.sessions_since_last_long_break
        sessions_today = state.sessions_today if state.last_session_date == today else 0
        if completed is TimerType.FOCUS:
            since_long_break += 1
            sessions_today += 1
        elif completed is TimerType.LONG_BREAK:
            since_long_break = 0

        if completed is TimerType.FOCUS:
            try:
                await self._history.add_completed_session(duration)
                sessions_today = (await self._history.get_historical_stats()).daily
            except Exception as e:
                logger.error(f"Error recording completed session: {e}")

        await self._update_state(
            **_INACTIVE,
            last_completed_phase_type=completed,
            sessions_since_last_long_break=since_long_break,
            sessions_today=sessions_today,
            last_session_date=today,
        )
        logger.info(f"{completed.value} phase complete ({duration} min), next: {self.get_next_type().value}")
        return completed

    async def _update_state(self, **updates: Any) -> TimerState:
        """Apply ``updates``, persist and notify.

        An update that fails validation is discarded and the engine falls
        back to a fresh stopped state, which is persisted in its place.
        """
        try:
            data = self._state.to_dict()
            data.update(updates)
            if not validate_timer_state(data):
                raise TimerError("Timer state is missing required fields")
            new_state = TimerState.model_validate(data)
        except Exception as e:
            logger.error(f"Invalid timer state update {updates}, resetting: {e}")
            self._clear_interval()
            new_state = TimerState.default(today_iso())

        self._state = new_state
        await self._storage.save_state(new_state)
        await self._fire(self.on_state_change, "on_state_change", self.state)
        return self.state

    async def _fire(self, callback: Callable[..., Any] | None, name: str, *args: Any) -> None:
        if not callback:
            return
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Error in {name} callback: {e}")
