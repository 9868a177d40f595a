"""Runtime orchestrator wiring storage, history, settings and the phase engine."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from pomodoro_log.core.config import Config, get_config
from pomodoro_log.core.mutex import Mutex
from pomodoro_log.focus.commands import CommandDispatcher
from pomodoro_log.focus.pomodoro import PomodoroTimer
from pomodoro_log.focus.settings import PomodoroSettings, SettingsProvider
from pomodoro_log.focus.state import TimerState, TimerType
from pomodoro_log.history.store import HistoryStore
from pomodoro_log.storage.database import Database, init_database
from pomodoro_log.storage.persistence import HistoryStorage, TimerStateStorage

logger = logging.getLogger(__name__)

CONTROL_POLL_SECONDS = 0.5


class Orchestrator:
    """Owns every runtime component of one process.

    Components are constructed explicitly in ``start()`` so tests and hosts
    (CLI, web server) each get an isolated set.

    Usage:
        orchestrator = Orchestrator(config)
        await orchestrator.start()
        result = await orchestrator.dispatcher.dispatch({"action": "toggleTimer"})
        await orchestrator.stop()
    """

    def __init__(self, config: Config | None = None):
        self.config = config or get_config()
        self._running = False
        self._startup_time: datetime | None = None

        # Core components (initialized in start())
        self.db: Database | None = None
        self.settings: SettingsProvider | None = None
        self.history: HistoryStore | None = None
        self.timer: PomodoroTimer | None = None
        self.dispatcher: CommandDispatcher | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self._owns_pid_file = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> float:
        if self._startup_time is None:
            return 0.0
        return (datetime.now() - self._startup_time).total_seconds()

    async def start(
        self,
        tick: bool = True,
        daemon: bool = False,
        reconcile: bool = True,
        handle_signals: bool = True,
    ) -> None:
        """Connect storage and restore the timer.

        ``tick=False`` restores state without a background tick, for one-shot
        hosts; unless ``reconcile`` is False, a single ``timer.tick()`` then
        settles a deadline that passed while no process was alive. ``daemon=True``
        claims the PID file and polls the control file, so CLI invocations are
        forwarded to this process instead of running a second engine; it also
        installs SIGINT/SIGTERM handlers unless the host (uvicorn) owns them.
        """
        if self._running:
            logger.warning("Orchestrator already running")
            return

        logger.info("Starting pomodoro-log...")

        try:
            self.config.ensure_directories()

            if daemon:
                self._write_pid_file()

            self.db = await init_database(self.config.db_path)

            self.settings = SettingsProvider(
                self.db,
                defaults=PomodoroSettings.from_timer_config(self.config.timer),
            )
            await self.settings.initialize()

            self.history = HistoryStore(HistoryStorage(self.db), Mutex())

            self.timer = PomodoroTimer(
                self.settings,
                self.history,
                TimerStateStorage(self.db),
                tick_interval=self.config.timer.tick_interval_seconds,
            )
            self.dispatcher = CommandDispatcher(self.timer, self.history)

            await self.timer.initialize(start_tick=tick)
            if not tick and reconcile:
                await self.timer.tick()

            if daemon:
                if handle_signals:
                    self._setup_signal_handlers()
                self._tasks.append(asyncio.create_task(self._poll_control_file()))

            self._running = True
            self._startup_time = datetime.now()
            logger.info("pomodoro-log started")

        except Exception as e:
            logger.error(f"Failed to start: {e}")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the tick and background tasks and close the database."""
        if not self._running and self.db is None and not self._owns_pid_file:
            return

        logger.info("Stopping pomodoro-log...")
        self._running = False
        self._stop_event.set()

        if self.timer:
            await self.timer.close()
            self.timer = None

        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        self.dispatcher = None
        self.history = None
        self.settings = None

        if self.db:
            await self.db.close()
            self.db = None

        if self._owns_pid_file:
            self._remove_pid_file()

        logger.info("pomodoro-log stopped")

    async def wait_until_stopped(self) -> None:
        await self._stop_event.wait()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def _poll_control_file(self) -> None:
        """Dispatch commands that CLI invocations leave in the control file."""
        while True:
            await asyncio.sleep(CONTROL_POLL_SECONDS)
            message = read_control(self.config.control_file)
            if message is None or self.dispatcher is None:
                continue
            result = await self.dispatcher.dispatch(message)
            if "error" in result:
                logger.warning(f"Control command {message.get('action')} failed: {result['error']}")
            else:
                logger.info(f"Control command handled: {message.get('action')}")

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        self.request_stop()

    def _write_pid_file(self) -> None:
        """Write PID file for daemon management."""
        pid_file = self.config.pid_file
        pid = self.get_daemon_pid(self.config)
        if pid is not None and pid != os.getpid():
            raise RuntimeError(f"Another pomodoro-log daemon is running (PID: {pid})")
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        self._owns_pid_file = True
        logger.debug(f"PID file written: {pid_file}")

    def _remove_pid_file(self) -> None:
        pid_file = self.config.pid_file
        if pid_file.exists():
            pid_file.unlink()
            logger.debug("PID file removed")
        self._owns_pid_file = False

    @classmethod
    def get_daemon_pid(cls, config: Config | None = None) -> int | None:
        """Get the PID of a running daemon from the PID file."""
        config = config or get_config()
        pid_file = config.pid_file

        if not pid_file.exists():
            return None

        try:
            pid = int(pid_file.read_text().strip())
            # Check if process is actually running
            os.kill(pid, 0)
            return pid
        except (ValueError, OSError):
            # Process not running or invalid PID
            pid_file.unlink(missing_ok=True)
            return None

    @classmethod
    def is_daemon_running(cls, config: Config | None = None) -> bool:
        return cls.get_daemon_pid(config) is not None

    async def get_health(self) -> dict[str, Any]:
        """Health of the running components."""
        health: dict[str, Any] = {
            "status": "running" if self._running else "stopped",
            "uptime_seconds": self.uptime_seconds,
            "pid": os.getpid(),
        }

        if self.db:
            try:
                health["database"] = {
                    "connected": self.db.is_connected,
                    "size_mb": await self.db.get_size_mb(),
                    "integrity_ok": await self.db.check_integrity(),
                }
            except Exception as e:
                health["database"] = {"connected": False, "error": str(e)}

        if self.timer:
            health["timer"] = self.timer.state.to_dict()

        return health


def write_control(control_file: Path, message: dict[str, Any]) -> None:
    """Leave a command for the running daemon."""
    control_file.parent.mkdir(parents=True, exist_ok=True)
    payload = {**message, "timestamp": datetime.now().isoformat()}
    control_file.write_text(json.dumps(payload))


def read_control(control_file: Path) -> dict[str, Any] | None:
    """Read and clear the pending command."""
    if not control_file.exists():
        return None
    try:
        data = json.loads(control_file.read_text())
    except (OSError, ValueError) as e:
        logger.warning(f"Unreadable control file, discarding it: {e}")
        data = None
    control_file.unlink(missing_ok=True)
    return data if isinstance(data, dict) else None


async def run_daemon(
    config: Config | None = None,
    on_phase_complete: Callable[[TimerType, TimerState], Awaitable[None] | None] | None = None,
) -> None:
    """Run the timer in the foreground until a signal arrives."""
    orchestrator = Orchestrator(config)

    try:
        await orchestrator.start(daemon=True)
        orchestrator.timer.on_phase_complete = on_phase_complete
        await orchestrator.wait_until_stopped()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        await orchestrator.stop()
