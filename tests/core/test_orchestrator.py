import asyncio
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from pomodoro_log.core import orchestrator as orchestrator_module
from pomodoro_log.core.config import Config
from pomodoro_log.core.orchestrator import Orchestrator, read_control, write_control
from pomodoro_log.focus.state import TimerStatus, TimerType


class ControlFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.control_file = Path(self._tmp.name) / "nested" / "control.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_write_then_read_consumes_message(self) -> None:
        write_control(self.control_file, {"action": "toggleTimer"})

        message = read_control(self.control_file)

        self.assertEqual("toggleTimer", message["action"])
        self.assertIn("timestamp", message)
        self.assertFalse(self.control_file.exists())
        self.assertIsNone(read_control(self.control_file))

    def test_unreadable_file_is_discarded(self) -> None:
        self.control_file.parent.mkdir(parents=True)
        self.control_file.write_text("{not json")

        with self.assertLogs("pomodoro_log.core.orchestrator", level="WARNING"):
            self.assertIsNone(read_control(self.control_file))

        self.assertFalse(self.control_file.exists())

    def test_non_object_payload_is_ignored(self) -> None:
        self.control_file.parent.mkdir(parents=True)
        self.control_file.write_text("[1, 2]")

        self.assertIsNone(read_control(self.control_file))


class OrchestratorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        tmp = Path(self._tmp.name)
        self.config = Config(data_dir=tmp / "data", log_dir=tmp / "logs", config_dir=tmp / "config")
        self.orchestrator = Orchestrator(self.config)

    async def asyncTearDown(self) -> None:
        await self.orchestrator.stop()
        self._tmp.cleanup()

    async def test_start_wires_components(self) -> None:
        await self.orchestrator.start(tick=False)

        self.assertTrue(self.orchestrator.is_running)
        self.assertTrue(self.config.db_path.exists())
        result = await self.orchestrator.dispatcher.dispatch({"action": "getCurrentTimer"})
        self.assertEqual("stopped", result["state"]["timer_status"])

        health = await self.orchestrator.get_health()
        self.assertEqual("running", health["status"])
        self.assertTrue(health["database"]["connected"])
        self.assertTrue(health["database"]["integrity_ok"])

    async def test_settings_default_to_config(self) -> None:
        self.config.timer.focus_minutes = 50

        await self.orchestrator.start(tick=False)

        self.assertEqual(50, self.orchestrator.settings.get_duration_minutes(TimerType.FOCUS))

    async def test_state_survives_restart(self) -> None:
        await self.orchestrator.start(tick=False)
        await self.orchestrator.dispatcher.dispatch({"action": "startFocus"})
        await self.orchestrator.stop()

        restarted = Orchestrator(self.config)
        await restarted.start(tick=False)
        try:
            self.assertEqual(TimerStatus.RUNNING, restarted.timer.state.timer_status)
        finally:
            await restarted.stop()

    async def test_stop_releases_everything(self) -> None:
        await self.orchestrator.start(tick=False)

        await self.orchestrator.stop()

        self.assertFalse(self.orchestrator.is_running)
        self.assertIsNone(self.orchestrator.db)
        self.assertIsNone(self.orchestrator.timer)
        self.assertEqual("stopped", (await self.orchestrator.get_health())["status"])

    async def test_daemon_writes_pid_file_and_polls_control(self) -> None:
        with patch.object(orchestrator_module, "CONTROL_POLL_SECONDS", 0.01):
            await self.orchestrator.start(tick=False, daemon=True, handle_signals=False)

            self.assertEqual(str(os.getpid()), self.config.pid_file.read_text())
            self.assertEqual(os.getpid(), Orchestrator.get_daemon_pid(self.config))

            write_control(self.config.control_file, {"action": "startShortBreak"})
            for _ in range(200):
                if not self.config.control_file.exists() and self.orchestrator.timer.is_running:
                    break
                await asyncio.sleep(0.01)

        self.assertEqual("short-break", self.orchestrator.timer.state.timer_type.value)

        await self.orchestrator.stop()
        self.assertFalse(self.config.pid_file.exists())
        self.assertFalse(Orchestrator.is_daemon_running(self.config))

    async def test_second_daemon_is_refused(self) -> None:
        self.config.ensure_directories()
        self.config.pid_file.write_text(str(os.getppid()))

        with self.assertLogs("pomodoro_log.core.orchestrator", level="ERROR"):
            with self.assertRaises(RuntimeError):
                await self.orchestrator.start(tick=False, daemon=True, handle_signals=False)

        self.assertEqual(str(os.getppid()), self.config.pid_file.read_text())
        self.assertIsNone(self.orchestrator.db)

    async def test_stale_pid_file_is_removed(self) -> None:
        self.config.ensure_directories()
        self.config.pid_file.write_text("not-a-pid")

        self.assertIsNone(Orchestrator.get_daemon_pid(self.config))
        self.assertFalse(self.config.pid_file.exists())


if __name__ == "__main__":
    unittest.main()
