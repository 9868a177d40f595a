"""Core components: configuration, locking and the runtime orchestrator."""

from pomodoro_log.core.config import Config, get_config
from pomodoro_log.core.mutex import Mutex, with_mutex

__all__ = ["Config", "get_config", "Mutex", "with_mutex"]
