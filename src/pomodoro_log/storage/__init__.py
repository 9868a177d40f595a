"""Storage layer: key-value database and persistence adapters."""

from pomodoro_log.storage.database import Database, KeyValueStore, StorageError, init_database

__all__ = ["Database", "KeyValueStore", "StorageError", "init_database"]
