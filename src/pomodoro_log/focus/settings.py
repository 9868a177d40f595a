"""Per-phase timer settings, persisted in the key-value store."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pomodoro_log.core.config import TimerConfig
from pomodoro_log.focus.state import TimerType
from pomodoro_log.storage.database import KeyValueStore, StorageError

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"

NOTIFICATION_FIELDS = ("desktop", "tab", "sound")


class NotificationSettings(BaseModel):
    desktop: bool = True
    tab: bool = True
    sound: str | None = None


class PhaseSettings(BaseModel):
    """Settings for one phase type."""

    duration: int = Field(ge=1, le=1440, description="Duration in minutes")
    timer_sound: str | None = None
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)


class LongBreakSettings(PhaseSettings):
    interval: int = Field(default=4, ge=0, description="Focus sessions between long breaks, 0 disables")


class PomodoroSettings(BaseModel):
    """Settings for all three phase types, keyed by their wire names."""

    focus: PhaseSettings = Field(default_factory=lambda: PhaseSettings(duration=25))
    short_break: PhaseSettings = Field(
        default_factory=lambda: PhaseSettings(duration=5), alias="short-break"
    )
    long_break: LongBreakSettings = Field(
        default_factory=lambda: LongBreakSettings(duration=15), alias="long-break"
    )

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_timer_config(cls, timer: TimerConfig) -> PomodoroSettings:
        return cls(
            focus=PhaseSettings(duration=timer.focus_minutes),
            short_break=PhaseSettings(duration=timer.short_break_minutes),
            long_break=LongBreakSettings(
                duration=timer.long_break_minutes,
                interval=timer.long_break_interval,
            ),
        )

    def for_type(self, timer_type: TimerType) -> PhaseSettings:
        if timer_type is TimerType.FOCUS:
            return self.focus
        if timer_type is TimerType.SHORT_BREAK:
            return self.short_break
        return self.long_break

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class SettingsProvider:
    """Supplies phase durations and the long-break interval.

    ``initialize()`` loads stored settings (or saves the defaults); the phase
    engine awaits ``wait_for_initialization()`` before starting a phase.
    """

    def __init__(self, store: KeyValueStore, defaults: PomodoroSettings | None = None):
        self._store = store
        self._defaults = defaults or PomodoroSettings()
        self._settings = self._defaults.model_copy(deep=True)
        self._initialized = asyncio.Event()
        self.on_change: Callable[[PomodoroSettings], Awaitable[None] | None] | None = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized.is_set()

    async def initialize(self) -> None:
        await self.load_settings()
        self._initialized.set()

    async def wait_for_initialization(self) -> None:
        await self._initialized.wait()

    async def load_settings(self) -> None:
        try:
            stored = await self._store.get(SETTINGS_KEY)
        except Exception as e:
            logger.error(f"Error loading settings: {e}")
            await self.save_settings(self._defaults)
            return

        if stored:
            self._settings = self.get_validated_settings(stored)
            logger.debug(f"Settings loaded: {self._settings.to_dict()}")
        else:
            logger.info("No settings found, using defaults")
            await self.save_settings(self._defaults)

    def get_validated_settings(self, raw: Any) -> PomodoroSettings:
        """Merge ``raw`` over the defaults, keeping only well-typed fields."""
        validated = self._defaults.to_dict()
        if not isinstance(raw, dict):
            return PomodoroSettings.model_validate(validated)

        for timer_type in TimerType:
            incoming = raw.get(timer_type.value)
            if not isinstance(incoming, dict):
                continue
            target = validated[timer_type.value]

            duration = incoming.get("duration")
            if _is_int(duration) and 1 <= duration <= 1440:
                target["duration"] = duration

            sound = incoming.get("timer_sound", incoming.get("timerSound", target["timer_sound"]))
            if sound is None or isinstance(sound, str):
                target["timer_sound"] = sound

            notifications = incoming.get("notifications")
            if isinstance(notifications, dict):
                for field in ("desktop", "tab"):
                    if isinstance(notifications.get(field), bool):
                        target["notifications"][field] = notifications[field]
                if isinstance(notifications.get("sound"), str):
                    target["notifications"]["sound"] = notifications["sound"]

            if timer_type is TimerType.LONG_BREAK:
                interval = incoming.get("interval")
                if _is_int(interval) and interval >= 0:
                    target["interval"] = interval

        return PomodoroSettings.model_validate(validated)

    async def save_settings(self, settings: PomodoroSettings | dict[str, Any]) -> bool:
        """Validate and persist ``settings``.

        Returns False, keeping the current settings, when the write fails.
        """
        raw = settings.to_dict() if isinstance(settings, PomodoroSettings) else settings
        validated = self.get_validated_settings(raw)
        try:
            await self._store.set(SETTINGS_KEY, validated.to_dict())
        except Exception as e:
            logger.error(f"Error saving settings: {e}")
            return False

        self._settings = validated
        await self._notify_change()
        return True

    async def update_setting(self, timer_type: TimerType | str, field: str, value: Any) -> PomodoroSettings:
        """Update one field, e.g. ``("focus", "duration", 50)`` or ``("focus", "notifications.tab", False)``."""
        timer_type = TimerType(timer_type)
        settings = self._settings.to_dict()
        target = settings[timer_type.value]

        if "." in field:
            category, name = field.split(".", 1)
            if category != "notifications" or name not in NOTIFICATION_FIELDS:
                raise ValueError(f"Unknown setting: {field}")
            target[category][name] = value
        else:
            if field not in target:
                raise ValueError(f"Unknown setting: {field}")
            target[field] = value

        try:
            candidate = PomodoroSettings.model_validate(settings)
        except ValidationError as e:
            raise ValueError(f"Invalid value for {timer_type.value}.{field}: {value!r}") from e

        if not await self.save_settings(candidate):
            raise StorageError(f"Could not save {timer_type.value}.{field}")
        logger.info(f"Setting updated: {timer_type.value}.{field} = {value!r}")
        return self.get_settings()

    def get_settings(self) -> PomodoroSettings:
        return self._settings.model_copy(deep=True)

    def get_duration_minutes(self, timer_type: TimerType | str) -> int:
        return self._settings.for_type(TimerType(timer_type)).duration

    def get_duration_seconds(self, timer_type: TimerType) -> int:
        return self.get_duration_minutes(timer_type) * 60

    def get_long_break_interval(self) -> int:
        return self._settings.long_break.interval

    async def _notify_change(self) -> None:
        if not self.on_change:
            return
        try:
            result = self.on_change(self.get_settings())
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Error in settings on_change callback: {e}")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
