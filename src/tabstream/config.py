"""Configuration system for tabstream, read from the environment and `.env`."""

import logging
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EnvConfig(BaseSettings):
    """Environment variable configuration using pydantic-settings."""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='allow'
    )

    # Logging
    TABSTREAM_LOGGING_LEVEL: str = Field(default='info')
    CDP_LOGGING_LEVEL: str = Field(default='WARNING')
    TABSTREAM_DEBUG_LOG_FILE: str | None = Field(default=None)
    TABSTREAM_INFO_LOG_FILE: str | None = Field(default=None)

    # Connection
    TABSTREAM_CDP_URL: str | None = Field(default=None)
    TABSTREAM_RECONNECT_ENABLED: bool = Field(default=True)
    TABSTREAM_RECONNECT_MAX_RETRIES: int = Field(default=5, ge=0)
    TABSTREAM_RECONNECT_INTERVAL: float = Field(default=2.0, ge=0)
    TABSTREAM_RECONNECT_BACKOFF: float = Field(default=1.5, ge=1.0)
    TABSTREAM_HEARTBEAT_INTERVAL: float = Field(default=5.0, ge=0)

    # Navigation
    TABSTREAM_NAVIGATION_TIMEOUT: float = Field(default=30.0, gt=0)

    # Screencast defaults
    TABSTREAM_SCREENCAST_FORMAT: str = Field(default='jpeg')
    TABSTREAM_SCREENCAST_QUALITY: int = Field(default=80, ge=0, le=100)
    TABSTREAM_SCREENCAST_MAX_WIDTH: int = Field(default=1200, gt=0)
    TABSTREAM_SCREENCAST_MAX_HEIGHT: int = Field(default=800, gt=0)
    TABSTREAM_SCREENCAST_EVERY_NTH_FRAME: int = Field(default=1, ge=1)


class Config:
    """Configuration class backed by the environment.

    Re-reads environment variables on every access so tests and long-lived
    processes pick up changes without a restart.
    """

    _instance: 'Config | None' = None

    def __new__(cls) -> 'Config':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def _env(self) -> EnvConfig:
        return EnvConfig()

    @property
    def LOGGING_LEVEL(self) -> str:
        return self._env.TABSTREAM_LOGGING_LEVEL.lower()

    @property
    def CDP_LOGGING_LEVEL(self) -> str:
        return self._env.CDP_LOGGING_LEVEL.upper()

    @property
    def DEBUG_LOG_FILE(self) -> str | None:
        return self._env.TABSTREAM_DEBUG_LOG_FILE

    @property
    def INFO_LOG_FILE(self) -> str | None:
        return self._env.TABSTREAM_INFO_LOG_FILE

    @property
    def CDP_URL(self) -> str | None:
        return self._env.TABSTREAM_CDP_URL

    @property
    def HEARTBEAT_INTERVAL(self) -> float | None:
        # 0 disables the heartbeat probe
        interval = self._env.TABSTREAM_HEARTBEAT_INTERVAL
        return interval or None

    @property
    def NAVIGATION_TIMEOUT(self) -> float:
        return self._env.TABSTREAM_NAVIGATION_TIMEOUT

    def get_reconnect_config(self) -> dict[str, Any]:
        """Reconnect policy settings as keyword arguments for ReconnectPolicy."""
        env = self._env
        return {
            'enabled': env.TABSTREAM_RECONNECT_ENABLED,
            'max_retries': env.TABSTREAM_RECONNECT_MAX_RETRIES,
            'base_interval': env.TABSTREAM_RECONNECT_INTERVAL,
            'backoff_multiplier': env.TABSTREAM_RECONNECT_BACKOFF,
        }

    def get_screencast_config(self) -> dict[str, Any]:
        """Screencast defaults as keyword arguments for ScreencastOptions."""
        env = self._env
        return {
            'format': env.TABSTREAM_SCREENCAST_FORMAT,
            'quality': env.TABSTREAM_SCREENCAST_QUALITY,
            'max_width': env.TABSTREAM_SCREENCAST_MAX_WIDTH,
            'max_height': env.TABSTREAM_SCREENCAST_MAX_HEIGHT,
            'every_nth_frame': env.TABSTREAM_SCREENCAST_EVERY_NTH_FRAME,
        }


# Create singleton instance
CONFIG = Config()
