"""
Centralized settings for timecapsule.

Every knob a digger process needs (where the store lives, which sorted
set to poll, how often, how hard to retry) resolves from ``TIMECAPSULE_*``
environment variables or a ``.env`` file into one validated, cached
:class:`TimeCapsuleSettings`.

Example::

    # TIMECAPSULE_REDIS_URL=redis://cache:6379/2
    # TIMECAPSULE_SORTED_SET_KEY=mailer:delayed
    settings = get_settings()
    digger = create_digger(settings, handler=send_mail)

Tags:
    timecapsule, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from timecapsule.errors import ConfigError

# ── Backend enumerations ─────────────────────────────────────────────────


class StoreBackend(str, Enum):
    """Supported store adapters."""

    REDIS = "redis"
    REDIS_COMMAND = "redis_command"


class LogFormat(str, Enum):
    """Supported log renderers."""

    JSON = "json"
    CONSOLE = "console"
    AUTO = "auto"


class TimeCapsuleSettings(BaseSettings):
    """timecapsule configuration.

    All fields can be set via ``TIMECAPSULE_*`` environment variables
    (e.g. ``TIMECAPSULE_DIG_INTERVAL_SECONDS=0.25``) or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="TIMECAPSULE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Store ────────────────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0")
    sorted_set_key: str = Field(default="timecapsule", min_length=1)
    store_backend: StoreBackend = Field(default=StoreBackend.REDIS)
    store_retry_limit: int = Field(default=100, gt=0, description="Requeue / ZREM attempts")
    store_retry_interval_seconds: float = Field(default=0.01, ge=0)

    # ── Digger ───────────────────────────────────────────────────
    dig_interval_seconds: float = Field(default=1.0, gt=0)
    retry_limit: int = Field(default=100, gt=0, description="Digger-level destroy attempts")
    retry_interval_seconds: float = Field(default=0.5, gt=0)
    operation_timeout_seconds: float = Field(default=60.0, gt=0)
    stop_timeout_seconds: float = Field(default=5.0, gt=0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default=LogFormat.AUTO)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return level

    # ── Derived properties ───────────────────────────────────────

    @property
    def dig_interval(self) -> timedelta:
        return timedelta(seconds=self.dig_interval_seconds)

    @property
    def json_logs(self) -> bool | None:
        """``None`` lets the logging setup pick by TTY."""
        if self.log_format == LogFormat.AUTO:
            return None
        return self.log_format == LogFormat.JSON


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, TimeCapsuleSettings] = {}


def get_settings(*, _force_reload: bool = False, **overrides: object) -> TimeCapsuleSettings:
    """Load, validate, and cache a :class:`TimeCapsuleSettings` instance.

    Keyword overrides win over the environment and bypass the cache.

    Raises:
        ConfigError: If a value fails validation
    """
    if not overrides and not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]

    try:
        settings = TimeCapsuleSettings(**overrides)
    except ValidationError as e:
        raise ConfigError(f"invalid timecapsule settings: {e}", cause=e) from e

    if not overrides:
        _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = [
    "LogFormat",
    "StoreBackend",
    "TimeCapsuleSettings",
    "clear_settings_cache",
    "get_settings",
]
