"""Settings for the keeper process.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    The concurrency ceiling in particular must be a positive integer, and
    a bad value has to stop the process at startup rather than surface as
    a stuck queue later.

    - **Pydantic validation:** Type-checked at startup
    - **Environment-driven:** Reads from env vars and a ``.env`` file
    - **Extra ignore:** Unknown env vars don't cause startup failures

Environment variables
─────────────────────
MAX_CONCURRENT_EXECUTIONS   Concurrency ceiling (default 3)
POLL_INTERVAL_SECONDS       Seconds between polls of the task source (default 10)
LOG_LEVEL                   Structlog level (default INFO)
LOG_FORMAT                  json | console | auto (default auto)
KEEPER_SERVICE_NAME         ``service.name`` attached to every log line

Examples:
    >>> from keeper.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.max_concurrent_executions
    3

Tags:
    settings, configuration, pydantic, environment, keeper
"""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, Field, PositiveFloat, PositiveInt, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from keeper.core.errors import InvalidConfigError

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class KeeperSettings(BaseSettings):
    """Keeper configuration.

    Fields
    ──────
    max_concurrent_executions : Default ceiling for ExecutionQueue
    poll_interval_seconds     : Delay between task-source polls
    log_level                 : Structlog log level
    log_format                : json, console, or auto (JSON when not a TTY)
    service_name              : Service name stamped on log lines
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Execution ────────────────────────────────────────────────
    max_concurrent_executions: PositiveInt = Field(
        default=3,
        description="Maximum number of executor invocations running at once",
    )
    poll_interval_seconds: PositiveFloat = Field(
        default=10.0,
        description="Seconds between polls of the task source",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: Literal["json", "console", "auto"] = "auto"
    service_name: str = Field(
        default="sorotask-keeper",
        validation_alias=AliasChoices("KEEPER_SERVICE_NAME", "service_name"),
    )

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return level

    @property
    def json_logs(self) -> bool | None:
        """``json_format`` argument for :func:`keeper.core.logging.configure_logging`."""
        if self.log_format == "auto":
            return None
        return self.log_format == "json"


# ── Settings factory with caching ────────────────────────────────────────

_settings: KeeperSettings | None = None


def load_settings(**overrides) -> KeeperSettings:
    """Build a fresh :class:`KeeperSettings`, raising :class:`InvalidConfigError`
    instead of pydantic's ``ValidationError``."""
    try:
        return KeeperSettings(**overrides)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ())) or "settings"
        raise InvalidConfigError(
            key,
            first.get("input"),
            f"Invalid configuration for {key}: {first.get('msg')}",
            cause=exc,
        ) from exc


def get_settings(*, force_reload: bool = False) -> KeeperSettings:
    """Load, validate, and cache the process-wide settings."""
    global _settings
    if _settings is None or force_reload:
        _settings = load_settings()
    return _settings


def clear_settings_cache() -> None:
    """Forget the cached settings (used by tests and after env changes)."""
    global _settings
    _settings = None


__all__ = [
    "KeeperSettings",
    "load_settings",
    "get_settings",
    "clear_settings_cache",
]
