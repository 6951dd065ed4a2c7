"""Engine settings for upkeep.

The run loop, materializer and CLI share a handful of knobs (rolling window
length, fallback assignee, tick interval, persistence retry policy, log
output). ``UpkeepSettings`` collects them in one validated, environment-driven
object.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup, not runtime
    - **Environment-driven:** Reads from ``UPKEEP_*`` env vars and .env files
    - **Sensible defaults:** Works out of the box for development

Examples:
    >>> from upkeep.core.settings import UpkeepSettings
    >>> settings = UpkeepSettings(ahead_days=14)
    >>> settings.ahead_days
    14

Tags:
    settings, configuration, pydantic, environment, upkeep
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class UpkeepSettings(BaseSettings):
    """Settings for the generation engine.

    Fields
    ──────
    ahead_days               : Default rolling window for rules without their own
    default_assignee         : Fallback assignee for Unassigned rules
    default_timezone         : Timezone for patterns that do not name one
    tick_interval_seconds    : Timer backend interval
    persistence_max_retries  : Retries of a failed instance write
    persistence_retry_delay  : Seconds between write retries
    log_level                : Structlog log level
    log_json                 : Force JSON (True) / console (False) / auto (None)
    service_name             : ``service.name`` in log records
    """

    model_config = SettingsConfigDict(
        env_prefix="UPKEEP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Generation ───────────────────────────────────────────────
    ahead_days: int = Field(default=7, ge=0, le=366)
    default_assignee: str | None = None
    default_timezone: str = "UTC"

    # ── Run loop ─────────────────────────────────────────────────
    tick_interval_seconds: float = Field(default=300.0, gt=0)
    persistence_max_retries: int = Field(default=2, ge=0)
    persistence_retry_delay: float = Field(default=0.5, ge=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None
    service_name: str = "upkeep"

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level


@lru_cache(maxsize=1)
def get_settings() -> UpkeepSettings:
    """Return the process-wide settings instance."""
    return UpkeepSettings()
