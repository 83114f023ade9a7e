"""Runtime settings, read from ``REMINDERS_*`` environment variables or ``.env``."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Persistence
    store_backend: Literal["memory", "sql"] = "memory"
    database_url: str = "sqlite:///./reminders.db"

    # Booking contexts: "package.module:attribute" naming a provider instance,
    # or a class or factory that builds one with no arguments.
    booking_provider: str | None = None

    # Rendering
    display_timezone: str = "UTC"

    # Processing
    dispatch_timeout_seconds: float = Field(default=30.0, gt=0)
    max_workers: int = Field(default=4, ge=1)
    claim_ttl_seconds: float = Field(default=900.0, gt=0)
    batch_limit: int = Field(default=50, ge=0)  # 0 = no limit

    model_config = SettingsConfigDict(
        env_prefix="REMINDERS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.display_timezone)

    def effective_batch_limit(self) -> int | None:
        return self.batch_limit or None


@lru_cache
def get_settings() -> Settings:
    return Settings()
