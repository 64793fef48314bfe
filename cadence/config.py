"""Application settings loaded from environment variables."""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Cadence configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/cadence.db"))

    # Turso (hosted libSQL) — when set, overrides local database_path
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # Scheduler worker
    tick_interval_seconds: float = Field(default=60.0, gt=0)
    scan_batch_size: int = Field(default=100, ge=1)
    max_concurrent_checks: int = Field(default=1, ge=1)

    # Recurrence
    default_frequency: str = Field(default="weekly")
    weekly_anchor_mode: Literal["interval", "anchor"] = Field(default="interval")

    # HTTP checks
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    raw_response_limit: int = Field(default=5000, ge=0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="CADENCE_",
        env_file=_env_file(),
        env_file_encoding="utf-8",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @property
    def honor_weekday_anchor(self) -> bool:
        """True when weekly schedules should land on their anchored weekday."""
        return self.weekly_anchor_mode == "anchor"


settings = Settings()
