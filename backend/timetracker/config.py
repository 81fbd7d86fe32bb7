from __future__ import annotations

import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)
    """Application runtime configuration."""

    app_name: str = "Time Tracker"
    host: str = os.getenv("TT_HOST", "127.0.0.1")
    port: int = int(os.getenv("TT_PORT", "8080"))

    data_dir: Path = Path(os.getenv("TT_DATA_DIR", "./data"))
    timesheet_path: str = os.getenv("TT_TIMESHEET_PATH", "timesheet.csv")
    timeblocks_path: str = os.getenv("TT_TIMEBLOCKS_PATH", "timeblocks.csv")
    preferences_path: str = os.getenv("TT_PREFERENCES_PATH", "time-tracker-settings.json")

    backup_folder: str = os.getenv("TT_BACKUP_FOLDER", ".timebackups")
    backup_retention_days: int = int(os.getenv("TT_BACKUP_RETENTION_DAYS", "5"))

    autosave_interval_seconds: int = int(os.getenv("TT_AUTOSAVE_INTERVAL", "300"))
    poll_interval_seconds: int = int(os.getenv("TT_POLL_INTERVAL", "30"))

    timezone: str = os.getenv("TT_TIMEZONE", "Europe/Berlin")
    ics_timeout_seconds: int = int(os.getenv("TT_ICS_TIMEOUT", "15"))

    log_level: str = os.getenv("TT_LOG_LEVEL", "INFO")

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return str(value).strip().upper() or "INFO"

    @field_validator("autosave_interval_seconds", "poll_interval_seconds")
    @classmethod
    def _positive_interval(cls, value: int) -> int:
        return max(1, int(value))


settings = Settings()

# Ensure the data directory exists
settings.data_dir.mkdir(parents=True, exist_ok=True)
