from functools import lru_cache
from typing import ClassVar

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # HTTP listener
    monitor_host: str = "127.0.0.1"
    monitor_port: int = 7410

    # SQLite database file (":memory:" for throwaway instances)
    monitor_db_path: str = "./monitor.sqlite"

    # Shared API key (optional; empty string means requests are not authenticated)
    monitor_api_key: str = ""

    # Background sweeps
    monitor_retention_days: int = Field(default=30, gt=0)
    monitor_evaluator_interval_seconds: int = Field(default=15, gt=0)
    monitor_retention_interval_seconds: int = Field(default=3600, gt=0)
    monitor_recovery_auto_close_seconds: int = Field(default=900, ge=0)

    # Resend email API (optional; empty = provider not configured)
    resend_api_key: str = ""
    resend_from_email: str = ""
    resend_api_base: str = "https://api.resend.com"

    # SMTP / Email fallback (optional; used only when Resend is not configured)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = ""

    log_level: str = "INFO"

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
