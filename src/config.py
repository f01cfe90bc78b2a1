import os
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Runtime Configuration
    environment: str = "development"

    # Logging Configuration
    log_level: str = "INFO"

    # Storage Configuration
    data_dir: str = "/app/data"
    job_store: Literal["sqlite", "redis"] = "sqlite"
    redis_url: str = "redis://localhost:6379/1"

    # Worker Pool Configuration
    jobs_enabled: bool = True
    job_worker_count: int = Field(default=5, ge=1)
    job_max_retries: int = Field(default=3, ge=0)
    job_retry_delay_seconds: float = Field(default=5.0, ge=0)
    job_queue_key: str = "jobs:queue"
    job_dequeue_timeout: float = Field(default=5.0, gt=0)
    job_execution_timeout: float = Field(default=600.0, gt=0)
    job_shutdown_timeout: float = Field(default=30.0, gt=0)
    job_status_ttl_seconds: int = Field(default=86400, gt=0)
    job_retry_dispatchers: int = Field(default=2, ge=1)

    # Scheduler Configuration
    scheduler_enabled: bool = True
    scheduler_timezone: str = "UTC"
    scheduler_enqueue_timeout: float = Field(default=5.0, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("job_queue_key")
    @classmethod
    def _queue_key_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("job_queue_key must not be empty")
        return value

    @property
    def is_production(self) -> bool:
        """Return True when logs should be machine readable."""
        return self.environment.lower() in ("production", "staging")

    @property
    def sqlite_path(self) -> str:
        """Return path to SQLite database."""
        return os.path.join(self.data_dir, "jobs.db")


# Global settings instance
settings = Settings()
