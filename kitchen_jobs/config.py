"""Configuration settings for the kitchen job service."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis (queue state + pub/sub)
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "kitchen"

    # Server
    port: int = 5000
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    # CORS (comma-separated list of allowed origins)
    cors_origins: str = "http://localhost:3000"

    # Visibility policy served by SettingsPolicyProvider: everyone | household | owner
    visibility_policy: str = "household"

    # Worker concurrency per queue
    url_import_concurrency: int = 5
    image_import_concurrency: int = 2  # Vision calls are expensive
    paste_import_concurrency: int = 3
    nutrition_concurrency: int = 2
    calendar_sync_concurrency: int = 3
    maintenance_concurrency: int = 1  # Serialize cleanup tasks

    # Retry / backoff
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 3600.0
    calendar_sync_max_attempts: int = 10
    calendar_sync_backoff_seconds: float = 60.0
    error_message_max_length: int = 500

    # Worker loop
    worker_poll_timeout_seconds: float = 1.0
    worker_shutdown_grace_seconds: float = 30.0
    job_retention_seconds: int = 86400

    # Scheduled maintenance (RRULE, evaluated in local server time)
    maintenance_schedule: str = "FREQ=DAILY;BYHOUR=0;BYMINUTE=0;BYSECOND=0"
    scheduler_tick_seconds: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache():
    """Clear settings cache (useful for testing)."""
    get_settings.cache_clear()
