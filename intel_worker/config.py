"""Configuration settings for the intel worker."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis (queue storage)
    redis_url: str = "redis://localhost:6379"
    redis_key_prefix: str = "intel"

    # Server
    port: int = 5000
    debug: bool = True
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    # CORS (comma-separated list of allowed origins)
    cors_origins: str = "http://localhost:3000"

    # Intelligence backend (research / enrichment / reports / signals)
    intel_service_url: str = "http://localhost:4000/api/intelligence"
    service_token: str = ""  # Bearer token for service-to-service auth
    http_timeout_seconds: float = 120.0

    # Workers
    start_workers: bool = True
    worker_poll_interval_seconds: float = 0.5
    worker_max_poll_interval_seconds: float = 5.0
    schedule_poll_interval_seconds: float = 60.0

    # Batch research
    batch_timeout_seconds: float = 540.0  # stays below the 10 min proxy limit

    # Dashboard listing
    job_list_limit: int = 50

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
