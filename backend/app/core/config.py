"""
Application configuration using Pydantic Settings.
Loads from environment variables and .env file.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "EngageTrack"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"

    # API
    api_v1_prefix: str = "/api/v1"
    public_base_url: str = "http://localhost:8000"  # Base for URLs embedded in emails
    frontend_url: str = "http://localhost:3000"  # Analytics dashboard origin

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "engagetrack"
    postgres_password: str = "engagetrack_dev"
    postgres_db: str = "engagetrack"
    database_url: str = ""  # Full URL override (e.g. sqlite+aiosqlite for tests)

    # Redis Cache
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    # Celery
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"

    # Tracking
    tracking_secret: str = "change-me-tracking-secret"  # Signs unsubscribe tokens
    ip_hash_salt: str = "change-me-ip-salt"
    tracking_backend_timeout: float = 5.0  # seconds
    unsubscribe_token_max_age_days: int = 7
    forward_rapid_succession_ms: int = 5000

    # Aggregation
    analytics_refresh_mode: Literal["inline", "deferred"] = "inline"
    analytics_refresh_debounce_seconds: int = 10
    analytics_cache_ttl: int = 300  # 5 minutes
    analytics_refresh_rate_limit: str = "30/minute"

    @property
    def redis_url(self) -> str:
        """Build Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def postgres_url(self) -> str:
        """Build the async database URL, honouring DATABASE_URL when set."""
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    def validate_production_settings(self) -> None:
        """
        Validate critical settings for production deployment.
        Raises ValueError if any critical settings are using default/insecure values.
        """
        if self.environment == "production":
            errors = []

            if self.tracking_secret == "change-me-tracking-secret":
                errors.append("TRACKING_SECRET must be changed from default value in production")

            if len(self.tracking_secret) < 32:
                errors.append("TRACKING_SECRET must be at least 32 characters long")

            if self.ip_hash_salt == "change-me-ip-salt":
                errors.append("IP_HASH_SALT must be changed from default value in production")

            if not self.database_url and (
                not self.postgres_password or self.postgres_password == "engagetrack_dev"
            ):
                errors.append("POSTGRES_PASSWORD must be set to a secure value in production")

            if errors:
                raise ValueError(
                    "Production configuration validation failed:\n" +
                    "\n".join(f"  - {error}" for error in errors)
                )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
