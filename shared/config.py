"""
Shared Configuration Module

Centralized configuration for the enrollment engine using Pydantic Settings.
Supports environment variables, .env files, and runtime overrides.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application-wide configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = Field(default=False, description="Enable debug mode")

    # Database - PostgreSQL
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "enrollment"
    database_dsn: str | None = Field(
        default=None,
        description="Full SQLAlchemy async URL; takes precedence over the postgres_* parts",
    )

    @property
    def database_url(self) -> str:
        """Construct PostgreSQL database URL."""
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    @property
    def async_database_url(self) -> str:
        """Construct async database URL."""
        if self.database_dsn:
            return self.database_dsn
        return f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    # Backing store bounds
    store_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Upper bound for any single store call"
    )
    lock_wait_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Upper bound for waiting on a per-class lock"
    )
    facts_timeout_seconds: float = Field(
        default=3.0, gt=0, description="Upper bound for student facts lookups"
    )

    # Enrollment defaults (overridable per tenant)
    waitlist_hold_hours: int = Field(default=24, ge=1)
    request_expiry_days: int = Field(default=7, ge=1)
    suspicious_enrollment_threshold: int = Field(default=10, ge=1)
    suspicious_window_hours: int = Field(default=24, ge=1)
    bulk_window_threshold: int = Field(default=5, ge=1)
    bulk_window_minutes: int = Field(default=60, ge=1)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings singleton
    """
    return Settings()


# Convenience exports
settings = get_settings()
