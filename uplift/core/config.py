"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, PostgresDsn, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: PostgresDsn = Field(
        default=...,
        description="PostgreSQL connection URL with asyncpg driver",
    )
    store_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound for a single store call",
    )

    # Redis (results cache)
    redis_url: RedisDsn | None = Field(
        default=None,
        description="Redis connection URL; results caching is disabled when unset",
    )
    results_cache_ttl_seconds: int = Field(
        default=300,
        ge=1,
        description="TTL for cached experiment results",
    )

    # Experiment defaults
    default_min_sample_size: int = Field(
        default=30,
        ge=1,
        description="Minimum visitors per variant before significance is evaluated",
    )
    default_confidence_level: float = Field(
        default=0.95,
        gt=0,
        lt=1,
        description="Confidence level used when an experiment leaves it unset",
    )

    # Offer applier
    offer_applier_url: HttpUrl | None = Field(
        default=None,
        description="Webhook that receives rollouts; log-only when unset",
    )
    offer_applier_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="HTTP timeout for the offer applier webhook",
    )

    # Application
    app_env: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Application environment",
    )
    app_debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    app_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # CORS
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance (singleton pattern)."""
    return Settings()
