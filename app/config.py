"""Application configuration models."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="KeepWatching", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./keepwatching.db", alias="DATABASE_URL"
    )

    cache_ttl_seconds: int = Field(default=300, alias="CACHE_TTL", ge=1)
    cache_check_period_seconds: int = Field(
        default=600, alias="CACHE_CHECK_PERIOD", ge=0
    )
    show_list_cache_seconds: int = Field(
        default=600, alias="SHOW_LIST_CACHE_TTL", ge=1
    )
    show_details_cache_seconds: int = Field(
        default=600, alias="SHOW_DETAILS_CACHE_TTL", ge=1
    )
    episodes_cache_seconds: int = Field(
        default=300, alias="EPISODES_CACHE_TTL", ge=1
    )
    statistics_cache_seconds: int = Field(
        default=1_800, alias="STATISTICS_CACHE_TTL", ge=1
    )
    watch_progress_cache_seconds: int = Field(
        default=3_600, alias="WATCH_PROGRESS_CACHE_TTL", ge=1
    )
    statistics_cache_enabled: bool = Field(
        default=True, alias="STATISTICS_CACHE_ENABLED"
    )
    next_unwatched_limit: int = Field(
        default=2, alias="NEXT_UNWATCHED_LIMIT", ge=1, le=50
    )

    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")

    ingestion_step_delay_seconds: float = Field(
        default=0.5, alias="INGESTION_STEP_DELAY", ge=0, le=60
    )
    ingestion_retry_limit: int = Field(
        default=3, alias="INGESTION_RETRY_LIMIT", ge=0, le=10
    )
    ingestion_retry_backoff_seconds: float = Field(
        default=1.0, alias="INGESTION_RETRY_BACKOFF", ge=0, le=60
    )
    ingestion_refresh_interval_seconds: int = Field(
        default=86_400, alias="INGESTION_REFRESH_INTERVAL", ge=0
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> str:
        """Accept log level names in any case and reject unknown ones."""

        if value is None:
            return "INFO"
        level = str(value).strip().upper() or "INFO"
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return level

    @field_validator("tmdb_api_key", mode="before")
    @classmethod
    def _strip_blank_key(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
