"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="AnimeCatalog", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    key_prefix: str = Field(default="anime", alias="KEY_PREFIX")
    refresh_channel: str = Field(default="anime:refresh", alias="REFRESH_CHANNEL")

    catalog_csv_url: HttpUrl = Field(
        default=(
            "https://raw.githubusercontent.com/meesvandongen/anime-dataset/"
            "refs/heads/main/data/anime-standalone.csv"
        ),
        alias="CATALOG_CSV_URL",
    )
    detail_api_url: HttpUrl = Field(
        default="https://api.jikan.moe/v4", alias="DETAIL_API_URL"
    )
    scrape_base_url: HttpUrl = Field(
        default="https://myanimelist.net", alias="SCRAPE_BASE_URL"
    )

    catalog_ttl_seconds: int = Field(
        default=7 * 24 * 3_600, alias="CATALOG_TTL", ge=60
    )
    record_ttl_seconds: int = Field(default=24 * 3_600, alias="RECORD_TTL", ge=60)
    enriched_record_ttl_seconds: int = Field(
        default=7 * 24 * 3_600, alias="ENRICHED_RECORD_TTL", ge=60
    )
    refresh_interval_seconds: int = Field(
        default=24 * 3_600, alias="REFRESH_INTERVAL", ge=60
    )

    http_timeout_seconds: float = Field(default=20.0, alias="HTTP_TIMEOUT", gt=0)
    http_connect_timeout_seconds: float = Field(
        default=10.0, alias="HTTP_CONNECT_TIMEOUT", gt=0
    )
    retry_limit: int = Field(default=2, alias="RETRY_LIMIT", ge=0, le=10)
    retry_backoff_seconds: float = Field(default=0.5, alias="RETRY_BACKOFF", ge=0)
    enrichment_timeout_seconds: float = Field(
        default=15.0, alias="ENRICHMENT_TIMEOUT", gt=0
    )

    scrape_rate_limit: int = Field(default=30, alias="SCRAPE_RATE_LIMIT", ge=1)
    scrape_rate_window_seconds: float = Field(
        default=60.0, alias="SCRAPE_RATE_WINDOW", gt=0
    )

    search_threshold: float = Field(
        default=70.0, alias="SEARCH_THRESHOLD", ge=0, le=100
    )
    search_min_query_length: int = Field(
        default=2, alias="SEARCH_MIN_QUERY_LENGTH", ge=1
    )
    batch_size: int = Field(default=50, alias="BATCH_SIZE", ge=1, le=500)
    title_collision_policy: Literal["last", "first"] = Field(
        default="last", alias="TITLE_COLLISION_POLICY"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("key_prefix", "refresh_channel", mode="before")
    @classmethod
    def _strip_key(cls, value: object) -> object:
        """Trim whitespace and trailing separators from Redis key names."""

        if isinstance(value, str):
            cleaned = value.strip().rstrip(":")
            if not cleaned:
                raise ValueError("Redis key names must not be blank")
            return cleaned
        return value

    @field_validator("title_collision_policy", mode="before")
    @classmethod
    def _normalise_policy(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"last", "last-wins", "last_wins"}:
                return "last"
            if lowered in {"first", "first-wins", "first_wins"}:
                return "first"
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper() or "INFO"
        return value

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
