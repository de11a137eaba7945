"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


RATING_PROVIDERS: tuple[str, ...] = (
    "trakt",
    "imdb",
    "tmdb",
    "letterboxd",
    "tomatoes",
    "audience",
    "metacritic",
)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="ReelSync", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    trakt_client_id: str | None = Field(default=None, alias="TRAKT_CLIENT_ID")
    trakt_access_token: str | None = Field(default=None, alias="TRAKT_ACCESS_TOKEN")
    trakt_history_limit: int = Field(
        default=100, alias="TRAKT_HISTORY_LIMIT", ge=1, le=1_000
    )
    progress_refresh_seconds: float = Field(
        default=60.0, alias="PROGRESS_REFRESH_INTERVAL", gt=0
    )
    episode_lookup_timeout_seconds: float = Field(
        default=2.5, alias="EPISODE_LOOKUP_TIMEOUT", gt=0
    )

    mdblist_enabled: bool = Field(default=False, alias="MDBLIST_ENABLED")
    mdblist_api_key: str = Field(default="", alias="MDBLIST_API_KEY")
    mdblist_providers: Annotated[tuple[str, ...], NoDecode] = Field(
        default=RATING_PROVIDERS, alias="MDBLIST_PROVIDERS"
    )
    mdblist_cache_seconds: int = Field(
        default=1_800, alias="MDBLIST_CACHE_TTL", ge=1
    )
    mdblist_max_concurrency: int = Field(
        default=4, alias="MDBLIST_MAX_CONCURRENCY", ge=1, le=16
    )
    mdblist_request_timeout_seconds: float = Field(
        default=10.0, alias="MDBLIST_REQUEST_TIMEOUT", gt=0
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")

    trakt_api_url: HttpUrl = Field(
        default="https://api.trakt.tv", alias="TRAKT_API_URL"
    )
    mdblist_api_url: HttpUrl = Field(
        default="https://api.mdblist.com", alias="MDBLIST_API_URL"
    )
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    metadata_addon_urls: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("https://v3-cinemeta.strem.io",),
        alias="METADATA_ADDON_URLS",
        validation_alias=AliasChoices("METADATA_ADDON_URLS", "METADATA_ADDON_URL"),
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./reelsync.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("mdblist_providers", mode="before")
    @classmethod
    def _parse_providers(cls, value: object) -> tuple[str, ...]:
        """Normalise rating provider selections from environment values."""

        if value is None:
            return RATING_PROVIDERS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("MDBLIST_PROVIDERS must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            name = entry.lower()
            if not name:
                continue
            if name not in RATING_PROVIDERS:
                raise ValueError(f"Unknown rating provider configured: {entry}")
            if name not in cleaned:
                cleaned.append(name)
        # An explicit empty selection disables every provider.
        return tuple(cleaned)

    @field_validator("metadata_addon_urls", mode="before")
    @classmethod
    def _parse_addon_urls(cls, value: object) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            raw_values = value.split(",")
        elif isinstance(value, Iterable):
            raw_values = [str(part) for part in value]
        else:
            raise TypeError("METADATA_ADDON_URLS must be a string or iterable of strings")
        return tuple(part.strip() for part in raw_values if part.strip())

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
