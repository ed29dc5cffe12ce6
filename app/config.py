"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal
from urllib.parse import urlparse

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "[::1]"})


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Malytics", alias="APP_NAME")
    server_host: str = Field(default="127.0.0.1", alias="HOST")
    server_port: int = Field(default=7842, alias="PORT")

    mal_client_id: str | None = Field(default=None, alias="MAL_CLIENT_ID")
    mal_authorize_url: HttpUrl = Field(
        default="https://myanimelist.net/v1/oauth2/authorize",
        alias="MAL_AUTHORIZE_URL",
    )
    mal_token_url: HttpUrl = Field(
        default="https://myanimelist.net/v1/oauth2/token", alias="MAL_TOKEN_URL"
    )
    mal_api_url: HttpUrl = Field(
        default="https://api.myanimelist.net/v2", alias="MAL_API_URL"
    )
    mal_redirect_uri: str = Field(
        default="http://localhost:7842/callback", alias="MAL_REDIRECT_URI"
    )

    mal_page_size: int = Field(default=1_000, alias="MAL_PAGE_SIZE", ge=1, le=1_000)
    mal_page_delay_seconds: float = Field(
        default=0.35, alias="MAL_PAGE_DELAY", ge=0.3, le=5.0
    )
    mal_max_retries: int = Field(default=3, alias="MAL_MAX_RETRIES", ge=0, le=10)

    recommendation_genre_weight: float = Field(
        default=15.0, alias="RECOMMENDATION_GENRE_WEIGHT", ge=0
    )
    recommendation_studio_weight: float = Field(
        default=20.0, alias="RECOMMENDATION_STUDIO_WEIGHT", ge=0
    )
    recommendation_community_bonus: float = Field(
        default=10.0, alias="RECOMMENDATION_COMMUNITY_BONUS", ge=0
    )
    recommendation_community_threshold: float = Field(
        default=8.0, alias="RECOMMENDATION_COMMUNITY_THRESHOLD", ge=0, le=10
    )
    recommendation_cutoff: float = Field(
        default=30.0, alias="RECOMMENDATION_CUTOFF", ge=0, le=100
    )
    recommendation_min_score: int = Field(
        default=7, alias="RECOMMENDATION_MIN_SCORE", ge=1, le=10
    )
    recommendation_min_count: int = Field(
        default=2, alias="RECOMMENDATION_MIN_COUNT", ge=1
    )
    recommendation_limit: int = Field(
        default=10, alias="RECOMMENDATION_LIMIT", ge=1, le=100
    )
    studio_min_scored: int = Field(default=2, alias="STUDIO_MIN_SCORED", ge=1)

    database_url: str = Field(
        default="sqlite+aiosqlite:///./malytics.db", alias="DATABASE_URL"
    )
    legacy_store_path: str | None = Field(
        default="./mal-legacy.json", alias="MAL_LEGACY_STORE_PATH"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("mal_client_id", "legacy_store_path", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("mal_redirect_uri")
    @classmethod
    def _validate_redirect_uri(cls, value: str) -> str:
        """MAL only redirects back to the local loopback listener."""

        parsed = urlparse(value.strip())
        if parsed.scheme != "http" or (parsed.hostname or "") not in LOOPBACK_HOSTS:
            raise ValueError("MAL_REDIRECT_URI must be an http loopback URL")
        if not parsed.path or parsed.path == "/":
            raise ValueError("MAL_REDIRECT_URI must include a callback path")
        return value.strip()

    @model_validator(mode="after")
    def _check_recommendation_weights(self) -> "Settings":
        """Ensure the configured weights can actually clear the cutoff."""

        ceiling = (
            self.recommendation_genre_weight
            + self.recommendation_studio_weight
            + self.recommendation_community_bonus
        )
        if ceiling <= 0:
            raise ValueError("At least one recommendation weight must be positive")
        return self

    @property
    def redirect_path(self) -> str:
        """Return the path component of the loopback redirect URI."""

        return urlparse(self.mal_redirect_uri).path

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
