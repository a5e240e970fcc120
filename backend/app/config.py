"""Settings management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from app.utils.env import load_env_file


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: str = "postgresql://localhost:5432/dvf"
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4o-mini"

    # Legend builder
    LEGEND_MAX_CONCURRENCY: int = 4
    LEGEND_DEFAULT_BUCKETS: int = 10

    # Transactions DSL pagination
    QUERY_DEFAULT_LIMIT: int = 50
    QUERY_MAX_LIMIT: int = 500

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    load_env_file()
    return Settings()  # type: ignore[call-arg]
