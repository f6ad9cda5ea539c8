"""Application settings loaded from environment variables."""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FRESH_KEYWORDS = (
    "today,tonight,now,current,latest,news,price,market,update,recent,"
    "trend,breaking,live,weather,forecast,humidity,temperature"
)

DEFAULT_SEARCH_FALLBACK = (
    "My web recon scraped a dead end. Give me a moment and try again, or tighten the query."
)


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Persona server configuration. All values come from environment variables."""

    # Runtime
    environment: Literal["development", "test", "production"] = Field(default="development")
    port: int = Field(default=3000, ge=1, le=65535)
    log_level: str = Field(default="INFO")

    # Anthropic (persona synthesis + web intel)
    anthropic_api_key: str = Field(default="")
    claude_model: str = Field(default="claude-sonnet-4-5-20250929")

    # OpenAI (query embeddings)
    openai_api_key: str = Field(default="")
    embedding_model: str = Field(default="text-embedding-3-small")
    embedding_dimensions: int = Field(default=1536, ge=0)
    embedding_max_input_chars: int = Field(default=8000, ge=1)

    # Knowledge base
    knowledge_dir: Path = Field(default=Path("data/knowledge"))
    knowledge_files: str = Field(default="events.json,blogs.json,websites.json")
    knowledge_top_k: int = Field(default=5, ge=1)
    knowledge_min_score: float = Field(default=0.35, ge=-1.0, le=1.0)

    # Rate limiting
    rate_limit_window_ms: int = Field(default=60_000, gt=0)
    rate_limit_max: int = Field(default=30, ge=1)
    rate_limit_paths: str = Field(default="^/api/")
    rate_limit_sweep_seconds: float = Field(default=300.0, gt=0)

    # Response cache
    cache_ttl_seconds: int = Field(default=120, ge=30)
    cache_max_entries: int = Field(default=200, ge=10)
    cache_context_messages: int = Field(default=8, ge=1)

    # Freshness / search
    fresh_keywords: str = Field(default=DEFAULT_FRESH_KEYWORDS)
    search_fallback_message: str = Field(default=DEFAULT_SEARCH_FALLBACK)

    # Telegram
    telegram_bot_token: str = Field(default="")
    telegram_webhook_secret: str = Field(default="")
    telegram_max_history: int = Field(default=20, ge=1)
    telegram_session_ttl_minutes: int = Field(default=60, ge=1)
    telegram_max_sessions: int = Field(default=1000, ge=1)

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @model_validator(mode="after")
    def _require_production_credentials(self) -> "Settings":
        if self.environment == "production" and not self.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY is required in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_knowledge_files(self) -> list[str]:
        """Parse KNOWLEDGE_FILES into a list of file names."""
        return _split_csv(self.knowledge_files)

    def get_fresh_keywords(self) -> list[str]:
        """Parse FRESH_KEYWORDS into a list of lower-cased terms."""
        return [keyword.lower() for keyword in _split_csv(self.fresh_keywords)]

    def get_rate_limit_paths(self) -> list[str]:
        """Parse RATE_LIMIT_PATHS into a list of regex patterns."""
        return _split_csv(self.rate_limit_paths)


settings = Settings()
