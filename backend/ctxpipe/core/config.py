from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    cors_origins: str = Field(
        default="http://127.0.0.1:5500,http://localhost:5500",
        alias="CORS_ORIGINS",
    )
    db_url: str = Field(default="sqlite+aiosqlite:///./ctxpipe.db", alias="DB_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")

    history_persistence: str = Field(default="sqlite", alias="HISTORY_PERSISTENCE")
    history_max_recent: int = Field(default=10, alias="HISTORY_MAX_RECENT")
    history_summary_slack: int = Field(default=5, alias="HISTORY_SUMMARY_SLACK")
    history_summary_max_facts: int = Field(default=40, alias="HISTORY_SUMMARY_MAX_FACTS")

    retrieval_top_k: int = Field(default=5, alias="RETRIEVAL_TOP_K")
    prompt_token_budget: int = Field(default=6000, alias="PROMPT_TOKEN_BUDGET")
    knowledge_base_path: str = Field(default="", alias="KNOWLEDGE_BASE_PATH")
    catalog_path: str = Field(default="", alias="CATALOG_PATH")

    embed_provider: str = Field(default="deterministic", alias="EMBED_PROVIDER")
    embed_model: str = Field(default="deterministic-v1", alias="EMBED_MODEL")
    embed_dim: int = Field(default=64, alias="EMBED_DIM")
    embed_openai_api_key: str = Field(default="", alias="EMBED_OPENAI_API_KEY")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def parsed_cors_origins(self) -> List[str]:
        """Return CORS origins parsed from env var.

        Supports comma-delimited strings (recommended) and JSON list strings.
        """

        raw = (self.cors_origins or "").strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                value: Any = json.loads(raw)
            except json.JSONDecodeError:
                value = None
            if isinstance(value, list):
                items = [str(item).strip() for item in value]
                return [item for item in items if item]
        return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached pipeline settings."""

    return Settings()
