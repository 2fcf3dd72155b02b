from functools import lru_cache
from typing import Dict, List, Optional

import logging
import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # General
    environment: str = Field("local", alias="ENVIRONMENT")
    app_name: str = Field("agent-execution-engine", alias="APP_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    api_rate_limit_per_minute: int = Field(60, alias="RATE_LIMIT_PER_MINUTE")

    # Storage
    storage_backend: str = Field("mongo", alias="STORAGE_BACKEND")  # "mongo" | "memory"
    mongo_uri: str = Field("mongodb://localhost:27017", alias="MONGO_URI")
    mongo_db_name: str = Field("agent-engine-db", alias="MONGO_DB_NAME")

    # Redis / Queue
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")
    redis_global_keyprefix: Optional[str] = Field(None, alias="REDIS_GLOBAL_KEYPREFIX")
    celery_broker_url: Optional[str] = Field(None, alias="CELERY_BROKER_URL")
    celery_result_backend: Optional[str] = Field(None, alias="CELERY_RESULT_BACKEND")
    events_enabled: bool = Field(True, alias="EVENTS_ENABLED")

    # Execution
    execution_backend: str = Field("local", alias="EXECUTION_BACKEND")  # "local" | "celery"
    worker_pool_size: int = Field(8, alias="WORKER_POOL_SIZE")
    default_timeout_seconds: int = Field(300, alias="DEFAULT_TIMEOUT_SECONDS")
    budget_enforcement: str = Field("advisory", alias="BUDGET_ENFORCEMENT")  # "advisory" | "strict"
    budget_window_days: int = Field(30, alias="BUDGET_WINDOW_DAYS")
    briefing_delays: Dict[str, float] = Field(
        default_factory=lambda: {"quick": 2.0, "standard": 5.0, "full": 10.0},
        alias="BRIEFING_DELAYS",
    )

    # Providers registered at startup
    openai_api_key: Optional[str] = Field(None, alias="OPENAI_API_KEY")
    openai_base_url: Optional[str] = Field(None, alias="OPENAI_BASE_URL")
    anthropic_api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    google_api_key: Optional[str] = Field(None, alias="GOOGLE_API_KEY")
    ollama_base_url: Optional[str] = Field(None, alias="OLLAMA_BASE_URL")

    # Security
    cors_origins: List[str] = Field(default_factory=list, alias="CORS_ORIGINS")
    api_keys: List[str] = Field(default_factory=list, alias="API_KEYS")

    # Observability
    prometheus_enabled: bool = Field(True, alias="PROMETHEUS_ENABLED")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
        populate_by_name=True,
    )

    @property
    def celery_broker(self) -> str:
        if self.celery_broker_url:
            return self.celery_broker_url
        return self.redis_url

    @property
    def celery_backend(self) -> str:
        if self.celery_result_backend:
            return self.celery_result_backend
        return self.redis_url

    @property
    def strict_budget(self) -> bool:
        return self.budget_enforcement.lower() == "strict"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Centralised settings factory with a defensive debug block.

    If configuration cannot be loaded (e.g. invalid env for list fields),
    we log a small, sanitised snapshot of the relevant environment before
    re-raising the exception.
    """
    try:
        return Settings()  # type: ignore[call-arg]
    except Exception as exc:
        # Use stdlib logging here to avoid circular imports with the structured logger.
        logging.error("Failed to initialise Settings from environment.", exc_info=exc)
        logging.error(
            "Settings env snapshot (sanitised)",
            extra={
                "ENVIRONMENT": os.getenv("ENVIRONMENT"),
                "STORAGE_BACKEND": os.getenv("STORAGE_BACKEND"),
                "MONGO_URI_present": bool(os.getenv("MONGO_URI")),
                "REDIS_URL_present": bool(os.getenv("REDIS_URL")),
                "CORS_ORIGINS_raw": os.getenv("CORS_ORIGINS"),
                "API_KEYS_raw": os.getenv("API_KEYS"),
                "BRIEFING_DELAYS_raw": os.getenv("BRIEFING_DELAYS"),
            },
        )
        raise
