"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_ENV: Literal["development", "staging", "production"] = "development"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["text", "json"] = "text"

    # Model gateway
    MODEL_PROVIDER: Literal["litellm", "anthropic"] = "litellm"
    MODEL_NAME: str = "anthropic/claude-sonnet-4-20250514"
    ANTHROPIC_API_KEY: SecretStr = SecretStr("")
    MODEL_TIMEOUT_SECONDS: float = 60.0
    RETRY_MAX_ATTEMPTS: int = 3
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RECOVERY_SECONDS: float = 60.0
    CIRCUIT_HALF_OPEN_TRIALS: int = 3

    # Durable store
    STORE_BACKEND: Literal["memory", "supabase"] = "memory"
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # Classifier
    CLASSIFIER_MIN_CONFIDENCE: float = 0.7

    # Plan cache
    PLAN_MAX_STEPS: int = 8
    PLAN_CACHE_MIN_SUCCESS_RATE: float = 0.7
    PLAN_RETIREMENT_THRESHOLD: float = 0.3
    PLAN_RETIREMENT_MIN_USES: int = 3
    PLAN_GENERATION_MAX_TOKENS: int = 800

    # Step execution
    EXECUTOR_MAX_CONCURRENT: int = 4
    STEP_DEFAULT_TIMEOUT_SECONDS: float = 300.0
    STEP_TIMEOUT_CEILING_SECONDS: float = 120.0
    TOOL_LOOP_MAX_ROUNDS: int = 4

    # Memory
    MEMORY_CONTEXT_TIMEOUT_SECONDS: float = 0.5
    MEMORY_INGEST_TIMEOUT_SECONDS: float = 30.0
    MEMORY_INGEST_WORKERS: int = 2
    MEMORY_INGEST_QUEUE_SIZE: int = 100
    MEMORY_EXTRACTION_THRESHOLD: float = 0.7
    MEMORY_CONTEXT_LIMIT: int = 5

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator(
        "CLASSIFIER_MIN_CONFIDENCE",
        "PLAN_CACHE_MIN_SUCCESS_RATE",
        "PLAN_RETIREMENT_THRESHOLD",
        "MEMORY_EXTRACTION_THRESHOLD",
    )
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        """Thresholds are probabilities."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("threshold must be between 0 and 1")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"

    @property
    def supabase_configured(self) -> bool:
        """Check if the Supabase store can be used."""
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value())

    @property
    def model_configured(self) -> bool:
        """Check if a model provider has credentials."""
        return bool(self.ANTHROPIC_API_KEY.get_secret_value())


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance with validated configuration.
    """
    settings = Settings()
    if settings.STORE_BACKEND == "supabase" and not settings.supabase_configured:
        logger.warning("STORE_BACKEND=supabase but Supabase credentials are missing")
    return settings
