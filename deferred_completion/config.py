"""Application configuration using Pydantic Settings."""

from dataclasses import dataclass
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Calculate project root: config.py is in deferred_completion/, so go up one level
_CONFIG_DIR = Path(__file__).resolve().parent
_PROJECT_ROOT = _CONFIG_DIR.parent

# Used when neither the record nor the process configuration sets max_tokens
FALLBACK_MAX_TOKENS = 50


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / "deferred_completion" / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="Deferred Completions", description="Application name", alias="APP_NAME")
    app_env: str = Field(default="development", description="Application environment", alias="APP_ENV")
    log_level: str = Field(default="INFO", description="Log level for the feed worker", alias="LOG_LEVEL")

    # Database
    database_url: str = Field(
        default=f"sqlite:///{_PROJECT_ROOT / 'deferred_completion.db'}",
        description="SQLAlchemy database connection URL",
        alias="DATABASE_URL",
    )

    # Completion service
    completion_api_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of the external completion service",
        alias="COMPLETION_API_BASE_URL",
    )
    completion_api_key: str | None = Field(
        default=None,
        description="Bearer token for the completion service",
        alias="COMPLETION_API_KEY",
    )
    completion_timeout_seconds: float = Field(
        default=120.0,
        description="Transport timeout for completion service requests",
        alias="COMPLETION_TIMEOUT_SECONDS",
    )

    # Completion defaults
    default_model_id: str = Field(default="gpt-4o-mini", description="Default model ID", alias="DEFAULT_MODEL_ID")
    default_max_tokens: int = Field(default=50, description="Default max_tokens", alias="DEFAULT_MAX_TOKENS")
    default_temperature: float = Field(default=0.7, description="Default temperature", alias="DEFAULT_TEMPERATURE")

    # Processing
    processor_timeout_seconds: float = Field(
        default=900.0,
        description="Execution ceiling for a single processor invocation",
        alias="PROCESSOR_TIMEOUT_SECONDS",
    )
    record_ttl_seconds: int = Field(
        default=86400,
        description="Lifetime of a request record; 0 disables expiry",
        alias="RECORD_TTL_SECONDS",
    )
    feed_batch_size: int = Field(default=10, description="Change events read per batch", alias="FEED_BATCH_SIZE")
    feed_poll_interval_seconds: float = Field(
        default=1.0,
        description="Sleep between empty change feed reads",
        alias="FEED_POLL_INTERVAL_SECONDS",
    )
    purge_interval_seconds: float = Field(
        default=300.0,
        description="Interval between expired record purges",
        alias="PURGE_INTERVAL_SECONDS",
    )

    # Client polling
    poll_max_wait_seconds: float = Field(
        default=300.0,
        description="Maximum total wait of the completion poller",
        alias="POLL_MAX_WAIT_SECONDS",
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def validate_database_url(cls, v: str | None) -> str:
        """Validate and normalize database URL."""
        if v is None or v == "":
            raise ValueError("DATABASE_URL is required")
        return v.strip()

    @field_validator("completion_api_base_url", mode="before")
    @classmethod
    def normalize_base_url(cls, v: str) -> str:
        """Strip whitespace and trailing slashes from the service URL."""
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v

    @field_validator("app_env", "log_level", mode="before")
    @classmethod
    def normalize_lowercase(cls, v: str) -> str:
        """Normalize environment-style values."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("default_max_tokens", "feed_batch_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Reject non-positive counts."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v


@dataclass(frozen=True)
class CompletionDefaults:
    """Process-wide completion defaults, built once at startup."""

    model_id: str = "gpt-4o-mini"
    max_tokens: int = FALLBACK_MAX_TOKENS
    temperature: float = 0.7
    timeout_seconds: float = 900.0

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CompletionDefaults":
        return cls(
            model_id=settings.default_model_id,
            max_tokens=settings.default_max_tokens,
            temperature=settings.default_temperature,
            timeout_seconds=settings.processor_timeout_seconds,
        )


def get_settings() -> Settings:
    """Get application settings instance.

    Returns:
        Settings: Application settings instance

    Example:
        ```python
        from deferred_completion.config import get_settings

        settings = get_settings()
        print(settings.default_model_id)
        ```
    """
    return Settings()


# Global settings instance
settings = get_settings()
