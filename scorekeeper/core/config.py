"""
Scorekeeper Cache Configuration

Configuration management with environment variable support.
Covers the remote API boundary, persisted-state boundary, mutation
discipline and logging.
"""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..constants import DEFAULT_RECORD_VERSION

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Cache layer settings with validation and safe defaults."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Environment settings
    ENVIRONMENT: str = Field(
        default="development", description="Application environment"
    )

    # Remote API boundary
    API_BASE_URL: str = Field(
        default="http://localhost:8000", description="Remote API origin"
    )
    API_TIMEOUT_SECONDS: float = Field(
        default=15.0, gt=0, le=300, description="Per-request timeout in seconds"
    )
    API_MAX_RETRIES: int = Field(
        default=3, ge=1, le=10, description="Attempts for idempotent fetches"
    )
    API_RETRY_DELAY_SECONDS: float = Field(
        default=0.5, ge=0, le=30, description="Exponential backoff multiplier"
    )
    CSRF_COOKIE_NAME: str = Field(
        default="csrftoken", description="Cookie copied into X-CSRFToken on writes"
    )

    # Persisted-state boundary
    PERSISTED_RECORD_VERSION: int = Field(
        default=DEFAULT_RECORD_VERSION,
        ge=0,
        description="Version marker written into every persisted cache record",
    )
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the cross-process storage bridge",
    )
    STORAGE_CHANNEL: str = Field(
        default="scorekeeper:storage",
        description="Pub/sub channel carrying storage-change notifications",
    )
    STORAGE_KEY_PREFIX: str = Field(
        default="scorekeeper:store:", description="Redis key prefix for records"
    )

    # Mutation discipline
    SERIALIZE_MUTATIONS: bool = Field(
        default=True,
        description="Serialize overlapping optimistic mutations on the same key",
    )

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_JSON: bool = Field(default=False, description="Render logs as JSON")

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment value."""
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of: {allowed}")
        return v.upper()

    @field_validator("API_BASE_URL")
    @classmethod
    def validate_api_base_url(cls, v):
        """Validate API origin format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("API_BASE_URL must be an http(s) URL")
        return v.rstrip("/")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Create global settings instance
settings = get_settings()
