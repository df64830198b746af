from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./data/chatcast.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Shared secret used to sign requests from the bot gateway
    WEBHOOK_SECRET: str = ""

    # Session reconciliation
    RECONCILE_ENABLED: bool = True
    RECONCILE_INTERVAL_SECONDS: int = 30 * 60
    IDLE_TIMEOUT_SECONDS: int = 60 * 60
    EMPTY_SESSION_TIMEOUT_SECONDS: int = 2 * 60 * 60


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
