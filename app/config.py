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

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Provider webhook HMAC secret - required from .env
    WEBHOOK_SECRET: str

    # Bearer token verification - required from .env
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 360

    # Exports at or below this many records are rendered inline
    EXPORT_SYNC_THRESHOLD: int = 1000
    # Page size used when walking search results for an export
    EXPORT_BATCH_SIZE: int = 10000
    EXPORT_MAX_RECORDS: int = 100000

    # Export job registry
    EXPORT_JOB_RETENTION_HOURS: int = 168
    EXPORT_JOB_SWEEP_SECONDS: int = 3600

    # Detailed log rows rendered into the compliance PDF
    PDF_DETAIL_ROW_LIMIT: int = 500


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
