from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration, read from the environment (and .env as a
    fallback). DATABASE_URL, LOG_LEVEL and PUBLIC_API_KEY have no default.
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

    # Public API key every client sends in the `apikey` header
    PUBLIC_API_KEY: str

    # Prefix for object URLs handed to clients ("" keeps them relative)
    PUBLIC_URL: str = ""

    # Object storage
    STORAGE_BACKEND: Literal["local", "s3"] = "local"
    STORAGE_ROOT: str = "./objects"
    S3_ENDPOINT_URL: str | None = None
    S3_ACCESS_KEY: str | None = None
    S3_SECRET_KEY: str | None = None
    S3_BUCKET_PREFIX: str = "chatapp-"

    # Presence / uploads / sessions
    PRESENCE_WINDOW_SECONDS: int = 300
    MAX_IMAGE_BYTES: int = 10 * 1024 * 1024
    TOKEN_TTL_SECONDS: int = 7 * 24 * 3600

    # Video calls
    VIDEO_BASE_URL: str = "https://meet.jit.si"
    CALL_RING_SECONDS: int = 45

    # Frames buffered per realtime connection before it is dropped as stalled
    REALTIME_QUEUE_SIZE: int = 1000


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process; tests call cache_clear() after patching the env."""
    return Settings()


# Global settings instance
settings = get_settings()
