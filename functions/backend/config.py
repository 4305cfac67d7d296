"""
Configuration and settings for the brewlog backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    # Database (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, validation_alias="BREWLOG_USE_IN_MEMORY_BACKENDS"
    )

    # Local asset storage, served as static files
    upload_dir: str = Field(default="uploads")
    upload_url_prefix: str = Field(default="/uploads")

    # S3-compatible asset storage; takes precedence over upload_dir when set
    asset_bucket: Optional[str] = Field(default=None)
    asset_region: Optional[str] = Field(default=None)
    asset_endpoint: Optional[str] = Field(default=None)
    asset_public_url: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Per-entity locks (Redis); in-process locks when unset
    redis_url: Optional[str] = Field(default=None)
    redis_lock_prefix: str = Field(default="brewlog:locks")

    # Auth
    jwt_secret: str = Field(default="change-me")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 24 * 7)

    # Upload pipeline
    io_timeout_seconds: float = Field(default=30.0)
    lock_timeout_seconds: float = Field(default=10.0)
    max_parallel_uploads: int = Field(default=4)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
