"""
Configuration and settings for the replication service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the replication service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Record store (any SQLAlchemy URL; Postgres in production)
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, env="USE_IN_MEMORY_BACKENDS"
    )
    seed_data_path: Optional[str] = Field(default=None, env="SEED_DATA_PATH")
    monarch_seed_path: Optional[str] = Field(
        default=None, env="MONARCH_SEED_PATH"
    )

    # GitHub contents API as the versioned backup target
    github_token: Optional[str] = Field(default=None, env="GITHUB_TOKEN")
    github_owner: Optional[str] = Field(default=None, env="GITHUB_OWNER")
    github_repo: Optional[str] = Field(default=None, env="GITHUB_REPO")
    github_branch: Optional[str] = Field(default=None, env="GITHUB_BRANCH")
    github_api_url: str = Field(
        default="https://api.github.com", env="GITHUB_API_URL"
    )

    # S3-compatible bucket as an alternative versioned target
    s3_bucket: Optional[str] = Field(default=None, env="S3_BUCKET")
    s3_region: Optional[str] = Field(default=None, env="S3_REGION")
    s3_endpoint: Optional[str] = Field(default=None, env="S3_ENDPOINT")
    aws_access_key_id: Optional[str] = Field(
        default=None, env="AWS_ACCESS_KEY_ID"
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None, env="AWS_SECRET_ACCESS_KEY"
    )

    # Paths inside the versioned target
    data_path: str = Field(
        default="functions/data/family-members.json", env="DATA_PATH"
    )
    backups_dir: str = Field(default="backups", env="BACKUPS_DIR")
    local_backup_dir: Optional[str] = Field(default=None, env="LOCAL_BACKUP_DIR")

    # Retry queue (Redis keeps pending retries across restarts)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_retry_queue_key: str = Field(
        default="heritage:sync-retries", env="REDIS_RETRY_QUEUE_KEY"
    )

    # Retry policy
    retry_short_seconds: float = Field(default=300.0, env="RETRY_SHORT_SECONDS")
    retry_long_seconds: float = Field(default=3600.0, env="RETRY_LONG_SECONDS")
    retry_failure_threshold: int = Field(default=3, env="RETRY_FAILURE_THRESHOLD")
    max_sync_attempts: int = Field(default=5, env="MAX_SYNC_ATTEMPTS")

    connection_check_ttl_seconds: float = Field(
        default=300.0, env="CONNECTION_CHECK_TTL_SECONDS"
    )
    request_timeout_seconds: float = Field(
        default=30.0, env="REQUEST_TIMEOUT_SECONDS"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
