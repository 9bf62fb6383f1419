"""
Configuration and settings for the site backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    # Vercel Edge Config (primary registration storage)
    edge_config: Optional[str] = Field(default=None, env="EDGE_CONFIG")
    edge_config_id: Optional[str] = Field(default=None, env="EDGE_CONFIG_ID")
    edge_config_token: Optional[str] = Field(default=None, env="EDGE_CONFIG_TOKEN")
    edge_config_base_url: str = Field(
        default="https://edge-config.vercel.com", env="EDGE_CONFIG_BASE_URL"
    )
    edge_config_key: str = Field(
        default="passover_registrations", env="EDGE_CONFIG_KEY"
    )
    edge_config_failure_threshold: int = Field(
        default=3, env="EDGE_CONFIG_FAILURE_THRESHOLD"
    )
    vercel_api_url: str = Field(default="https://api.vercel.com", env="VERCEL_API_URL")
    vercel_api_token: Optional[str] = Field(default=None, env="VERCEL_API_TOKEN")
    vercel_url: Optional[str] = Field(default=None, env="VERCEL_URL")

    # Blob mirror
    blob_mirror_enabled: bool = Field(default=True, env="BLOB_MIRROR_ENABLED")
    blob_backend: Literal["vercel", "s3", "memory"] = Field(
        default="vercel", env="BLOB_BACKEND"
    )
    blob_read_write_token: Optional[str] = Field(
        default=None, env="BLOB_READ_WRITE_TOKEN"
    )
    blob_api_url: str = Field(
        default="https://blob.vercel-storage.com", env="BLOB_API_URL"
    )
    blob_base_url: Optional[str] = Field(default=None, env="BLOB_BASE_URL")
    blob_filename: str = Field(
        default="passover-registrations.json", env="BLOB_FILENAME"
    )
    blob_access_mode: str = Field(default="public", env="BLOB_ACCESS_MODE")
    blob_sync_interval_minutes: float = Field(
        default=60, env="BLOB_SYNC_INTERVAL_MINUTES"
    )

    # S3-compatible bucket, used when blob_backend == "s3"
    s3_bucket: Optional[str] = Field(default=None, env="S3_BUCKET")
    s3_region: Optional[str] = Field(default=None, env="S3_REGION")
    s3_endpoint: Optional[str] = Field(default=None, env="S3_ENDPOINT")
    aws_access_key_id: Optional[str] = Field(default=None, env="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: Optional[str] = Field(
        default=None, env="AWS_SECRET_ACCESS_KEY"
    )

    # Local fallback file
    registrations_file_path: str = Field(
        default="data/passover-registrations.json", env="REGISTRATIONS_FILE_PATH"
    )

    # Outbound HTTP
    http_timeout_seconds: float = Field(default=30.0, env="HTTP_TIMEOUT_SECONDS")
    http_retries: int = Field(default=3, env="HTTP_RETRIES")
    retry_base_delay_seconds: float = Field(
        default=0.3, env="RETRY_BASE_DELAY_SECONDS"
    )

    # Stripe
    stripe_secret_key: Optional[str] = Field(default=None, env="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(
        default=None, env="STRIPE_WEBHOOK_SECRET"
    )
    donation_currency: str = Field(default="usd", env="DONATION_CURRENCY")
    organization_name: str = Field(default="Rejewvenate", env="ORGANIZATION_NAME")

    # Admin views
    admin_password: Optional[str] = Field(default=None, env="ADMIN_PASSWORD")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, env="USE_IN_MEMORY_BACKENDS"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
