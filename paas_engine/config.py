#paas_engine/config.py

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformSettings(BaseSettings):
    """Control plane configuration. Env vars are prefixed with PAAS_."""

    model_config = SettingsConfigDict(
        env_prefix="PAAS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Queue
    visibility_timeout_seconds: float = Field(default=60.0, gt=0)
    claim_poll_interval_seconds: float = Field(default=1.0, gt=0)
    default_attempts: int = Field(default=3, ge=1)
    default_backoff_seconds: float = Field(default=5.0, ge=0)
    default_backoff_multiplier: float = Field(default=2.0, ge=1)
    max_stalled: int = Field(default=1, ge=0)

    # Executor
    executor_id: str = "queue-worker-1"
    executor_max_slots: int = Field(default=2, ge=1)
    retry_poll_interval_seconds: float = Field(default=5.0, gt=0)

    # Builds
    build_workspace_root: str = "/tmp/paas-builds"
    default_buildpack: str = "heroku/nodejs"
    herokuish_image: str = "gliderlabs/herokuish:latest"
    default_stack: str = "heroku-22"
    build_timeout_minutes: int = Field(default=15, ge=1)

    # Build cache
    build_cache_enabled: bool = True
    build_cache_max_size_mb: int = Field(default=500, ge=0)
    build_cache_ttl_hours: int = Field(default=168, ge=0)

    # Artifact storage
    storage_backend: Literal["local", "s3"] = "local"
    storage_local_path: str = "/var/paas/storage"
    storage_s3_bucket: Optional[str] = None
    storage_s3_region: str = "us-east-1"
    storage_s3_endpoint: Optional[str] = None
    storage_s3_access_key: Optional[str] = None
    storage_s3_secret_key: Optional[str] = None

    # Nodes
    node_stale_threshold_minutes: int = Field(default=5, ge=1)
    capacity_alert_cooldown_minutes: int = Field(default=15, ge=0)
    registration_token_ttl_minutes: int = Field(default=30, ge=1)
    require_registration_token: bool = False
    runtime_agent_timeout_seconds: float = Field(default=30.0, gt=0)

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
