#worker_agent/config.py

import socket
from typing import Literal, Optional
from uuid import UUID

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_worker_name() -> str:
    return f"worker-{socket.gethostname()}"


class WorkerSettings(BaseSettings):
    """Worker agent configuration. Env var names are unprefixed."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Control plane
    control_plane_url: str = "http://localhost:8000"
    control_plane_timeout_seconds: float = Field(default=30.0, gt=0)
    control_plane_wait_timeout_seconds: float = Field(default=60.0, gt=0)
    control_plane_wait_interval_seconds: float = Field(default=2.0, gt=0)

    # Identity
    worker_name: str = Field(default_factory=_default_worker_name)
    worker_region: str = "default"
    worker_host_address: Optional[str] = None
    worker_node_id: Optional[UUID] = None
    worker_auth_token: Optional[str] = None
    registration_token: Optional[str] = None
    credentials_file: str = ".paas-worker-credentials.json"

    # Builds
    workspace_dir: str = "/tmp/paas-builds"
    max_concurrent_builds: int = Field(default=3, ge=1, le=10)
    build_timeout_minutes: int = Field(default=15, ge=1, le=120)

    # Loops
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    build_poll_interval_seconds: float = Field(default=10.0, gt=0)
    cleanup_interval_minutes: int = Field(default=30, ge=1, le=1440)
    workspace_retention_minutes: int = Field(default=60, ge=1)

    # Runtime agent on this node
    runtime_agent_host: str = "0.0.0.0"
    runtime_agent_port: int = 9000
    runtime_agent_url: Optional[str] = None

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @model_validator(mode="after")
    def _retention_outlives_builds(self) -> "WorkerSettings":
        if self.workspace_retention_minutes < self.build_timeout_minutes:
            raise ValueError(
                f"WORKSPACE_RETENTION_MINUTES ({self.workspace_retention_minutes}) must be at least "
                f"BUILD_TIMEOUT_MINUTES ({self.build_timeout_minutes})"
            )
        return self

    @property
    def host_address(self) -> str:
        return self.worker_host_address or socket.gethostname()

    @property
    def advertised_runtime_agent_url(self) -> str:
        return self.runtime_agent_url or f"http://{self.host_address}:{self.runtime_agent_port}"
