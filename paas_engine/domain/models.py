#paas_engine/domain/models.py
"""Domain models for applications, builds and deployments."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from paas_engine.core.errors import ValidationError


SLUG_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class ApplicationStatus(Enum):
    """Application lifecycle status."""
    PENDING = "pending"
    BUILDING = "building"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    SUSPENDED = "suspended"


class DeploymentStatus(Enum):
    """Deployment status."""
    PENDING = "pending"
    BUILDING = "building"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    BUILD_FAILED = "build_failed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class BuildStatus(Enum):
    """Build status."""
    PENDING = "pending"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================
# PLAN
# ============================================

@dataclass
class Plan:
    """Resource quota an application is billed for."""
    plan_id: UUID
    name: str
    cpu_millicores: int = 500
    memory_mb: int = 512
    storage_mb: int = 1024
    max_replicas: int = 1


# ============================================
# APPLICATION
# ============================================

@dataclass
class Application:
    """Tenant-owned deployable unit."""
    application_id: UUID
    owner_id: UUID
    name: str
    slug: str
    plan_id: UUID
    region: str

    git_url: Optional[str] = None
    git_branch: str = "main"
    git_commit: Optional[str] = None
    buildpack: Optional[str] = None
    stack: str = "heroku-22"

    instance_count: int = 1
    status: ApplicationStatus = ApplicationStatus.PENDING
    suspended_reason: Optional[str] = None
    # Status a failed build falls back to; never BUILDING
    status_before_build: Optional[ApplicationStatus] = None

    current_build_id: Optional[UUID] = None
    current_deployment_id: Optional[UUID] = None

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self):
        validate_slug(self.slug)

    def __setattr__(self, name, value):
        if name == "slug" and "slug" in self.__dict__ and self.__dict__["slug"] != value:
            raise ValidationError("slug is immutable once assigned")
        super().__setattr__(name, value)

    @property
    def service_name(self) -> str:
        return f"paas-{self.slug}"

    def is_suspended(self) -> bool:
        return self.status == ApplicationStatus.SUSPENDED


def validate_slug(slug: str) -> None:
    if not slug or not SLUG_PATTERN.match(slug):
        raise ValidationError(f"Invalid slug: {slug!r}")


def validate_instance_count(count: int, plan: Plan) -> None:
    if count < 0:
        raise ValidationError("Replica count cannot be negative")
    if count > plan.max_replicas:
        raise ValidationError(f"Plan limit: maximum {plan.max_replicas} replicas")


# ============================================
# BUILD
# ============================================

@dataclass
class Build:
    """One attempt to turn an application's source into a slug."""
    build_id: UUID
    application_id: UUID
    build_number: int

    status: BuildStatus = BuildStatus.PENDING
    git_commit_sha: Optional[str] = None
    git_commit_message: Optional[str] = None
    buildpack: Optional[str] = None
    cache_key: Optional[str] = None
    artifact_size_bytes: Optional[int] = None
    build_log: Optional[str] = None
    error_message: Optional[str] = None
    triggered_by: Optional[UUID] = None

    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ============================================
# DEPLOYMENT
# ============================================

@dataclass
class Deployment:
    """Released instance of a build."""
    deployment_id: UUID
    application_id: UUID
    version: int
    build_id: Optional[UUID] = None

    status: DeploymentStatus = DeploymentStatus.PENDING
    is_active: bool = False
    node_id: Optional[UUID] = None
    slug_url: Optional[str] = None
    slug_size_bytes: Optional[int] = None
    rollback_target_id: Optional[UUID] = None
    error_message: Optional[str] = None

    created_at: datetime = field(default_factory=_now)
    deployed_at: Optional[datetime] = None

    def has_been_deployed(self) -> bool:
        return self.deployed_at is not None


# ============================================
# BUILD CACHE
# ============================================

@dataclass
class BuildCacheRecord:
    """Stored dependency cache of an application."""
    application_id: UUID
    cache_key: str
    storage_key: str
    size_bytes: int = 0
    created_at: datetime = field(default_factory=_now)
    last_used_at: datetime = field(default_factory=_now)
