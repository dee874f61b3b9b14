#paas_engine/infrastructure/postgres/models.py
"""SQLAlchemy ORM models for database tables."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer,
    JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID

from paas_engine.core.models import JobState
from paas_engine.domain.models import ApplicationStatus, BuildStatus, DeploymentStatus
from paas_engine.infrastructure.postgres.database import Base
from paas_engine.node_manager.models import NodeStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ============================================
# JOBS
# ============================================

class JobORM(Base):
    """
    Job table - durable queue storage.

    Indexes:
    - Partial index on (queue_name, priority, created_at) for claimable jobs
    - Partial index on lease_expires_at for stalled active jobs
    - Index on application_id for cancellation
    """

    __tablename__ = "paas_jobs"

    job_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4, nullable=False)
    queue_name = Column(String(100), nullable=False)
    name = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False)
    application_id = Column(UUID(as_uuid=True), nullable=True, index=True)

    state = Column(
        SQLEnum(JobState, name="paas_job_state", values_callable=_enum_values),
        nullable=False,
        default=JobState.WAITING,
    )
    priority = Column(Integer, nullable=False, default=0)
    progress = Column(Integer, nullable=False, default=0)

    # Retry
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff = Column(JSON, nullable=False)
    available_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    stalled_count = Column(Integer, nullable=False, default=0)

    # Lease
    lease_owner = Column(String(255), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Results
    failure_reason = Column(Text, nullable=True)
    return_value = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            "ix_paas_jobs_claimable",
            "queue_name",
            "priority",
            "created_at",
            postgresql_where=state.in_([JobState.WAITING, JobState.DELAYED]),
        ),
        Index(
            "ix_paas_jobs_stalled",
            "lease_expires_at",
            postgresql_where=(state == JobState.ACTIVE),
        ),
        Index("ix_paas_jobs_queue_state", "queue_name", "state"),
    )

    def __repr__(self) -> str:
        return (
            f"<JobORM(job_id={self.job_id}, name={self.name}, "
            f"state={self.state.value}, lease_owner={self.lease_owner})>"
        )


# ============================================
# NODES
# ============================================

class WorkerNodeORM(Base):
    """Worker node table."""

    __tablename__ = "paas_nodes"

    node_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False, unique=True)
    region = Column(String(100), nullable=False, index=True)

    host_address = Column(String(255), nullable=True)
    runtime_agent_url = Column(String(500), nullable=True)

    status = Column(
        SQLEnum(NodeStatus, name="paas_node_status", values_callable=_enum_values),
        nullable=False,
        default=NodeStatus.OFFLINE,
        index=True,
    )

    # Capacity (single writer: heartbeat)
    cpu_total = Column(Integer, nullable=True)
    cpu_used = Column(Integer, nullable=True)
    memory_total_mb = Column(Integer, nullable=True)
    memory_used_mb = Column(Integer, nullable=True)
    disk_total_mb = Column(Integer, nullable=True)
    disk_used_mb = Column(Integer, nullable=True)
    container_count = Column(Integer, nullable=False, default=0)

    last_heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    last_alert_at = Column(DateTime(timezone=True), nullable=True)

    auth_token_hash = Column(String(64), nullable=True)
    node_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("ix_paas_nodes_region_status", "region", "status"),
    )


class NodeRegistrationORM(Base):
    """One-time registration tokens."""

    __tablename__ = "paas_node_registrations"

    token_hash = Column(String(64), primary_key=True)
    node_id = Column(
        UUID(as_uuid=True),
        ForeignKey("paas_nodes.node_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)


# ============================================
# PLANS
# ============================================

class PlanORM(Base):
    """Plan table."""

    __tablename__ = "paas_plans"

    plan_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(100), nullable=False, unique=True)
    cpu_millicores = Column(Integer, nullable=False, default=500)
    memory_mb = Column(Integer, nullable=False, default=512)
    storage_mb = Column(Integer, nullable=False, default=1024)
    max_replicas = Column(Integer, nullable=False, default=1)


# ============================================
# APPLICATIONS
# ============================================

class ApplicationORM(Base):
    """Application table."""

    __tablename__ = "paas_applications"

    application_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(63), nullable=False, unique=True)
    plan_id = Column(UUID(as_uuid=True), ForeignKey("paas_plans.plan_id"), nullable=False)
    region = Column(String(100), nullable=False)

    git_url = Column(String(500), nullable=True)
    git_branch = Column(String(255), nullable=False, default="main")
    git_commit = Column(String(64), nullable=True)
    buildpack = Column(String(500), nullable=True)
    stack = Column(String(50), nullable=False, default="heroku-22")

    instance_count = Column(Integer, nullable=False, default=1)
    status = Column(
        SQLEnum(ApplicationStatus, name="paas_application_status", values_callable=_enum_values),
        nullable=False,
        default=ApplicationStatus.PENDING,
        index=True,
    )
    suspended_reason = Column(Text, nullable=True)
    status_before_build = Column(
        SQLEnum(ApplicationStatus, name="paas_application_status", values_callable=_enum_values, create_type=False),
        nullable=True,
    )

    current_build_id = Column(UUID(as_uuid=True), nullable=True)
    current_deployment_id = Column(UUID(as_uuid=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


# ============================================
# BUILDS
# ============================================

class BuildSequenceORM(Base):
    """
    Per-application counters. Locked with SELECT ... FOR UPDATE while a
    build number and deployment version are allocated.
    """

    __tablename__ = "paas_build_sequences"

    application_id = Column(
        UUID(as_uuid=True),
        ForeignKey("paas_applications.application_id", ondelete="CASCADE"),
        primary_key=True,
    )
    last_build_number = Column(Integer, nullable=False, default=0)
    last_deployment_version = Column(Integer, nullable=False, default=0)


class BuildORM(Base):
    """Build table."""

    __tablename__ = "paas_builds"

    build_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    application_id = Column(
        UUID(as_uuid=True),
        ForeignKey("paas_applications.application_id", ondelete="CASCADE"),
        nullable=False,
    )
    build_number = Column(Integer, nullable=False)

    status = Column(
        SQLEnum(BuildStatus, name="paas_build_status", values_callable=_enum_values),
        nullable=False,
        default=BuildStatus.PENDING,
    )
    git_commit_sha = Column(String(64), nullable=True)
    git_commit_message = Column(Text, nullable=True)
    buildpack = Column(String(500), nullable=True)
    cache_key = Column(String(64), nullable=True)
    artifact_size_bytes = Column(BigInteger, nullable=True)
    build_log = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    triggered_by = Column(UUID(as_uuid=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("application_id", "build_number", name="uq_paas_builds_app_number"),
    )


# ============================================
# DEPLOYMENTS
# ============================================

class DeploymentORM(Base):
    """Deployment table."""

    __tablename__ = "paas_deployments"

    deployment_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    application_id = Column(
        UUID(as_uuid=True),
        ForeignKey("paas_applications.application_id", ondelete="CASCADE"),
        nullable=False,
    )
    version = Column(Integer, nullable=False)
    build_id = Column(UUID(as_uuid=True), ForeignKey("paas_builds.build_id", ondelete="SET NULL"), nullable=True)

    status = Column(
        SQLEnum(DeploymentStatus, name="paas_deployment_status", values_callable=_enum_values),
        nullable=False,
        default=DeploymentStatus.PENDING,
    )
    is_active = Column(Boolean, nullable=False, default=False)
    node_id = Column(UUID(as_uuid=True), ForeignKey("paas_nodes.node_id"), nullable=True)
    slug_url = Column(String(1000), nullable=True)
    slug_size_bytes = Column(BigInteger, nullable=True)
    rollback_target_id = Column(UUID(as_uuid=True), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    deployed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("application_id", "version", name="uq_paas_deployments_app_version"),
        # At most one active deployment per application
        Index(
            "uq_paas_deployments_active",
            "application_id",
            unique=True,
            postgresql_where=(is_active.is_(True)),
        ),
    )


# ============================================
# BUILD CACHE
# ============================================

class BuildCacheORM(Base):
    """Build cache entries."""

    __tablename__ = "paas_build_cache"

    application_id = Column(
        UUID(as_uuid=True),
        ForeignKey("paas_applications.application_id", ondelete="CASCADE"),
        primary_key=True,
    )
    cache_key = Column(String(64), primary_key=True)
    storage_key = Column(String(1000), nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    last_used_at = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)
