from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from paas_engine.core.models import Job
from paas_engine.domain.models import Application


class CreateApplicationRequest(BaseModel):
    owner_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=63)
    plan_id: UUID
    region: str = Field(..., min_length=1)
    git_url: Optional[str] = None
    git_branch: str = "main"
    buildpack: Optional[str] = None
    instance_count: int = 1


class ApplicationResponse(BaseModel):
    application_id: UUID
    owner_id: UUID
    name: str
    slug: str
    plan_id: UUID
    region: str
    status: str
    suspended_reason: Optional[str]
    git_url: Optional[str]
    git_branch: str
    instance_count: int
    current_build_id: Optional[UUID]
    current_deployment_id: Optional[UUID]
    created_at: datetime

    @classmethod
    def from_app(cls, app: Application) -> "ApplicationResponse":
        return cls(
            application_id=app.application_id,
            owner_id=app.owner_id,
            name=app.name,
            slug=app.slug,
            plan_id=app.plan_id,
            region=app.region,
            status=app.status.value,
            suspended_reason=app.suspended_reason,
            git_url=app.git_url,
            git_branch=app.git_branch,
            instance_count=app.instance_count,
            current_build_id=app.current_build_id,
            current_deployment_id=app.current_deployment_id,
            created_at=app.created_at,
        )


class DeployRequest(BaseModel):
    git_commit: Optional[str] = None
    user_id: Optional[UUID] = None


class ScaleRequest(BaseModel):
    # Range checked by the scheduler so the plan-limit message reaches the caller
    replicas: int


class RollbackRequest(BaseModel):
    version: int = Field(..., ge=1)


class SuspendRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ScheduleResponse(BaseModel):
    success: bool
    job_id: Optional[UUID] = None
    build_id: Optional[UUID] = None
    error: Optional[str] = None


class JobStatusResponse(BaseModel):
    job_id: UUID
    name: str
    queue_name: str
    application_id: Optional[UUID]
    state: str
    progress: int
    attempts_made: int
    max_attempts: int
    failure_reason: Optional[str]
    return_value: Optional[Dict[str, Any]]
    created_at: datetime
    finished_at: Optional[datetime]

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            job_id=job.job_id,
            name=job.name,
            queue_name=job.queue_name,
            application_id=job.application_id,
            state=job.state.value,
            progress=job.progress,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            failure_reason=job.failure_reason,
            return_value=job.return_value,
            created_at=job.created_at,
            finished_at=job.finished_at,
        )
