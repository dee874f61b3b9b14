# paas_engine/api/routes/applications.py
"""Application operations. Every mutation is queued, never run inline."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends

from paas_engine.api.dependencies import get_application_service, get_scheduler
from paas_engine.api.schemas.application import (
    ApplicationResponse,
    CreateApplicationRequest,
    DeployRequest,
    RollbackRequest,
    ScaleRequest,
    ScheduleResponse,
    SuspendRequest,
)
from paas_engine.domain.scheduler import DeploymentScheduler, ScheduleResult
from paas_engine.domain.service import ApplicationService

router = APIRouter(prefix="/api/paas/applications", tags=["applications"])


def _respond(result: ScheduleResult) -> ScheduleResponse:
    """Rejected operations surface as the error that rejected them."""
    if not result.success and result.exception is not None:
        raise result.exception
    return ScheduleResponse(**result.to_dict())


@router.post("", response_model=ApplicationResponse, status_code=201)
def create_application(
    request: CreateApplicationRequest,
    service: ApplicationService = Depends(get_application_service),
):
    app = service.create_application(**request.model_dump())
    return ApplicationResponse.from_app(app)


@router.get("/{app_id}", response_model=ApplicationResponse)
def get_application(app_id: UUID, service: ApplicationService = Depends(get_application_service)):
    return ApplicationResponse.from_app(service.get(app_id))


@router.post("/{app_id}/deploy", response_model=ScheduleResponse, status_code=202)
def deploy(
    app_id: UUID,
    request: Optional[DeployRequest] = None,
    scheduler: DeploymentScheduler = Depends(get_scheduler),
):
    request = request or DeployRequest()
    return _respond(scheduler.schedule_deployment(app_id, git_commit=request.git_commit, user_id=request.user_id))


@router.post("/{app_id}/restart", response_model=ScheduleResponse, status_code=202)
def restart(app_id: UUID, scheduler: DeploymentScheduler = Depends(get_scheduler)):
    return _respond(scheduler.schedule_restart(app_id))


@router.post("/{app_id}/stop", response_model=ScheduleResponse, status_code=202)
def stop(app_id: UUID, scheduler: DeploymentScheduler = Depends(get_scheduler)):
    return _respond(scheduler.schedule_stop(app_id))


@router.post("/{app_id}/start", response_model=ScheduleResponse, status_code=202)
def start(app_id: UUID, scheduler: DeploymentScheduler = Depends(get_scheduler)):
    return _respond(scheduler.schedule_start(app_id))


@router.post("/{app_id}/scale", response_model=ScheduleResponse, status_code=202)
def scale(
    app_id: UUID,
    request: ScaleRequest,
    scheduler: DeploymentScheduler = Depends(get_scheduler),
):
    return _respond(scheduler.schedule_scale(app_id, request.replicas))


@router.post("/{app_id}/rollback", response_model=ScheduleResponse, status_code=202)
def rollback(
    app_id: UUID,
    request: RollbackRequest,
    scheduler: DeploymentScheduler = Depends(get_scheduler),
):
    return _respond(scheduler.schedule_rollback(app_id, request.version))


@router.delete("/{app_id}", response_model=ScheduleResponse, status_code=202)
def delete(app_id: UUID, scheduler: DeploymentScheduler = Depends(get_scheduler)):
    return _respond(scheduler.schedule_delete(app_id))


# -------------------------
# ACCOUNT STATUS
# -------------------------

@router.post("/{app_id}/suspend", response_model=ApplicationResponse)
def suspend(
    app_id: UUID,
    request: SuspendRequest,
    service: ApplicationService = Depends(get_application_service),
):
    return ApplicationResponse.from_app(service.suspend(app_id, request.reason))


@router.post("/{app_id}/restore", response_model=ApplicationResponse)
def restore(app_id: UUID, service: ApplicationService = Depends(get_application_service)):
    return ApplicationResponse.from_app(service.restore(app_id))
