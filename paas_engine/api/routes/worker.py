# paas_engine/api/routes/worker.py
"""Worker agent API: registration, heartbeats and the build queue facade."""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from paas_engine.api.dependencies import (
    get_current_worker,
    get_live_logs,
    get_node_registry,
    get_queue,
    worker_lease_owner,
)
from paas_engine.api.schemas.worker import (
    BuildLogRequest,
    BuildStatusRequest,
    HeartbeatRequest,
    HeartbeatResponse,
    QueuedBuildResponse,
    RegisterWorkerRequest,
    RegisterWorkerResponse,
)
from paas_engine.builder.log import LiveLogStore
from paas_engine.core.errors import InvalidStateError, LeaseError, NotFoundError
from paas_engine.core.models import BUILD_QUEUE, JobState
from paas_engine.core.service import JobQueue
from paas_engine.node_manager.models import WorkerNode
from paas_engine.node_manager.service import NodeInfo, NodeRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/paas/worker", tags=["worker"])


@router.post("/register", response_model=RegisterWorkerResponse)
def register_worker(
    request: RegisterWorkerRequest,
    registry: NodeRegistry = Depends(get_node_registry),
):
    node_id, auth_token = registry.register(
        NodeInfo(
            name=request.name,
            region=request.region,
            host_address=request.host_address,
            runtime_agent_url=request.runtime_agent_url,
            metrics=request.metrics.to_domain() if request.metrics else None,
            metadata=request.metadata,
        ),
        registration_token=request.registration_token,
    )
    return RegisterWorkerResponse(node_id=node_id, auth_token=auth_token)


@router.post("/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    request: HeartbeatRequest,
    node: WorkerNode = Depends(get_current_worker),
    registry: NodeRegistry = Depends(get_node_registry),
    queue: JobQueue = Depends(get_queue),
):
    """Store capacity and extend the leases of the worker's running builds."""
    updated = registry.heartbeat(node.node_id, request.metrics.to_domain())

    owner = worker_lease_owner(node)
    renewed: List[UUID] = []
    lost: List[UUID] = []
    for job_id in request.active_job_ids:
        try:
            queue.extend_lease(job_id, owner)
            renewed.append(job_id)
        except (LeaseError, InvalidStateError, NotFoundError) as e:
            logger.warning(f"[worker-api] lease of {job_id} not renewed for {node.name}: {e}")
            lost.append(job_id)

    return HeartbeatResponse(status=updated.status.value, renewed_job_ids=renewed, lost_job_ids=lost)


@router.get("/builds/queued", response_model=List[QueuedBuildResponse])
def get_queued_builds(
    limit: int = Query(default=10, ge=1, le=100),
    node: WorkerNode = Depends(get_current_worker),
    queue: JobQueue = Depends(get_queue),
):
    jobs = queue.list_waiting(BUILD_QUEUE, limit=limit)
    return [
        QueuedBuildResponse(
            job_id=job.job_id,
            application_id=job.application_id,
            payload=job.payload,
            priority=job.priority,
            attempts_made=job.attempts_made,
            created_at=job.created_at,
        )
        for job in jobs
    ]


@router.post("/builds/{job_id}/accept", response_model=QueuedBuildResponse)
def accept_build(
    job_id: UUID,
    node: WorkerNode = Depends(get_current_worker),
    queue: JobQueue = Depends(get_queue),
):
    # Queue membership is fixed at enqueue
    if queue.get(job_id).queue_name != BUILD_QUEUE:
        raise HTTPException(status_code=400, detail="Job is not a build")

    job = queue.claim(job_id, worker_lease_owner(node))
    if job is None:
        raise HTTPException(status_code=409, detail="Build is no longer available")

    logger.info(f"[worker-api] build {job_id} accepted by {node.name}")
    return QueuedBuildResponse(
        job_id=job.job_id,
        application_id=job.application_id,
        payload=job.payload,
        priority=job.priority,
        attempts_made=job.attempts_made,
        created_at=job.created_at,
    )


@router.post("/builds/{job_id}/status")
def update_build_status(
    job_id: UUID,
    request: BuildStatusRequest,
    node: WorkerNode = Depends(get_current_worker),
    queue: JobQueue = Depends(get_queue),
    live_logs: LiveLogStore = Depends(get_live_logs),
):
    owner = worker_lease_owner(node)

    if request.status == "progress":
        queue.update_progress(job_id, owner, request.progress or 0)
        return {"status": JobState.ACTIVE.value}

    if request.status == "completed":
        job = queue.ack(job_id, owner, request.result)
    else:
        job = queue.fail(job_id, owner, request.error or "Build failed", retryable=request.retryable)

    live_logs.discard(job_id)
    return {"status": job.state.value, "attempts_made": job.attempts_made}


@router.post("/builds/{job_id}/logs")
def add_build_log(
    job_id: UUID,
    request: BuildLogRequest,
    node: WorkerNode = Depends(get_current_worker),
    queue: JobQueue = Depends(get_queue),
    live_logs: LiveLogStore = Depends(get_live_logs),
):
    job = queue.get(job_id)
    if not job.is_lease_valid(worker_lease_owner(node)):
        raise LeaseError(f"Build {job_id} is not leased by {node.name}")
    total = live_logs.append(job_id, request.lines)
    return {"accepted": len(request.lines), "total": total}

