# paas_engine/api/routes/jobs.py

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from paas_engine.api.dependencies import get_live_logs, get_queue
from paas_engine.api.schemas.application import JobStatusResponse
from paas_engine.api.schemas.worker import BuildLogResponse
from paas_engine.builder.log import LiveLogStore
from paas_engine.core.service import JobQueue

router = APIRouter(prefix="/api/paas/jobs", tags=["jobs"])


@router.get("/dead-letter", response_model=List[JobStatusResponse])
def list_dead_letter(
    queue_name: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    queue: JobQueue = Depends(get_queue),
):
    return [JobStatusResponse.from_job(job) for job in queue.list_dead_letter(queue_name, limit=limit)]


@router.get("/{job_id}", response_model=JobStatusResponse)
def get_job(job_id: UUID, queue: JobQueue = Depends(get_queue)):
    return JobStatusResponse.from_job(queue.get(job_id))


@router.get("/{job_id}/logs", response_model=BuildLogResponse)
def get_job_logs(job_id: UUID, live_logs: LiveLogStore = Depends(get_live_logs)):
    """Live output of a build still in flight."""
    return BuildLogResponse(job_id=job_id, lines=live_logs.get(job_id))


@router.post("/{job_id}/retry", response_model=JobStatusResponse)
def retry_job(job_id: UUID, queue: JobQueue = Depends(get_queue)):
    return JobStatusResponse.from_job(queue.retry_dead_letter(job_id))
